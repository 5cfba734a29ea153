"""
Route Detour Registry - Thread-safe per-route state machine management.

This module provides the RouteDetourRegistry class which owns one
DetourStateMachine per route plus a bounded history of archived detours.

Thread Safety:
- One threading.Lock per route: updates to a route are serialized,
  different routes proceed independently
- A registry lock guards lazy machine creation and the route maps
- A history lock guards the archive deque
- Read views take snapshots under the route locks
"""

import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from detour_engine.analytics.document import Detour, DetourState
from detour_engine.analytics.lifecycle import DetourStateMachine, GeometryEnricher

from detour_processor.config import DetourConfig

EnricherFactory = Callable[[str], Optional[GeometryEnricher]]


@dataclass
class ManagedRoute:
    """
    One route's machine and the lock that serializes access to it.

    Callers must hold ``lock`` while calling into ``machine``.
    """

    route_id: str
    machine: DetourStateMachine
    lock: threading.Lock

    @property
    def detour(self) -> Optional[Detour]:
        return self.machine.detour


class RouteDetourRegistry:
    """
    Registry of per-route detour state machines.

    Machines are created lazily with the thresholds resolved for the
    route (exact override → base route override → global).

    Usage:
        registry = RouteDetourRegistry(config)

        route = registry.route("8A")
        with route.lock:
            result = route.machine.observe(positions, shape, now_ms)
        registry.record_archived(result.archived)

        registry.list_detours()       # live documents
        registry.history(limit=20)    # archived, newest first
    """

    def __init__(
        self,
        config: DetourConfig,
        enricher_factory: Optional[EnricherFactory] = None
    ):
        """
        Initialize empty registry.

        Args:
            config: Processor configuration (thresholds and publisher settings)
            enricher_factory: Builds the geometry enricher for a route
        """
        self.config = config
        self._enricher_factory = enricher_factory
        self._routes: Dict[str, ManagedRoute] = {}
        self._lock = threading.Lock()
        self._history: Deque[Detour] = deque(maxlen=config.publisher.detour_history_limit)
        self._history_lock = threading.Lock()

    def route(self, route_id: str) -> ManagedRoute:
        """
        Get or create the managed route.

        Thread-safe: Acquires registry lock for creation.
        """
        with self._lock:
            managed = self._routes.get(route_id)
            if managed is None:
                enricher = self._enricher_factory(route_id) if self._enricher_factory else None
                machine = DetourStateMachine(
                    route_id=route_id,
                    thresholds=self.config.resolve_route_thresholds(route_id),
                    confidence_thresholds=self.config.publisher.confidence_thresholds,
                    geometry_enricher=enricher,
                )
                managed = ManagedRoute(route_id=route_id, machine=machine, lock=threading.Lock())
                self._routes[route_id] = managed
            return managed

    def route_ids(self) -> List[str]:
        """All routes with a machine."""
        with self._lock:
            return sorted(self._routes)

    def live_route_ids(self) -> List[str]:
        """Routes whose machine currently holds a document."""
        return [detour.route_id for detour in self._documents()]

    def seed(self, detours: Iterable[Detour]) -> int:
        """
        Restore persisted documents after a restart.

        Returns:
            Number of machines seeded (cleared documents are skipped)
        """
        seeded = 0
        for detour in detours:
            managed = self.route(detour.route_id)
            with managed.lock:
                if managed.machine.seed(detour):
                    seeded += 1
        return seeded

    def record_archived(self, detours: Iterable[Detour]) -> None:
        """Push archived documents onto the history (newest first)."""
        with self._history_lock:
            for detour in detours:
                self._history.appendleft(detour)

    # ─────────────────────────────────────────────────────────────────────
    # Read views (snapshots)
    # ─────────────────────────────────────────────────────────────────────

    def _managed_snapshot(self) -> List[ManagedRoute]:
        with self._lock:
            return [self._routes[route_id] for route_id in sorted(self._routes)]

    def _documents(self) -> List[Detour]:
        documents = []
        for managed in self._managed_snapshot():
            with managed.lock:
                detour = managed.machine.detour
            if detour is not None:
                documents.append(detour)
        return documents

    def list_detours(self) -> List[Dict[str, Any]]:
        """Current documents (any state), sorted by route id."""
        return [detour.to_dict() for detour in self._documents()]

    def get_detour(self, route_id: str) -> Optional[Dict[str, Any]]:
        """Current document for one route (None when absent or untracked)."""
        with self._lock:
            managed = self._routes.get(route_id)
        if managed is None:
            return None
        with managed.lock:
            detour = managed.machine.detour
        return detour.to_dict() if detour is not None else None

    def state_counts(self) -> Dict[str, int]:
        """Number of documents per state (every state present, zero included)."""
        counts = {state.value: 0 for state in DetourState}
        for detour in self._documents():
            counts[detour.state.value] += 1
        return counts

    def history(self, limit: Optional[int] = None, route_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Archived documents, newest first."""
        with self._history_lock:
            entries = list(self._history)
        if route_id is not None:
            entries = [d for d in entries if d.route_id == route_id]
        if limit is not None:
            entries = entries[:max(0, limit)]
        return [d.to_dict() for d in entries]

    def evidence(self, route_id: str) -> Optional[Dict[str, Any]]:
        """Debug view behind a route's current decision (None if unknown)."""
        with self._lock:
            managed = self._routes.get(route_id)
        if managed is None:
            return None
        with managed.lock:
            return managed.machine.evidence()

    def __len__(self) -> int:
        with self._lock:
            return len(self._routes)
