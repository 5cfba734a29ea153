"""
Detour Publisher - Snapshot diffing, geometry throttling and events.

Bounded Context: Publication of detour documents to downstream consumers

Per route and tick:

    Detour (from the state machine)
        │
        ├─ should_write_geometry()   ← GeometryWriteLedger (last write time)
        │
        ├─ DetourStore.put(stored document)
        │     geometry = current if written, else last written
        │
        ├─ events: DETECTED | UPDATED | CLEARED  → EventSink.emit()
        │
        └─ commit snapshot + ledger (only after every write/emit succeeded)

Design:
- GeometrySnapshot is a diffing projection, never the source of truth
- The ledger is an explicit state object owned by the caller
- Failures propagate; nothing is committed, so the next tick retries
- Pending detours are stored but never announced

Thread Safety:
    publish() for one route must not run concurrently with itself
    (RouteDetourRegistry holds the route lock). Different routes may
    publish in parallel; shared maps are lock-protected.
"""

import threading
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from detour_engine.analytics.document import Detour, DetourGeometry, DetourState
from detour_mqtt.logging import LogEvent, StructuredLogger, create_logger
from detour_mqtt.schemas import (
    DEFAULT_EVENT_SOURCE,
    DetourClearedEvent,
    DetourDetectedEvent,
    DetourEvent,
    DetourUpdatedEvent,
)

from detour_processor.collaborators import DetourStore, EventSink
from detour_processor.config import PublisherConfig

GEOMETRY_WRITE_THROTTLE_MS = 120_000
GEOMETRY_POINT_CHANGE_THRESHOLD = 5


class EventDeliveryError(Exception):
    """Raised when the event sink rejects an event."""

    def __init__(self, event: DetourEvent):
        super().__init__(
            f"Event sink rejected {event.event_type.value} for route {event.route_id}"
        )
        self.event = event


@dataclass(frozen=True)
class GeometrySnapshot:
    """
    Immutable projection of a stored Detour document.

    Geometry-derived fields are None when the document has no geometry.
    """
    route_id: str
    detected_at_ms: int
    last_seen_at_ms: int
    updated_at_ms: int
    trigger_vehicle_id: Optional[str]
    vehicle_count: int
    state: str
    confidence: Optional[str] = None
    evidence_point_count: Optional[int] = None
    last_evidence_at_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'routeId': self.route_id,
            'detectedAtMs': self.detected_at_ms,
            'lastSeenAtMs': self.last_seen_at_ms,
            'updatedAtMs': self.updated_at_ms,
            'triggerVehicleId': self.trigger_vehicle_id,
            'vehicleCount': self.vehicle_count,
            'state': self.state,
            'confidence': self.confidence,
            'evidencePointCount': self.evidence_point_count,
            'lastEvidenceAt': self.last_evidence_at_ms,
        }


def make_snapshot(detour: Detour) -> GeometrySnapshot:
    """Project a document for diffing."""
    geometry = detour.geometry
    return GeometrySnapshot(
        route_id=detour.route_id,
        detected_at_ms=detour.detected_at_ms,
        last_seen_at_ms=detour.last_seen_at_ms,
        updated_at_ms=detour.updated_at_ms,
        trigger_vehicle_id=detour.trigger_vehicle_id,
        vehicle_count=detour.vehicle_count,
        state=detour.state.value,
        confidence=geometry.confidence.value if geometry else None,
        evidence_point_count=geometry.evidence_point_count if geometry else None,
        last_evidence_at_ms=detour.last_evidence_at_ms if geometry else None,
    )


class GeometryWriteLedger:
    """Last geometry write time per route."""

    def __init__(self):
        self._last_write: Dict[str, int] = {}
        self._lock = threading.Lock()

    def last_write(self, route_id: str) -> Optional[int]:
        with self._lock:
            return self._last_write.get(route_id)

    def record(self, route_id: str, at_ms: int) -> None:
        with self._lock:
            self._last_write[route_id] = at_ms

    def forget(self, route_id: str) -> None:
        with self._lock:
            self._last_write.pop(route_id, None)

    def __contains__(self, route_id: str) -> bool:
        with self._lock:
            return route_id in self._last_write


def should_write_geometry(
    route_id: str,
    detour: Detour,
    prev_snapshot: Optional[GeometrySnapshot],
    now_ms: int,
    ledger: GeometryWriteLedger,
    throttle_ms: int = GEOMETRY_WRITE_THROTTLE_MS,
    point_change_threshold: int = GEOMETRY_POINT_CHANGE_THRESHOLD
) -> bool:
    """
    Decide whether this tick persists the current geometry.

    Returns:
        False without geometry. Otherwise True on a state change, a
        confidence change, an evidence count delta of at least
        point_change_threshold, or when the throttle window elapsed.
    """
    geometry = detour.geometry
    if geometry is None:
        return False
    if prev_snapshot is None:
        return True

    if prev_snapshot.state != detour.state.value:
        return True
    if prev_snapshot.confidence != geometry.confidence.value:
        return True

    delta = abs(geometry.evidence_point_count - (prev_snapshot.evidence_point_count or 0))
    if delta >= point_change_threshold:
        return True

    last_write = ledger.last_write(route_id)
    if last_write is None:
        return True
    return now_ms - last_write >= throttle_ms


def build_detected_event(
    route_id: str,
    current: GeometrySnapshot,
    now_ms: int,
    source: str = DEFAULT_EVENT_SOURCE
) -> DetourDetectedEvent:
    return DetourDetectedEvent(
        route_id=route_id,
        occurred_at_ms=now_ms,
        detected_at_ms=current.detected_at_ms,
        last_seen_at_ms=current.last_seen_at_ms,
        trigger_vehicle_id=current.trigger_vehicle_id,
        vehicle_count=current.vehicle_count,
        confidence=current.confidence,
        evidence_point_count=current.evidence_point_count,
        source=source,
    )


def build_updated_event(
    route_id: str,
    prev: Optional[GeometrySnapshot],
    current: GeometrySnapshot,
    now_ms: int,
    source: str = DEFAULT_EVENT_SOURCE
) -> Optional[DetourUpdatedEvent]:
    """
    Diff two snapshots.

    Returns:
        None if prev is None or no tracked field differs. Otherwise an
        event whose changed_fields lists every differing field in the
        order vehicleCount, triggerVehicleId, state, confidence,
        evidencePointCount.
    """
    if prev is None:
        return None

    comparisons = (
        ('vehicleCount', prev.vehicle_count, current.vehicle_count),
        ('triggerVehicleId', prev.trigger_vehicle_id, current.trigger_vehicle_id),
        ('state', prev.state, current.state),
        ('confidence', prev.confidence, current.confidence),
        ('evidencePointCount', prev.evidence_point_count, current.evidence_point_count),
    )
    changed = tuple(name for name, before, after in comparisons if before != after)
    if not changed:
        return None

    return DetourUpdatedEvent(
        route_id=route_id,
        occurred_at_ms=now_ms,
        detected_at_ms=current.detected_at_ms,
        last_seen_at_ms=current.last_seen_at_ms,
        trigger_vehicle_id=current.trigger_vehicle_id,
        previous_trigger_vehicle_id=prev.trigger_vehicle_id,
        vehicle_count=current.vehicle_count,
        previous_vehicle_count=prev.vehicle_count,
        changed_fields=changed,
        state=current.state,
        confidence=current.confidence,
        evidence_point_count=current.evidence_point_count,
        source=source,
    )


def build_cleared_event(
    route_id: str,
    previous: Optional[GeometrySnapshot],
    now_ms: int,
    source: str = DEFAULT_EVENT_SOURCE
) -> DetourClearedEvent:
    """durationMs = max(0, now - previous.detectedAtMs)."""
    detected_at = previous.detected_at_ms if previous is not None else None
    return DetourClearedEvent(
        route_id=route_id,
        occurred_at_ms=now_ms,
        detected_at_ms=detected_at,
        cleared_at_ms=now_ms,
        duration_ms=max(0, now_ms - detected_at) if detected_at is not None else None,
        trigger_vehicle_id=previous.trigger_vehicle_id if previous is not None else None,
        vehicle_count=previous.vehicle_count if previous is not None else 0,
        source=source,
    )


class DetourPublisher:
    """
    Persists detour documents and emits change events.

    Attributes:
        store: DetourStore collaborator
        sink: EventSink collaborator
        config: PublisherConfig (throttle, point delta, event source)
        ledger: GeometryWriteLedger

    Usage:
        publisher = DetourPublisher(store, sink, config.publisher)
        publisher.hydrate()                 # after restart
        events = publisher.publish("8A", detour, now_ms)
        publisher.retire("8A")              # document expired
    """

    def __init__(
        self,
        store: DetourStore,
        sink: EventSink,
        config: Optional[PublisherConfig] = None,
        ledger: Optional[GeometryWriteLedger] = None,
        logger: Optional[StructuredLogger] = None
    ):
        self.store = store
        self.sink = sink
        self.config = config or PublisherConfig()
        self.ledger = ledger or GeometryWriteLedger()
        self.logger = logger or create_logger("detour_publisher")

        self._snapshots: Dict[str, GeometrySnapshot] = {}
        self._written_geometry: Dict[str, Optional[DetourGeometry]] = {}
        self._lock = threading.Lock()

    def snapshot(self, route_id: str) -> Optional[GeometrySnapshot]:
        """Last committed snapshot for a route."""
        with self._lock:
            return self._snapshots.get(route_id)

    def published_routes(self) -> List[str]:
        with self._lock:
            return sorted(self._snapshots)

    def publish(self, route_id: str, detour: Detour, now_ms: int) -> List[DetourEvent]:
        """
        Persist one route's document and emit its events.

        Returns:
            Events emitted this call

        Raises:
            EventDeliveryError: If the sink rejects an event
            Exception: Store errors propagate unchanged
        """
        with self._lock:
            prev = self._snapshots.get(route_id)
            last_geometry = self._written_geometry.get(route_id)

        # A different detectedAt starts a new lifecycle
        if prev is not None and prev.detected_at_ms != detour.detected_at_ms:
            prev = None
            last_geometry = None

        write_geometry = should_write_geometry(
            route_id,
            detour,
            prev,
            now_ms,
            self.ledger,
            throttle_ms=self.config.geometry_write_throttle_ms,
            point_change_threshold=self.config.geometry_point_change_threshold,
        )

        if write_geometry or detour.geometry is None:
            stored = detour
        else:
            stored = replace(detour, geometry=last_geometry or detour.geometry)

        self.store.put(stored)
        current = make_snapshot(stored)

        events = self._build_events(route_id, prev, current, now_ms)
        for event in events:
            if not self.sink.emit(event):
                self.logger.error(
                    event=LogEvent.DETOUR_PUBLISH_ERROR,
                    message=f"Event sink rejected {event.event_type.value}",
                    metadata={'route_id': route_id, 'event_type': event.event_type.value}
                )
                raise EventDeliveryError(event)
            self.logger.debug(
                event=LogEvent.DETOUR_EVENT_PUBLISHED,
                message=f"Emitted {event.event_type.value}",
                metadata={'route_id': route_id}
            )

        with self._lock:
            self._snapshots[route_id] = current
            self._written_geometry[route_id] = stored.geometry

        if write_geometry:
            self.ledger.record(route_id, now_ms)
            self.logger.info(
                event=LogEvent.DETOUR_GEOMETRY_WRITTEN,
                message=f"Geometry written for route {route_id}",
                metadata={
                    'route_id': route_id,
                    'state': current.state,
                    'confidence': current.confidence,
                    'evidence_point_count': current.evidence_point_count,
                }
            )

        return events

    def _build_events(
        self,
        route_id: str,
        prev: Optional[GeometrySnapshot],
        current: GeometrySnapshot,
        now_ms: int
    ) -> List[DetourEvent]:
        source = self.config.event_source
        state = DetourState(current.state)

        if state == DetourState.OFF_ROUTE_PENDING:
            return []

        if state == DetourState.CLEARED:
            if prev is not None and prev.state == DetourState.CLEARED.value:
                return []
            return [build_cleared_event(route_id, prev or current, now_ms, source)]

        if prev is None or prev.state in (
            DetourState.OFF_ROUTE_PENDING.value,
            DetourState.CLEARED.value,
        ):
            return [build_detected_event(route_id, current, now_ms, source)]

        updated = build_updated_event(route_id, prev, current, now_ms, source)
        return [updated] if updated is not None else []

    def retire(self, route_id: str) -> None:
        """
        Remove a document the state machine dropped (expiry or retention).

        No event is emitted.
        """
        self.store.delete(route_id)
        with self._lock:
            self._snapshots.pop(route_id, None)
            self._written_geometry.pop(route_id, None)
        self.ledger.forget(route_id)

    def hydrate(self) -> int:
        """
        Rebuild snapshots from the store after a restart.

        Cleared documents are loaded too, so the next tick retires them.

        Returns:
            Number of documents loaded
        """
        documents = self.store.list_all()
        with self._lock:
            for detour in documents:
                self._snapshots[detour.route_id] = make_snapshot(detour)
                self._written_geometry[detour.route_id] = detour.geometry
        return len(documents)
