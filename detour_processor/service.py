"""
Detour Processor Service - Polling orchestrator.

This module provides the DetourProcessorService class which runs the
complete detection cycle on an interval: fetch vehicle positions, drive
one state machine per route, publish documents and events, and report
health through the control plane.

Tick:
    1. Fetch positions (and service alerts)
    2. Group by route, plus routes with live documents and no positions
    3. Per route, under the route lock: observe → enrich → publish
    4. Record per-route failures without aborting other routes

Threading Model:
- Poll Thread (our thread, driven by stop_event.wait(interval))
- Route Workers (ThreadPoolExecutor, one task per route per tick)
- Control Plane Thread (paho-mqtt internal, command handlers)
- Event Publisher Thread (paho-mqtt internal network loop)
"""

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from detour_engine.analytics.context import make_geometry_enricher, match_service_alert
from detour_engine.analytics.tracker import VehiclePosition
from detour_mqtt.logging import LogEvent, create_logger
from detour_mqtt.publishers import BasePublisher
from detour_mqtt.schemas import DetourEvent, Timestamp

from detour_processor.collaborators import (
    DetourStore,
    EventSink,
    RouteShapeStore,
    ServiceAlertFeed,
    StopStore,
    VehiclePositionFeed,
)
from detour_processor.config import DetourConfig
from detour_processor.publisher import DetourPublisher
from detour_processor.registry import RouteDetourRegistry

logger = logging.getLogger(__name__)

RECENT_EVENTS_LIMIT = 20
HISTORY_DEFAULT_LIMIT = 50
HISTORY_MAX_LIMIT = 200


def _wall_clock_ms() -> int:
    return Timestamp.now().value_ms


@dataclass
class TickReport:
    """Outcome of one polling cycle."""

    now_ms: int
    routes: List[str] = field(default_factory=list)
    events: List[DetourEvent] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class DetourProcessorService:
    """
    Main detour processing service.

    Thread Safety:
    - registry: per-route locks (see RouteDetourRegistry)
    - status fields: protected by _status_lock
    - ticks: _tick_in_progress guard skips overlapping ticks

    Usage:
        config = DetourConfig.from_yaml("config/detour_processor.yaml")
        service = DetourProcessorService(
            config=config,
            position_feed=feed,
            shape_store=shapes,
            detour_store=store,
            event_sink=event_publisher,
            control_plane=control_plane,
        )

        service.setup()
        service.start()
        service.wait()  # Blocks until stopped
    """

    def __init__(
        self,
        config: DetourConfig,
        position_feed: VehiclePositionFeed,
        shape_store: RouteShapeStore,
        detour_store: DetourStore,
        event_sink: EventSink,
        alert_feed: Optional[ServiceAlertFeed] = None,
        stop_store: Optional[StopStore] = None,
        control_plane=None,  # MQTTControlPlane
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Initialize detour processor service.

        Args:
            config: Processor configuration
            position_feed: Vehicle position source
            shape_store: Canonical route shapes
            detour_store: Persistence for detour documents
            event_sink: Event destination (DetourEventPublisher in production)
            alert_feed: Official service alerts (optional)
            stop_store: Stops per route for enrichment (optional)
            control_plane: MQTT control plane for commands (optional)
            clock: Epoch-ms clock (default: wall clock)
        """
        self.config = config
        self.position_feed = position_feed
        self.shape_store = shape_store
        self.detour_store = detour_store
        self.event_sink = event_sink
        self.alert_feed = alert_feed
        self.stop_store = stop_store
        self.control_plane = control_plane
        self._clock = clock or _wall_clock_ms

        self.event_logger = create_logger("detour_processor")

        self.registry = RouteDetourRegistry(config, enricher_factory=self._make_enricher)
        self.publisher = DetourPublisher(
            store=detour_store,
            sink=event_sink,
            config=config.publisher,
        )

        # Polling thread
        self.stop_event = threading.Event()
        self.poll_thread: Optional[threading.Thread] = None

        # Lifecycle state
        self._setup_done = False
        self._running = False
        self._paused = threading.Event()
        self._stopped_event = threading.Event()

        # Tick guard
        self._tick_guard = threading.Lock()
        self._tick_in_progress = False

        # Status
        self._status_lock = threading.Lock()
        self._tick_count = 0
        self._skipped_ticks = 0
        self._last_successful_tick: Optional[int] = None
        self._consecutive_failures = 0
        self._last_error: Optional[str] = None
        self._recent_events: Deque[Dict[str, Any]] = deque(maxlen=RECENT_EVENTS_LIMIT)

        logger.info(
            f"DetourProcessorService initialized for service_id={config.service_id}"
        )

    def _make_enricher(self, route_id: str):
        """Geometry enricher for one route (None without a stop store)."""
        if self.stop_store is None:
            return None
        stop_store = self.stop_store
        return make_geometry_enricher(
            lambda: stop_store.stops_for_route(route_id),
            radius_meters=self.config.publisher.stop_match_radius_meters,
            max_stops=self.config.publisher.max_affected_stops,
        )

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    def setup(self) -> None:
        """
        Restore state after a restart and register command handlers.

        Must be called before start() (start() calls it if needed).
        """
        if self._setup_done:
            return

        hydrated = self.publisher.hydrate()
        seeded = self.registry.seed(self.detour_store.list_active())
        logger.info(f"Restored {hydrated} stored detours ({seeded} live machines seeded)")

        if self.control_plane is not None:
            self._setup_control_handlers()

        self._setup_done = True

    def _setup_control_handlers(self) -> None:
        """Register command handlers with control plane."""
        registry = self.control_plane.command_registry

        registry.register("status", self._handle_status, "Publish service status")
        registry.register("list_detours", self._handle_list_detours, "List current detours")
        registry.register(
            "detour_history",
            self._handle_detour_history,
            "List archived detours (limit, route_id)"
        )
        registry.register(
            "route_evidence",
            self._handle_route_evidence,
            "Evidence behind a route's detour decision (route_id)"
        )
        registry.register("pause", self._handle_pause, "Pause polling")
        registry.register("resume", self._handle_resume, "Resume polling")

        logger.info("Control handlers registered")

    def start(self) -> None:
        """
        Start the service (non-blocking).

        Lifecycle:
        1. Setup (hydrate, seed, handlers)
        2. Connect control plane
        3. Connect event publisher
        4. Start poll thread
        """
        if self._running:
            logger.warning("Service already running")
            return

        self.setup()
        logger.info("Starting detour processor service")

        if self.control_plane is not None:
            if not self.control_plane.connect(timeout=5.0):
                raise RuntimeError("Failed to connect to MQTT broker (control plane)")

        if isinstance(self.event_sink, BasePublisher):
            if not self.event_sink.connect():
                logger.warning("⚠️ Event publisher not connected; events will be retried")

        self.stop_event.clear()
        self._stopped_event.clear()
        self.poll_thread = threading.Thread(
            target=self._poll_loop,
            name="DetourPollThread",
            daemon=True
        )
        self._running = True
        self.poll_thread.start()

        self._publish_status("running")
        logger.info("✅ Detour processor service started")

    def wait(self) -> None:
        """Block until stop() is called."""
        if not self._running:
            logger.warning("Service not running")
            return

        try:
            while not self._stopped_event.wait(timeout=1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Received KeyboardInterrupt, stopping...")
            self.stop()

    def stop(self) -> None:
        """
        Stop the service gracefully.

        Lifecycle:
        1. Stop poll thread (an in-flight tick finishes)
        2. Disconnect event publisher
        3. Disconnect control plane
        """
        if not self._running:
            logger.warning("Service not running")
            return

        logger.info("Stopping detour processor service")

        self.stop_event.set()
        if self.poll_thread:
            self.poll_thread.join(timeout=30.0)
            logger.info("Poll thread stopped")

        if isinstance(self.event_sink, BasePublisher):
            self.event_sink.disconnect()

        if self.control_plane is not None:
            self._publish_status("stopped")
            self.control_plane.disconnect()

        self._running = False
        self._stopped_event.set()
        logger.info("✅ Detour processor service stopped")

    def _poll_loop(self) -> None:
        logger.info(f"Poll loop started (interval={self.config.poll_interval_seconds}s)")

        while not self.stop_event.is_set():
            if not self._paused.is_set():
                try:
                    self.tick()
                except Exception as e:
                    logger.error(f"❌ Unexpected tick error: {e}", exc_info=True)
            self.stop_event.wait(self.config.poll_interval_seconds)

        logger.info("Poll loop stopped")

    # ─────────────────────────────────────────────────────────────────────
    # Tick
    # ─────────────────────────────────────────────────────────────────────

    def tick(self, now_ms: Optional[int] = None) -> Optional[TickReport]:
        """
        Run one polling cycle.

        Args:
            now_ms: Cycle time (default: clock)

        Returns:
            TickReport, or None when another tick is still running
        """
        with self._tick_guard:
            if self._tick_in_progress:
                with self._status_lock:
                    self._skipped_ticks += 1
                logger.warning("⚠️ Previous tick still running, skipping")
                return None
            self._tick_in_progress = True

        try:
            return self._run_tick(self._clock() if now_ms is None else now_ms)
        finally:
            with self._tick_guard:
                self._tick_in_progress = False

    def _run_tick(self, now_ms: int) -> TickReport:
        report = TickReport(now_ms=now_ms)

        try:
            positions = self.position_feed.fetch()
            alerts = self.alert_feed.fetch() if self.alert_feed is not None else []
        except Exception as e:
            report.errors["*"] = f"feed: {e}"
            self.event_logger.error(
                event=LogEvent.DETOUR_TICK_ERROR,
                message="Position or alert feed failed",
                exc_info=e,
            )
            self._finish_tick(report)
            return report

        groups = self._group_by_route(positions)
        route_ids = sorted(
            set(groups)
            | set(self.registry.live_route_ids())
            | set(self.publisher.published_routes())
        )
        report.routes = route_ids

        if route_ids:
            workers = min(self.config.max_workers, len(route_ids))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="DetourRoute") as pool:
                futures = {
                    route_id: pool.submit(
                        self._process_route, route_id, groups.get(route_id, []), alerts, now_ms
                    )
                    for route_id in route_ids
                }
                for route_id, future in futures.items():
                    try:
                        report.events.extend(future.result())
                    except Exception as e:
                        report.errors[route_id] = str(e)
                        self.event_logger.error(
                            event=LogEvent.DETOUR_TICK_ERROR,
                            message=f"Route {route_id} failed",
                            exc_info=e,
                            metadata={'route_id': route_id}
                        )

        self._finish_tick(report)
        return report

    @staticmethod
    def _group_by_route(positions: List[VehiclePosition]) -> Dict[str, List[VehiclePosition]]:
        groups: Dict[str, List[VehiclePosition]] = {}
        for position in positions:
            if not position.route_id:
                continue
            groups.setdefault(position.route_id, []).append(position)
        return groups

    def _process_route(
        self,
        route_id: str,
        positions: List[VehiclePosition],
        alerts: list,
        now_ms: int
    ) -> List[DetourEvent]:
        """Observe, archive and publish one route (Route Worker thread)."""
        managed = self.registry.route(route_id)
        shape = self.shape_store.get_shape(route_id)
        alert_id = match_service_alert(route_id, alerts)

        route_log = self.event_logger.for_route(route_id)

        with managed.lock:
            result = managed.machine.observe(positions, shape, now_ms, matched_alert_id=alert_id)

            for transition in result.transitions:
                route_log.transition(
                    transition.from_state.value if transition.from_state else None,
                    transition.to_state.value if transition.to_state else None,
                    reason=transition.reason,
                    at_ms=transition.at_ms,
                )

            if result.archived:
                self.registry.record_archived(result.archived)
                for archived in result.archived:
                    route_log.archived(archived.archive_reason.value, state=archived.state.value)

            if result.detour is None:
                if self.publisher.snapshot(route_id) is not None:
                    self.publisher.retire(route_id)
                return []

            events = self.publisher.publish(route_id, result.detour, now_ms)

        with self._status_lock:
            for event in events:
                self._recent_events.append(event.to_dict())
        return events

    def _finish_tick(self, report: TickReport) -> None:
        with self._status_lock:
            self._tick_count += 1
            if report.ok:
                self._last_successful_tick = report.now_ms
                self._consecutive_failures = 0
            else:
                self._consecutive_failures += 1
                self._last_error = "; ".join(
                    f"{route_id}: {error}" for route_id, error in sorted(report.errors.items())
                )

        self.event_logger.info(
            event=LogEvent.DETOUR_TICK_COMPLETED,
            message=f"Tick completed ({len(report.routes)} routes, {len(report.events)} events)",
            metadata={
                'routes': len(report.routes),
                'events': len(report.events),
                'errors': len(report.errors),
            }
        )

    # ─────────────────────────────────────────────────────────────────────
    # Status
    # ─────────────────────────────────────────────────────────────────────

    @property
    def is_paused(self) -> bool:
        return self._paused.is_set()

    def pause(self) -> None:
        self._paused.set()
        logger.info("⏸️ Polling paused")

    def resume(self) -> None:
        self._paused.clear()
        logger.info("▶️ Polling resumed")

    def get_status(self) -> Dict[str, Any]:
        """Health snapshot."""
        counts = self.registry.state_counts()
        with self._status_lock:
            return {
                "service_id": self.config.service_id,
                "running": self._running,
                "paused": self._paused.is_set(),
                "tick_in_progress": self._tick_in_progress,
                "tick_count": self._tick_count,
                "skipped_ticks": self._skipped_ticks,
                "last_successful_tick": self._last_successful_tick,
                "consecutive_failure_count": self._consecutive_failures,
                "last_error": self._last_error,
                "active_detours": counts,
                "routes_tracked": len(self.registry),
                "recent_events": list(self._recent_events),
            }

    def _publish_status(self, status: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if self.control_plane is not None:
            self.control_plane.publish_status(status, payload)

    # ─────────────────────────────────────────────────────────────────────
    # Command Handlers (called by Control Plane Thread)
    # ─────────────────────────────────────────────────────────────────────

    def _handle_status(self, command: Dict) -> None:
        self._publish_status("status", self.get_status())

    def _handle_list_detours(self, command: Dict) -> None:
        detours = self.registry.list_detours()
        self._publish_status("detours_list", {"detours": detours})
        logger.info(f"Listed detours: {[d['routeId'] for d in detours]}")

    def _handle_detour_history(self, command: Dict) -> None:
        try:
            limit = int(command.get("limit", HISTORY_DEFAULT_LIMIT))
        except (TypeError, ValueError):
            limit = HISTORY_DEFAULT_LIMIT
        limit = min(max(limit, 1), HISTORY_MAX_LIMIT)

        route_id = command.get("route_id")
        entries = self.registry.history(limit=limit, route_id=route_id)
        self._publish_status("detour_history", {"limit": limit, "route_id": route_id, "entries": entries})

    def _handle_route_evidence(self, command: Dict) -> None:
        route_id = command.get("route_id")
        if not route_id:
            self._publish_status("error", {"command": "route_evidence", "message": "route_id required"})
            return

        evidence = self.registry.evidence(route_id)
        if evidence is None:
            self._publish_status("error", {"command": "route_evidence", "message": f"Unknown route '{route_id}'"})
            return

        self._publish_status("route_evidence", evidence)

    def _handle_pause(self, command: Dict) -> None:
        self.pause()
        self._publish_status("paused")

    def _handle_resume(self, command: Dict) -> None:
        self.resume()
        self._publish_status("running")
