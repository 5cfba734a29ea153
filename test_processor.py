"""
Test Detour Processor Service
=============================

Runs polling ticks end to end with in-memory collaborators and a fake
control plane (no MQTT broker, no threads started).

Usage:
    pytest test_processor.py
"""

import json
from dataclasses import replace

import pytest

from detour_control import CommandRegistry
from detour_engine.analytics import DetourState, DetourThresholds, ServiceAlert, Stop, VehiclePosition
from detour_engine.geometry import GeoPoint
from detour_mqtt.schemas import EventType
from detour_processor import DetourConfig, DetourProcessorService, RouteOverride
from detour_processor.collaborators import (
    CollectingEventSink,
    InMemoryAlertFeed,
    InMemoryDetourStore,
    InMemoryPositionFeed,
    InMemoryShapeStore,
    InMemoryStopStore,
    JsonFileAlertFeed,
    JsonFilePositionFeed,
)

ROUTE = "8A"
T0 = 1_700_000_000_000
LAT = 44.38
OFF_LAT = 44.381
SHAPE = [GeoPoint(LAT, lon) for lon in (-79.70, -79.68, -79.66, -79.64, -79.62, -79.60)]
DETOUR_LONS = (-79.66, -79.656, -79.652, -79.648, -79.644)


class FakeControlPlane:
    """Records published statuses instead of talking to a broker."""

    def __init__(self):
        self.command_registry = CommandRegistry()
        self.statuses = []

    def connect(self, timeout: float = 5.0) -> bool:
        return True

    def disconnect(self) -> None:
        pass

    def publish_status(self, status, payload=None):
        self.statuses.append((status, payload))

    def last(self):
        return self.statuses[-1]


class FailingFeed:
    def fetch(self):
        raise IOError("feed unavailable")


def excursion(vehicle_id, start_ms, route_id=ROUTE):
    reports = [
        VehiclePosition(vehicle_id, route_id, OFF_LAT, lon, start_ms + i * 10_000)
        for i, lon in enumerate(DETOUR_LONS)
    ]
    reports.append(VehiclePosition(vehicle_id, route_id, LAT, -79.64, start_ms + 50_000))
    return reports


def on_skipped_segment(vehicle_id, ts):
    return VehiclePosition(vehicle_id, ROUTE, LAT, -79.65, ts)


def make_service(config=None, store=None, feed=None, sink=None, alert_feed=None, stop_store=None):
    control_plane = FakeControlPlane()
    service = DetourProcessorService(
        config=config or DetourConfig(
            service_id="test-service", thresholds=DetourThresholds(clear_grace_ms=0)
        ),
        position_feed=feed or InMemoryPositionFeed(),
        shape_store=InMemoryShapeStore({ROUTE: SHAPE}),
        detour_store=store or InMemoryDetourStore(),
        event_sink=sink or CollectingEventSink(),
        alert_feed=alert_feed,
        stop_store=stop_store,
        control_plane=control_plane,
    )
    service.setup()
    return service, control_plane


def drive_to_active(service):
    service.position_feed.set_positions(excursion("bus-A", T0))
    service.tick(T0 + 60_000)
    service.position_feed.set_positions(excursion("bus-B", T0 + 60_000))
    return service.tick(T0 + 120_000)


# ─────────────────────────────────────────────────────────────────────────────
# Ticks
# ─────────────────────────────────────────────────────────────────────────────

def test_tick_detects_and_announces_detour():
    service, _ = make_service()

    service.position_feed.set_positions(excursion("bus-A", T0))
    first = service.tick(T0 + 60_000)
    assert first.ok
    assert first.routes == [ROUTE]
    assert first.events == []
    assert service.detour_store.get(ROUTE).state == DetourState.OFF_ROUTE_PENDING

    service.position_feed.set_positions(excursion("bus-B", T0 + 60_000))
    second = service.tick(T0 + 120_000)

    assert [e.event_type for e in second.events] == [EventType.DETOUR_DETECTED]
    assert service.event_sink.of_type(EventType.DETOUR_DETECTED)[0].vehicle_count == 2
    assert service.detour_store.get(ROUTE).state == DetourState.ACTIVE

    status = service.get_status()
    assert status["tick_count"] == 2
    assert status["last_successful_tick"] == T0 + 120_000
    assert status["consecutive_failure_count"] == 0
    assert status["active_detours"]["active"] == 1
    assert status["active_detours"]["cleared"] == 0
    assert status["routes_tracked"] == 1
    assert status["recent_events"][0]["eventType"] == "DETOUR_DETECTED"


def test_full_lifecycle_through_service():
    service, _ = make_service()
    drive_to_active(service)

    service.position_feed.set_positions([on_skipped_segment("bus-C", T0 + 130_000)])
    service.tick(T0 + 135_000)
    service.position_feed.set_positions([
        on_skipped_segment("bus-C", T0 + 140_000),
        on_skipped_segment("bus-D", T0 + 150_000),
    ])
    service.tick(T0 + 170_000)

    assert service.detour_store.get(ROUTE).state == DetourState.CLEARED
    assert [e.event_type for e in service.event_sink.events] == [
        EventType.DETOUR_DETECTED,
        EventType.DETOUR_UPDATED,
        EventType.DETOUR_CLEARED,
    ]

    # Retention elapsed: document removed without another event
    service.position_feed.set_positions([])
    report = service.tick(T0 + 170_000 + 300_000)

    assert report.events == []
    assert service.detour_store.get(ROUTE) is None
    assert service.publisher.published_routes() == []
    assert len(service.event_sink.events) == 3

    history = service.registry.history()
    assert len(history) == 1
    assert history[0]["archiveReason"] == "cleared"


def test_feed_failure_is_recorded():
    service, _ = make_service(feed=FailingFeed())

    report = service.tick(T0)

    assert not report.ok
    assert "*" in report.errors
    status = service.get_status()
    assert status["consecutive_failure_count"] == 1
    assert "feed unavailable" in status["last_error"]
    assert status["last_successful_tick"] is None


def test_rejected_event_fails_route_and_is_retried():
    sink = CollectingEventSink(accept=False)
    service, _ = make_service(sink=sink)

    report = drive_to_active(service)

    assert ROUTE in report.errors
    assert service.get_status()["consecutive_failure_count"] == 1

    sink.accept = True
    service.position_feed.set_positions([])
    retry = service.tick(T0 + 150_000)

    assert retry.ok
    assert [e.event_type for e in retry.events] == [EventType.DETOUR_DETECTED]
    assert service.get_status()["consecutive_failure_count"] == 0


def test_overlapping_tick_is_skipped():
    class ReentrantFeed:
        def __init__(self):
            self.service = None
            self.nested = []

        def fetch(self):
            self.nested.append(self.service.tick(T0))
            return []

    feed = ReentrantFeed()
    service, _ = make_service(feed=feed)
    feed.service = service

    assert service.tick(T0) is not None
    assert feed.nested == [None]
    assert service.get_status()["skipped_ticks"] == 1


def test_alert_and_stops_enrich_detour():
    alerts = InMemoryAlertFeed([ServiceAlert("alert-1", (ROUTE,), "DETOUR")])
    stops = InMemoryStopStore({ROUTE: [Stop("s1", "Dunlop & Bayfield", LAT, -79.65)]})
    service, _ = make_service(alert_feed=alerts, stop_store=stops)

    drive_to_active(service)

    detour = service.detour_store.get(ROUTE)
    assert detour.matched_alert_id == "alert-1"
    assert detour.geometry.confidence_score == 83
    assert detour.geometry.segment_label == "Near Dunlop & Bayfield"


def test_route_overrides_reach_state_machines():
    config = DetourConfig(
        service_id="test-service",
        route_overrides={"8": RouteOverride(corridor_width_meters=80.0)},
    )
    service, _ = make_service(config=config)

    assert service.registry.route("8A").machine.thresholds.corridor_width_meters == 80.0
    assert service.registry.route("9").machine.thresholds.corridor_width_meters == 50.0


# ─────────────────────────────────────────────────────────────────────────────
# Restart
# ─────────────────────────────────────────────────────────────────────────────

def test_restart_keeps_live_detour_without_duplicate_event():
    first, _ = make_service()
    drive_to_active(first)
    store = first.detour_store

    sink = CollectingEventSink()
    restarted, _ = make_service(store=store, sink=sink)
    restarted.tick(T0 + 130_000)

    assert sink.events == []
    assert [d["routeId"] for d in restarted.registry.list_detours()] == [ROUTE]
    assert restarted.registry.get_detour(ROUTE)["state"] == "active"
    assert restarted.registry.get_detour("999") is None


def test_restart_retires_stored_cleared_detour():
    first, _ = make_service()
    drive_to_active(first)
    first.position_feed.set_positions([on_skipped_segment("bus-C", T0 + 130_000)])
    first.tick(T0 + 135_000)
    first.position_feed.set_positions([
        on_skipped_segment("bus-C", T0 + 140_000),
        on_skipped_segment("bus-D", T0 + 150_000),
    ])
    first.tick(T0 + 170_000)
    store = first.detour_store
    assert store.get(ROUTE).state == DetourState.CLEARED

    sink = CollectingEventSink()
    restarted, _ = make_service(store=store, sink=sink)
    restarted.tick(T0 + 180_000)

    assert store.get(ROUTE) is None
    assert sink.events == []


def test_store_lists_cleared_documents_only_in_list_all():
    service, _ = make_service()
    drive_to_active(service)
    store = service.detour_store
    live = store.get(ROUTE)
    store.put(replace(live, route_id="9", state=DetourState.CLEARED, cleared_at_ms=T0 + 130_000))

    assert [d.route_id for d in store.list_active()] == [ROUTE]
    assert [d.route_id for d in store.list_all()] == [ROUTE, "9"]


# ─────────────────────────────────────────────────────────────────────────────
# Control commands
# ─────────────────────────────────────────────────────────────────────────────

def test_control_commands_are_registered():
    _, control_plane = make_service()

    assert control_plane.command_registry.available_commands == {
        "status", "list_detours", "detour_history", "route_evidence", "pause", "resume",
    }


def test_status_and_list_detours_commands():
    service, control_plane = make_service()
    drive_to_active(service)
    registry = control_plane.command_registry

    registry.execute("status", {"command": "status"})
    status, payload = control_plane.last()
    assert status == "status"
    assert payload["service_id"] == "test-service"
    assert payload["active_detours"]["active"] == 1

    registry.execute("list-detours")
    status, payload = control_plane.last()
    assert status == "detours_list"
    assert [d["routeId"] for d in payload["detours"]] == [ROUTE]


def test_detour_history_limit_is_clamped():
    service, control_plane = make_service()
    registry = control_plane.command_registry

    for raw, expected in ((1000, 200), (0, 1), ("abc", 50), (None, 50), (20, 20)):
        command = {"command": "detour_history"}
        if raw is not None:
            command["limit"] = raw
        registry.execute("detour_history", command)
        status, payload = control_plane.last()
        assert status == "detour_history"
        assert payload["limit"] == expected
        assert payload["entries"] == []


def test_route_evidence_command():
    service, control_plane = make_service()
    drive_to_active(service)
    registry = control_plane.command_registry

    registry.execute("route_evidence", {})
    assert control_plane.last()[0] == "error"

    registry.execute("route_evidence", {"route_id": "999"})
    status, payload = control_plane.last()
    assert status == "error"
    assert "999" in payload["message"]

    registry.execute("route_evidence", {"route_id": ROUTE})
    status, payload = control_plane.last()
    assert status == "route_evidence"
    assert payload["routeId"] == ROUTE
    assert payload["state"] == "active"
    assert len(payload["tracker"]["closedObservations"]) == 2


def test_pause_and_resume_commands():
    service, control_plane = make_service()
    registry = control_plane.command_registry

    registry.execute("pause", {})
    assert service.is_paused
    assert control_plane.last()[0] == "paused"
    assert service.get_status()["paused"] is True

    registry.execute("resume", {})
    assert not service.is_paused
    assert control_plane.last()[0] == "running"


# ─────────────────────────────────────────────────────────────────────────────
# File-backed collaborators
# ─────────────────────────────────────────────────────────────────────────────

def test_json_file_feeds(tmp_path):
    positions_file = tmp_path / "positions.json"
    alerts_file = tmp_path / "alerts.json"

    assert JsonFilePositionFeed(positions_file).fetch() == []
    assert JsonFileAlertFeed(alerts_file).fetch() == []

    positions_file.write_text(json.dumps([
        {"vehicleId": "bus-A", "routeId": ROUTE, "lat": OFF_LAT, "lon": -79.66, "timestamp": T0},
        {"vehicleId": "bus-B", "routeId": ROUTE, "lat": None, "lon": -79.66},
    ]))
    alerts_file.write_text(json.dumps([
        {"alertId": "alert-1", "routeIds": [ROUTE], "effect": "DETOUR"},
    ]))

    positions = JsonFilePositionFeed(positions_file).fetch()
    assert positions[0] == VehiclePosition("bus-A", ROUTE, OFF_LAT, -79.66, T0)
    assert not positions[1].is_valid
    assert JsonFileAlertFeed(alerts_file).fetch()[0].alert_id == "alert-1"

    positions_file.write_text("{not json")
    with pytest.raises(ValueError):
        JsonFilePositionFeed(positions_file).fetch()


def test_json_shape_and_stop_stores(tmp_path):
    shapes_file = tmp_path / "shapes.json"
    stops_file = tmp_path / "stops.json"
    shapes_file.write_text(json.dumps({
        "8a": [{"lat": LAT, "lon": -79.70}, {"lat": LAT, "lon": -79.60}],
    }))
    stops_file.write_text(json.dumps({
        "8A": [{"stopId": "s1", "name": "Dunlop & Bayfield", "lat": LAT, "lon": -79.65}],
    }))

    shapes = InMemoryShapeStore.from_json_file(shapes_file)
    stops = InMemoryStopStore.from_json_file(stops_file)

    assert shapes.route_ids() == ["8A"]
    assert shapes.get_shape(" 8a ") == [GeoPoint(LAT, -79.70), GeoPoint(LAT, -79.60)]
    assert shapes.get_shape("9") is None
    assert stops.stops_for_route("8a")[0].name == "Dunlop & Bayfield"
    assert stops.stops_for_route("9") == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
