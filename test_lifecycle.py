"""
Test Detour Lifecycle
=====================

Drives DetourStateMachine through complete detours with synthetic
vehicle positions along a straight east-west route.

    shape:  44.380 N, -79.70 ... -79.60 (6 vertices, 0.02 deg apart)
    detour: 44.381 N (about 111 m north), -79.660 ... -79.644

Usage:
    pytest test_lifecycle.py
"""

import pytest

from detour_engine.analytics import (
    ArchiveReason,
    ConfidenceLevel,
    ConfidenceThresholds,
    Detour,
    DetourGeometry,
    DetourState,
    DetourStateMachine,
    DetourThresholds,
    ExcursionRule,
    ExcursionTracker,
    ServiceAlert,
    Stop,
    VehiclePosition,
    confidence_label,
    enrich_geometry,
    find_affected_stops,
    make_geometry_enricher,
    match_service_alert,
    score_confidence,
    segment_label,
)
from detour_engine.geometry import GeoPoint

ROUTE = "8A"
T0 = 1_700_000_000_000
LAT = 44.38
OFF_LAT = 44.381
SHAPE = [GeoPoint(LAT, lon) for lon in (-79.70, -79.68, -79.66, -79.64, -79.62, -79.60)]
DETOUR_LONS = (-79.66, -79.656, -79.652, -79.648, -79.644)


def position(vehicle_id, lat, lon, ts, route_id=ROUTE):
    return VehiclePosition(vehicle_id=vehicle_id, route_id=route_id, latitude=lat, longitude=lon, timestamp_ms=ts)


def excursion(vehicle_id, start_ms, route_id=ROUTE):
    """Five off-route reports 10 s apart, then back on route."""
    reports = [
        position(vehicle_id, OFF_LAT, lon, start_ms + i * 10_000, route_id)
        for i, lon in enumerate(DETOUR_LONS)
    ]
    reports.append(position(vehicle_id, LAT, -79.64, start_ms + 50_000, route_id))
    return reports


def on_skipped_segment(vehicle_id, ts):
    return position(vehicle_id, LAT, -79.65, ts)


def active_machine(**threshold_overrides):
    """
    Machine driven to ACTIVE by two overlapping excursions (bus-A, bus-B).

    Clearing is allowed right after detection unless clear_grace_ms is given.
    """
    thresholds = DetourThresholds(**{'clear_grace_ms': 0, **threshold_overrides})
    machine = DetourStateMachine(ROUTE, thresholds)
    machine.observe(excursion("bus-A", T0), SHAPE, T0 + 60_000)
    machine.observe(excursion("bus-B", T0 + 60_000), SHAPE, T0 + 120_000)
    assert machine.detour.state == DetourState.ACTIVE
    return machine


def clear_pending_machine():
    machine = active_machine()
    machine.observe([on_skipped_segment("bus-C", T0 + 130_000)], SHAPE, T0 + 135_000)
    assert machine.detour.state == DetourState.CLEAR_PENDING
    return machine


# ─────────────────────────────────────────────────────────────────────────────
# Full lifecycle
# ─────────────────────────────────────────────────────────────────────────────

def test_qualified_excursion_opens_pending_detour():
    machine = DetourStateMachine(ROUTE)

    result = machine.observe(excursion("bus-A", T0), SHAPE, T0 + 60_000)

    detour = result.detour
    assert detour.state == DetourState.OFF_ROUTE_PENDING
    assert detour.detected_at_ms == T0 + 60_000
    assert detour.last_seen_at_ms == T0 + 40_000
    assert detour.trigger_vehicle_id == "bus-A"
    assert detour.vehicle_count == 1
    assert detour.geometry is None

    assert len(result.transitions) == 1
    assert result.transitions[0].from_state is None
    assert result.transitions[0].to_state == DetourState.OFF_ROUTE_PENDING


def test_short_excursion_does_not_qualify():
    machine = DetourStateMachine(ROUTE)
    reports = [
        position("bus-A", OFF_LAT, -79.66, T0),
        position("bus-A", OFF_LAT, -79.656, T0 + 10_000),
        position("bus-A", LAT, -79.64, T0 + 20_000),
    ]

    result = machine.observe(reports, SHAPE, T0 + 30_000)

    assert result.detour is None
    assert result.transitions == ()


def test_overlapping_observations_confirm_detour():
    machine = DetourStateMachine(ROUTE)
    machine.observe(excursion("bus-A", T0), SHAPE, T0 + 60_000)

    # bus-A reports are re-served by the feed and must be ignored
    result = machine.observe(
        excursion("bus-A", T0) + excursion("bus-B", T0 + 60_000), SHAPE, T0 + 120_000
    )

    detour = result.detour
    assert detour.state == DetourState.ACTIVE
    assert detour.detected_at_ms == T0 + 60_000
    assert detour.vehicle_count == 2
    assert detour.trigger_vehicle_id == "bus-A"

    geometry = detour.geometry
    assert geometry.evidence_point_count == 10
    assert geometry.overlap_fraction == pytest.approx(1.0)
    assert geometry.confidence_score == 75
    assert geometry.confidence == ConfidenceLevel.MEDIUM
    assert len(geometry.inferred_detour_polyline) == 5
    assert len(geometry.skipped_segment_polyline) >= 2
    assert all(p.latitude == pytest.approx(LAT) for p in geometry.skipped_segment_polyline)

    # Clipped to where the buses left and rejoined, not to shape vertices
    assert geometry.entry_point.longitude == pytest.approx(-79.66)
    assert geometry.exit_point.longitude == pytest.approx(-79.644)
    assert geometry.skipped_segment_polyline[-1] == geometry.exit_point

    assert [(t.from_state, t.to_state) for t in result.transitions] == [
        (DetourState.OFF_ROUTE_PENDING, DetourState.ACTIVE)
    ]


def test_same_vehicle_twice_does_not_confirm():
    machine = DetourStateMachine(ROUTE)
    machine.observe(excursion("bus-A", T0), SHAPE, T0 + 60_000)
    result = machine.observe(excursion("bus-A", T0 + 60_000), SHAPE, T0 + 120_000)

    assert result.detour.state == DetourState.OFF_ROUTE_PENDING
    assert result.detour.vehicle_count == 1
    assert result.detour.geometry is None
    assert len(machine.evidence()['tracker']['closedObservations']) == 2

    # A second bus on the same path confirms
    result = machine.observe(excursion("bus-B", T0 + 120_000), SHAPE, T0 + 180_000)
    assert result.detour.state == DetourState.ACTIVE
    assert result.detour.vehicle_count == 2


def test_each_excursion_needs_enough_points_on_its_own():
    machine = DetourStateMachine(ROUTE)
    reports = []
    for vehicle, start in (("bus-A", T0), ("bus-B", T0 + 60_000)):
        reports += [
            position(vehicle, OFF_LAT, -79.66, start),
            position(vehicle, OFF_LAT, -79.648, start + 40_000),
            position(vehicle, LAT, -79.64, start + 50_000),
        ]

    # Two points each: long and far enough, but four points summed do not count
    result = machine.observe(reports, SHAPE, T0 + 120_000)

    assert result.detour is None
    assert machine.evidence()['tracker']['closedObservations'] == []


def test_short_path_excursion_is_dropped():
    machine = DetourStateMachine(ROUTE)
    lons = (-79.66, -79.6597, -79.6594, -79.6591, -79.6588)
    reports = []
    for vehicle, start in (("bus-A", T0), ("bus-B", T0 + 60_000)):
        reports += [
            position(vehicle, OFF_LAT, lon, start + i * 10_000) for i, lon in enumerate(lons)
        ]
        reports.append(position(vehicle, LAT, -79.65, start + 50_000))

    # Five points over 40 s, but under 150 m of path: a bus pulling over
    result = machine.observe(reports, SHAPE, T0 + 120_000)

    assert result.detour is None

    # The same reports count once the path floor is lowered
    relaxed = DetourStateMachine(ROUTE, DetourThresholds(min_off_route_path_meters=50.0))
    assert relaxed.observe(reports, SHAPE, T0 + 120_000).detour.state == DetourState.ACTIVE


def test_anchors_come_from_confirming_pair_only():
    machine = DetourStateMachine(ROUTE)
    stray = [
        position("bus-Z", OFF_LAT, lon, T0 + i * 10_000)
        for i, lon in enumerate((-79.69, -79.688, -79.686, -79.684, -79.682))
    ]
    stray.append(position("bus-Z", LAT, -79.68, T0 + 50_000))

    machine.observe(stray + excursion("bus-A", T0), SHAPE, T0 + 60_000)
    result = machine.observe(excursion("bus-B", T0 + 60_000), SHAPE, T0 + 120_000)

    geometry = result.detour.geometry
    assert result.detour.state == DetourState.ACTIVE
    assert result.detour.vehicle_count == 3
    assert geometry.evidence_point_count == 15
    assert geometry.entry_point.longitude == pytest.approx(-79.66)
    assert min(p.longitude for p in geometry.skipped_segment_polyline) == pytest.approx(-79.66)


def test_matched_alert_raises_confidence():
    machine = DetourStateMachine(ROUTE)
    machine.observe(excursion("bus-A", T0), SHAPE, T0 + 60_000)
    result = machine.observe(
        excursion("bus-B", T0 + 60_000), SHAPE, T0 + 120_000, matched_alert_id="alert-7"
    )

    assert result.detour.matched_alert_id == "alert-7"
    assert result.detour.geometry.confidence_score == 83


def test_on_route_traffic_on_skipped_segment_starts_clearing():
    machine = active_machine()

    result = machine.observe([on_skipped_segment("bus-C", T0 + 130_000)], SHAPE, T0 + 135_000)

    assert result.detour.state == DetourState.CLEAR_PENDING
    assert result.detour.clear_pending_since_ms == T0 + 130_000
    assert [(t.from_state, t.to_state) for t in result.transitions] == [
        (DetourState.ACTIVE, DetourState.CLEAR_PENDING)
    ]


def test_on_route_traffic_elsewhere_does_not_clear():
    machine = active_machine()

    result = machine.observe([position("bus-C", LAT, -79.61, T0 + 130_000)], SHAPE, T0 + 135_000)

    assert result.detour.state == DetourState.ACTIVE


def test_reports_near_detour_path_are_not_clearing_evidence():
    machine = active_machine(corridor_width_meters=80.0)

    # 44 m from the shape (on-route) but inside the detour path corridor
    result = machine.observe([position("bus-C", 44.3804, -79.65, T0 + 130_000)], SHAPE, T0 + 135_000)

    assert result.detour.state == DetourState.ACTIVE


def test_clear_confirmation_needs_vehicles_and_time():
    machine = clear_pending_machine()

    # Two distinct vehicles (medium confidence asks for 3, capped at the
    # detour's 2 vehicles) but the clearing window has not elapsed yet
    early = machine.observe(
        [on_skipped_segment("bus-C", T0 + 140_000), on_skipped_segment("bus-D", T0 + 141_000)],
        SHAPE,
        T0 + 150_000,
    )
    assert early.detour.state == DetourState.CLEAR_PENDING

    result = machine.observe([on_skipped_segment("bus-D", T0 + 160_000)], SHAPE, T0 + 170_000)

    detour = result.detour
    assert detour.state == DetourState.CLEARED
    assert detour.cleared_at_ms == T0 + 170_000
    assert detour.clear_pending_since_ms is None
    assert [(t.from_state, t.to_state) for t in result.transitions] == [
        (DetourState.CLEAR_PENDING, DetourState.CLEARED)
    ]


def test_off_route_evidence_on_detour_path_reverses_clearing():
    machine = clear_pending_machine()

    result = machine.observe([position("bus-E", OFF_LAT, -79.652, T0 + 140_000)], SHAPE, T0 + 145_000)

    assert result.detour.state == DetourState.ACTIVE
    assert result.detour.clear_pending_since_ms is None
    assert result.detour.last_evidence_at_ms == T0 + 140_000
    assert machine.evidence()['clearingEvidence'] == []


def mid_segment_trip(vehicle_id, start_ms):
    """On route, off at -79.656 (mid-segment) 111 m north, back on at -79.6465."""
    reports = [
        position(vehicle_id, LAT, -79.659, start_ms - 20_000),
        position(vehicle_id, LAT, -79.6575, start_ms - 10_000),
    ]
    reports += [
        position(vehicle_id, OFF_LAT, lon, start_ms + i * 10_000)
        for i, lon in enumerate((-79.656, -79.654, -79.652, -79.650, -79.648))
    ]
    reports += [
        position(vehicle_id, LAT, -79.6465, start_ms + 50_000),
        position(vehicle_id, LAT, -79.645, start_ms + 60_000),
    ]
    return reports


def test_buses_still_detouring_do_not_clear():
    machine = DetourStateMachine(ROUTE, DetourThresholds(clear_grace_ms=0))

    states = []
    for vehicle, start in (("bus-A", T0), ("bus-B", T0 + 120_000), ("bus-C", T0 + 240_000)):
        result = machine.observe(mid_segment_trip(vehicle, start), SHAPE, start + 70_000)
        states.append(result.detour.state)

    # Approach and rejoin reports sit on the shape segment the detour skips,
    # but outside the zone core
    assert states == [DetourState.OFF_ROUTE_PENDING, DetourState.ACTIVE, DetourState.ACTIVE]
    assert machine.detour.clear_pending_since_ms is None
    assert machine.evidence()['clearingEvidence'] == []

    skipped = machine.detour.geometry.skipped_segment_polyline
    assert skipped[0].longitude == pytest.approx(-79.656)
    assert skipped[-1].longitude == pytest.approx(-79.648)

    # Traffic through the middle of the bypassed stretch does start clearing
    result = machine.observe([position("bus-D", LAT, -79.652, T0 + 400_000)], SHAPE, T0 + 405_000)
    assert result.detour.state == DetourState.CLEAR_PENDING


def test_clearing_waits_for_grace_period():
    machine = active_machine(clear_grace_ms=600_000)
    detected_at = machine.detour.detected_at_ms

    early = machine.observe([on_skipped_segment("bus-C", T0 + 130_000)], SHAPE, T0 + 135_000)
    assert early.detour.state == DetourState.ACTIVE
    assert machine.evidence()['clearingEvidence'] == []

    result = machine.observe(
        [on_skipped_segment("bus-C", detected_at + 600_000)], SHAPE, detected_at + 601_000
    )
    assert result.detour.state == DetourState.CLEAR_PENDING
    assert result.detour.clear_pending_since_ms == detected_at + 600_000


def test_clearing_counts_distinct_vehicles_not_reports():
    machine = clear_pending_machine()

    repeated = machine.observe(
        [on_skipped_segment("bus-C", T0 + ts) for ts in (140_000, 150_000, 160_000, 170_000)],
        SHAPE,
        T0 + 200_000,
    )
    assert repeated.detour.state == DetourState.CLEAR_PENDING
    assert len(machine.evidence()['clearingEvidence']) == 5

    result = machine.observe([on_skipped_segment("bus-D", T0 + 210_000)], SHAPE, T0 + 215_000)
    assert result.detour.state == DetourState.CLEARED


def test_clearing_vehicles_by_confidence_capped_at_vehicle_count():
    thresholds = DetourThresholds()
    assert thresholds.clearing_vehicles_required(ConfidenceLevel.LOW, 10) == 2
    assert thresholds.clearing_vehicles_required(ConfidenceLevel.MEDIUM, 10) == 3
    assert thresholds.clearing_vehicles_required(ConfidenceLevel.HIGH, 10) == 4
    assert thresholds.clearing_vehicles_required(ConfidenceLevel.HIGH, 2) == 2
    assert thresholds.clearing_vehicles_required(None, 0) == 1

    fixed = DetourThresholds(min_clearing_vehicles=5)
    assert fixed.clearing_vehicles_required(ConfidenceLevel.LOW, 8) == 5
    assert fixed.clearing_vehicles_required(ConfidenceLevel.LOW, 3) == 3


def test_old_clearing_evidence_leaves_the_window():
    machine = active_machine(clearing_evidence_window_ms=60_000)
    machine.observe([on_skipped_segment("bus-C", T0 + 130_000)], SHAPE, T0 + 135_000)

    result = machine.observe([on_skipped_segment("bus-D", T0 + 200_000)], SHAPE, T0 + 205_000)

    # bus-C reported more than a window ago
    assert result.detour.state == DetourState.CLEAR_PENDING
    assert [e['vehicleId'] for e in machine.evidence()['clearingEvidence']] == ["bus-D"]


def test_live_detour_archived_after_max_retention():
    machine = active_machine(max_detour_retention_ms=200_000)
    detected_at = machine.detour.detected_at_ms

    kept = machine.observe([], SHAPE, detected_at + 200_000)
    assert kept.detour.state == DetourState.ACTIVE

    result = machine.observe([], SHAPE, detected_at + 200_001)

    assert result.detour is None
    assert [a.archive_reason for a in result.archived] == [ArchiveReason.EXPIRED_MAX_RETENTION]
    assert result.archived[0].to_dict()['archiveReason'] == "expired_max_retention"

    # Evidence is dropped with it: no immediate re-detection
    assert machine.observe([], SHAPE, detected_at + 210_000).detour is None


def test_cleared_detour_is_archived_after_retention():
    machine = clear_pending_machine()
    cleared = machine.observe(
        [on_skipped_segment("bus-C", T0 + 140_000), on_skipped_segment("bus-D", T0 + 150_000)],
        SHAPE,
        T0 + 170_000,
    ).detour
    assert cleared.state == DetourState.CLEARED

    kept = machine.observe([], SHAPE, cleared.cleared_at_ms + 299_999)
    assert kept.detour.state == DetourState.CLEARED

    result = machine.observe([], SHAPE, cleared.cleared_at_ms + 300_000)

    assert result.detour is None
    assert len(result.archived) == 1
    assert result.archived[0].archive_reason == ArchiveReason.CLEARED
    assert result.transitions[0].to_state is None


def test_new_excursion_ends_cleared_retention_early():
    machine = clear_pending_machine()
    machine.observe(
        [on_skipped_segment("bus-C", T0 + 140_000), on_skipped_segment("bus-D", T0 + 150_000)],
        SHAPE,
        T0 + 170_000,
    )
    assert machine.detour.state == DetourState.CLEARED

    result = machine.observe(excursion("bus-F", T0 + 180_000), SHAPE, T0 + 240_000)

    assert [a.archive_reason for a in result.archived] == [ArchiveReason.CLEARED]
    assert result.detour.state == DetourState.OFF_ROUTE_PENDING
    assert result.detour.detected_at_ms == T0 + 240_000
    assert result.detour.trigger_vehicle_id == "bus-F"


def test_pending_detour_expires_without_updates():
    machine = DetourStateMachine(ROUTE, DetourThresholds(pending_path_expiry_ms=60_000))
    machine.observe(excursion("bus-A", T0), SHAPE, T0 + 60_000)

    kept = machine.observe([], SHAPE, T0 + 40_000 + 60_000)
    assert kept.detour is not None

    result = machine.observe([], SHAPE, T0 + 40_000 + 60_001)

    assert result.detour is None
    assert [a.archive_reason for a in result.archived] == [ArchiveReason.EXPIRED]

    # Evidence was pruned with it
    assert machine.observe([], SHAPE, T0 + 200_000).detour is None


def test_active_detour_expires_without_evidence():
    machine = active_machine(detour_expiry_ms=120_000)
    last_seen = machine.detour.last_seen_at_ms

    result = machine.observe([], None, last_seen + 120_001)

    assert result.detour is None
    assert result.archived[0].archive_reason == ArchiveReason.EXPIRED
    assert result.archived[0].state == DetourState.ACTIVE


def test_missing_shape_disables_detection():
    machine = DetourStateMachine(ROUTE)

    for shape in (None, [], SHAPE[:1]):
        result = machine.observe(excursion("bus-A", T0), shape, T0 + 60_000)
        assert result.detour is None
        assert result.transitions == ()


def test_other_routes_and_malformed_reports_are_ignored():
    machine = DetourStateMachine(ROUTE)
    reports = excursion("bus-A", T0, route_id="9") + [
        VehiclePosition("bus-X", ROUTE, None, -79.65, T0),
        VehiclePosition("bus-Y", ROUTE, 95.0, -79.65, T0),
        VehiclePosition("", ROUTE, OFF_LAT, -79.65, T0),
    ]

    assert machine.observe(reports, SHAPE, T0 + 60_000).detour is None


def test_seed_restores_live_documents_only():
    machine = DetourStateMachine(ROUTE)
    live = Detour(
        route_id=ROUTE,
        state=DetourState.ACTIVE,
        detected_at_ms=T0,
        last_seen_at_ms=T0,
        updated_at_ms=T0,
        vehicle_count=2,
    )

    assert machine.seed(live)
    assert machine.detour == live
    assert machine.observe([], SHAPE, T0 + 1_000).detour == live

    other = DetourStateMachine(ROUTE)
    cleared = Detour(
        route_id=ROUTE,
        state=DetourState.CLEARED,
        detected_at_ms=T0,
        last_seen_at_ms=T0,
        updated_at_ms=T0,
        cleared_at_ms=T0,
    )
    assert not other.seed(cleared)
    assert other.detour is None

    with pytest.raises(ValueError):
        machine.seed(Detour(route_id="9", state=DetourState.ACTIVE,
                            detected_at_ms=T0, last_seen_at_ms=T0, updated_at_ms=T0))


def test_evidence_view_and_reset():
    machine = active_machine()

    evidence = machine.evidence()
    assert evidence['routeId'] == ROUTE
    assert evidence['state'] == "active"
    assert len(evidence['tracker']['closedObservations']) == 2
    assert evidence['thresholds']['off_route_threshold_meters'] == 50.0

    machine.reset()
    assert machine.detour is None
    assert machine.evidence()['tracker']['trackedVehicles'] == 0


# ─────────────────────────────────────────────────────────────────────────────
# Thresholds, tracker, confidence
# ─────────────────────────────────────────────────────────────────────────────

def test_threshold_validation_and_defaults():
    thresholds = DetourThresholds(min_off_route_points=4, min_off_route_duration_ms=45_000)
    assert thresholds.clear_confirmation_ms == 45_000
    assert thresholds.excursion_rule == ExcursionRule(
        min_duration_ms=45_000, min_points=4, min_path_meters=150.0
    )
    assert thresholds.clear_grace_ms == 600_000
    assert thresholds.max_detour_retention_ms == 86_400_000

    explicit = DetourThresholds(min_on_route_duration_ms=0)
    assert explicit.clear_confirmation_ms == 0

    for bad in (
        {'off_route_threshold_meters': 0},
        {'path_overlap_percentage': 0.0},
        {'path_overlap_percentage': 1.5},
        {'min_off_route_points': 0},
        {'detour_expiry_ms': -1},
        {'min_clearing_vehicles': 0},
        {'min_off_route_path_meters': -1.0},
        {'clear_grace_ms': -1},
        {'max_detour_retention_ms': 0},
    ):
        with pytest.raises(ValueError):
            DetourThresholds(**bad)


def test_tracker_rejects_stale_reports_and_skips_jitter():
    tracker = ExcursionTracker()

    assert tracker.accept("bus-A", T0)
    assert not tracker.accept("bus-A", T0)
    assert not tracker.accept("bus-A", T0 - 1)
    assert tracker.accept("bus-B", T0 - 1)

    tracker.record_off_route("bus-A", GeoPoint(OFF_LAT, -79.66), T0)
    excursion_ = tracker.record_off_route("bus-A", GeoPoint(OFF_LAT, -79.65995), T0 + 10_000)
    assert len(excursion_.points) == 1
    assert excursion_.duration_ms == 10_000
    assert tracker.is_off_route("bus-A")

    # Too short to qualify: discarded on return to route
    assert tracker.record_on_route("bus-A") is None
    assert tracker.observations() == []


def test_tracker_prune_drops_old_observations():
    tracker = ExcursionTracker()
    tracker.record_off_route("bus-A", GeoPoint(OFF_LAT, -79.66), T0)
    tracker.record_off_route("bus-A", GeoPoint(OFF_LAT, -79.65), T0 + 40_000)
    tracker.record_on_route("bus-A")
    assert len(tracker.observations()) == 1

    tracker.prune(T0 + 100_000, 60_000)
    assert len(tracker.observations()) == 1

    tracker.prune(T0 + 100_001, 60_000)
    assert tracker.observations() == []


def test_tracker_rule_applies_per_excursion():
    tracker = ExcursionTracker(ExcursionRule(min_points=3, min_path_meters=150.0))
    for i, lon in enumerate(DETOUR_LONS[:3]):
        tracker.record_off_route("bus-A", GeoPoint(OFF_LAT, lon), T0 + i * 20_000)
    tracker.record_off_route("bus-B", GeoPoint(OFF_LAT, -79.66), T0)
    tracker.record_off_route("bus-B", GeoPoint(OFF_LAT, -79.64), T0 + 40_000)

    # Open excursions count as soon as they qualify
    assert [e.vehicle_id for e in tracker.observations()] == ["bus-A"]
    assert tracker.observations()[0].path_meters > 600

    assert tracker.record_on_route("bus-B") is None
    assert tracker.record_on_route("bus-A").vehicle_id == "bus-A"

    with pytest.raises(ValueError):
        ExcursionRule(min_points=0)


def test_confidence_score():
    assert score_confidence(0, 0.0) == 0
    assert score_confidence(10, 1.0) == 75
    assert score_confidence(20, 1.0) == 100
    assert score_confidence(40, 0.5) == 75
    assert score_confidence(10, 1.0, alert_matched=True) == 83
    assert score_confidence(20, 1.0, alert_matched=True) == 100

    # Non-decreasing in evidence and overlap
    scores = [score_confidence(n, 0.8) for n in range(0, 30)]
    assert scores == sorted(scores)


def test_confidence_label_boundaries():
    assert confidence_label(69) == ConfidenceLevel.LOW
    assert confidence_label(70) == ConfidenceLevel.MEDIUM
    assert confidence_label(84) == ConfidenceLevel.MEDIUM
    assert confidence_label(85) == ConfidenceLevel.HIGH

    strict = ConfidenceThresholds(likely=90, high=95)
    assert confidence_label(85, strict) == ConfidenceLevel.LOW

    with pytest.raises(ValueError):
        ConfidenceThresholds(likely=90, high=80)


# ─────────────────────────────────────────────────────────────────────────────
# Document & context
# ─────────────────────────────────────────────────────────────────────────────

def test_pending_document_cannot_carry_geometry():
    geometry = DetourGeometry((), (), ConfidenceLevel.LOW, 0)
    with pytest.raises(ValueError):
        Detour(ROUTE, DetourState.OFF_ROUTE_PENDING, T0, T0, T0, geometry=geometry)


def test_document_serialization_uses_camel_case():
    machine = active_machine()
    data = machine.detour.to_dict()

    assert data['routeId'] == ROUTE
    assert data['state'] == "active"
    assert data['geometry']['confidence'] == "medium"
    assert 'archiveReason' not in data
    assert Detour.from_dict(data) == machine.detour

    with pytest.raises(ValueError):
        Detour.from_dict({'routeId': ROUTE})


def test_affected_stops_and_segment_label():
    skipped = SHAPE[1:4]
    stops = [
        Stop("s2", "Dunlop & Bayfield", LAT + 0.0005, -79.65),
        Stop("s1", "Dunlop & Mulcaster", LAT, -79.675),
        Stop("far", "Georgian College", LAT + 0.05, -79.66),
    ]

    affected = find_affected_stops(skipped, stops, radius_meters=120.0)
    assert [s.stop_id for s in affected] == ["s1", "s2"]
    assert segment_label(affected) == "Dunlop & Mulcaster to Dunlop & Bayfield"
    assert segment_label(affected[:1]) == "Near Dunlop & Mulcaster"
    assert segment_label([]) is None

    assert find_affected_stops(skipped, stops, max_stops=1)[0].stop_id == "s1"

    geometry = DetourGeometry(tuple(skipped), (), ConfidenceLevel.LOW, 0)
    enriched = enrich_geometry(geometry, stops)
    assert len(enriched.affected_stops) == 2
    assert enriched.segment_label.startswith("Dunlop & Mulcaster")


def test_enricher_runs_on_confirmed_geometry():
    stops = [Stop("s1", "Dunlop & Bayfield", LAT, -79.65)]
    machine = DetourStateMachine(ROUTE, geometry_enricher=make_geometry_enricher(lambda: stops))
    machine.observe(excursion("bus-A", T0), SHAPE, T0 + 60_000)
    machine.observe(excursion("bus-B", T0 + 60_000), SHAPE, T0 + 120_000)

    assert machine.detour.geometry.segment_label == "Near Dunlop & Bayfield"


def test_service_alert_matching():
    alerts = [
        ServiceAlert("a1", ("9",), "DETOUR"),
        ServiceAlert("a2", ("8a",), "Accessibility Issue"),
        ServiceAlert("a3", (" 8A ",), "Modified Service"),
    ]

    assert match_service_alert("8A", alerts) == "a3"
    assert match_service_alert("9", alerts) == "a1"
    assert match_service_alert("100", alerts) is None
    assert match_service_alert("8A", []) is None

    parsed = ServiceAlert.from_dict({'id': 'x', 'affectedRoutes': ['8A'], 'effect': 'modified-service'})
    assert parsed.is_detour_like


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
