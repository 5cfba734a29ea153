"""
Detour Lifecycle Module
=======================

Per-route detour state machine.

States:

    (absent) ──qualified excursion──▶ off-route-pending
    off-route-pending ──two vehicles' excursions overlap──▶ active
    active ──on-route traffic in the zone core──▶ clear-pending
    clear-pending ──off-route evidence on the detour path──▶ active
    clear-pending ──on-route evidence persists──▶ cleared
    cleared ──retention elapsed──▶ (archived)
    any live state ──no evidence for too long──▶ (archived as expired)
    any live state ──max retention since detection──▶ (archived as expired_max_retention)

Design:
- One machine per route; the caller serializes access per route
- Lazy time evaluation: every window is checked against ``now_ms`` on
  each observe() call (no timers, nothing to cancel)
- The machine exclusively owns the Detour document and replaces it
  (frozen dataclass) on every change
- Fail open: without a usable shape no evidence is gathered, only
  expiry/retention run

Zone Core:
    The skipped segment runs between the anchor foot points of the
    confirming pair. Its first and last quarter are trimmed away; only
    on-route reports near the remaining core count as clearing evidence.
    Buses still taking the detour drive on-route next to the anchors,
    never through the core.

Clear Confirmation:
    No clearing evidence is collected during ``clear_grace_ms`` after
    detection. Clearing then requires distinct vehicles on the core
    (``min_clearing_vehicles``, by default 2/3/4 for low/medium/high
    confidence, capped at the detour's own vehicle count) within
    ``clearing_evidence_window_ms``, AND ``min_on_route_duration_ms``
    elapsed since entering clear-pending.

Usage:
    machine = DetourStateMachine(route_id="8A", thresholds=DetourThresholds())

    # Each polling tick
    result = machine.observe(positions, shape, now_ms)
    for transition in result.transitions:
        ...
    if result.detour is not None:
        publisher.publish("8A", result.detour, now_ms)
"""

from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..geometry.kernel import (
    path_overlap_fraction,
    point_to_polyline_distance,
    simplify_path,
)
from ..geometry.projection import clip_skipped_segment, find_anchor_projections, zone_core
from ..geometry.shapes import GeoPoint
from .confidence import ConfidenceThresholds, confidence_label, score_confidence
from .document import ArchiveReason, ConfidenceLevel, Detour, DetourGeometry, DetourState
from .tracker import (
    MIN_EXCURSION_PATH_METERS,
    Excursion,
    ExcursionRule,
    ExcursionTracker,
    VehiclePosition,
)

GeometryEnricher = Callable[[DetourGeometry], DetourGeometry]


# Distinct clearing vehicles required by confidence (capped at vehicle_count)
CLEARING_VEHICLES_BY_CONFIDENCE: Dict[ConfidenceLevel, int] = {
    ConfidenceLevel.LOW: 2,
    ConfidenceLevel.MEDIUM: 3,
    ConfidenceLevel.HIGH: 4,
}


@dataclass(frozen=True)
class DetourThresholds:
    """
    Numeric detection thresholds (one resolved set per route).

    Attributes:
        off_route_threshold_meters: Distance from shape that counts as off-route
        corridor_width_meters: Buffer used when comparing paths
        path_overlap_percentage: Fraction of a path that must fall in the corridor
        min_off_route_points: Breadcrumbs each excursion needs to qualify
        min_off_route_duration_ms: Continuous off-route time to qualify an excursion
        min_off_route_path_meters: Simplified path length to qualify an excursion
        min_clearing_vehicles: Distinct vehicles on the zone core required
            to clear (None = by confidence level)
        min_on_route_duration_ms: Clearing window (None = min_off_route_duration_ms)
        clear_grace_ms: No clearing evidence this soon after detection
        clearing_evidence_window_ms: Age limit of clearing evidence
        pending_path_expiry_ms: Lifetime of pending evidence without updates
        detour_expiry_ms: Lifetime of an active detour without evidence
        cleared_detour_retention_ms: How long a cleared detour stays visible
        max_detour_retention_ms: Absolute lifetime of a live detour
    """
    off_route_threshold_meters: float = 50.0
    corridor_width_meters: float = 50.0
    path_overlap_percentage: float = 0.70
    min_off_route_points: int = 3
    min_off_route_duration_ms: int = 30_000
    min_off_route_path_meters: float = MIN_EXCURSION_PATH_METERS
    min_clearing_vehicles: Optional[int] = None
    min_on_route_duration_ms: Optional[int] = None
    clear_grace_ms: int = 600_000
    clearing_evidence_window_ms: int = 1_800_000
    pending_path_expiry_ms: int = 1_800_000
    detour_expiry_ms: int = 3_600_000
    cleared_detour_retention_ms: int = 300_000
    max_detour_retention_ms: int = 86_400_000

    def __post_init__(self):
        """Validate thresholds."""
        if self.off_route_threshold_meters <= 0:
            raise ValueError(
                f"off_route_threshold_meters must be > 0, got {self.off_route_threshold_meters}"
            )
        if self.corridor_width_meters <= 0:
            raise ValueError(
                f"corridor_width_meters must be > 0, got {self.corridor_width_meters}"
            )
        if not 0.0 < self.path_overlap_percentage <= 1.0:
            raise ValueError(
                f"path_overlap_percentage must be in (0, 1], got {self.path_overlap_percentage}"
            )
        if self.min_off_route_points < 1:
            raise ValueError(
                f"min_off_route_points must be >= 1, got {self.min_off_route_points}"
            )
        if self.min_off_route_path_meters < 0:
            raise ValueError(
                f"min_off_route_path_meters must be >= 0, got {self.min_off_route_path_meters}"
            )
        if self.min_clearing_vehicles is not None and self.min_clearing_vehicles < 1:
            raise ValueError(
                f"min_clearing_vehicles must be >= 1, got {self.min_clearing_vehicles}"
            )
        for name in (
            'min_off_route_duration_ms',
            'clear_grace_ms',
            'clearing_evidence_window_ms',
            'pending_path_expiry_ms',
            'detour_expiry_ms',
            'cleared_detour_retention_ms',
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.min_on_route_duration_ms is not None and self.min_on_route_duration_ms < 0:
            raise ValueError(
                f"min_on_route_duration_ms must be >= 0, got {self.min_on_route_duration_ms}"
            )
        if self.max_detour_retention_ms <= 0:
            raise ValueError(
                f"max_detour_retention_ms must be > 0, got {self.max_detour_retention_ms}"
            )

    @property
    def excursion_rule(self) -> ExcursionRule:
        """Per-excursion qualification rule for the tracker."""
        return ExcursionRule(
            min_duration_ms=self.min_off_route_duration_ms,
            min_points=self.min_off_route_points,
            min_path_meters=self.min_off_route_path_meters,
        )

    def clearing_vehicles_required(
        self,
        confidence: Optional[ConfidenceLevel],
        vehicle_count: int
    ) -> int:
        """
        Distinct on-route vehicles needed to clear a detour.

        Never more than the vehicles that established the detour, so a
        quiet route can still clear.
        """
        if self.min_clearing_vehicles is not None:
            required = self.min_clearing_vehicles
        else:
            required = CLEARING_VEHICLES_BY_CONFIDENCE.get(
                confidence, CLEARING_VEHICLES_BY_CONFIDENCE[ConfidenceLevel.LOW]
            )
        return max(1, min(required, vehicle_count))

    @property
    def clear_confirmation_ms(self) -> int:
        if self.min_on_route_duration_ms is None:
            return self.min_off_route_duration_ms
        return self.min_on_route_duration_ms


@dataclass(frozen=True)
class Transition:
    """A state change of one route's detour (None = absent)."""
    route_id: str
    from_state: Optional[DetourState]
    to_state: Optional[DetourState]
    at_ms: int
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'routeId': self.route_id,
            'from': self.from_state.value if self.from_state else None,
            'to': self.to_state.value if self.to_state else None,
            'at': self.at_ms,
            'reason': self.reason,
        }


@dataclass(frozen=True)
class ObserveResult:
    """
    Outcome of one observe() call.

    Attributes:
        detour: Current document (None when the route has no detour)
        transitions: State changes during this call, in order
        archived: Documents that left the live set (with archive_reason)
    """
    detour: Optional[Detour]
    transitions: Tuple[Transition, ...] = ()
    archived: Tuple[Detour, ...] = ()


class DetourStateMachine:
    """
    Tracks one route's detour through its lifecycle.

    State:
        - The Detour document (or None)
        - ExcursionTracker with per-vehicle off-route breadcrumbs
        - Clearing evidence [(vehicle_id, timestamp_ms), ...] on the zone core

    Thread Safety:
        NOT thread-safe. RouteDetourRegistry holds a per-route lock around
        every call.
    """

    def __init__(
        self,
        route_id: str,
        thresholds: Optional[DetourThresholds] = None,
        confidence_thresholds: Optional[ConfidenceThresholds] = None,
        geometry_enricher: Optional[GeometryEnricher] = None
    ):
        """
        Initialize state machine.

        Args:
            route_id: Route this machine tracks
            thresholds: Resolved thresholds for the route
            confidence_thresholds: Score boundaries for labels
            geometry_enricher: Optional hook applied to freshly built geometry
                (affected stops, segment label)
        """
        self.route_id = route_id
        self.thresholds = thresholds or DetourThresholds()
        self.confidence_thresholds = confidence_thresholds or ConfidenceThresholds()
        self._enrich = geometry_enricher

        self._tracker = ExcursionTracker(self.thresholds.excursion_rule)
        self._detour: Optional[Detour] = None
        self._clearing: List[Tuple[str, int]] = []
        self._transitions: List[Transition] = []

    @property
    def detour(self) -> Optional[Detour]:
        """Current document (None when absent)."""
        return self._detour

    # ─────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────

    def observe(
        self,
        positions: Iterable[VehiclePosition],
        shape: Optional[Sequence[GeoPoint]],
        now_ms: int,
        matched_alert_id: Optional[str] = None
    ) -> ObserveResult:
        """
        Consume one polling tick of positions for this route.

        Args:
            positions: Vehicle reports (other routes and malformed reports
                are skipped)
            shape: Canonical route shape (None disables detection)
            now_ms: Current time, epoch milliseconds
            matched_alert_id: Official detour-like alert for this route, if any

        Returns:
            ObserveResult with the current document, transitions and archives
        """
        self._transitions = []
        archived: List[Detour] = []

        if shape is not None and len(shape) >= 2:
            reports = sorted(
                (
                    p for p in positions
                    if p.route_id == self.route_id and p.is_valid
                ),
                key=lambda p: now_ms if p.timestamp_ms is None else p.timestamp_ms,
            )
            for position in reports:
                self._ingest(position, shape, now_ms)
            archived.extend(self._evaluate(shape, now_ms, matched_alert_id))

        archived.extend(self._expire(now_ms))
        self._tracker.prune(now_ms, self.thresholds.pending_path_expiry_ms)

        return ObserveResult(
            detour=self._detour,
            transitions=tuple(self._transitions),
            archived=tuple(archived),
        )

    def seed(self, detour: Detour) -> bool:
        """
        Restore a persisted document after a restart.

        Breadcrumbs are not persisted, so a seeded detour keeps its
        geometry until new evidence rebuilds it.

        Returns:
            True if seeded, False for cleared documents

        Raises:
            ValueError: If the document belongs to another route
        """
        if detour.route_id != self.route_id:
            raise ValueError(
                f"Cannot seed route '{self.route_id}' with detour for '{detour.route_id}'"
            )
        if not detour.is_live:
            return False
        self._detour = detour
        self._clearing = []
        return True

    def evidence(self) -> Dict[str, Any]:
        """Debug view of everything behind the current decision."""
        return {
            'routeId': self.route_id,
            'state': self._detour.state.value if self._detour else None,
            'detour': self._detour.to_dict() if self._detour else None,
            'tracker': self._tracker.to_dict(),
            'clearingEvidence': [
                {'vehicleId': vehicle_id, 'at': ts} for vehicle_id, ts in self._clearing
            ],
            'thresholds': asdict(self.thresholds),
        }

    def reset(self) -> None:
        """Forget the document and all evidence."""
        self._tracker.reset()
        self._detour = None
        self._clearing = []

    # ─────────────────────────────────────────────────────────────────────
    # Evidence ingestion
    # ─────────────────────────────────────────────────────────────────────

    def _ingest(self, position: VehiclePosition, shape: Sequence[GeoPoint], now_ms: int) -> None:
        ts = now_ms if position.timestamp_ms is None else position.timestamp_ms
        if not self._tracker.accept(position.vehicle_id, ts):
            return

        point = position.point
        if point_to_polyline_distance(point, shape) > self.thresholds.off_route_threshold_meters:
            self._tracker.record_off_route(position.vehicle_id, point, ts)
            self._on_off_route(point, ts, now_ms)
        else:
            self._tracker.record_on_route(position.vehicle_id)
            self._on_route(position.vehicle_id, point, ts, now_ms)

    def _on_off_route(self, point: GeoPoint, ts: int, now_ms: int) -> None:
        detour = self._detour
        if detour is None:
            return

        if detour.state == DetourState.ACTIVE:
            self._set(self._touched(detour, ts, evidence=True), now_ms)

        elif detour.state == DetourState.CLEAR_PENDING:
            inferred = detour.geometry.inferred_detour_polyline if detour.geometry else ()
            if not inferred or (
                point_to_polyline_distance(point, inferred) <= self.thresholds.corridor_width_meters
            ):
                self._clearing = []
                self._set(
                    replace(
                        self._touched(detour, ts, evidence=True),
                        state=DetourState.ACTIVE,
                        clear_pending_since_ms=None,
                    ),
                    now_ms,
                    reason="off-route evidence resumed",
                )

    def _on_route(self, vehicle_id: str, point: GeoPoint, ts: int, now_ms: int) -> None:
        detour = self._detour
        if detour is None or detour.state not in (DetourState.ACTIVE, DetourState.CLEAR_PENDING):
            return
        if ts - detour.detected_at_ms < self.thresholds.clear_grace_ms:
            return
        if not self._is_clearing_evidence(point, detour):
            return

        if detour.state == DetourState.ACTIVE:
            self._clearing = [(vehicle_id, ts)]
            self._set(
                replace(
                    self._touched(detour, ts),
                    state=DetourState.CLEAR_PENDING,
                    clear_pending_since_ms=ts,
                ),
                now_ms,
                reason="vehicle back on skipped segment",
            )
        else:
            cutoff = ts - self.thresholds.clearing_evidence_window_ms
            self._clearing = [entry for entry in self._clearing if entry[1] >= cutoff]
            self._clearing.append((vehicle_id, ts))
            self._set(self._touched(detour, ts), now_ms)

    def _is_clearing_evidence(self, point: GeoPoint, detour: Detour) -> bool:
        """
        On-route report that shows traffic through the zone core.

        Without a zone core (no geometry yet, or anchors too close) nothing
        counts and the detour can only expire. Reports near the inferred
        detour path are excluded as well.
        """
        if detour.geometry is None:
            return False

        core = zone_core(detour.geometry.skipped_segment_polyline)
        if not core or (
            point_to_polyline_distance(point, core) > self.thresholds.off_route_threshold_meters
        ):
            return False

        inferred = detour.geometry.inferred_detour_polyline
        return not inferred or (
            point_to_polyline_distance(point, inferred) > self.thresholds.corridor_width_meters
        )

    # ─────────────────────────────────────────────────────────────────────
    # Confirmation
    # ─────────────────────────────────────────────────────────────────────

    def _evaluate(
        self,
        shape: Sequence[GeoPoint],
        now_ms: int,
        matched_alert_id: Optional[str]
    ) -> List[Detour]:
        observations = self._tracker.observations()
        archived: List[Detour] = []
        detour = self._detour

        # A new qualified excursion ends a cleared detour's retention early
        if detour is not None and detour.state == DetourState.CLEARED and observations:
            archived.append(self._archive(ArchiveReason.CLEARED, now_ms))
            detour = None

        if detour is None:
            if not observations:
                return archived
            last_at = max(o.last_at_ms for o in observations)
            self._set(
                Detour(
                    route_id=self.route_id,
                    state=DetourState.OFF_ROUTE_PENDING,
                    detected_at_ms=now_ms,
                    last_seen_at_ms=last_at,
                    updated_at_ms=now_ms,
                    trigger_vehicle_id=observations[0].vehicle_id,
                    vehicle_count=_distinct_vehicles(observations),
                    last_evidence_at_ms=last_at,
                ),
                now_ms,
                reason="off-route excursion qualified",
            )
            detour = self._detour

        if detour.state == DetourState.CLEARED:
            return archived

        if observations:
            last_at = max(o.last_at_ms for o in observations)
            detour = replace(
                detour,
                vehicle_count=_distinct_vehicles(observations),
                last_seen_at_ms=max(detour.last_seen_at_ms, last_at),
                last_evidence_at_ms=max(detour.last_evidence_at_ms or 0, last_at),
            )

        match = self._find_confirmation(observations)
        reason = ""

        if detour.state == DetourState.OFF_ROUTE_PENDING:
            if match is not None:
                detour = replace(
                    detour,
                    state=DetourState.ACTIVE,
                    geometry=self._build_geometry(shape, observations, match, matched_alert_id),
                    matched_alert_id=matched_alert_id,
                )
                reason = "pattern confirmed by two vehicles"

        else:
            if match is not None:
                detour = replace(
                    detour,
                    geometry=self._build_geometry(shape, observations, match, matched_alert_id),
                    matched_alert_id=matched_alert_id,
                )
            if detour.state == DetourState.CLEAR_PENDING and self._clear_confirmed(detour, now_ms):
                detour = replace(
                    detour,
                    state=DetourState.CLEARED,
                    cleared_at_ms=now_ms,
                    clear_pending_since_ms=None,
                )
                self._tracker.clear_observations()
                self._clearing = []
                reason = "on-route confirmation persisted"

        self._set(detour, now_ms, reason=reason)
        return archived

    def _find_confirmation(
        self,
        observations: Sequence[Excursion]
    ) -> Optional[Tuple[float, Excursion, Excursion]]:
        """
        Best overlapping pair of observations from two different vehicles.

        One bus repeating its own path is not independent evidence. The
        newer observation is always measured against the older one.

        Returns:
            (overlap_fraction, newer, older) or None
        """
        candidates = [o for o in observations if len(o.points) >= 2]
        best = None
        for i, newer in enumerate(candidates):
            for older in candidates[:i]:
                if older.vehicle_id == newer.vehicle_id:
                    continue
                fraction = path_overlap_fraction(
                    newer.points, older.points, self.thresholds.corridor_width_meters
                )
                if fraction >= self.thresholds.path_overlap_percentage and (
                    best is None or fraction > best[0]
                ):
                    best = (fraction, newer, older)
        return best

    def _build_geometry(
        self,
        shape: Sequence[GeoPoint],
        observations: Sequence[Excursion],
        match: Tuple[float, Excursion, Excursion],
        matched_alert_id: Optional[str]
    ) -> DetourGeometry:
        fraction, newer, older = match
        evidence = [p for o in observations for p in o.points]

        # Anchored on the confirming pair only: stray excursions elsewhere
        # on the route must not stretch the zone
        skipped: Tuple[GeoPoint, ...] = ()
        entry_point = exit_point = None
        anchors = find_anchor_projections(newer.points + older.points, shape)
        if anchors is not None:
            entry, exit_ = anchors
            skipped = tuple(clip_skipped_segment(shape, entry, exit_))
            entry_point = entry.point
            exit_point = exit_.point

        longest = newer if len(newer.points) >= len(older.points) else older
        score = score_confidence(
            len(evidence), fraction, alert_matched=matched_alert_id is not None
        )

        geometry = DetourGeometry(
            skipped_segment_polyline=skipped,
            inferred_detour_polyline=tuple(simplify_path(longest.points)),
            confidence=confidence_label(score, self.confidence_thresholds),
            evidence_point_count=len(evidence),
            confidence_score=score,
            overlap_fraction=fraction,
            entry_point=entry_point,
            exit_point=exit_point,
        )
        if self._enrich is not None:
            geometry = self._enrich(geometry)
        return geometry

    def _clear_confirmed(self, detour: Detour, now_ms: int) -> bool:
        since = detour.clear_pending_since_ms
        if since is None or now_ms - since < self.thresholds.clear_confirmation_ms:
            return False

        cutoff = now_ms - self.thresholds.clearing_evidence_window_ms
        vehicles = {vehicle_id for vehicle_id, ts in self._clearing if ts >= cutoff}
        confidence = detour.geometry.confidence if detour.geometry else None
        return len(vehicles) >= self.thresholds.clearing_vehicles_required(
            confidence, detour.vehicle_count
        )

    # ─────────────────────────────────────────────────────────────────────
    # Expiry & bookkeeping
    # ─────────────────────────────────────────────────────────────────────

    def _expire(self, now_ms: int) -> List[Detour]:
        detour = self._detour
        if detour is None:
            return []

        thresholds = self.thresholds
        if detour.state == DetourState.CLEARED:
            cleared_at = detour.cleared_at_ms if detour.cleared_at_ms is not None else detour.updated_at_ms
            if now_ms - cleared_at >= thresholds.cleared_detour_retention_ms:
                return [self._archive(ArchiveReason.CLEARED, now_ms)]
            return []

        if now_ms - detour.detected_at_ms > thresholds.max_detour_retention_ms:
            # Start over from fresh evidence
            self._tracker.clear_observations()
            return [self._archive(ArchiveReason.EXPIRED_MAX_RETENTION, now_ms)]

        age = now_ms - detour.last_seen_at_ms
        if detour.state == DetourState.OFF_ROUTE_PENDING:
            expired = age > thresholds.pending_path_expiry_ms
        else:
            expired = age > thresholds.detour_expiry_ms

        if expired:
            return [self._archive(ArchiveReason.EXPIRED, now_ms)]
        return []

    def _archive(self, reason: ArchiveReason, now_ms: int) -> Detour:
        detour = self._detour
        archived = replace(detour, archive_reason=reason, updated_at_ms=now_ms)
        self._transitions.append(
            Transition(self.route_id, detour.state, None, now_ms, reason=f"archived ({reason.value})")
        )
        self._detour = None
        self._clearing = []
        return archived

    def _set(self, detour: Detour, now_ms: int, reason: str = "") -> None:
        previous = self._detour
        if previous is not None and detour == previous:
            return
        if previous is None or replace(detour, updated_at_ms=previous.updated_at_ms) != previous:
            detour = replace(detour, updated_at_ms=now_ms)

        self._detour = detour
        if previous is None or previous.state != detour.state:
            self._transitions.append(
                Transition(
                    self.route_id,
                    previous.state if previous else None,
                    detour.state,
                    now_ms,
                    reason=reason,
                )
            )

    @staticmethod
    def _touched(detour: Detour, ts: int, evidence: bool = False) -> Detour:
        changes = {'last_seen_at_ms': max(detour.last_seen_at_ms, ts)}
        if evidence:
            changes['last_evidence_at_ms'] = max(detour.last_evidence_at_ms or 0, ts)
        return replace(detour, **changes)

    def __repr__(self) -> str:
        """Human-readable representation."""
        state = self._detour.state.value if self._detour else "none"
        return f"DetourStateMachine(route_id={self.route_id!r}, state={state})"


def _distinct_vehicles(observations: Iterable[Excursion]) -> int:
    return len({o.vehicle_id for o in observations})
