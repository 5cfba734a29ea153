"""
Excursion Tracker Module
========================

Stateful per-vehicle off-route tracking for one route.

Design:
- Encapsulates excursion state (vehicle_id -> open excursion)
- An excursion opens on the first off-route position and closes on the
  first on-route position
- Qualified excursions survive as observations until they expire
- Each excursion is checked against the ExcursionRule on its own;
  breadcrumbs of different excursions are never summed
- Breadcrumbs skip GPS jitter (points within 10 m of the previous one)
- Not thread-safe: the owning state machine is serialized per route
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..geometry.kernel import distance_between, path_length, simplify_path
from ..geometry.shapes import GeoPoint

GPS_JITTER_METERS = 10.0
MIN_EXCURSION_PATH_METERS = 150.0


@dataclass(frozen=True)
class VehiclePosition:
    """
    One vehicle position report from the realtime feed.

    Attributes:
        vehicle_id: Vehicle identifier
        route_id: Route the vehicle is serving
        latitude: Degrees (None when the feed omitted it)
        longitude: Degrees (None when the feed omitted it)
        timestamp_ms: Report time, epoch milliseconds (None = unknown)
    """
    vehicle_id: str
    route_id: str
    latitude: Optional[float]
    longitude: Optional[float]
    timestamp_ms: Optional[int] = None

    @property
    def is_valid(self) -> bool:
        """True when the report carries usable coordinates."""
        if not self.vehicle_id or self.latitude is None or self.longitude is None:
            return False
        try:
            lat = float(self.latitude)
            lon = float(self.longitude)
        except (TypeError, ValueError):
            return False
        return (
            math.isfinite(lat) and math.isfinite(lon)
            and -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0
        )

    @property
    def point(self) -> GeoPoint:
        """Position as GeoPoint (only meaningful when is_valid)."""
        return GeoPoint(latitude=float(self.latitude), longitude=float(self.longitude))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VehiclePosition':
        """
        Build from a feed record.

        Accepts ``vehicleId/routeId/lat/lon/timestamp`` (camelCase feed keys)
        or the snake_case field names. Missing coordinates are kept as None
        so the report is ignored rather than rejected.
        """
        def pick(*keys):
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return None

        timestamp = pick('timestamp_ms', 'timestampMs', 'timestamp')
        return cls(
            vehicle_id=str(pick('vehicle_id', 'vehicleId', 'id') or ''),
            route_id=str(pick('route_id', 'routeId') or ''),
            latitude=pick('latitude', 'lat'),
            longitude=pick('longitude', 'lon', 'lng'),
            timestamp_ms=int(timestamp) if timestamp is not None else None,
        )


@dataclass(frozen=True)
class ExcursionRule:
    """
    When a single excursion counts as an observation.

    Attributes:
        min_duration_ms: Continuous off-route time
        min_points: Breadcrumbs collected while off-route
        min_path_meters: Length of the simplified breadcrumb path
    """
    min_duration_ms: int = 30_000
    min_points: int = 1
    min_path_meters: float = 0.0

    def __post_init__(self):
        """Validate rule."""
        if self.min_duration_ms < 0:
            raise ValueError(f"min_duration_ms must be >= 0, got {self.min_duration_ms}")
        if self.min_points < 1:
            raise ValueError(f"min_points must be >= 1, got {self.min_points}")
        if self.min_path_meters < 0:
            raise ValueError(f"min_path_meters must be >= 0, got {self.min_path_meters}")


@dataclass
class Excursion:
    """One continuous off-route stretch of a single vehicle."""
    vehicle_id: str
    started_at_ms: int
    last_at_ms: int
    points: List[GeoPoint] = field(default_factory=list)

    @property
    def excursion_id(self) -> str:
        return f"{self.vehicle_id}:{self.started_at_ms}"

    @property
    def duration_ms(self) -> int:
        return self.last_at_ms - self.started_at_ms

    @property
    def path_meters(self) -> float:
        """Length of the simplified breadcrumb path."""
        return path_length(simplify_path(self.points))

    def is_qualified(self, rule: ExcursionRule) -> bool:
        return (
            self.duration_ms >= rule.min_duration_ms
            and len(self.points) >= rule.min_points
            and self.path_meters >= rule.min_path_meters
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'excursionId': self.excursion_id,
            'vehicleId': self.vehicle_id,
            'startedAt': self.started_at_ms,
            'lastAt': self.last_at_ms,
            'durationMs': self.duration_ms,
            'pointCount': len(self.points),
            'pathMeters': round(self.path_meters, 1),
        }


class ExcursionTracker:
    """
    Tracks off-route excursions of the vehicles serving one route.

    State:
        open:     {vehicle_id: Excursion} currently off-route
        closed:   qualified excursions kept as observations
        last_ts:  {vehicle_id: last accepted report time}

    Usage:
        tracker = ExcursionTracker(ExcursionRule(min_points=3, min_path_meters=150.0))

        # Each position
        if tracker.accept(vehicle_id, ts):
            if off_route:
                tracker.record_off_route(vehicle_id, point, ts)
            else:
                tracker.record_on_route(vehicle_id)

        observations = tracker.observations()
        tracker.prune(now_ms, expiry_ms)
    """

    def __init__(
        self,
        rule: Optional[ExcursionRule] = None,
        jitter_meters: float = GPS_JITTER_METERS
    ):
        """Initialize empty tracker state."""
        self.rule = rule or ExcursionRule()
        self.jitter_meters = jitter_meters
        self._open: Dict[str, Excursion] = {}
        self._closed: List[Excursion] = []
        self._last_ts: Dict[str, int] = {}

    def accept(self, vehicle_id: str, timestamp_ms: int) -> bool:
        """
        Register a report time; False for repeated or out-of-order reports.

        Feeds re-serve the same position across polls, and a stale repeat
        must not count as fresh evidence.
        """
        last = self._last_ts.get(vehicle_id)
        if last is not None and timestamp_ms <= last:
            return False
        self._last_ts[vehicle_id] = timestamp_ms
        return True

    def record_off_route(self, vehicle_id: str, point: GeoPoint, timestamp_ms: int) -> Excursion:
        """
        Add an off-route position, opening an excursion if needed.

        Returns:
            The vehicle's open excursion
        """
        excursion = self._open.get(vehicle_id)
        if excursion is None:
            excursion = Excursion(
                vehicle_id=vehicle_id,
                started_at_ms=timestamp_ms,
                last_at_ms=timestamp_ms,
                points=[point],
            )
            self._open[vehicle_id] = excursion
            return excursion

        excursion.last_at_ms = timestamp_ms
        if distance_between(excursion.points[-1], point) >= self.jitter_meters:
            excursion.points.append(point)
        return excursion

    def record_on_route(self, vehicle_id: str) -> Optional[Excursion]:
        """
        Close the vehicle's open excursion.

        Returns:
            The closed excursion if it qualified (kept as observation), else None
        """
        excursion = self._open.pop(vehicle_id, None)
        if excursion is not None and excursion.is_qualified(self.rule):
            self._closed.append(excursion)
            return excursion
        return None

    def is_off_route(self, vehicle_id: str) -> bool:
        """True while the vehicle has an open excursion."""
        return vehicle_id in self._open

    def observations(self) -> List[Excursion]:
        """Qualified excursions (closed and still open), oldest first."""
        live = self._closed + [
            e for e in self._open.values() if e.is_qualified(self.rule)
        ]
        return sorted(live, key=lambda e: (e.started_at_ms, e.vehicle_id))

    def clear_observations(self) -> None:
        """Forget all evidence while keeping report-time bookkeeping."""
        self._open.clear()
        self._closed.clear()

    def prune(self, now_ms: int, expiry_ms: int) -> None:
        """Drop observations, open excursions and vehicles older than the expiry window."""
        cutoff = now_ms - expiry_ms

        for vehicle_id, excursion in list(self._open.items()):
            if excursion.last_at_ms < cutoff:
                del self._open[vehicle_id]

        self._closed = [e for e in self._closed if e.last_at_ms >= cutoff]

        for vehicle_id, ts in list(self._last_ts.items()):
            if ts < cutoff and vehicle_id not in self._open:
                del self._last_ts[vehicle_id]

    def reset(self) -> None:
        """Clear all tracked state."""
        self._open.clear()
        self._closed.clear()
        self._last_ts.clear()

    def to_dict(self) -> Dict[str, Any]:
        """Debug view of tracked excursions."""
        return {
            'openExcursions': [e.to_dict() for e in self._open.values()],
            'closedObservations': [e.to_dict() for e in self._closed],
            'trackedVehicles': len(self._last_ts),
        }

    def __len__(self) -> int:
        """Return number of tracked vehicles."""
        return len(self._last_ts)

    def __repr__(self) -> str:
        """Human-readable representation."""
        return (
            f"ExcursionTracker(vehicles={len(self._last_ts)}, "
            f"open={len(self._open)}, observations={len(self._closed)})"
        )
