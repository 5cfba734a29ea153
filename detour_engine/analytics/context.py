"""
Detour Context Module
=====================

Rider-facing context attached to confirmed detours.

- Affected stops: stops within STOP_MATCH_RADIUS_METERS of the skipped
  segment, ordered along the segment, capped at MAX_AFFECTED_STOPS
- Segment label: "Near <stop>" or "<first stop> to <last stop>"
- Alert correlation: official service alerts whose effect looks like a
  detour and that name the route
"""

from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..geometry.projection import find_closest_shape_point
from ..geometry.shapes import GeoPoint
from .document import AffectedStop, DetourGeometry

DEFAULT_STOP_MATCH_RADIUS_METERS = 120.0
DEFAULT_MAX_AFFECTED_STOPS = 6

DETOUR_ALERT_EFFECTS = frozenset({
    "DETOUR",
    "MODIFIED_SERVICE",
    "NO_SERVICE",
    "REDUCED_SERVICE",
})


def normalize_effect(effect: Optional[str]) -> str:
    """'Modified Service' / 'modified-service' -> 'MODIFIED_SERVICE'."""
    return (effect or "").strip().upper().replace(" ", "_").replace("-", "_")


@dataclass(frozen=True)
class Stop:
    """A transit stop."""
    stop_id: str
    name: str
    latitude: float
    longitude: float

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Stop':
        try:
            return cls(
                stop_id=str(data.get('stopId', data.get('stop_id', data.get('id')))),
                name=str(data.get('name', data.get('stopName', ''))),
                latitude=float(data.get('latitude', data.get('lat'))),
                longitude=float(data.get('longitude', data.get('lon'))),
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid Stop data: {e}")


@dataclass(frozen=True)
class ServiceAlert:
    """An official service alert (already parsed from the alerts feed)."""
    alert_id: str
    route_ids: Tuple[str, ...]
    effect: str

    @property
    def is_detour_like(self) -> bool:
        return normalize_effect(self.effect) in DETOUR_ALERT_EFFECTS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServiceAlert':
        return cls(
            alert_id=str(data.get('alertId', data.get('id', ''))),
            route_ids=tuple(str(r) for r in data.get('routeIds', data.get('affectedRoutes', []))),
            effect=str(data.get('effect', '')),
        )


def find_affected_stops(
    polyline: Sequence[GeoPoint],
    stops: Sequence[Stop],
    radius_meters: float = DEFAULT_STOP_MATCH_RADIUS_METERS,
    max_stops: int = DEFAULT_MAX_AFFECTED_STOPS
) -> List[AffectedStop]:
    """
    Stops close to a polyline, in path order.

    Args:
        polyline: Usually the skipped segment
        stops: Candidate stops for the route
        radius_meters: Match radius
        max_stops: Cap on returned stops

    Returns:
        AffectedStop list sorted by (path index, distance)
    """
    if not polyline or not stops or max_stops <= 0:
        return []

    matches = []
    for stop in stops:
        closest = find_closest_shape_point(stop.point, polyline)
        if closest is None:
            continue
        index, distance = closest
        if distance <= radius_meters:
            matches.append(
                AffectedStop(
                    stop_id=stop.stop_id,
                    stop_name=stop.name,
                    distance_meters=distance,
                    path_index=index,
                )
            )

    matches.sort(key=lambda s: (s.path_index, s.distance_meters))
    return matches[:max_stops]


def segment_label(stops: Sequence[AffectedStop]) -> Optional[str]:
    """Short human label for the affected stretch."""
    if not stops:
        return None
    if len(stops) == 1 or stops[0].stop_name == stops[-1].stop_name:
        return f"Near {stops[0].stop_name}"
    return f"{stops[0].stop_name} to {stops[-1].stop_name}"


def enrich_geometry(
    geometry: DetourGeometry,
    stops: Sequence[Stop],
    radius_meters: float = DEFAULT_STOP_MATCH_RADIUS_METERS,
    max_stops: int = DEFAULT_MAX_AFFECTED_STOPS
) -> DetourGeometry:
    """Attach affected stops and segment label to a geometry."""
    affected = find_affected_stops(
        geometry.skipped_segment_polyline, stops, radius_meters, max_stops
    )
    return replace(
        geometry,
        affected_stops=tuple(affected),
        segment_label=segment_label(affected),
    )


def make_geometry_enricher(
    stops_provider: Callable[[], Sequence[Stop]],
    radius_meters: float = DEFAULT_STOP_MATCH_RADIUS_METERS,
    max_stops: int = DEFAULT_MAX_AFFECTED_STOPS
) -> Callable[[DetourGeometry], DetourGeometry]:
    """
    Build a geometry enricher for DetourStateMachine.

    stops_provider is called lazily so stop data can be refreshed
    without rebuilding the machine.
    """
    def enricher(geometry: DetourGeometry) -> DetourGeometry:
        return enrich_geometry(geometry, stops_provider() or (), radius_meters, max_stops)

    return enricher


def match_service_alert(
    route_id: str,
    alerts: Sequence[ServiceAlert]
) -> Optional[str]:
    """
    First detour-like alert naming the route.

    Route ids are compared trimmed and case-insensitively.

    Returns:
        alert_id or None
    """
    wanted = route_id.strip().upper()
    for alert in alerts or ():
        if not alert.is_detour_like:
            continue
        if any(r.strip().upper() == wanted for r in alert.route_ids):
            return alert.alert_id
    return None
