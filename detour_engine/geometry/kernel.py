"""
Geometry Kernel
===============

Stateless geographic primitives for detour analysis.

Design:
- Pure functions (no state, no I/O)
- Sentinel returns instead of exceptions:
    inf   -> unreachable distance (empty polyline)
    None  -> undefined result (centroid/simplification of nothing)
    False -> containment/overlap on empty input
- Segment projection uses a local equirectangular approximation
  (longitude scaled by cos(latitude)), distances are great-circle
- Polyline distance vectorized with numpy (one pass over all segments)

Coordinate Conventions:
    GeoPoint        -> (latitude, longitude)
    Polygon rings   -> [[lon, lat], ...]   (GeoJSON, NOT inverted here)

Usage:
    from detour_engine.geometry import kernel, GeoPoint

    shape = [GeoPoint(21.30, -157.86), GeoPoint(21.31, -157.85)]
    d = kernel.point_to_polyline_distance(GeoPoint(21.305, -157.80), shape)
    if d > thresholds.off_route_threshold_meters:
        ...
"""

import math
from typing import List, Optional

import numpy as np

from .shapes import GeoPoint, Polyline, Polygon, Ring, polyline_to_array

EARTH_RADIUS_METERS = 6371000.0
DEFAULT_MIN_POINT_SPACING_METERS = 20.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two coordinates.

    Args:
        lat1, lon1: First coordinate (degrees)
        lat2, lon2: Second coordinate (degrees)

    Returns:
        Distance in meters (0.0 for identical points)
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = math.radians(lon2) - math.radians(lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # Rounding can push a slightly outside [0, 1] near antipodes
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _haversine_array(
    lat: float,
    lon: float,
    lats: np.ndarray,
    lons: np.ndarray
) -> np.ndarray:
    """Vectorized haversine from one coordinate to many."""
    phi1 = np.radians(lat)
    phi2 = np.radians(lats)
    d_phi = phi2 - phi1
    d_lambda = np.radians(lons) - np.radians(lon)

    a = np.sin(d_phi / 2) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(d_lambda / 2) ** 2
    a = np.clip(a, 0.0, 1.0)
    return EARTH_RADIUS_METERS * 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))


def distance_between(a: GeoPoint, b: GeoPoint) -> float:
    """haversine_distance() for two GeoPoints."""
    return haversine_distance(a.latitude, a.longitude, b.latitude, b.longitude)


def segment_fraction(
    point: GeoPoint,
    seg_start: GeoPoint,
    seg_end: GeoPoint
) -> Optional[float]:
    """
    Projection parameter t of a point onto a segment, clamped to [0, 1].

    Computed in a locally-flat frame (longitude scaled by cos(latitude)).

    Returns:
        t, or None for a degenerate (zero-length) segment
    """
    scale = math.cos(math.radians(point.latitude))
    dx = (seg_end.longitude - seg_start.longitude) * scale
    dy = seg_end.latitude - seg_start.latitude
    denom = dx * dx + dy * dy

    if denom == 0:
        return None

    px = (point.longitude - seg_start.longitude) * scale
    py = point.latitude - seg_start.latitude
    return max(0.0, min(1.0, (px * dx + py * dy) / denom))


def interpolate(seg_start: GeoPoint, seg_end: GeoPoint, t: float) -> GeoPoint:
    """Point at fraction t along a segment (linear in degrees)."""
    return GeoPoint(
        latitude=seg_start.latitude + t * (seg_end.latitude - seg_start.latitude),
        longitude=seg_start.longitude + t * (seg_end.longitude - seg_start.longitude),
    )


def point_to_segment_distance(
    point: GeoPoint,
    seg_start: GeoPoint,
    seg_end: GeoPoint
) -> float:
    """
    Distance from a point to the closest point of a segment.

    The projection parameter comes from segment_fraction(); the final
    distance is great-circle.

    Args:
        point: Query point
        seg_start: Segment start
        seg_end: Segment end

    Returns:
        Distance in meters. Degenerate segments fall back to point distance.
    """
    t = segment_fraction(point, seg_start, seg_end)
    if t is None:
        return distance_between(point, seg_start)
    return distance_between(point, interpolate(seg_start, seg_end, t))


def point_to_polyline_distance(point: GeoPoint, polyline: Optional[Polyline]) -> float:
    """
    Minimum distance from a point to any segment of a polyline.

    Args:
        point: Query point
        polyline: Ordered path (0, 1 or more points)

    Returns:
        Distance in meters; ``math.inf`` for None/empty polyline,
        point-to-point distance for a single-point polyline.
    """
    coords = polyline_to_array(polyline)
    if len(coords) == 0:
        return math.inf
    if len(coords) == 1:
        return haversine_distance(point.latitude, point.longitude, coords[0, 0], coords[0, 1])

    a_lat, a_lon = coords[:-1, 0], coords[:-1, 1]
    b_lat, b_lon = coords[1:, 0], coords[1:, 1]

    scale = math.cos(math.radians(point.latitude))
    dx = (b_lon - a_lon) * scale
    dy = b_lat - a_lat
    px = (point.longitude - a_lon) * scale
    py = point.latitude - a_lat

    denom = dx * dx + dy * dy
    t = np.divide(px * dx + py * dy, denom, out=np.zeros_like(denom), where=denom > 0)
    t = np.clip(t, 0.0, 1.0)

    distances = _haversine_array(
        point.latitude,
        point.longitude,
        a_lat + t * (b_lat - a_lat),
        a_lon + t * (b_lon - a_lon),
    )
    return float(distances.min())


def path_overlap_fraction(
    path_a: Optional[Polyline],
    path_b: Optional[Polyline],
    corridor_width_meters: float
) -> float:
    """
    Fraction of path_a's points lying inside path_b's corridor.

    Returns:
        Value in [0, 1]; 0.0 if either path is None/empty.
    """
    if not path_a or not path_b:
        return 0.0

    inside = sum(
        1 for p in path_a
        if point_to_polyline_distance(p, path_b) <= corridor_width_meters
    )
    return inside / len(path_a)


def paths_overlap(
    path_a: Optional[Polyline],
    path_b: Optional[Polyline],
    corridor_width_meters: float,
    overlap_threshold_fraction: float
) -> bool:
    """
    Check whether path_a runs along path_b.

    One-directional: measures path_a against path_b's corridor.
    Callers must keep a consistent argument order.

    Returns:
        True if the overlap fraction reaches the threshold,
        False if either path is None/empty.
    """
    if not path_a or not path_b:
        return False
    return path_overlap_fraction(path_a, path_b, corridor_width_meters) >= overlap_threshold_fraction


def simplify_path(
    path: Optional[Polyline],
    min_point_spacing_meters: float = DEFAULT_MIN_POINT_SPACING_METERS
) -> Optional[List[GeoPoint]]:
    """
    Drop points closer than a minimum spacing to the last kept point.

    First and last points are always kept.

    Args:
        path: Ordered path
        min_point_spacing_meters: Minimum spacing between kept points

    Returns:
        Simplified path; None for None input; the input itself for
        paths of length <= 2.
    """
    if path is None:
        return None
    if len(path) <= 2:
        return path

    simplified = [path[0]]
    last_kept = path[0]
    for point in path[1:]:
        if distance_between(last_kept, point) >= min_point_spacing_meters:
            simplified.append(point)
            last_kept = point

    if simplified[-1] is not path[-1]:
        simplified.append(path[-1])

    return simplified


def point_in_ring(lat: float, lon: float, ring: Optional[Ring]) -> bool:
    """
    Ray-casting parity test against a [lon, lat] ring.

    The ring is implicitly closed; a repeated closing vertex is harmless
    (it forms a zero-length edge that never toggles parity).

    Args:
        lat: Query latitude
        lon: Query longitude
        ring: Vertices as [lon, lat] pairs

    Returns:
        True if inside, False otherwise or for malformed rings.
    """
    if not ring or len(ring) < 3:
        return False
    if any(len(vertex) < 2 for vertex in ring):
        return False

    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = ring[i][1], ring[i][0]
        xj, yj = ring[j][1], ring[j][0]

        if (yi > lon) != (yj > lon):
            crossing_lat = (xj - xi) * (lon - yi) / (yj - yi) + xi
            if lat < crossing_lat:
                inside = not inside
        j = i

    return inside


def point_in_polygon(lat: float, lon: float, polygon: Optional[Polygon]) -> bool:
    """
    GeoJSON polygon containment with hole semantics.

    Returns:
        True iff inside the outer ring and outside every hole.
        False for None/empty polygon or empty outer ring.
    """
    if not polygon or not polygon[0]:
        return False

    if not point_in_ring(lat, lon, polygon[0]):
        return False

    return not any(point_in_ring(lat, lon, hole) for hole in polygon[1:])


def calculate_path_centroid(path: Optional[Polyline]) -> Optional[GeoPoint]:
    """
    Arithmetic mean of latitudes and longitudes.

    Returns:
        Centroid; None for None/empty; the point itself for 1-point paths.
    """
    if not path:
        return None
    if len(path) == 1:
        return path[0]

    coords = polyline_to_array(path)
    return GeoPoint(
        latitude=float(coords[:, 0].mean()),
        longitude=float(coords[:, 1].mean()),
    )


def path_length(path: Optional[Polyline]) -> float:
    """Total great-circle length of a path in meters (0.0 for < 2 points)."""
    if not path or len(path) < 2:
        return 0.0
    return sum(distance_between(a, b) for a, b in zip(path, path[1:]))
