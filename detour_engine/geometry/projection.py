"""
Shape Projection Module
=======================

Stateless helpers that locate evidence points along a route shape.

Design:
- Closest segment by great-circle distance (kernel.point_to_segment_distance)
- A projection also carries the foot point on that segment and its
  measure (meters travelled along the shape up to the foot point)
- Anchors = first/last projection by measure over the evidence points
- Skipped segment = shape clipped between the two anchor foot points,
  so it starts and ends where vehicles actually leave and rejoin
- Zone core = skipped segment with a fraction of its length trimmed at
  each end; buses still detouring drive on-route near the anchors,
  never inside the core

Usage:
    anchors = find_anchor_projections(evidence_points, shape)
    if anchors is not None:
        entry, exit_ = anchors
        skipped = clip_skipped_segment(shape, entry, exit_)
        core = zone_core(skipped)
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .kernel import (
    distance_between,
    interpolate,
    path_length,
    point_to_segment_distance,
    segment_fraction,
)
from .shapes import GeoPoint, Polyline

ZONE_TRIM_FRACTION = 0.25

# Consecutive clipped points closer than this collapse into one
_DUPLICATE_METERS = 0.5


@dataclass(frozen=True)
class ShapeProjection:
    """
    Where a point falls on a route shape.

    Attributes:
        index: Start vertex of the closest segment
        point: Foot point on that segment
        measure_meters: Distance along the shape up to the foot point
        distance_meters: Distance from the query point to the shape
    """
    index: int
    point: GeoPoint
    measure_meters: float
    distance_meters: float


def find_closest_shape_point(
    point: GeoPoint,
    shape: Optional[Polyline]
) -> Optional[Tuple[int, float]]:
    """
    Find the shape segment closest to a point.

    Args:
        point: Query point
        shape: Route shape

    Returns:
        (segment_start_index, distance_meters), or None for an empty shape.
        A single-point shape projects onto index 0.
    """
    if not shape:
        return None
    if len(shape) == 1:
        return 0, distance_between(point, shape[0])

    best_index = 0
    best_distance = float('inf')
    for i in range(len(shape) - 1):
        distance = point_to_segment_distance(point, shape[i], shape[i + 1])
        if distance < best_distance:
            best_distance = distance
            best_index = i

    return best_index, best_distance


def _cumulative_lengths(shape: Polyline) -> List[float]:
    lengths = [0.0]
    for a, b in zip(shape, shape[1:]):
        lengths.append(lengths[-1] + distance_between(a, b))
    return lengths


def _project(point: GeoPoint, shape: Polyline, cumulative: Sequence[float]) -> ShapeProjection:
    index, distance = find_closest_shape_point(point, shape)
    start, end = shape[index], shape[index + 1]
    t = segment_fraction(point, start, end)
    foot = start if t is None else interpolate(start, end, t)
    return ShapeProjection(
        index=index,
        point=foot,
        measure_meters=cumulative[index] + distance_between(start, foot),
        distance_meters=distance,
    )


def project_onto_shape(point: GeoPoint, shape: Optional[Polyline]) -> Optional[ShapeProjection]:
    """
    Project one point onto a shape.

    Returns:
        ShapeProjection, or None for shapes with fewer than 2 points
    """
    if not shape or len(shape) < 2:
        return None
    return _project(point, shape, _cumulative_lengths(shape))


def find_anchor_projections(
    points: Sequence[GeoPoint],
    shape: Optional[Polyline]
) -> Optional[Tuple[ShapeProjection, ShapeProjection]]:
    """
    Entry/exit projections spanned by a set of evidence points.

    Returns:
        (entry, exit) ordered by measure, or None when there is nothing
        to project.
    """
    if not points or not shape or len(shape) < 2:
        return None

    cumulative = _cumulative_lengths(shape)
    projections = [_project(p, shape, cumulative) for p in points]
    entry = min(projections, key=lambda p: p.measure_meters)
    exit_ = max(projections, key=lambda p: p.measure_meters)
    return entry, exit_


def find_anchors(
    points: Sequence[GeoPoint],
    shape: Optional[Polyline]
) -> Optional[Tuple[int, int]]:
    """
    Entry/exit segment indices spanned by a set of evidence points.

    Returns:
        (entry_index, exit_index) with entry <= exit, or None when there
        is nothing to project.
    """
    anchors = find_anchor_projections(points, shape)
    if anchors is None:
        return None
    entry, exit_ = anchors
    return entry.index, exit_.index


def extract_skipped_segment(
    shape: Optional[Polyline],
    entry_index: int,
    exit_index: int
) -> List[GeoPoint]:
    """
    Vertex slice of the shape between two anchor segments.

    Includes the end vertex of the exit segment, clamped to the shape.
    """
    if not shape:
        return []
    start = max(0, entry_index)
    end = min(len(shape), exit_index + 2)
    return list(shape[start:end])


def _drop_repeats(points: Sequence[GeoPoint]) -> List[GeoPoint]:
    kept: List[GeoPoint] = []
    for point in points:
        if not kept or distance_between(kept[-1], point) >= _DUPLICATE_METERS:
            kept.append(point)
    return kept


def clip_skipped_segment(
    shape: Optional[Polyline],
    entry: ShapeProjection,
    exit_: ShapeProjection
) -> List[GeoPoint]:
    """
    Shape between the entry and exit foot points.

    Returns:
        Clipped polyline (>= 2 points), or [] when the anchors coincide
    """
    if not shape or exit_.measure_meters <= entry.measure_meters:
        return []
    interior = extract_skipped_segment(shape, entry.index, exit_.index)[1:-1]
    clipped = _drop_repeats([entry.point] + interior + [exit_.point])
    return clipped if len(clipped) >= 2 else []


def slice_polyline(
    polyline: Optional[Polyline],
    start_meters: float,
    end_meters: float
) -> List[GeoPoint]:
    """
    Sub-path between two distances along a polyline.

    Endpoints are interpolated; distances past the end clamp to the
    last vertex.

    Returns:
        Sliced path, or [] for an empty range or a polyline shorter than
        2 points
    """
    if not polyline or len(polyline) < 2 or end_meters <= start_meters:
        return []

    start_meters = max(0.0, start_meters)
    sliced: List[GeoPoint] = []
    travelled = 0.0
    for a, b in zip(polyline, polyline[1:]):
        length = distance_between(a, b)
        seg_start, seg_end = travelled, travelled + length
        travelled = seg_end
        if length == 0 or seg_end < start_meters:
            continue
        if not sliced:
            sliced.append(interpolate(a, b, (start_meters - seg_start) / length))
        if seg_end >= end_meters:
            sliced.append(interpolate(a, b, (end_meters - seg_start) / length))
            break
        sliced.append(b)

    sliced = _drop_repeats(sliced)
    return sliced if len(sliced) >= 2 else []


def zone_core(
    skipped: Optional[Polyline],
    trim_fraction: float = ZONE_TRIM_FRACTION
) -> List[GeoPoint]:
    """
    Middle of a skipped segment, trim_fraction of its length cut at each end.

    Raises:
        ValueError: If trim_fraction is outside [0, 0.5)
    """
    if not 0.0 <= trim_fraction < 0.5:
        raise ValueError(f"trim_fraction must be in [0, 0.5), got {trim_fraction}")

    total = path_length(skipped)
    if total <= 0:
        return []
    return slice_polyline(skipped, total * trim_fraction, total * (1.0 - trim_fraction))
