"""
Geometry Layer - Pure, immutable, stateless.

Modules:
- shapes: GeoPoint and polyline helpers
- kernel: distance, overlap, simplification, containment, centroid
- projection: shape anchors, clipped skipped segments and zone cores
"""

from .shapes import GeoPoint, polyline_from_list, polyline_to_list
from .kernel import (
    EARTH_RADIUS_METERS,
    haversine_distance,
    distance_between,
    segment_fraction,
    interpolate,
    point_to_segment_distance,
    point_to_polyline_distance,
    path_overlap_fraction,
    paths_overlap,
    simplify_path,
    point_in_ring,
    point_in_polygon,
    calculate_path_centroid,
    path_length,
)
from .projection import (
    ShapeProjection,
    find_closest_shape_point,
    project_onto_shape,
    find_anchor_projections,
    find_anchors,
    extract_skipped_segment,
    clip_skipped_segment,
    slice_polyline,
    zone_core,
)

__all__ = [
    "GeoPoint",
    "polyline_from_list",
    "polyline_to_list",
    "EARTH_RADIUS_METERS",
    "haversine_distance",
    "distance_between",
    "segment_fraction",
    "interpolate",
    "point_to_segment_distance",
    "point_to_polyline_distance",
    "path_overlap_fraction",
    "paths_overlap",
    "simplify_path",
    "point_in_ring",
    "point_in_polygon",
    "calculate_path_centroid",
    "path_length",
    "ShapeProjection",
    "find_closest_shape_point",
    "project_onto_shape",
    "find_anchor_projections",
    "find_anchors",
    "extract_skipped_segment",
    "clip_skipped_segment",
    "slice_polyline",
    "zone_core",
]
