"""
Detour Engine v1.0
==================

Bounded Context: Detour detection for transit vehicle positions.

Design Philosophy:
- Separation of Concerns: Geometry and Analytics separated
- Geometry never raises: sentinel values instead of exceptions
- Lifecycle is lazy: windows evaluated against "now" on every tick
- Pragmatismo > Purismo: numpy for vectorized polyline distance

Architecture:

    detour_engine/
    ├── geometry/          # Pure geometry (immutable, stateless)
    │   ├── shapes.py      # GeoPoint, polyline helpers
    │   ├── kernel.py      # distances, overlap, simplify, containment
    │   └── projection.py  # anchors on the route shape
    │
    └── analytics/         # Detour tracking (stateful)
        ├── document.py    # Detour, DetourGeometry, DetourState
        ├── tracker.py     # VehiclePosition, ExcursionTracker
        ├── confidence.py  # score + label lookup
        ├── lifecycle.py   # DetourStateMachine
        └── context.py     # affected stops, alert correlation

Usage:

    # 1. Geometry (stateless)
    from detour_engine import GeoPoint, kernel

    d = kernel.point_to_polyline_distance(GeoPoint(44.39, -79.69), shape)

    # 2. Lifecycle (stateful, one machine per route)
    from detour_engine import DetourStateMachine, DetourThresholds

    machine = DetourStateMachine("8A", DetourThresholds())
    result = machine.observe(positions, shape, now_ms)
    if result.detour is not None:
        print(result.detour.state)
"""

# Geometry Layer (immutable, stateless)
from detour_engine.geometry import kernel
from detour_engine.geometry.shapes import GeoPoint

# Analytics Layer (stateful)
from detour_engine.analytics.document import (
    ConfidenceLevel,
    Detour,
    DetourGeometry,
    DetourState,
)
from detour_engine.analytics.tracker import VehiclePosition
from detour_engine.analytics.lifecycle import DetourStateMachine, DetourThresholds
from detour_engine.analytics.confidence import ConfidenceThresholds

__all__ = [
    # Geometry
    "kernel",
    "GeoPoint",
    # Analytics
    "ConfidenceLevel",
    "Detour",
    "DetourGeometry",
    "DetourState",
    "VehiclePosition",
    "DetourStateMachine",
    "DetourThresholds",
    "ConfidenceThresholds",
]

__version__ = "1.0.0"
