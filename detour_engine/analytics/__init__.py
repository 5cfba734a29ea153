"""
Analytics Layer - Stateful detour tracking.

Modules:
- document: Detour document, states, geometry
- tracker: VehiclePosition, per-vehicle excursion tracking
- confidence: score and label
- lifecycle: DetourStateMachine
- context: affected stops, segment labels, alert correlation
"""

from .document import (
    AffectedStop,
    ArchiveReason,
    ConfidenceLevel,
    Detour,
    DetourGeometry,
    DetourState,
)
from .tracker import Excursion, ExcursionRule, ExcursionTracker, VehiclePosition
from .confidence import ConfidenceThresholds, confidence_label, score_confidence
from .lifecycle import DetourStateMachine, DetourThresholds, ObserveResult, Transition
from .context import (
    ServiceAlert,
    Stop,
    enrich_geometry,
    find_affected_stops,
    make_geometry_enricher,
    match_service_alert,
    segment_label,
)

__all__ = [
    "AffectedStop",
    "ArchiveReason",
    "ConfidenceLevel",
    "Detour",
    "DetourGeometry",
    "DetourState",
    "Excursion",
    "ExcursionRule",
    "ExcursionTracker",
    "VehiclePosition",
    "ConfidenceThresholds",
    "confidence_label",
    "score_confidence",
    "DetourStateMachine",
    "DetourThresholds",
    "ObserveResult",
    "Transition",
    "ServiceAlert",
    "Stop",
    "enrich_geometry",
    "find_affected_stops",
    "make_geometry_enricher",
    "match_service_alert",
    "segment_label",
]
