"""
Detour Document Module
======================

The per-route Detour document owned by DetourStateMachine.

Design:
- Immutable (frozen dataclass); the state machine replaces, never mutates
- Timestamps are epoch milliseconds (ints)
- Serialization uses the camelCase keys of the persisted document
- Invariant: geometry is absent while a detour is only off-route-pending
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..geometry.shapes import GeoPoint, polyline_from_list, polyline_to_list


class DetourState(str, Enum):
    """Detour lifecycle states."""
    OFF_ROUTE_PENDING = "off-route-pending"
    ACTIVE = "active"
    CLEAR_PENDING = "clear-pending"
    CLEARED = "cleared"


class ConfidenceLevel(str, Enum):
    """Confidence labels, ordered from weakest to strongest."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ArchiveReason(str, Enum):
    """Why a detour left the live set."""
    CLEARED = "cleared"
    EXPIRED = "expired"
    EXPIRED_MAX_RETENTION = "expired_max_retention"


@dataclass(frozen=True)
class AffectedStop:
    """A stop near the bypassed part of the route."""
    stop_id: str
    stop_name: str
    distance_meters: float
    path_index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'stopId': self.stop_id,
            'stopName': self.stop_name,
            'distanceMeters': round(self.distance_meters, 1),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AffectedStop':
        return cls(
            stop_id=str(data['stopId']),
            stop_name=str(data.get('stopName', '')),
            distance_meters=float(data.get('distanceMeters', 0.0)),
        )


@dataclass(frozen=True)
class DetourGeometry:
    """
    Geometry describing a confirmed deviation.

    Attributes:
        skipped_segment_polyline: Canonical route portion being bypassed
        inferred_detour_polyline: Simplified observed off-route path
        confidence: Label derived from confidence_score
        evidence_point_count: Off-route points backing this geometry
        confidence_score: 0-100 score behind the label
        overlap_fraction: Best overlap between separate observations
        entry_point: Shape vertex where vehicles leave the route
        exit_point: Shape vertex where vehicles rejoin the route
        affected_stops: Stops near the skipped segment
        segment_label: Human label ("Near X" / "X to Y")
    """
    skipped_segment_polyline: Tuple[GeoPoint, ...]
    inferred_detour_polyline: Tuple[GeoPoint, ...]
    confidence: ConfidenceLevel
    evidence_point_count: int
    confidence_score: int = 0
    overlap_fraction: float = 0.0
    entry_point: Optional[GeoPoint] = None
    exit_point: Optional[GeoPoint] = None
    affected_stops: Tuple[AffectedStop, ...] = ()
    segment_label: Optional[str] = None

    def __post_init__(self):
        """Validate invariants."""
        if self.evidence_point_count < 0:
            raise ValueError(
                f"evidence_point_count must be >= 0, got {self.evidence_point_count}"
            )
        if not 0 <= self.confidence_score <= 100:
            raise ValueError(
                f"confidence_score must be in [0, 100], got {self.confidence_score}"
            )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            'skippedSegmentPolyline': polyline_to_list(self.skipped_segment_polyline),
            'inferredDetourPolyline': polyline_to_list(self.inferred_detour_polyline),
            'confidence': self.confidence.value,
            'evidencePointCount': self.evidence_point_count,
            'confidenceScore': self.confidence_score,
            'overlapFraction': round(self.overlap_fraction, 3),
            'entryPoint': self.entry_point.to_dict() if self.entry_point else None,
            'exitPoint': self.exit_point.to_dict() if self.exit_point else None,
            'affectedStops': [s.to_dict() for s in self.affected_stops],
            'segmentLabel': self.segment_label,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DetourGeometry':
        """
        Deserialize from dict.

        Raises:
            ValueError: If required fields are missing or invalid
        """
        try:
            entry = data.get('entryPoint')
            exit_ = data.get('exitPoint')
            return cls(
                skipped_segment_polyline=tuple(polyline_from_list(data.get('skippedSegmentPolyline'))),
                inferred_detour_polyline=tuple(polyline_from_list(data.get('inferredDetourPolyline'))),
                confidence=ConfidenceLevel(data['confidence']),
                evidence_point_count=int(data['evidencePointCount']),
                confidence_score=int(data.get('confidenceScore', 0)),
                overlap_fraction=float(data.get('overlapFraction', 0.0)),
                entry_point=GeoPoint.from_dict(entry) if entry else None,
                exit_point=GeoPoint.from_dict(exit_) if exit_ else None,
                affected_stops=tuple(AffectedStop.from_dict(s) for s in data.get('affectedStops', [])),
                segment_label=data.get('segmentLabel'),
            )
        except KeyError as e:
            raise ValueError(f"Missing required DetourGeometry field: {e}")
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid DetourGeometry data: {e}")


@dataclass(frozen=True)
class Detour:
    """
    Per-route detour document.

    At most one instance exists per route at a time.

    Invariants:
        - geometry is None while state == OFF_ROUTE_PENDING
        - vehicle_count >= 0

    Example:
        >>> detour = Detour(
        ...     route_id="8A",
        ...     state=DetourState.OFF_ROUTE_PENDING,
        ...     detected_at_ms=1_700_000_000_000,
        ...     last_seen_at_ms=1_700_000_000_000,
        ...     updated_at_ms=1_700_000_000_000,
        ...     trigger_vehicle_id="bus-12",
        ...     vehicle_count=1,
        ... )
    """
    route_id: str
    state: DetourState
    detected_at_ms: int
    last_seen_at_ms: int
    updated_at_ms: int
    trigger_vehicle_id: Optional[str] = None
    vehicle_count: int = 0
    geometry: Optional[DetourGeometry] = None
    last_evidence_at_ms: Optional[int] = None
    matched_alert_id: Optional[str] = None
    clear_pending_since_ms: Optional[int] = None
    cleared_at_ms: Optional[int] = None
    archive_reason: Optional[ArchiveReason] = None

    def __post_init__(self):
        """Validate invariants."""
        if not self.route_id:
            raise ValueError("route_id cannot be empty")
        if self.vehicle_count < 0:
            raise ValueError(f"vehicle_count must be >= 0, got {self.vehicle_count}")
        if self.state == DetourState.OFF_ROUTE_PENDING and self.geometry is not None:
            raise ValueError("off-route-pending detours cannot carry geometry")

    @property
    def is_live(self) -> bool:
        """True until the detour is confirmed cleared."""
        return self.state != DetourState.CLEARED

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        result = {
            'routeId': self.route_id,
            'state': self.state.value,
            'detectedAt': self.detected_at_ms,
            'lastSeenAt': self.last_seen_at_ms,
            'updatedAt': self.updated_at_ms,
            'triggerVehicleId': self.trigger_vehicle_id,
            'vehicleCount': self.vehicle_count,
            'geometry': self.geometry.to_dict() if self.geometry else None,
            'lastEvidenceAt': self.last_evidence_at_ms,
            'matchedAlertId': self.matched_alert_id,
            'clearPendingSince': self.clear_pending_since_ms,
            'clearedAt': self.cleared_at_ms,
        }
        if self.archive_reason is not None:
            result['archiveReason'] = self.archive_reason.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Detour':
        """
        Deserialize from dict.

        Raises:
            ValueError: If required fields are missing or invalid
        """
        try:
            geometry = data.get('geometry')
            reason = data.get('archiveReason')
            return cls(
                route_id=str(data['routeId']),
                state=DetourState(data.get('state', DetourState.ACTIVE.value)),
                detected_at_ms=int(data['detectedAt']),
                last_seen_at_ms=int(data.get('lastSeenAt', data['detectedAt'])),
                updated_at_ms=int(data.get('updatedAt', data['detectedAt'])),
                trigger_vehicle_id=data.get('triggerVehicleId'),
                vehicle_count=int(data.get('vehicleCount', 0)),
                geometry=DetourGeometry.from_dict(geometry) if geometry else None,
                last_evidence_at_ms=data.get('lastEvidenceAt'),
                matched_alert_id=data.get('matchedAlertId'),
                clear_pending_since_ms=data.get('clearPendingSince'),
                cleared_at_ms=data.get('clearedAt'),
                archive_reason=ArchiveReason(reason) if reason else None,
            )
        except KeyError as e:
            raise ValueError(f"Missing required Detour field: {e}")
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid Detour data: {e}")
