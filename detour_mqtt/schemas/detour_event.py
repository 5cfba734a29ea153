"""
Detour Event Message Schema
===========================

Bounded Context: Detour Event Data Structures

This module defines the three detour events published to downstream
consumers (rider apps, dashboards, history writers).

Design:
- One frozen dataclass per variant
- Every event carries eventType, routeId and occurredAt (epoch ms)
- camelCase wire keys, integer epoch-ms timestamps
- Consumers distinguish variants by eventType (see event_from_dict)

Message Flow:
    DetourPublisher → DetourEvent → DetourEventPublisher → MQTT → DetourEventSubscriber
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple, Union

DEFAULT_EVENT_SOURCE = "detour-engine"

# changedFields always follow this order
TRACKED_FIELDS = (
    "vehicleCount",
    "triggerVehicleId",
    "state",
    "confidence",
    "evidencePointCount",
)


class EventType(str, Enum):
    """Detour event type enumeration."""
    DETOUR_DETECTED = "DETOUR_DETECTED"
    DETOUR_UPDATED = "DETOUR_UPDATED"
    DETOUR_CLEARED = "DETOUR_CLEARED"


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _require_route(route_id: str) -> None:
    if not route_id:
        raise ValueError("Event routeId must be non-empty")


@dataclass(frozen=True)
class DetourDetectedEvent:
    """
    Emitted once, when a route's detour first becomes active.

    Attributes:
        route_id: Route identifier
        occurred_at_ms: Publication time
        detected_at_ms: When the detour was first detected
        last_seen_at_ms: Last off-route evidence
        trigger_vehicle_id: Vehicle that first went off-route
        vehicle_count: Distinct vehicles contributing evidence
        confidence: low/medium/high (None without geometry)
        evidence_point_count: Off-route points backing the geometry
        source: Producer identifier

    Example:
        >>> event = DetourDetectedEvent(
        ...     route_id="8A",
        ...     occurred_at_ms=1761319845123,
        ...     detected_at_ms=1761319800000,
        ...     last_seen_at_ms=1761319845000,
        ...     trigger_vehicle_id="bus-17",
        ...     vehicle_count=2,
        ...     confidence="medium",
        ...     evidence_point_count=9,
        ... )
    """
    event_type: ClassVar[EventType] = EventType.DETOUR_DETECTED

    route_id: str
    occurred_at_ms: int
    detected_at_ms: int
    last_seen_at_ms: int
    trigger_vehicle_id: Optional[str]
    vehicle_count: int
    confidence: Optional[str] = None
    evidence_point_count: Optional[int] = None
    source: str = DEFAULT_EVENT_SOURCE

    def __post_init__(self):
        """Validate invariants."""
        _require_route(self.route_id)
        if self.vehicle_count < 0:
            raise ValueError(f"vehicleCount must be >= 0, got {self.vehicle_count}")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            'eventType': self.event_type.value,
            'routeId': self.route_id,
            'occurredAt': self.occurred_at_ms,
            'detectedAt': self.detected_at_ms,
            'lastSeenAt': self.last_seen_at_ms,
            'triggerVehicleId': self.trigger_vehicle_id,
            'vehicleCount': self.vehicle_count,
            'confidence': self.confidence,
            'evidencePointCount': self.evidence_point_count,
            'source': self.source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DetourDetectedEvent':
        """Deserialize from dict.

        Raises:
            ValueError: If required fields missing or invalid
        """
        try:
            return cls(
                route_id=str(data['routeId']),
                occurred_at_ms=int(data['occurredAt']),
                detected_at_ms=int(data['detectedAt']),
                last_seen_at_ms=int(data['lastSeenAt']),
                trigger_vehicle_id=_optional_str(data.get('triggerVehicleId')),
                vehicle_count=int(data.get('vehicleCount', 0)),
                confidence=_optional_str(data.get('confidence')),
                evidence_point_count=_optional_int(data.get('evidencePointCount')),
                source=str(data.get('source', DEFAULT_EVENT_SOURCE)),
            )
        except KeyError as e:
            raise ValueError(f"Missing required DetourDetectedEvent field: {e}")
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid DetourDetectedEvent data: {e}")


@dataclass(frozen=True)
class DetourUpdatedEvent:
    """
    Emitted when tracked fields of a live detour change.

    changed_fields lists every differing field, in TRACKED_FIELDS order.
    """
    event_type: ClassVar[EventType] = EventType.DETOUR_UPDATED

    route_id: str
    occurred_at_ms: int
    detected_at_ms: int
    last_seen_at_ms: int
    trigger_vehicle_id: Optional[str]
    previous_trigger_vehicle_id: Optional[str]
    vehicle_count: int
    previous_vehicle_count: int
    changed_fields: Tuple[str, ...]
    state: Optional[str] = None
    confidence: Optional[str] = None
    evidence_point_count: Optional[int] = None
    source: str = DEFAULT_EVENT_SOURCE

    def __post_init__(self):
        """Validate invariants."""
        _require_route(self.route_id)
        if not self.changed_fields:
            raise ValueError("DETOUR_UPDATED requires at least one changed field")
        unknown = [f for f in self.changed_fields if f not in TRACKED_FIELDS]
        if unknown:
            raise ValueError(f"Unknown changed fields: {unknown}")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            'eventType': self.event_type.value,
            'routeId': self.route_id,
            'occurredAt': self.occurred_at_ms,
            'detectedAt': self.detected_at_ms,
            'lastSeenAt': self.last_seen_at_ms,
            'triggerVehicleId': self.trigger_vehicle_id,
            'previousTriggerVehicleId': self.previous_trigger_vehicle_id,
            'vehicleCount': self.vehicle_count,
            'previousVehicleCount': self.previous_vehicle_count,
            'changedFields': list(self.changed_fields),
            'state': self.state,
            'confidence': self.confidence,
            'evidencePointCount': self.evidence_point_count,
            'source': self.source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DetourUpdatedEvent':
        """Deserialize from dict.

        Raises:
            ValueError: If required fields missing or invalid
        """
        try:
            return cls(
                route_id=str(data['routeId']),
                occurred_at_ms=int(data['occurredAt']),
                detected_at_ms=int(data['detectedAt']),
                last_seen_at_ms=int(data['lastSeenAt']),
                trigger_vehicle_id=_optional_str(data.get('triggerVehicleId')),
                previous_trigger_vehicle_id=_optional_str(data.get('previousTriggerVehicleId')),
                vehicle_count=int(data.get('vehicleCount', 0)),
                previous_vehicle_count=int(data.get('previousVehicleCount', 0)),
                changed_fields=tuple(data['changedFields']),
                state=_optional_str(data.get('state')),
                confidence=_optional_str(data.get('confidence')),
                evidence_point_count=_optional_int(data.get('evidencePointCount')),
                source=str(data.get('source', DEFAULT_EVENT_SOURCE)),
            )
        except KeyError as e:
            raise ValueError(f"Missing required DetourUpdatedEvent field: {e}")
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid DetourUpdatedEvent data: {e}")


@dataclass(frozen=True)
class DetourClearedEvent:
    """
    Emitted once, when a detour is first observed as cleared.

    duration_ms is clearedAt - detectedAt, floored at zero.
    """
    event_type: ClassVar[EventType] = EventType.DETOUR_CLEARED

    route_id: str
    occurred_at_ms: int
    detected_at_ms: Optional[int]
    cleared_at_ms: int
    duration_ms: Optional[int]
    trigger_vehicle_id: Optional[str]
    vehicle_count: int
    source: str = DEFAULT_EVENT_SOURCE

    def __post_init__(self):
        """Validate invariants."""
        _require_route(self.route_id)
        if self.duration_ms is not None and self.duration_ms < 0:
            raise ValueError(f"durationMs must be >= 0, got {self.duration_ms}")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            'eventType': self.event_type.value,
            'routeId': self.route_id,
            'occurredAt': self.occurred_at_ms,
            'detectedAt': self.detected_at_ms,
            'clearedAt': self.cleared_at_ms,
            'durationMs': self.duration_ms,
            'triggerVehicleId': self.trigger_vehicle_id,
            'vehicleCount': self.vehicle_count,
            'source': self.source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DetourClearedEvent':
        """Deserialize from dict.

        Raises:
            ValueError: If required fields missing or invalid
        """
        try:
            return cls(
                route_id=str(data['routeId']),
                occurred_at_ms=int(data['occurredAt']),
                detected_at_ms=_optional_int(data.get('detectedAt')),
                cleared_at_ms=int(data.get('clearedAt', data['occurredAt'])),
                duration_ms=_optional_int(data.get('durationMs')),
                trigger_vehicle_id=_optional_str(data.get('triggerVehicleId')),
                vehicle_count=int(data.get('vehicleCount', 0)),
                source=str(data.get('source', DEFAULT_EVENT_SOURCE)),
            )
        except KeyError as e:
            raise ValueError(f"Missing required DetourClearedEvent field: {e}")
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid DetourClearedEvent data: {e}")


DetourEvent = Union[DetourDetectedEvent, DetourUpdatedEvent, DetourClearedEvent]

_EVENT_CLASSES = {
    EventType.DETOUR_DETECTED: DetourDetectedEvent,
    EventType.DETOUR_UPDATED: DetourUpdatedEvent,
    EventType.DETOUR_CLEARED: DetourClearedEvent,
}


def event_from_dict(data: Dict[str, Any]) -> DetourEvent:
    """
    Deserialize any detour event, dispatching on eventType.

    Raises:
        ValueError: If eventType is missing or unknown, or the payload is invalid
    """
    try:
        event_type = EventType(data['eventType'])
    except KeyError:
        raise ValueError("Missing required field: 'eventType'")
    except ValueError:
        raise ValueError(f"Unknown eventType: {data.get('eventType')!r}")
    return _EVENT_CLASSES[event_type].from_dict(data)
