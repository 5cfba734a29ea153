"""
Detour MQTT Schemas
===================

Bounded Context: Data Structures

This module defines immutable, typed data structures for MQTT messages.

Design:
- Frozen dataclasses (immutability)
- to_dict() for JSON serialization (camelCase wire keys)
- from_dict() for deserialization
- event_from_dict() dispatches on eventType

Public API
----------
Common Types:
    Timestamp: epoch-ms timestamp wrapper

Detour Event Types:
    EventType: Enum (DETOUR_DETECTED, DETOUR_UPDATED, DETOUR_CLEARED)
    DetourDetectedEvent, DetourUpdatedEvent, DetourClearedEvent
    DetourEvent: Union of the three
"""

from .common import Timestamp
from .detour_event import (
    DEFAULT_EVENT_SOURCE,
    TRACKED_FIELDS,
    EventType,
    DetourEvent,
    DetourDetectedEvent,
    DetourUpdatedEvent,
    DetourClearedEvent,
    event_from_dict,
)

__all__ = [
    'Timestamp',
    'DEFAULT_EVENT_SOURCE',
    'TRACKED_FIELDS',
    'EventType',
    'DetourEvent',
    'DetourDetectedEvent',
    'DetourUpdatedEvent',
    'DetourClearedEvent',
    'event_from_dict',
]
