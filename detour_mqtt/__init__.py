"""
Detour MQTT Communication Package
=================================

Bounded Context: Communication Protocol for Detour Events

This package provides MQTT-based messaging for the detour engine: the
processor publishes lifecycle events, downstream consumers subscribe.

Architecture:
- schemas/: Immutable event structures with type safety
- publishers/: Message producers (DetourEventPublisher is the EventSink)
- subscriber.py: Typed event consumption
- logging/: Structured JSON logging for observability

Design Philosophy:
- Immutability: frozen dataclasses for message DTOs
- Wire format: camelCase keys, epoch-ms timestamps
- Observability: Structured logs (JSON) for production queries

Public API
----------
Schemas:
    Timestamp, EventType
    DetourDetectedEvent, DetourUpdatedEvent, DetourClearedEvent
    event_from_dict

Publishers:
    DetourEventPublisher, BasePublisher

Subscriber:
    DetourEventSubscriber

Logging:
    LogEvent, StructuredLogger, create_logger
"""

__version__ = "1.0.0"

from .schemas import (
    Timestamp,
    EventType,
    DetourEvent,
    DetourDetectedEvent,
    DetourUpdatedEvent,
    DetourClearedEvent,
    event_from_dict,
)

from .publishers import (
    BasePublisher,
    DetourEventPublisher,
)

from .subscriber import DetourEventSubscriber

from .logging import (
    LogEvent,
    StructuredLogger,
    create_logger,
)

__all__ = [
    '__version__',
    'Timestamp',
    'EventType',
    'DetourEvent',
    'DetourDetectedEvent',
    'DetourUpdatedEvent',
    'DetourClearedEvent',
    'event_from_dict',
    'BasePublisher',
    'DetourEventPublisher',
    'DetourEventSubscriber',
    'LogEvent',
    'StructuredLogger',
    'create_logger',
]
