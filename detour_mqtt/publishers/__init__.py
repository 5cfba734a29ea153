"""
MQTT Publishers
==============

Bounded Context: Message Production

Design:
- BasePublisher: Abstract base with connection management
- DetourEventPublisher: Publishes detour lifecycle events (EventSink)

Public API
----------
    BasePublisher: Abstract publisher (for custom publishers)
    DetourEventPublisher: Detour event publisher
"""

from .base import BasePublisher
from .detour_event import DetourEventPublisher

__all__ = [
    'BasePublisher',
    'DetourEventPublisher',
]
