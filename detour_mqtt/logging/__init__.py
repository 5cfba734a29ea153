"""
Structured Logging
==================

JSON logs with a typed event taxonomy (LogEvent).
"""

from .events import LogEvent, MQTT_EVENTS, DETOUR_EVENTS, ERROR_EVENTS
from .structured import StructuredLogger, JSONFormatter, create_logger

__all__ = [
    'LogEvent',
    'MQTT_EVENTS',
    'DETOUR_EVENTS',
    'ERROR_EVENTS',
    'StructuredLogger',
    'JSONFormatter',
    'create_logger',
]
