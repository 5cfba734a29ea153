"""
Structured Log Event Types
==========================

Bounded Context: Observability Event Taxonomy

This module defines typed event names for structured logging.

Design:
- Enum-based (prevents typos, enables autocomplete)
- Hierarchical naming (namespace.category.action)
- Searchable in log aggregators

Event Naming Convention:
    <component>.<category>.<action>

    component: mqtt, detour, error
    category: connected, publish, transition, geometry
    action: success, failed, written

Example Log Query (CloudWatch Insights):
    fields @timestamp, event, message, metadata.route_id
    | filter event = "detour.transition"
    | stats count() by metadata.to_state
"""

from enum import Enum


class LogEvent(str, Enum):
    """
    Typed log event names for structured logging.

    Categories:
    - mqtt.*: MQTT broker interactions
    - detour.*: Detour lifecycle and publication
    - error.*: Error conditions
    """

    # ========== MQTT Events ==========
    MQTT_CONNECTED = "mqtt.connected"
    """MQTT broker connection established."""

    MQTT_DISCONNECTED = "mqtt.disconnected"
    """MQTT broker connection lost."""

    MQTT_PUBLISH_SUCCESS = "mqtt.publish.success"
    """Message successfully published to broker."""

    MQTT_PUBLISH_FAILED = "mqtt.publish.failed"
    """Message publication failed."""

    # ========== Detour Events ==========
    DETOUR_TRANSITION = "detour.transition"
    """Route detour changed lifecycle state."""

    DETOUR_ARCHIVED = "detour.archived"
    """Detour left the live set (cleared or expired)."""

    DETOUR_GEOMETRY_WRITTEN = "detour.geometry.written"
    """Detour geometry persisted (throttle passed)."""

    DETOUR_EVENT_SERIALIZED = "detour.event.serialized"
    """Detour event serialized to JSON."""

    DETOUR_EVENT_PUBLISHED = "detour.event.published"
    """Detour event delivered to the event sink."""

    DETOUR_EVENT_RECEIVED = "detour.event.received"
    """Detour event received by subscriber."""

    DETOUR_TICK_COMPLETED = "detour.tick.completed"
    """Polling tick finished."""

    # ========== Error Events ==========
    SERIALIZATION_ERROR = "error.serialization"
    """Failed to serialize message to JSON."""

    DESERIALIZATION_ERROR = "error.deserialization"
    """Failed to deserialize message from JSON."""

    MQTT_CONNECTION_ERROR = "error.mqtt_connection"
    """Failed to connect to MQTT broker."""

    MQTT_PUBLISH_ERROR = "error.mqtt_publish"
    """Error during message publication."""

    DETOUR_PUBLISH_ERROR = "error.detour_publish"
    """Store write or event delivery failed for a route."""

    DETOUR_TICK_ERROR = "error.detour_tick"
    """Route processing failed during a tick."""


# Event categories for filtering
MQTT_EVENTS = {
    LogEvent.MQTT_CONNECTED,
    LogEvent.MQTT_DISCONNECTED,
    LogEvent.MQTT_PUBLISH_SUCCESS,
    LogEvent.MQTT_PUBLISH_FAILED,
}

DETOUR_EVENTS = {
    LogEvent.DETOUR_TRANSITION,
    LogEvent.DETOUR_ARCHIVED,
    LogEvent.DETOUR_GEOMETRY_WRITTEN,
    LogEvent.DETOUR_EVENT_SERIALIZED,
    LogEvent.DETOUR_EVENT_PUBLISHED,
    LogEvent.DETOUR_EVENT_RECEIVED,
    LogEvent.DETOUR_TICK_COMPLETED,
}

ERROR_EVENTS = {
    LogEvent.SERIALIZATION_ERROR,
    LogEvent.DESERIALIZATION_ERROR,
    LogEvent.MQTT_CONNECTION_ERROR,
    LogEvent.MQTT_PUBLISH_ERROR,
    LogEvent.DETOUR_PUBLISH_ERROR,
    LogEvent.DETOUR_TICK_ERROR,
}
