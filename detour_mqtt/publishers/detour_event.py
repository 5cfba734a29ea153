"""
Detour Event Publisher
======================

Bounded Context: Detour Event Message Production

This module provides the production EventSink: it publishes detour events
to the broker, one topic per route.

Design:
- Inherits from BasePublisher (connection management)
- Formats DetourEvent to JSON
- Topic template: "{prefix}/{route_id}" (e.g. "detours/events/8A")
- QoS 1 (events are one-shot, at-least-once delivery)

Message Flow:
    DetourPublisher → DetourEvent → DetourEventPublisher.emit() → MQTT Broker

Example:
    >>> from detour_mqtt.publishers import DetourEventPublisher
    >>> from detour_mqtt.logging import create_logger
    >>>
    >>> publisher = DetourEventPublisher(
    ...     broker_host="localhost",
    ...     topic="detours/events",
    ...     logger=create_logger("detour_events")
    ... )
    >>> publisher.connect()
    >>> publisher.emit(event)
"""

from typing import Any, Dict, Optional

from .base import BasePublisher
from ..schemas import DetourEvent
from ..logging import StructuredLogger, LogEvent


class DetourEventPublisher(BasePublisher):
    """
    Publisher for detour lifecycle events.

    Implements the EventSink protocol: emit(event) -> bool.

    Attributes:
        Same as BasePublisher, plus:
        route_topics: Publish to "<topic>/<route_id>" instead of "<topic>"
    """

    def __init__(
        self,
        broker_host: str,
        topic: str,
        logger: StructuredLogger,
        broker_port: int = 1883,
        client_id: str = "detour_event_publisher",
        username: Optional[str] = None,
        password: Optional[str] = None,
        qos: int = 1,
        route_topics: bool = True,
        ack_timeout: float = 5.0
    ):
        """
        Initialize detour event publisher.

        Args:
            broker_host: MQTT broker hostname
            topic: Topic prefix for detour events
            logger: Structured logger instance
            broker_port: MQTT broker port (default: 1883)
            client_id: MQTT client ID
            username: MQTT auth username (optional)
            password: MQTT auth password (optional)
            qos: Quality of Service (default: 1)
            route_topics: Append the route id to the topic (default: True)
            ack_timeout: Seconds to wait for the broker acknowledgement
        """
        super().__init__(
            broker_host=broker_host,
            broker_port=broker_port,
            topic=topic,
            client_id=client_id,
            logger=logger,
            username=username,
            password=password,
            qos=qos,
            ack_timeout=ack_timeout
        )
        self.route_topics = route_topics

    def topic_for(self, route_id: str) -> str:
        """Topic an event for route_id is published on."""
        if not self.route_topics:
            return self.topic
        return f"{self.topic.rstrip('/')}/{route_id}"

    def format_message(self, event: DetourEvent) -> Dict[str, Any]:
        """
        Format a detour event to a JSON-compatible dict.

        Raises:
            ValueError: If the event cannot be serialized
        """
        try:
            formatted = event.to_dict()

            self.logger.debug(
                event=LogEvent.DETOUR_EVENT_SERIALIZED,
                message=f"Serialized {event.event_type.value}",
                metadata={'route_id': event.route_id}
            )

            return formatted

        except Exception as e:
            self.logger.error(
                event=LogEvent.SERIALIZATION_ERROR,
                message="Failed to serialize detour event",
                exc_info=e,
                metadata={'route_id': getattr(event, 'route_id', None)}
            )
            raise ValueError(f"Failed to format detour event: {e}")

    def emit(self, event: DetourEvent) -> bool:
        """
        Publish one detour event.

        Returns:
            True if the broker accepted the message, False otherwise
        """
        try:
            message_data = self.format_message(event)
        except ValueError:
            return False

        success = self.publish(message_data, topic=self.topic_for(event.route_id))

        if success:
            self.logger.info(
                event=LogEvent.DETOUR_EVENT_PUBLISHED,
                message=f"Published {event.event_type.value} for route {event.route_id}",
                metadata={
                    'route_id': event.route_id,
                    'event_type': event.event_type.value,
                    'occurred_at': event.occurred_at_ms,
                }
            )

        return success
