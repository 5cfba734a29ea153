"""
MQTT Subscriber
==============

Bounded Context: Message Consumption

This module provides the subscriber for receiving detour events from the
MQTT broker (CLI "watch", dashboards, history writers).

Design:
- Callback-based architecture (async message handling)
- Automatic deserialization with error handling
- Dispatch by eventType (DETOUR_DETECTED / UPDATED / CLEARED)

Architecture:
    MQTT Broker → DetourEventSubscriber → callback(event)

Example:
    >>> from detour_mqtt import DetourEventSubscriber, create_logger
    >>>
    >>> def on_event(event):
    ...     print(f"{event.event_type.value} route={event.route_id}")
    >>>
    >>> subscriber = DetourEventSubscriber(
    ...     broker_host="localhost",
    ...     topic="detours/events",
    ...     on_event=on_event,
    ...     logger=create_logger("watcher")
    ... )
    >>> subscriber.connect()
    >>> subscriber.start()
    >>> # ...
    >>> subscriber.stop()
"""

import json
import threading
from typing import Callable, Dict, Optional

import paho.mqtt.client as mqtt

from .schemas import DetourEvent, EventType, event_from_dict
from .logging import StructuredLogger, LogEvent


class DetourEventSubscriber:
    """
    MQTT subscriber for detour events.

    Subscribes to "<topic>" and "<topic>/#" so both flat and per-route
    publication layouts are received.

    Thread Safety:
        Callbacks run in the paho network thread. Keep them fast.
    """

    def __init__(
        self,
        broker_host: str,
        topic: str,
        on_event: Callable[[DetourEvent], None],
        logger: StructuredLogger,
        broker_port: int = 1883,
        client_id: str = "detour_event_subscriber",
        username: Optional[str] = None,
        password: Optional[str] = None,
        qos: int = 1
    ):
        self.broker_host = broker_host
        self.broker_port = broker_port
        self.topic = topic.rstrip('/')
        self.client_id = client_id
        self.logger = logger
        self.qos = qos
        self.on_event = on_event

        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id
        )
        if username and password:
            self.client.username_pw_set(username, password)

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

        self._connected = threading.Event()
        self._running = False
        self._stats_lock = threading.Lock()
        self._message_count: Dict[str, int] = {t.value: 0 for t in EventType}
        self._rejected_count = 0

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        """Subscribe on (re)connect."""
        if reason_code.is_failure:
            self.logger.error(
                event=LogEvent.MQTT_CONNECTION_ERROR,
                message=f"Failed to connect to broker ({reason_code})",
                metadata={'broker': f"{self.broker_host}:{self.broker_port}"}
            )
            return

        self._connected.set()
        client.subscribe(self.topic, qos=self.qos)
        client.subscribe(f"{self.topic}/#", qos=self.qos)

        self.logger.info(
            event=LogEvent.MQTT_CONNECTED,
            message="Connected to MQTT broker and subscribed to detour events",
            metadata={
                'broker': f"{self.broker_host}:{self.broker_port}",
                'topic': self.topic
            }
        )

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties) -> None:
        self._connected.clear()
        self.logger.warning(
            event=LogEvent.MQTT_DISCONNECTED,
            message="Disconnected from MQTT broker",
            metadata={
                'broker': f"{self.broker_host}:{self.broker_port}",
                'reason_code': str(reason_code)
            }
        )

    def _on_message(self, client, userdata, msg: mqtt.MQTTMessage) -> None:
        self.handle_payload(msg.payload, topic=msg.topic)

    def handle_payload(self, payload: bytes, topic: Optional[str] = None) -> Optional[DetourEvent]:
        """
        Decode one message and invoke the user callback.

        Returns:
            The decoded event, or None if the payload was rejected
        """
        try:
            data = json.loads(payload.decode('utf-8'))
            event = event_from_dict(data)
        except (UnicodeDecodeError, json.JSONDecodeError, ValueError) as e:
            with self._stats_lock:
                self._rejected_count += 1
            self.logger.error(
                event=LogEvent.DESERIALIZATION_ERROR,
                message="Rejected detour event payload",
                exc_info=e,
                metadata={'topic': topic}
            )
            return None

        with self._stats_lock:
            self._message_count[event.event_type.value] += 1

        self.logger.info(
            event=LogEvent.DETOUR_EVENT_RECEIVED,
            message=f"Received {event.event_type.value}",
            metadata={'route_id': event.route_id, 'topic': topic}
        )

        try:
            self.on_event(event)
        except Exception as e:
            self.logger.error(
                event=LogEvent.DESERIALIZATION_ERROR,
                message="Error in detour event callback",
                exc_info=e,
                metadata={'route_id': event.route_id}
            )
        return event

    def connect(self, timeout: float = 10.0) -> bool:
        """
        Connect to MQTT broker and start the network loop.

        Returns:
            True if connected successfully, False otherwise
        """
        try:
            self.client.connect(self.broker_host, self.broker_port)
            self.client.loop_start()

            if self._connected.wait(timeout=timeout):
                return True
            self.logger.error(
                event=LogEvent.MQTT_CONNECTION_ERROR,
                message="Connection timeout",
                metadata={'timeout': timeout}
            )
            return False

        except Exception as e:
            self.logger.error(
                event=LogEvent.MQTT_CONNECTION_ERROR,
                message="Failed to connect to broker",
                exc_info=e,
                metadata={'broker': f"{self.broker_host}:{self.broker_port}"}
            )
            return False

    def start(self) -> None:
        """Mark the subscriber as listening (network loop runs since connect)."""
        if not self._connected.is_set():
            self.logger.warning(
                event=LogEvent.MQTT_CONNECTION_ERROR,
                message="Cannot start: not connected to broker"
            )
            return
        self._running = True

    def stop(self) -> None:
        """Stop network loop and disconnect."""
        self._running = False
        self.client.loop_stop()
        self.client.disconnect()
        self.logger.info(
            event=LogEvent.MQTT_DISCONNECTED,
            message="Subscriber stopped",
            metadata=self.get_stats()
        )

    def is_connected(self) -> bool:
        return self._connected.is_set()

    def get_stats(self) -> dict:
        """Received counts per event type, plus rejected payloads."""
        with self._stats_lock:
            return {
                'received': dict(self._message_count),
                'rejected': self._rejected_count,
                'connected': self._connected.is_set(),
                'running': self._running,
                'topic': self.topic,
                'broker': f"{self.broker_host}:{self.broker_port}"
            }
