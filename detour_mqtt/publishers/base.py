"""
Base MQTT Publisher
==================

Bounded Context: MQTT Infrastructure

Connection handling and acknowledged publication shared by event
publishers.

Design:
- Connection management (connect, disconnect, automatic reconnect)
- Acknowledged delivery: with QoS >= 1, publish() only reports success
  once the broker has acknowledged the message (PUBACK / PUBCOMP)
- Thread-safe (paho-mqtt loop)
- Structured logging integration

Architecture:
    BasePublisher (abstract)
        ↓
    DetourEventPublisher (concrete)

Delivery contract:
    DetourPublisher commits a route snapshot only after every event was
    accepted. A message the broker has not acknowledged within
    ``ack_timeout`` counts as rejected, so the next tick re-derives and
    re-sends it (at-least-once; consumers must tolerate duplicates).
"""

import json
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import paho.mqtt.client as mqtt

from ..logging import StructuredLogger, LogEvent


class BasePublisher(ABC):
    """
    Abstract base class for MQTT publishers.

    Subclasses implement format_message().

    Attributes:
        broker_host: MQTT broker hostname
        broker_port: MQTT broker port
        topic: Default MQTT topic
        client_id: MQTT client identifier
        qos: Quality of Service
        ack_timeout: Seconds to wait for the broker acknowledgement
        logger: Structured logger instance

    Thread Safety:
        publish() may be called from several route workers at once; paho
        serializes writes and the counters sit behind a lock.
    """

    def __init__(
        self,
        broker_host: str,
        broker_port: int,
        topic: str,
        client_id: str,
        logger: StructuredLogger,
        username: Optional[str] = None,
        password: Optional[str] = None,
        qos: int = 1,
        ack_timeout: float = 5.0
    ):
        """
        Initialize MQTT publisher.

        Args:
            broker_host: MQTT broker hostname
            broker_port: MQTT broker port
            topic: Default topic to publish to
            client_id: Unique client identifier
            logger: Structured logger for observability
            username: MQTT authentication username (optional)
            password: MQTT authentication password (optional)
            qos: Quality of Service (default: 1, at-least-once)
            ack_timeout: Acknowledgement wait for QoS >= 1 (seconds)
        """
        if ack_timeout <= 0:
            raise ValueError(f"ack_timeout must be > 0, got {ack_timeout}")

        self.broker_host = broker_host
        self.broker_port = broker_port
        self.topic = topic
        self.client_id = client_id
        self.logger = logger
        self.qos = qos
        self.ack_timeout = ack_timeout

        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id
        )
        if username and password:
            self.client.username_pw_set(username, password)
        # Polling ticks keep running while the broker is away
        self.client.reconnect_delay_set(min_delay=1, max_delay=30)

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect

        self._connected = threading.Event()
        self._stats_lock = threading.Lock()
        self._message_count = 0
        self._failed_count = 0
        self._unacked_count = 0

    @property
    def broker(self) -> str:
        return f"{self.broker_host}:{self.broker_port}"

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            self.logger.error(
                event=LogEvent.MQTT_CONNECTION_ERROR,
                message=f"Failed to connect to broker ({reason_code})",
                metadata={'broker': self.broker}
            )
            return

        self._connected.set()
        self.logger.info(
            event=LogEvent.MQTT_CONNECTED,
            message="Connected to MQTT broker",
            metadata={
                'broker': self.broker,
                'client_id': self.client_id,
                'topic': self.topic,
                'session_present': bool(getattr(flags, 'session_present', False))
            }
        )

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties) -> None:
        self._connected.clear()
        self.logger.warning(
            event=LogEvent.MQTT_DISCONNECTED,
            message="Disconnected from MQTT broker (paho reconnects automatically)",
            metadata={'broker': self.broker, 'reason_code': str(reason_code)}
        )

    def connect(self, timeout: float = 10.0) -> bool:
        """
        Connect to the broker and start the network loop.

        Returns:
            True if connected within timeout, False otherwise
        """
        try:
            self.client.connect(self.broker_host, self.broker_port)
            self.client.loop_start()
        except Exception as e:
            self.logger.error(
                event=LogEvent.MQTT_CONNECTION_ERROR,
                message="Failed to connect to broker",
                exc_info=e,
                metadata={'broker': self.broker}
            )
            return False

        if self._connected.wait(timeout=timeout):
            return True

        self.logger.error(
            event=LogEvent.MQTT_CONNECTION_ERROR,
            message="Connection timeout",
            metadata={'broker': self.broker, 'timeout': timeout}
        )
        return False

    def disconnect(self) -> None:
        """Stop the network loop and disconnect."""
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception as e:
            self.logger.error(
                event=LogEvent.MQTT_CONNECTION_ERROR,
                message="Error during disconnect",
                exc_info=e
            )
            return

        self.logger.info(
            event=LogEvent.MQTT_DISCONNECTED,
            message="Publisher disconnected",
            metadata=self.get_stats()
        )

    def is_connected(self) -> bool:
        return self._connected.is_set()

    @abstractmethod
    def format_message(self, *args, **kwargs) -> Dict[str, Any]:
        """
        Format a domain object as a JSON-compatible dict.

        Raises:
            ValueError: If the object cannot be serialized
        """
        raise NotImplementedError("Subclasses must implement format_message()")

    def publish(
        self,
        message_data: Dict[str, Any],
        retain: bool = False,
        topic: Optional[str] = None
    ) -> bool:
        """
        Publish one pre-formatted message.

        Args:
            message_data: Message dictionary (already formatted)
            retain: MQTT retain flag (default: False)
            topic: Override for the default topic

        Returns:
            True once the broker accepted the message (acknowledged for
            QoS >= 1), False otherwise
        """
        target = topic or self.topic

        if not self._connected.is_set():
            self.logger.warning(
                event=LogEvent.MQTT_PUBLISH_FAILED,
                message="Cannot publish: not connected to broker",
                metadata={'topic': target}
            )
            self._record_failure()
            return False

        try:
            info = self.client.publish(
                topic=target,
                payload=json.dumps(message_data),
                qos=self.qos,
                retain=retain
            )
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                self.logger.warning(
                    event=LogEvent.MQTT_PUBLISH_FAILED,
                    message=f"Publish failed ({mqtt.error_string(info.rc)})",
                    metadata={'topic': target}
                )
                self._record_failure()
                return False

            if self.qos > 0:
                info.wait_for_publish(timeout=self.ack_timeout)
                if not info.is_published():
                    self.logger.warning(
                        event=LogEvent.MQTT_PUBLISH_FAILED,
                        message="Broker did not acknowledge message in time",
                        metadata={'topic': target, 'ack_timeout': self.ack_timeout, 'mid': info.mid}
                    )
                    with self._stats_lock:
                        self._unacked_count += 1
                    self._record_failure()
                    return False

        except (RuntimeError, ValueError, TypeError) as e:
            # RuntimeError: paho gave up on the message (connection lost)
            self.logger.error(
                event=LogEvent.MQTT_PUBLISH_ERROR,
                message="Error publishing message",
                exc_info=e,
                metadata={'topic': target}
            )
            self._record_failure()
            return False

        with self._stats_lock:
            self._message_count += 1
            count = self._message_count

        self.logger.debug(
            event=LogEvent.MQTT_PUBLISH_SUCCESS,
            message="Published message",
            metadata={'topic': target, 'message_count': count, 'qos': self.qos}
        )
        return True

    def _record_failure(self) -> None:
        with self._stats_lock:
            self._failed_count += 1

    def get_stats(self) -> Dict[str, Any]:
        """Delivered / failed / unacknowledged counts and connection state."""
        with self._stats_lock:
            return {
                'message_count': self._message_count,
                'failed_count': self._failed_count,
                'unacked_count': self._unacked_count,
                'connected': self._connected.is_set(),
                'topic': self.topic,
                'broker': self.broker
            }
