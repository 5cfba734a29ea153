"""
MQTT client wrapper for sending commands to the detour processor.

Handles MQTT connection, publishing, optional reply waiting and
disconnection.
"""

import json
import threading
from typing import Any, Dict, Optional

import paho.mqtt.client as mqtt


class MQTTCommandClient:
    """
    MQTT client for sending commands to the detour processor.

    Publishes commands to the control plane topic with QoS 1. With a
    status topic, waits for the first non-retained status message that
    follows the command (the service's reply).
    """

    def __init__(
        self,
        broker: str = "localhost",
        port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None
    ):
        self.broker = broker
        self.port = port

        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)

        if username and password:
            self.client.username_pw_set(username, password)

    def send_command(
        self,
        topic: str,
        command: Dict[str, Any],
        qos: int = 1,
        status_topic: Optional[str] = None,
        timeout: float = 5.0
    ) -> Optional[Dict[str, Any]]:
        """
        Send command to MQTT topic.

        Args:
            topic: Command topic (e.g., "detours/barrie/control/commands")
            command: Command dictionary (JSON serialized)
            qos: Quality of Service (default: 1 for control commands)
            status_topic: Wait for a reply on this topic when given
            timeout: Seconds to wait for the reply

        Returns:
            The reply status message, or None (no status topic, or timeout)

        Raises:
            ConnectionError: If unable to connect to MQTT broker
            ValueError: If command serialization fails
        """
        try:
            payload = json.dumps(command)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid command data: {e}")

        reply: Dict[str, Any] = {}
        replied = threading.Event()
        subscribed = threading.Event()

        def on_message(client, userdata, msg):
            # Retained messages predate the command
            if msg.retain:
                return
            try:
                reply.update(json.loads(msg.payload.decode('utf-8')))
            except (UnicodeDecodeError, json.JSONDecodeError):
                return
            replied.set()

        def on_subscribe(client, userdata, mid, reason_code_list, properties):
            subscribed.set()

        if status_topic:
            self.client.on_message = on_message
            self.client.on_subscribe = on_subscribe

        try:
            self.client.connect(self.broker, self.port, keepalive=60)
        except (ConnectionRefusedError, OSError):
            raise ConnectionError(
                f"Unable to connect to MQTT broker at {self.broker}:{self.port}. "
                "Is mosquitto running?"
            )

        self.client.loop_start()
        try:
            if status_topic:
                self.client.subscribe(status_topic, qos=1)
                subscribed.wait(timeout=timeout)

            result = self.client.publish(topic, payload, qos=qos)
            result.wait_for_publish(timeout=timeout)
            print(f"✅ Command sent: {command.get('command', 'unknown')}")

            if status_topic and replied.wait(timeout=timeout):
                return reply
            return None
        finally:
            self.client.loop_stop()
            self.client.disconnect()
