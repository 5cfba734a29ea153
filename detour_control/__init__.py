"""
detour_control - Control Plane for the detour processor

Bounded Context: MQTT-based command-and-control
Responsibilities:
  - MQTT connection management (Control Plane)
  - Command registration and validation
  - Command execution delegation

Architecture:
  - CommandRegistry: Explicit registration pattern
  - MQTTControlPlane: MQTT client + command reception
  - QoS 1 for control commands, retained status
"""

from .registry import CommandRegistry, CommandNotAvailableError, normalize_command
from .plane import MQTTControlPlane

__all__ = [
    "CommandRegistry",
    "CommandNotAvailableError",
    "normalize_command",
    "MQTTControlPlane",
]
