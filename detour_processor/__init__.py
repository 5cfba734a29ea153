"""
detour_processor - Detour Processing Service

This package provides the polling service that feeds vehicle positions
through per-route detour state machines, persists the resulting
documents and publishes lifecycle events.

Architecture:
- DetourProcessorService: Main orchestrator (poll thread + route workers)
- RouteDetourRegistry: Per-route state machines, locks and history
- DetourPublisher: Snapshot diffing, geometry throttling, events
- DetourConfig: Configuration management (YAML)
- collaborators: Feed/store/sink protocols and simple adapters

Threading Model:
- Poll Thread (our thread)
- Route Workers (ThreadPoolExecutor)
- Control Plane Thread (paho-mqtt internal for commands)
"""

from detour_processor.config import DetourConfig, MQTTConfig, PublisherConfig, RouteOverride
from detour_processor.publisher import DetourPublisher, EventDeliveryError, GeometryWriteLedger
from detour_processor.registry import RouteDetourRegistry
from detour_processor.service import DetourProcessorService, TickReport

__all__ = [
    "DetourConfig",
    "MQTTConfig",
    "PublisherConfig",
    "RouteOverride",
    "DetourPublisher",
    "EventDeliveryError",
    "GeometryWriteLedger",
    "RouteDetourRegistry",
    "DetourProcessorService",
    "TickReport",
]
