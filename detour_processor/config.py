"""
Configuration schema for the detour processor service.

This module defines the configuration structure for the processor:
global detection thresholds, per-route overrides, publication settings,
MQTT settings and optional JSON data sources.

Route overrides are resolved field by field:
    exact route ("8A") → base route ("8") → global default
"""

import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from detour_engine.analytics.confidence import ConfidenceThresholds
from detour_engine.analytics.context import (
    DEFAULT_MAX_AFFECTED_STOPS,
    DEFAULT_STOP_MATCH_RADIUS_METERS,
)
from detour_engine.analytics.lifecycle import DetourThresholds

_DIGIT_RUN_RE = re.compile(r"\d+")


def normalize_route_id(route_id: Any) -> str:
    """Trimmed, upper-case route id ("" for None)."""
    if route_id is None:
        return ""
    return str(route_id).strip().upper()


def base_route_id(route_id: Any) -> Optional[str]:
    """
    Base route of a branch ("8A" → "8", "X1" → "1", "08A" → "8").

    The first run of digits anywhere in the id, leading zeros stripped
    ("00" → "0").

    Returns:
        The base route, or None when the id has no digits or already is
        its own base.
    """
    normalized = normalize_route_id(route_id)
    match = _DIGIT_RUN_RE.search(normalized)
    if match is None:
        return None
    base = match.group(0).lstrip("0") or "0"
    if base == normalized:
        return None
    return base


@dataclass(frozen=True)
class RouteOverride:
    """
    Per-route threshold overrides. Unset fields fall through.

    Field names mirror DetourThresholds.
    """

    off_route_threshold_meters: Optional[float] = None
    corridor_width_meters: Optional[float] = None
    path_overlap_percentage: Optional[float] = None
    min_off_route_points: Optional[int] = None
    min_off_route_duration_ms: Optional[int] = None
    min_off_route_path_meters: Optional[float] = None
    min_clearing_vehicles: Optional[int] = None
    min_on_route_duration_ms: Optional[int] = None
    clear_grace_ms: Optional[int] = None
    clearing_evidence_window_ms: Optional[int] = None
    pending_path_expiry_ms: Optional[int] = None
    detour_expiry_ms: Optional[int] = None
    cleared_detour_retention_ms: Optional[int] = None
    max_detour_retention_ms: Optional[int] = None

    def __post_init__(self):
        """Validate override values by building thresholds from them."""
        DetourThresholds(**self.as_threshold_kwargs())

    def as_threshold_kwargs(self) -> Dict[str, Any]:
        """Only the fields that are set."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RouteOverride":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown route override fields: {sorted(unknown)}")
        return cls(**data)


@dataclass(frozen=True)
class PublisherConfig:
    """Publication and enrichment settings."""

    geometry_write_throttle_ms: int = 120_000
    geometry_point_change_threshold: int = 5
    confidence_thresholds: ConfidenceThresholds = field(default_factory=ConfidenceThresholds)
    stop_match_radius_meters: float = DEFAULT_STOP_MATCH_RADIUS_METERS
    max_affected_stops: int = DEFAULT_MAX_AFFECTED_STOPS
    detour_history_limit: int = 100
    event_source: str = "detour-engine"

    def __post_init__(self):
        """Validate publisher configuration."""
        if self.geometry_write_throttle_ms < 0:
            raise ValueError(
                f"geometry_write_throttle_ms must be >= 0, got {self.geometry_write_throttle_ms}"
            )
        if self.geometry_point_change_threshold < 1:
            raise ValueError(
                f"geometry_point_change_threshold must be >= 1, "
                f"got {self.geometry_point_change_threshold}"
            )
        if self.stop_match_radius_meters <= 0:
            raise ValueError(
                f"stop_match_radius_meters must be > 0, got {self.stop_match_radius_meters}"
            )
        if self.max_affected_stops < 0:
            raise ValueError(
                f"max_affected_stops must be >= 0, got {self.max_affected_stops}"
            )
        if self.detour_history_limit < 1:
            raise ValueError(
                f"detour_history_limit must be >= 1, got {self.detour_history_limit}"
            )


@dataclass(frozen=True)
class MQTTConfig:
    """MQTT broker configuration."""

    broker: str = "localhost"
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    qos: int = 1  # Events are one-shot: at-least-once

    event_topic: str = "detours/{service_id}/events"
    command_topic: str = "detours/{service_id}/control/commands"
    status_topic: str = "detours/{service_id}/control/status"

    def __post_init__(self):
        """Validate MQTT configuration."""
        if not self.broker:
            raise ValueError("MQTT broker cannot be empty")

        if not 1 <= self.port <= 65535:
            raise ValueError(
                f"MQTT port must be in [1, 65535], got {self.port}"
            )

        if self.qos not in {0, 1, 2}:
            raise ValueError(
                f"MQTT QoS must be 0, 1, or 2, got {self.qos}"
            )

    def topics(self, service_id: str) -> Dict[str, str]:
        """Topic templates formatted for one service."""
        return {
            "events": self.event_topic.format(service_id=service_id),
            "commands": self.command_topic.format(service_id=service_id),
            "status": self.status_topic.format(service_id=service_id),
        }


@dataclass(frozen=True)
class DataSourcesConfig:
    """
    JSON files backing the file-based collaborators.

    Any unset path falls back to an empty in-memory collaborator.
    """

    positions_file: Optional[Path] = None
    shapes_file: Optional[Path] = None
    stops_file: Optional[Path] = None
    alerts_file: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataSourcesConfig":
        def path(key: str) -> Optional[Path]:
            value = data.get(key)
            return Path(value) if value else None

        return cls(
            positions_file=path("positions_file"),
            shapes_file=path("shapes_file"),
            stops_file=path("stops_file"),
            alerts_file=path("alerts_file"),
        )


@dataclass(frozen=True)
class DetourConfig:
    """
    Main configuration for the detour processor service.

    This configuration is loaded from YAML and validated at startup.
    Immutable after construction (frozen dataclass).
    """

    # Service identification
    service_id: str

    # Polling
    poll_interval_seconds: float = 30.0
    max_workers: int = 4

    # Detection
    thresholds: DetourThresholds = field(default_factory=DetourThresholds)
    route_overrides: Dict[str, RouteOverride] = field(default_factory=dict)

    # Publication
    publisher: PublisherConfig = field(default_factory=PublisherConfig)

    # Transport (None = run without MQTT)
    mqtt_config: Optional[MQTTConfig] = None

    data_sources: DataSourcesConfig = field(default_factory=DataSourcesConfig)

    def __post_init__(self):
        """Validate processor configuration."""
        if not self.service_id:
            raise ValueError("service_id cannot be empty")

        if self.poll_interval_seconds <= 0:
            raise ValueError(
                f"poll_interval_seconds must be > 0, got {self.poll_interval_seconds}"
            )

        if not 1 <= self.max_workers <= 64:
            raise ValueError(
                f"max_workers must be in [1, 64], got {self.max_workers}"
            )

        for route_id in self.route_overrides:
            if route_id != normalize_route_id(route_id) or not route_id:
                raise ValueError(
                    f"route_overrides keys must be normalized route ids, got {route_id!r}"
                )

    def resolve_route_thresholds(self, route_id: str) -> DetourThresholds:
        """
        Effective thresholds for one route.

        Each field resolves independently: exact route override, then
        base-route override, then the global value.

        Example:
            route_overrides = {"8": {corridor_width_meters: 80},
                               "8A": {min_off_route_points: 5}}
            "8A" → corridor 80 (from "8"), min points 5 (from "8A")
        """
        resolved: Dict[str, Any] = {}
        normalized = normalize_route_id(route_id)
        chain = [self.route_overrides.get(normalized)]
        base = base_route_id(normalized)
        if base is not None:
            chain.append(self.route_overrides.get(base))

        for f in fields(DetourThresholds):
            for override in chain:
                if override is None:
                    continue
                value = getattr(override, f.name)
                if value is not None:
                    resolved[f.name] = value
                    break
            else:
                resolved[f.name] = getattr(self.thresholds, f.name)

        return DetourThresholds(**resolved)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetourConfig":
        """Build from a parsed YAML mapping."""
        thresholds = DetourThresholds(**(data.get("thresholds") or {}))

        overrides = {
            normalize_route_id(route_id): RouteOverride.from_dict(values or {})
            for route_id, values in (data.get("route_overrides") or {}).items()
        }

        publisher_data = dict(data.get("publisher") or {})
        confidence_data = publisher_data.pop("confidence_thresholds", None) or {}
        publisher = PublisherConfig(
            confidence_thresholds=ConfidenceThresholds(**confidence_data),
            **publisher_data,
        )

        mqtt_data = data.get("mqtt_config")
        mqtt_config = MQTTConfig(**mqtt_data) if mqtt_data else None

        return cls(
            service_id=data["service_id"],
            poll_interval_seconds=float(data.get("poll_interval_seconds", 30.0)),
            max_workers=int(data.get("max_workers", 4)),
            thresholds=thresholds,
            route_overrides=overrides,
            publisher=publisher,
            mqtt_config=mqtt_config,
            data_sources=DataSourcesConfig.from_dict(data.get("data_sources") or {}),
        )

    @classmethod
    def from_yaml(cls, yaml_path: Path) -> "DetourConfig":
        """
        Load configuration from YAML file.

        Example YAML:
            service_id: "barrie_transit"
            poll_interval_seconds: 30
            max_workers: 4

            thresholds:
              off_route_threshold_meters: 50
              min_off_route_points: 3

            route_overrides:
              "8":
                corridor_width_meters: 80
              "8A":
                min_off_route_points: 5

            publisher:
              geometry_write_throttle_ms: 120000
              confidence_thresholds: {likely: 70, high: 85}

            mqtt_config:
              broker: "localhost"
              port: 1883
        """
        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        if "service_id" not in data:
            raise ValueError(f"service_id missing in {yaml_path}")

        return cls.from_dict(data)
