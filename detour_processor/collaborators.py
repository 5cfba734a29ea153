"""
Collaborators - Ports the processor depends on, plus simple adapters.

Bounded Context: Data acquisition and persistence boundaries

The processor never talks to a feed, a database or a broker directly. It
depends on these protocols:

    VehiclePositionFeed.fetch()              -> List[VehiclePosition]
    RouteShapeStore.get_shape(route_id)      -> Optional[List[GeoPoint]]
    DetourStore.get / put / delete / list_active / list_all
    EventSink.emit(event)                    -> bool
    ServiceAlertFeed.fetch()                 -> List[ServiceAlert]
    StopStore.stops_for_route(route_id)      -> List[Stop]

Adapters:
    - InMemory*: tests and demos
    - JsonFile*: read JSON documents from disk on every call, so another
      process can drop fresh data next to the service
    - detour_mqtt.DetourEventPublisher: production EventSink

Thread Safety:
    In-memory stores guard their dicts with a lock; routes are processed
    in parallel worker threads.
"""

import json
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from detour_engine.analytics.context import ServiceAlert, Stop
from detour_engine.analytics.document import Detour, DetourState
from detour_engine.analytics.tracker import VehiclePosition
from detour_engine.geometry.shapes import GeoPoint, polyline_from_list
from detour_mqtt.schemas import DetourEvent

from detour_processor.config import normalize_route_id


# ─────────────────────────────────────────────────────────────────────────
# Protocols
# ─────────────────────────────────────────────────────────────────────────


class VehiclePositionFeed(Protocol):
    def fetch(self) -> List[VehiclePosition]:
        ...


class RouteShapeStore(Protocol):
    def get_shape(self, route_id: str) -> Optional[List[GeoPoint]]:
        ...


class DetourStore(Protocol):
    def get(self, route_id: str) -> Optional[Detour]:
        ...

    def put(self, detour: Detour) -> None:
        ...

    def delete(self, route_id: str) -> None:
        ...

    def list_active(self) -> List[Detour]:
        ...

    def list_all(self) -> List[Detour]:
        ...


class EventSink(Protocol):
    def emit(self, event: DetourEvent) -> bool:
        ...


class ServiceAlertFeed(Protocol):
    def fetch(self) -> List[ServiceAlert]:
        ...


class StopStore(Protocol):
    def stops_for_route(self, route_id: str) -> List[Stop]:
        ...


# ─────────────────────────────────────────────────────────────────────────
# In-memory adapters
# ─────────────────────────────────────────────────────────────────────────


class InMemoryPositionFeed:
    """Returns the current snapshot of positions on every fetch."""

    def __init__(self, positions: Optional[Iterable[VehiclePosition]] = None):
        self._positions: List[VehiclePosition] = list(positions or [])
        self._lock = threading.Lock()

    def set_positions(self, positions: Iterable[VehiclePosition]) -> None:
        with self._lock:
            self._positions = list(positions)

    def fetch(self) -> List[VehiclePosition]:
        with self._lock:
            return list(self._positions)


class InMemoryShapeStore:
    """Route shapes keyed by normalized route id."""

    def __init__(self, shapes: Optional[Dict[str, Sequence[GeoPoint]]] = None):
        self._shapes: Dict[str, List[GeoPoint]] = {}
        for route_id, shape in (shapes or {}).items():
            self.set_shape(route_id, shape)

    def set_shape(self, route_id: str, shape: Sequence[GeoPoint]) -> None:
        self._shapes[normalize_route_id(route_id)] = list(shape)

    def get_shape(self, route_id: str) -> Optional[List[GeoPoint]]:
        shape = self._shapes.get(normalize_route_id(route_id))
        return list(shape) if shape is not None else None

    def route_ids(self) -> List[str]:
        return sorted(self._shapes)

    @classmethod
    def from_json_file(cls, path: Path) -> "InMemoryShapeStore":
        """
        Load ``{"8A": [{"lat": .., "lon": ..}, ...], ...}``.

        Raises:
            ValueError: If a point is malformed
        """
        with open(path) as f:
            data = json.load(f) or {}
        return cls({route_id: polyline_from_list(points) for route_id, points in data.items()})


class InMemoryDetourStore:
    """Detour documents keyed by route id."""

    def __init__(self):
        self._docs: Dict[str, Detour] = {}
        self._lock = threading.Lock()

    def get(self, route_id: str) -> Optional[Detour]:
        with self._lock:
            return self._docs.get(route_id)

    def put(self, detour: Detour) -> None:
        with self._lock:
            self._docs[detour.route_id] = detour

    def delete(self, route_id: str) -> None:
        with self._lock:
            self._docs.pop(route_id, None)

    def list_active(self) -> List[Detour]:
        """Stored documents that are not cleared."""
        return [detour for detour in self.list_all() if detour.state != DetourState.CLEARED]

    def list_all(self) -> List[Detour]:
        """Every stored document (cleared ones stay until retired)."""
        with self._lock:
            return [self._docs[route_id] for route_id in sorted(self._docs)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._docs)


class CollectingEventSink:
    """Keeps emitted events in memory. ``accept=False`` rejects everything."""

    def __init__(self, accept: bool = True):
        self.accept = accept
        self.events: List[DetourEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: DetourEvent) -> bool:
        if not self.accept:
            return False
        with self._lock:
            self.events.append(event)
        return True

    def of_type(self, event_type) -> List[DetourEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]


class InMemoryAlertFeed:
    def __init__(self, alerts: Optional[Iterable[ServiceAlert]] = None):
        self.alerts: List[ServiceAlert] = list(alerts or [])

    def fetch(self) -> List[ServiceAlert]:
        return list(self.alerts)


class InMemoryStopStore:
    """Stops keyed by normalized route id."""

    def __init__(self, stops: Optional[Dict[str, Sequence[Stop]]] = None):
        self._stops: Dict[str, List[Stop]] = {
            normalize_route_id(route_id): list(route_stops)
            for route_id, route_stops in (stops or {}).items()
        }

    def stops_for_route(self, route_id: str) -> List[Stop]:
        return list(self._stops.get(normalize_route_id(route_id), []))

    @classmethod
    def from_json_file(cls, path: Path) -> "InMemoryStopStore":
        """Load ``{"8A": [{"stopId": .., "name": .., "lat": .., "lon": ..}], ...}``."""
        with open(path) as f:
            data = json.load(f) or {}
        return cls({
            route_id: [Stop.from_dict(s) for s in stops]
            for route_id, stops in data.items()
        })


# ─────────────────────────────────────────────────────────────────────────
# JSON file adapters (re-read on every fetch)
# ─────────────────────────────────────────────────────────────────────────


class JsonFilePositionFeed:
    """
    Reads a JSON list of position records on every fetch.

    A missing file yields no positions. A malformed file raises, which the
    service records as a failed tick.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def fetch(self) -> List[VehiclePosition]:
        if not self.path.exists():
            return []
        with open(self.path) as f:
            records = json.load(f) or []
        return [VehiclePosition.from_dict(r) for r in records]


class JsonFileAlertFeed:
    """Reads a JSON list of alert records on every fetch."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def fetch(self) -> List[ServiceAlert]:
        if not self.path.exists():
            return []
        with open(self.path) as f:
            records = json.load(f) or []
        return [ServiceAlert.from_dict(r) for r in records]
