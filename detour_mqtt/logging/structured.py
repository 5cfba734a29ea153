"""
Detour JSON Logs
================

Bounded Context: Observability Infrastructure

One JSON document per line for the detour processor, its publishers and
the watcher CLI.

Entry layout:
    timestamp   ISO-8601, UTC
    level       DEBUG / INFO / WARNING / ERROR
    component   e.g. "detour_processor", "detour_publisher"
    event       LogEvent value ("detour.transition", "mqtt.connected", ...)
    route_id    top level whenever known, so a single route's history is
                one filter away in the aggregator
    message     human-readable text
    metadata    anything else (omitted when empty)
    exception   {"type", "message"} for errors

Route binding:
    for_route("8A") returns a logger that stamps route_id on every entry.
    Route workers log through it so nobody has to repeat the id in
    metadata.

Example:
    >>> log = create_logger("detour_processor").for_route("8A")
    >>> log.transition("active", "clear-pending", reason="vehicle back on skipped segment")

Output:
    {"timestamp": "2025-10-24T15:30:45.123456+00:00", "level": "INFO",
     "component": "detour_processor", "event": "detour.transition",
     "route_id": "8A", "message": "Route 8A: active -> clear-pending",
     "metadata": {"from": "active", "to": "clear-pending",
                  "reason": "vehicle back on skipped segment"}}
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .events import LogEvent

_LOGGER_PREFIX = "detour"


def build_entry(
    level: str,
    component: str,
    event: LogEvent,
    message: str,
    route_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    exc: Optional[BaseException] = None
) -> Dict[str, Any]:
    """
    Assemble one log entry.

    A ``route_id`` found in metadata is lifted to the top level (the
    explicit argument wins).
    """
    extra = dict(metadata or {})
    lifted = extra.pop('route_id', None)
    route = route_id if route_id is not None else lifted

    entry: Dict[str, Any] = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'level': level,
        'component': component,
        'event': event.value,
    }
    if route is not None:
        entry['route_id'] = route
    entry['message'] = message
    if extra:
        entry['metadata'] = extra
    if exc is not None:
        entry['exception'] = {'type': type(exc).__name__, 'message': str(exc)}
    return entry


class StructuredLogger:
    """
    JSON line logger for one component, optionally bound to a route.

    Route-bound loggers from for_route() share the component's stdlib
    logger (and therefore its level and handler).

    Thread Safety:
        Thread-safe via Python's logging module.
    """

    def __init__(
        self,
        component: str,
        level: int = logging.INFO,
        logger_name: Optional[str] = None,
        route_id: Optional[str] = None
    ):
        """
        Args:
            component: Component name stamped on every entry
            level: Logging level (default: INFO)
            logger_name: stdlib logger name (default: detour.<component>)
            route_id: Route stamped on every entry (see for_route())
        """
        self.component = component
        self.route_id = route_id
        self.logger_name = logger_name or f"{_LOGGER_PREFIX}.{component}"
        self.logger = logging.getLogger(self.logger_name)
        if route_id is None:
            self.logger.setLevel(level)

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(JSONFormatter())
            self.logger.addHandler(handler)
            self.logger.propagate = False

    def for_route(self, route_id: str) -> 'StructuredLogger':
        """Logger that stamps ``route_id`` on every entry."""
        return StructuredLogger(
            component=self.component,
            logger_name=self.logger_name,
            route_id=route_id,
        )

    def _emit(
        self,
        level: int,
        event: LogEvent,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        exc: Optional[BaseException] = None
    ) -> None:
        if not self.logger.isEnabledFor(level):
            return
        entry = build_entry(
            logging.getLevelName(level),
            self.component,
            event,
            message,
            route_id=self.route_id,
            metadata=metadata,
            exc=exc,
        )
        self.logger.log(
            level,
            json.dumps(entry, default=str),
            exc_info=exc if level >= logging.ERROR else None
        )

    def debug(
        self,
        event: LogEvent,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        self._emit(logging.DEBUG, event, message, metadata)

    def info(
        self,
        event: LogEvent,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        self._emit(logging.INFO, event, message, metadata)

    def warning(
        self,
        event: LogEvent,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        self._emit(logging.WARNING, event, message, metadata)

    def error(
        self,
        event: LogEvent,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        exc_info: Optional[BaseException] = None
    ) -> None:
        """ERROR entry; ``exc_info`` adds the exception summary and traceback."""
        self._emit(logging.ERROR, event, message, metadata, exc_info)

    # ─────────────────────────────────────────────────────────────────────
    # Detour lifecycle entries
    # ─────────────────────────────────────────────────────────────────────

    def transition(
        self,
        from_state: Optional[str],
        to_state: Optional[str],
        reason: str = "",
        at_ms: Optional[int] = None
    ) -> None:
        """
        One detour state change of the bound route.

        None stands for "no detour" on either side.
        """
        source = from_state or 'none'
        target = to_state or 'none'
        metadata: Dict[str, Any] = {'from': from_state, 'to': to_state}
        if reason:
            metadata['reason'] = reason
        if at_ms is not None:
            metadata['at'] = at_ms
        self.info(
            event=LogEvent.DETOUR_TRANSITION,
            message=f"Route {self.route_id}: {source} -> {target}",
            metadata=metadata,
        )

    def archived(self, reason: str, state: Optional[str] = None) -> None:
        """Bound route's detour left the live set (cleared, expired, ...)."""
        metadata: Dict[str, Any] = {'reason': reason}
        if state is not None:
            metadata['last_state'] = state
        self.info(
            event=LogEvent.DETOUR_ARCHIVED,
            message=f"Route {self.route_id} archived ({reason})",
            metadata=metadata,
        )

    def set_level(self, level: int) -> None:
        """Change the component's level (route-bound loggers follow)."""
        self.logger.setLevel(level)


class JSONFormatter(logging.Formatter):
    """Entries are already JSON; emit the message untouched."""

    def format(self, record: logging.LogRecord) -> str:
        return record.getMessage()


def create_logger(component: str, level: int = logging.INFO) -> StructuredLogger:
    """
    Component logger, e.g. create_logger("detour_publisher").

    Loggers for the same component share one stdlib logger.
    """
    return StructuredLogger(component=component, level=level)
