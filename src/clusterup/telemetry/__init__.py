"""Logging and deployment events."""

from clusterup.telemetry.events import (
    EventEmitter,
    EventType,
    TelemetryEvent,
    emit_event,
    get_event_emitter,
)
from clusterup.telemetry.logger import (
    bind_context,
    clear_context,
    get_logger,
    setup_logging,
    unbind_context,
)

__all__ = [
    "EventEmitter",
    "EventType",
    "TelemetryEvent",
    "emit_event",
    "get_event_emitter",
    "bind_context",
    "clear_context",
    "get_logger",
    "setup_logging",
    "unbind_context",
]
