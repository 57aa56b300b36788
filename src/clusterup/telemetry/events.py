"""Deployment lifecycle events.

Subscribers (the CLI, exporters, tests) get notified as a deployment run
progresses. Handlers run synchronously on the emitting thread, which for
join events is a fan-out worker, so they must be quick and thread-safe.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from clusterup.telemetry.logger import get_logger

logger = get_logger(__name__)


class EventType(Enum):
    """Types of deployment events."""

    # Run lifecycle
    DEPLOY_STARTED = "deploy_started"
    DEPLOY_COMPLETED = "deploy_completed"
    DEPLOY_FAILED = "deploy_failed"
    DEPLOY_CANCELLED = "deploy_cancelled"

    # Per-node steps
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_SKIPPED = "step_skipped"

    # Join phase
    JOIN_RESOLVED = "join_resolved"
    NODE_JOINED = "node_joined"
    NODE_JOIN_FAILED = "node_join_failed"

    # Script resolution
    SCRIPT_REJECTED = "script_rejected"


@dataclass
class TelemetryEvent:
    """A deployment event.

    Attributes:
        event_type: Type of event
        timestamp: When the event occurred
        event_id: Unique event identifier
        run_id: Deployment run the event belongs to
        node_id: Node the event concerns, if any
        data: Event-specific data
    """

    event_type: EventType
    timestamp: datetime = field(default_factory=datetime.now)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    run_id: Optional[str] = None
    node_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for serialization."""
        return {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "event_id": self.event_id,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "data": self.data,
        }


EventHandler = Callable[[TelemetryEvent], None]


class EventEmitter:
    """Distributes deployment events to subscribed handlers.

    Example:
        emitter = EventEmitter()
        emitter.subscribe(EventType.NODE_JOINED, lambda e: print(e.node_id))
        emitter.emit(TelemetryEvent(EventType.NODE_JOINED, node_id="worker-1"))
    """

    _instance: Optional["EventEmitter"] = None
    _instance_lock = threading.Lock()

    def __new__(cls) -> "EventEmitter":
        """Singleton pattern for the process-wide emitter."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return

        self._handlers: dict[EventType, list[EventHandler]] = {}
        self._global_handlers: list[EventHandler] = []
        self._lock = threading.Lock()
        self._initialized = True

        logger.debug("EventEmitter initialized")

    def subscribe(
        self,
        event_type: Optional[EventType],
        handler: EventHandler,
    ) -> None:
        """Subscribe to events of a specific type.

        Args:
            event_type: Type of event to subscribe to (None for all events)
            handler: Handler function
        """
        with self._lock:
            if event_type is None:
                self._global_handlers.append(handler)
            else:
                self._handlers.setdefault(event_type, []).append(handler)

        logger.debug(
            "Handler subscribed",
            event_type=event_type.value if event_type else "all",
        )

    def unsubscribe(
        self,
        event_type: Optional[EventType],
        handler: EventHandler,
    ) -> bool:
        """Unsubscribe a handler.

        Returns:
            True if handler was removed
        """
        with self._lock:
            try:
                if event_type is None:
                    self._global_handlers.remove(handler)
                else:
                    self._handlers.get(event_type, []).remove(handler)
                return True
            except ValueError:
                return False

    def emit(self, event: TelemetryEvent) -> None:
        """Emit an event to global and type-specific handlers.

        Handler errors are logged and never reach the emitter's caller.
        """
        with self._lock:
            handlers = [
                *self._global_handlers,
                *self._handlers.get(event.event_type, []),
            ]

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    "Event handler error",
                    handler=getattr(handler, "__name__", repr(handler)),
                    event_type=event.event_type.value,
                    error=str(e),
                )

    def clear_handlers(self, event_type: Optional[EventType] = None) -> None:
        """Clear handlers for an event type (None clears all handlers)."""
        with self._lock:
            if event_type is None:
                self._handlers.clear()
                self._global_handlers.clear()
            else:
                self._handlers.pop(event_type, None)


def get_event_emitter() -> EventEmitter:
    """Get the process-wide event emitter."""
    return EventEmitter()


def emit_event(
    event_type: EventType,
    data: Optional[dict[str, Any]] = None,
    run_id: Optional[str] = None,
    node_id: Optional[str] = None,
) -> TelemetryEvent:
    """Convenience function to emit an event.

    Args:
        event_type: Type of event
        data: Event data
        run_id: Deployment run identifier
        node_id: Node identifier

    Returns:
        The emitted event
    """
    event = TelemetryEvent(
        event_type=event_type,
        data=data or {},
        run_id=run_id,
        node_id=node_id,
    )
    get_event_emitter().emit(event)
    return event
