"""Tests for logging setup and deployment events."""

import logging
from pathlib import Path
from unittest.mock import MagicMock

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


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_file_handler_not_duplicated(self, tmp_path: Path) -> None:
        """Should replace its file handler on repeated setup."""
        log_file = tmp_path / "logs" / "clusterup.log"

        setup_logging("DEBUG", log_file)
        setup_logging("INFO", log_file)

        root = logging.getLogger()
        handlers = [h for h in root.handlers if h.get_name() == "clusterup-file"]
        try:
            assert len(handlers) == 1
            assert log_file.parent.exists()
        finally:
            for handler in handlers:
                root.removeHandler(handler)
                handler.close()

    def test_quiets_paramiko(self) -> None:
        """Should keep paramiko at WARNING or above."""
        setup_logging("DEBUG")
        assert logging.getLogger("paramiko").level >= logging.WARNING

    def test_get_logger(self) -> None:
        """Should return a usable structured logger."""
        logger = get_logger("clusterup.test")
        logger.info("test message", key="value")

    def test_context_helpers(self) -> None:
        """Should bind and unbind context without error."""
        bind_context(run_id="abc123")
        unbind_context("run_id")
        clear_context()


class TestTelemetryEvent:
    """Tests for TelemetryEvent."""

    def test_to_dict(self) -> None:
        """Should serialize all fields."""
        event = TelemetryEvent(
            event_type=EventType.NODE_JOINED,
            run_id="run-1",
            node_id="worker-1",
            data={"status": "success"},
        )

        d = event.to_dict()

        assert d["event_type"] == "node_joined"
        assert d["run_id"] == "run-1"
        assert d["node_id"] == "worker-1"
        assert d["data"] == {"status": "success"}
        assert d["event_id"]


class TestEventEmitter:
    """Tests for EventEmitter."""

    def test_singleton(self) -> None:
        """Should return the same instance."""
        assert EventEmitter() is get_event_emitter()

    def test_type_specific_handler(self) -> None:
        """Should call handlers for their event type only."""
        handler = MagicMock()
        get_event_emitter().subscribe(EventType.STEP_FAILED, handler)

        emit_event(EventType.STEP_STARTED)
        emit_event(EventType.STEP_FAILED, data={"step": "k8s_init"}, node_id="master")

        handler.assert_called_once()
        event = handler.call_args[0][0]
        assert event.data == {"step": "k8s_init"}
        assert event.node_id == "master"

    def test_global_handler(self) -> None:
        """Should call global handlers for every event."""
        seen = []
        get_event_emitter().subscribe(None, lambda e: seen.append(e.event_type))

        emit_event(EventType.DEPLOY_STARTED)
        emit_event(EventType.DEPLOY_COMPLETED)

        assert seen == [EventType.DEPLOY_STARTED, EventType.DEPLOY_COMPLETED]

    def test_handler_error_isolated(self) -> None:
        """Should keep delivering when a handler raises."""
        emitter = get_event_emitter()
        failing = MagicMock(side_effect=RuntimeError("boom"))
        working = MagicMock()
        emitter.subscribe(None, failing)
        emitter.subscribe(None, working)

        emit_event(EventType.JOIN_RESOLVED)

        working.assert_called_once()

    def test_unsubscribe(self) -> None:
        """Should stop delivering after unsubscribe."""
        emitter = get_event_emitter()
        handler = MagicMock()
        emitter.subscribe(EventType.NODE_JOINED, handler)

        assert emitter.unsubscribe(EventType.NODE_JOINED, handler) is True
        assert emitter.unsubscribe(EventType.NODE_JOINED, handler) is False

        emit_event(EventType.NODE_JOINED)
        handler.assert_not_called()
