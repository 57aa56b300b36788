"""Concurrent join of secondary nodes.

Every secondary gets its own worker thread and its own session. Workers
report into one queue sized to the node count, and the coordinator drains
it, so one node failing never stops the others from being collected.
"""

import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from clusterup.orchestrator.builtin_scripts import JOIN_PRIME
from clusterup.orchestrator.nodes import Node
from clusterup.telemetry.events import EventType, emit_event
from clusterup.telemetry.logger import get_logger

logger = get_logger(__name__)

SessionFactory = Callable[[Node], Any]
NodeLogCallback = Callable[[Node, str], None]


class JoinStatus(str, Enum):
    """Outcome of joining one secondary."""

    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    NO_CREDENTIAL = "no_credential"


@dataclass
class JoinOutcome:
    """Per-node join outcome.

    Attributes:
        node_id: Secondary node ID
        node_name: Secondary display name
        status: Outcome
        output: Output of the join command
        error: Error message for non-success outcomes
        duration_ms: Time spent on the node
    """

    node_id: str
    node_name: str
    status: JoinStatus
    output: str = ""
    error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == JoinStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "node_id": self.node_id,
            "node_name": self.node_name,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


def no_credential_outcomes(nodes: list[Node], reason: str) -> dict[str, JoinOutcome]:
    """Outcomes for secondaries that could not join for lack of a credential."""
    return {
        node.id: JoinOutcome(
            node_id=node.id,
            node_name=node.display_name,
            status=JoinStatus.NO_CREDENTIAL,
            error=reason,
        )
        for node in nodes
    }


class FanOutCoordinator:
    """Runs the join command on all secondaries concurrently.

    Concurrency equals the number of secondaries.

    Example:
        coordinator = FanOutCoordinator(session_factory=open_session)
        outcomes = coordinator.join_all(workers, join_command, cancel_event)
        failed = [o for o in outcomes.values() if not o.success]
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        on_log: Optional[NodeLogCallback] = None,
        prime_command: Optional[str] = JOIN_PRIME,
        poll_interval: float = 0.2,
        run_id: Optional[str] = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            session_factory: Opens a session to a node; may raise DeploymentError
            on_log: Receives (node, line) for progress, from worker threads
            prime_command: Best-effort command run before joining (None to skip)
            poll_interval: How often the drain loop checks for cancellation
            run_id: Deployment run ID attached to events
        """
        self.session_factory = session_factory
        self.on_log = on_log
        self.prime_command = prime_command
        self.poll_interval = poll_interval
        self.run_id = run_id

    def join_all(
        self,
        nodes: list[Node],
        join_command: str,
        cancel: Optional[threading.Event] = None,
    ) -> dict[str, JoinOutcome]:
        """Join every node and collect per-node outcomes.

        If ``cancel`` fires while collecting, returns the outcomes gathered
        so far; workers already running finish on their own.

        Args:
            nodes: Secondary nodes
            join_command: kubeadm join command
            cancel: Cancellation signal

        Returns:
            Mapping of node ID to outcome
        """
        cancel = cancel or threading.Event()
        if not nodes:
            return {}

        results: queue.Queue[JoinOutcome] = queue.Queue(maxsize=len(nodes))
        for node in nodes:
            thread = threading.Thread(
                target=self._join_node,
                args=(node, join_command, cancel, results),
                name=f"join-{node.id}",
                daemon=True,
            )
            thread.start()

        outcomes: dict[str, JoinOutcome] = {}
        while len(outcomes) < len(nodes):
            if cancel.is_set():
                logger.warning(
                    "Join collection cancelled",
                    collected=len(outcomes),
                    expected=len(nodes),
                )
                break
            try:
                outcome = results.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            outcomes[outcome.node_id] = outcome

        # Keep anything that landed between the cancel check and now
        while len(outcomes) < len(nodes):
            try:
                outcome = results.get_nowait()
            except queue.Empty:
                break
            outcomes[outcome.node_id] = outcome

        return outcomes

    def _join_node(
        self,
        node: Node,
        join_command: str,
        cancel: threading.Event,
        results: "queue.Queue[JoinOutcome]",
    ) -> None:
        started = time.perf_counter()
        outcome = JoinOutcome(node.id, node.display_name, JoinStatus.FAILED)

        try:
            if cancel.is_set():
                outcome.status = JoinStatus.CANCELLED
                outcome.error = "Deployment cancelled before join started"
                return
            outcome = self._run_join(node, join_command)
        except Exception as e:
            # Every worker must report, whatever went wrong
            logger.error("Join worker failed", node_id=node.id, error=str(e))
            outcome.error = str(e)
        finally:
            outcome.duration_ms = (time.perf_counter() - started) * 1000
            try:
                self._report(node, outcome)
            except Exception as e:
                logger.warning("Join progress report failed", node_id=node.id, error=str(e))
            results.put(outcome)

    def _run_join(self, node: Node, join_command: str) -> JoinOutcome:
        self._log(node, "Joining cluster")
        session = self.session_factory(node)
        try:
            if self.prime_command:
                primed = session.run_buffered(self.prime_command)
                if not primed.success:
                    self._log(node, f"Warning: join prerequisites incomplete: {primed.error}")

            result = session.run_streaming(
                node.privileged(join_command), lambda line: self._log(node, line)
            )
        finally:
            session.close()

        if result.success:
            return JoinOutcome(node.id, node.display_name, JoinStatus.SUCCESS, output=result.output)
        return JoinOutcome(
            node.id,
            node.display_name,
            JoinStatus.FAILED,
            output=result.output,
            error=result.error,
        )

    def _log(self, node: Node, message: str) -> None:
        if self.on_log is not None:
            self.on_log(node, message)

    def _report(self, node: Node, outcome: JoinOutcome) -> None:
        if outcome.success:
            self._log(node, "Joined cluster")
            emit_event(EventType.NODE_JOINED, run_id=self.run_id, node_id=node.id)
        else:
            self._log(node, f"Join {outcome.status.value}: {outcome.error}")
            emit_event(
                EventType.NODE_JOIN_FAILED,
                data={"status": outcome.status.value, "error": outcome.error},
                run_id=self.run_id,
                node_id=node.id,
            )
