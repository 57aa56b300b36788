"""Cluster deployment engine.

Drives a whole deployment: validate the topology, run the common steps on
every node one after another, initialize the primary, resolve the join
command, join all secondaries concurrently and verify the cluster.

Every event lands in the run's transcript and is forwarded to the
caller's ``on_log(node_id, node_name, message)`` callback as it happens.
"""

import asyncio
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional

from clusterup.config.defaults import CLUSTER_NODE_ID, CLUSTER_NODE_NAME
from clusterup.config.schemas import ClusterUpConfig
from clusterup.orchestrator.errors import (
    DeploymentCancelled,
    DeploymentError,
    JoinCredentialUnavailable,
    NodeConnectionError,
    TopologyError,
)
from clusterup.orchestrator.fanout import (
    FanOutCoordinator,
    JoinOutcome,
    JoinStatus,
    no_credential_outcomes,
)
from clusterup.orchestrator.join import (
    JoinCommandResolver,
    JoinResolution,
    JoinSource,
    JoinWatcher,
    external_join_command,
    redact_join_command,
)
from clusterup.orchestrator.logsink import LogSink, redact_secrets
from clusterup.orchestrator.nodes import Node, NodeProvider, NodeStatus
from clusterup.orchestrator.packages import PackageCache, normalize_version
from clusterup.orchestrator.scripts import ScriptProvider, ScriptResolver
from clusterup.orchestrator.ssh import RemoteSession
from clusterup.orchestrator.steps import (
    Pipeline,
    Step,
    StepFailurePolicy,
    StepName,
    StepResult,
    StepRunner,
    StepStatus,
    parse_skip_steps,
)
from clusterup.telemetry.events import EventType, emit_event
from clusterup.telemetry.logger import bind_context, get_logger, unbind_context

logger = get_logger(__name__)

OnLog = Callable[[str, str, str], None]
SessionFactory = Callable[[Node], Any]


class Transcript:
    """Thread-safe, append-only deployment transcript."""

    def __init__(self) -> None:
        self._lines: list[str] = []
        self._lock = threading.Lock()

    def append(self, node_name: str, message: str) -> str:
        line = f"[{datetime.now():%H:%M:%S}] [{node_name}] {message}"
        with self._lock:
            self._lines.append(line)
        return line

    @property
    def lines(self) -> list[str]:
        with self._lock:
            return list(self._lines)

    def text(self) -> str:
        return "\n".join(self.lines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


@dataclass
class DeploymentRun:
    """State of one deploy() invocation; discarded when it returns.

    Attributes:
        nodes: Nodes taking part, in execution order
        version: Kubernetes version (no leading "v")
        arch: CPU architecture
        skip_steps: Steps not executed anywhere
        cancel: Cooperative cancellation signal
        on_log: Caller's progress callback
    """

    nodes: list[Node]
    version: str
    arch: str
    skip_steps: frozenset[StepName]
    cancel: threading.Event = field(default_factory=threading.Event)
    on_log: Optional[OnLog] = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    transcript: Transcript = field(default_factory=Transcript)
    step_results: list[StepResult] = field(default_factory=list)
    join_outcomes: dict[str, JoinOutcome] = field(default_factory=dict)
    join_source: Optional[JoinSource] = None
    excluded: dict[str, str] = field(default_factory=dict)
    started_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        self._log_lock = threading.Lock()

    @property
    def primary(self) -> Optional[Node]:
        return next((node for node in self.nodes if node.is_primary), None)

    @property
    def secondaries(self) -> list[Node]:
        return [node for node in self.nodes if not node.is_primary]

    def is_skipped(self, step: StepName) -> bool:
        return step in self.skip_steps

    def check_cancelled(self, where: str) -> None:
        """Raise DeploymentCancelled if the cancel signal is set."""
        if self.cancel.is_set():
            raise DeploymentCancelled(f"Deployment cancelled {where}")

    def log(self, node_id: str, node_name: str, message: str) -> None:
        """Append to the transcript and forward to the caller.

        Fan-out workers call this concurrently; the callback is invoked
        under a lock so callers see one line at a time. Bootstrap tokens and
        certificate keys are masked.
        """
        message = redact_secrets(message)
        with self._log_lock:
            self.transcript.append(node_name, message)
            if self.on_log is None:
                return
            try:
                self.on_log(node_id, node_name, message)
            except Exception as e:
                logger.warning("on_log callback failed", error=str(e))

    def log_node(self, node: Node, message: str) -> None:
        self.log(node.id, node.display_name, message)

    def log_cluster(self, message: str) -> None:
        self.log(CLUSTER_NODE_ID, CLUSTER_NODE_NAME, message)


@dataclass
class DeploymentResult:
    """What deploy() returns: the transcript plus the first fatal error.

    Attributes:
        run_id: Run identifier
        transcript: Full transcript text
        error: First fatal error, None on success
        step_results: Per-node step outcomes in execution order
        join_outcomes: Per-secondary join outcomes
        join_source: Where the join command came from
        duration_ms: Run duration in milliseconds
    """

    run_id: str
    transcript: str
    error: Optional[DeploymentError] = None
    step_results: list[StepResult] = field(default_factory=list)
    join_outcomes: dict[str, JoinOutcome] = field(default_factory=dict)
    join_source: Optional[JoinSource] = None
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        """No fatal error and every secondary joined."""
        return self.error is None and all(o.success for o in self.join_outcomes.values())

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, DeploymentCancelled)

    @property
    def failed_joins(self) -> list[JoinOutcome]:
        return [o for o in self.join_outcomes.values() if not o.success]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "run_id": self.run_id,
            "success": self.success,
            "error": str(self.error) if self.error else None,
            "error_type": type(self.error).__name__ if self.error else None,
            "step_results": [r.to_dict() for r in self.step_results],
            "join_outcomes": {k: v.to_dict() for k, v in self.join_outcomes.items()},
            "join_source": self.join_source.value if self.join_source else None,
            "duration_ms": self.duration_ms,
            "transcript": self.transcript,
        }


def validate_topology(nodes: list[Node]) -> None:
    """Check the node list can form a cluster.

    Raises:
        TopologyError: If there are no nodes, several primaries, duplicate
            IDs or an unusable node record
    """
    if not nodes:
        raise TopologyError("No nodes supplied")

    primaries = [node.id for node in nodes if node.is_primary]
    if len(primaries) > 1:
        raise TopologyError(
            f"At most one primary node is allowed, got {len(primaries)}: {', '.join(primaries)}"
        )

    seen: set[str] = set()
    for node in nodes:
        if node.id in seen:
            raise TopologyError(f"Duplicate node ID '{node.id}'", node_id=node.id)
        seen.add(node.id)
        try:
            node.validate()
        except ValueError as e:
            raise TopologyError(str(e), node_id=node.id) from e


class DeploymentEngine:
    """Deploys Kubernetes clusters over SSH.

    Collaborators are passed in explicitly, so concurrent runs with
    different stores never share hidden state.

    Example:
        engine = DeploymentEngine(
            config=load_config(),
            script_provider=ScriptStore(Path("scripts.yaml")),
            log_sink=JsonlLogSink(Path("deploy-log.jsonl")),
        )
        result = engine.deploy(nodes, version="1.29.3", arch="amd64")
        if result.error:
            print(result.transcript)
    """

    def __init__(
        self,
        config: Optional[ClusterUpConfig] = None,
        script_provider: Optional[ScriptProvider] = None,
        log_sink: Optional[LogSink] = None,
        package_cache: Optional[PackageCache] = None,
        node_provider: Optional[NodeProvider] = None,
        session_factory: Optional[SessionFactory] = None,
        pipeline: Optional[Pipeline] = None,
        sleep: Callable[[float], None] = time.sleep,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Configuration (defaults when None)
            script_provider: Script override source
            log_sink: Receives an entry per remote command
            package_cache: Source of pre-staged Kubernetes binaries
            node_provider: Inventory, used to resolve node IDs and record status
            session_factory: Opens a session to a node (SSH by default)
            pipeline: Step configuration (default pipeline when None)
            sleep: Delay function, replaceable in tests
            environ: Environment for the external join credential
        """
        self.config = config or ClusterUpConfig()
        self.script_provider = script_provider
        self.log_sink = log_sink
        self.package_cache = package_cache
        self.node_provider = node_provider
        self.session_factory: SessionFactory = session_factory or self._connect
        self.pipeline = pipeline or Pipeline()
        self.sleep = sleep
        self.environ = environ

    def _connect(self, node: Node) -> RemoteSession:
        return RemoteSession.connect(
            node,
            connect_timeout=self.config.ssh.connect_timeout,
            command_timeout=self.config.ssh.command_timeout,
            log_sink=self.log_sink,
        )

    def resolve_nodes(self, node_ids: Optional[Iterable[str]] = None) -> list[Node]:
        """Look up nodes in the inventory (all nodes when no IDs are given).

        Raises:
            TopologyError: If there is no inventory or an ID is unknown
        """
        if self.node_provider is None:
            raise TopologyError("No node inventory configured")
        if node_ids is None:
            return self.node_provider.list_nodes()

        nodes = []
        for node_id in node_ids:
            node = self.node_provider.get_node(node_id)
            if node is None:
                raise TopologyError(f"Unknown node '{node_id}'", node_id=node_id)
            nodes.append(node)
        return nodes

    def deploy(
        self,
        nodes: list[Node],
        version: Optional[str] = None,
        arch: Optional[str] = None,
        skip_steps: Optional[Iterable[str]] = None,
        cancel: Optional[threading.Event] = None,
        on_log: Optional[OnLog] = None,
    ) -> DeploymentResult:
        """Deploy a cluster onto the given nodes.

        Never raises for deployment failures: the result carries the full
        transcript and the first fatal error.

        Args:
            nodes: Nodes to deploy, at most one of them primary
            version: Kubernetes version (config default when None)
            arch: CPU architecture (config default when None)
            skip_steps: Step names to skip; unknown names are ignored
            cancel: Cooperative cancellation signal
            on_log: Called with (node_id, node_name, message) for every event

        Returns:
            DeploymentResult
        """
        run = DeploymentRun(
            nodes=list(nodes),
            version=normalize_version(version or self.config.deploy.kube_version),
            arch=arch or self.config.deploy.arch,
            skip_steps=parse_skip_steps([*self.config.deploy.skip_steps, *(skip_steps or ())]),
            cancel=cancel or threading.Event(),
            on_log=on_log,
        )
        start_time = time.perf_counter()
        error: Optional[DeploymentError] = None

        bind_context(run_id=run.run_id)
        emit_event(
            EventType.DEPLOY_STARTED,
            data={"version": run.version, "arch": run.arch, "node_count": len(run.nodes)},
            run_id=run.run_id,
        )
        logger.info(
            "Starting deployment",
            version=run.version,
            arch=run.arch,
            nodes=len(run.nodes),
            skipped=sorted(step.value for step in run.skip_steps),
        )

        try:
            validate_topology(run.nodes)
            run.log_cluster(
                f"Deploying Kubernetes v{run.version} ({run.arch}) to {len(run.nodes)} node(s)"
            )
            if run.skip_steps:
                names = ", ".join(step.value for step in self.pipeline.names() if run.is_skipped(step))
                run.log_cluster(f"Skipping steps: {names}")

            runner = self._create_runner(run)
            self._run_common_phase(run, runner)
            self._run_cluster_phase(run, runner)
        except DeploymentCancelled as e:
            error = e
            run.log_cluster(str(e))
        except DeploymentError as e:
            error = e
            run.log_cluster(f"Deployment failed: {e}")
        finally:
            unbind_context("run_id")

        self._finalize_statuses(run, error)
        duration_ms = (time.perf_counter() - start_time) * 1000
        result = DeploymentResult(
            run_id=run.run_id,
            transcript="",
            error=error,
            step_results=list(run.step_results),
            join_outcomes=self._collect_join_outcomes(run),
            join_source=run.join_source,
            duration_ms=duration_ms,
        )

        if result.success:
            run.log_cluster("Deployment completed")
            event_type = EventType.DEPLOY_COMPLETED
        elif result.cancelled:
            event_type = EventType.DEPLOY_CANCELLED
        else:
            if error is None:
                run.log_cluster(f"Deployment finished with {len(result.failed_joins)} failed join(s)")
            event_type = EventType.DEPLOY_FAILED

        result.transcript = run.transcript.text()
        emit_event(
            event_type,
            data={"error": str(error) if error else None, "duration_ms": duration_ms},
            run_id=run.run_id,
        )
        logger.info(
            "Deployment finished",
            run_id=run.run_id,
            success=result.success,
            error=str(error) if error else None,
            duration_ms=round(duration_ms, 1),
        )
        return result

    def _create_runner(self, run: DeploymentRun) -> StepRunner:
        def on_rejected(error: Any) -> None:
            run.log_cluster(f"Warning: {error}; using built-in script")

        return StepRunner(
            resolver=ScriptResolver(self.script_provider, on_rejected=on_rejected),
            version=run.version,
            arch=run.arch,
            pod_cidr=self.config.deploy.pod_network_cidr,
            package_cache=self.package_cache,
            sleep=self.sleep,
            settle_scale=self.config.deploy.settle_factor,
        )

    def _run_common_phase(self, run: DeploymentRun, runner: StepRunner) -> None:
        """Run the per-node steps, strictly one node after another."""
        for index, node in enumerate(run.nodes, start=1):
            run.check_cancelled(f"before node {node.display_name}")
            run.log_node(node, f"Preparing node {index}/{len(run.nodes)} ({node.address})")
            try:
                self._run_node_steps(run, runner, node)
            except NodeConnectionError as e:
                # An unreachable secondary only costs its own join
                if node.is_primary:
                    raise
                run.excluded[node.id] = str(e)
                run.log_node(node, "Node excluded from this run")

    def _run_node_steps(self, run: DeploymentRun, runner: StepRunner, node: Node) -> None:
        session = None
        try:
            for step in self.pipeline.common_steps():
                if run.is_skipped(step.name):
                    self._mark_skipped(run, step, node)
                    continue
                run.check_cancelled(f"before {step.name.value} on {node.display_name}")
                if session is None:
                    self._set_status(node, NodeStatus.DEPLOYING)
                    session = self._open_session(run, node)
                self._run_step(run, runner, step, node, session)
        finally:
            if session is not None:
                session.close()

    def _run_cluster_phase(self, run: DeploymentRun, runner: StepRunner) -> None:
        """Primary init, join resolution, fan-out and verification."""
        primary = run.primary
        run.check_cancelled("before cluster initialization")

        if primary is None:
            run.log_cluster("No primary node in this run; using configured join credential")
            self._mark_skipped_cluster(run, StepName.K8S_INIT, "no primary node")
            self._run_join_phase(run, None, None, None)
            self._mark_skipped_cluster(run, StepName.K8S_VERIFY, "no primary node")
            return

        wanted = [
            name
            for name in (StepName.K8S_INIT, StepName.K8S_JOIN, StepName.K8S_VERIFY)
            if self.pipeline.get(name) and not run.is_skipped(name)
        ]
        if not wanted:
            for name in (StepName.K8S_INIT, StepName.K8S_JOIN, StepName.K8S_VERIFY):
                self._mark_skipped_cluster(run, name)
            return

        session = self._open_session(run, primary)
        try:
            watcher = JoinWatcher()
            init_step = self.pipeline.get(StepName.K8S_INIT)
            if init_step is None or run.is_skipped(StepName.K8S_INIT):
                self._mark_skipped_cluster(run, StepName.K8S_INIT)
            else:
                self._run_step(run, runner, init_step, primary, session, extra_line=watcher)
                self._set_status(primary, NodeStatus.READY)

            run.check_cancelled("before joining secondary nodes")
            self._run_join_phase(run, primary, session, watcher.command)

            run.check_cancelled("before cluster verification")
            verify_step = self.pipeline.get(StepName.K8S_VERIFY)
            if verify_step is None or run.is_skipped(StepName.K8S_VERIFY):
                self._mark_skipped_cluster(run, StepName.K8S_VERIFY)
            else:
                self._run_step(run, runner, verify_step, primary, session)
        finally:
            session.close()

    def _run_join_phase(
        self,
        run: DeploymentRun,
        primary: Optional[Node],
        session: Any,
        captured: Optional[str],
    ) -> None:
        secondaries = [node for node in run.secondaries if node.id not in run.excluded]
        if self.pipeline.get(StepName.K8S_JOIN) is None or run.is_skipped(StepName.K8S_JOIN):
            self._mark_skipped_cluster(run, StepName.K8S_JOIN)
            return
        if not secondaries:
            run.log_cluster("No secondary nodes to join")
            return

        if primary is not None:
            resolution = self._join_resolver().resolve(
                primary, session, captured=captured, on_line=run.log_cluster
            )
        else:
            command = external_join_command(self.config.join, self.environ)
            resolution = JoinResolution(command, JoinSource.EXTERNAL if command else JoinSource.NONE)
            if not resolution.found:
                self._mark_skipped_cluster(
                    run, StepName.K8S_JOIN, "no join credential configured"
                )
                return

        run.join_source = resolution.source
        if not resolution.found:
            run.join_outcomes = no_credential_outcomes(secondaries, "No join credential")
            for node in secondaries:
                self._set_status(node, NodeStatus.ERROR)
            raise JoinCredentialUnavailable(
                "Could not obtain a join command from the primary node",
                node_id=primary.id if primary else None,
                step=StepName.K8S_JOIN.value,
            )

        run.log_cluster(
            f"Join command ({resolution.source.value}): {redact_join_command(resolution.command)}"
        )
        emit_event(
            EventType.JOIN_RESOLVED,
            data={"source": resolution.source.value},
            run_id=run.run_id,
        )

        for node in secondaries:
            self._set_status(node, NodeStatus.DEPLOYING)

        coordinator = FanOutCoordinator(
            session_factory=self.session_factory,
            on_log=run.log_node,
            run_id=run.run_id,
        )
        run.join_outcomes = coordinator.join_all(secondaries, resolution.command, run.cancel)

        for node in secondaries:
            outcome = run.join_outcomes.get(node.id)
            if outcome is None or outcome.status == JoinStatus.CANCELLED:
                continue
            self._set_status(node, NodeStatus.READY if outcome.success else NodeStatus.ERROR)

        joined = sum(1 for o in run.join_outcomes.values() if o.success)
        run.log_cluster(f"{joined}/{len(secondaries)} secondary node(s) joined")
        run.check_cancelled("while joining secondary nodes")

    def _join_resolver(self) -> JoinCommandResolver:
        return JoinCommandResolver(
            attempts=self.config.deploy.join_query_attempts,
            delay=self.config.deploy.join_query_delay,
            sleep=self.sleep,
        )

    def _run_step(
        self,
        run: DeploymentRun,
        runner: StepRunner,
        step: Step,
        node: Node,
        session: Any,
        extra_line: Optional[Callable[[str], None]] = None,
    ) -> StepResult:
        run.log_node(node, f"{step.title}: started")
        emit_event(
            EventType.STEP_STARTED,
            data={"step": step.name.value},
            run_id=run.run_id,
            node_id=node.id,
        )

        def on_line(line: str) -> None:
            run.log_node(node, line)
            if extra_line is not None:
                extra_line(line)

        try:
            result = runner.run(step, node, session, on_line)
        except DeploymentError as e:
            e.node_id = e.node_id or node.id
            e.step = e.step or step.name.value
            self._set_status(node, NodeStatus.ERROR)
            run.log_node(node, f"{step.title}: {e}")
            raise
        run.step_results.append(result)

        if result.success:
            run.log_node(node, f"{step.title}: completed")
            emit_event(
                EventType.STEP_COMPLETED,
                data={"step": step.name.value, "duration_ms": result.duration_ms},
                run_id=run.run_id,
                node_id=node.id,
            )
            return result

        emit_event(
            EventType.STEP_FAILED,
            data={"step": step.name.value, "error": str(result.error)},
            run_id=run.run_id,
            node_id=node.id,
        )
        if step.failure_policy == StepFailurePolicy.CONTINUE:
            run.log_node(node, f"Warning: {step.title} failed, continuing: {result.error}")
            logger.warning("Step failed, continuing", node_id=node.id, step=step.name.value)
            return result

        self._set_status(node, NodeStatus.ERROR)
        run.log_node(node, f"{step.title}: failed")
        logger.error("Step failed, aborting", node_id=node.id, step=step.name.value)
        raise result.error

    def _open_session(self, run: DeploymentRun, node: Node) -> Any:
        try:
            return self.session_factory(node)
        except DeploymentError as e:
            e.node_id = e.node_id or node.id
            self._set_status(node, NodeStatus.OFFLINE)
            run.log_node(node, f"Connection failed: {e}")
            raise

    def _mark_skipped(self, run: DeploymentRun, step: Step, node: Node) -> None:
        run.step_results.append(StepResult(node.id, step.name, StepStatus.SKIPPED))
        run.log_node(node, f"{step.title}: skipped")
        emit_event(
            EventType.STEP_SKIPPED,
            data={"step": step.name.value},
            run_id=run.run_id,
            node_id=node.id,
        )

    def _mark_skipped_cluster(
        self,
        run: DeploymentRun,
        name: StepName,
        reason: Optional[str] = None,
    ) -> None:
        suffix = f" ({reason})" if reason else ""
        run.step_results.append(StepResult(CLUSTER_NODE_ID, name, StepStatus.SKIPPED))
        run.log_cluster(f"{name.title}: skipped{suffix}")
        emit_event(EventType.STEP_SKIPPED, data={"step": name.value}, run_id=run.run_id)

    def _set_status(self, node: Node, status: NodeStatus) -> None:
        node.status = status
        node.updated_at = datetime.now()
        if self.node_provider is None:
            return
        try:
            self.node_provider.update_status(node.id, status, node.distro)
        except Exception as e:
            logger.warning("Node status update failed", node_id=node.id, error=str(e))

    @staticmethod
    def _collect_join_outcomes(run: DeploymentRun) -> dict[str, JoinOutcome]:
        outcomes = dict(run.join_outcomes)
        for node in run.secondaries:
            if node.id in run.excluded and node.id not in outcomes:
                outcomes[node.id] = JoinOutcome(
                    node.id,
                    node.display_name,
                    JoinStatus.FAILED,
                    error=run.excluded[node.id],
                )
        return outcomes

    def _finalize_statuses(self, run: DeploymentRun, error: Optional[DeploymentError]) -> None:
        if error is not None:
            return
        for node in run.nodes:
            if node.status == NodeStatus.DEPLOYING:
                self._set_status(node, NodeStatus.READY)

    def verify_cluster(self, primary: Node, on_log: Optional[OnLog] = None) -> StepResult:
        """Run only the read-only cluster verification step on the primary.

        Raises:
            DeploymentError: If the primary cannot be reached
        """
        run = DeploymentRun(
            nodes=[primary],
            version=normalize_version(self.config.deploy.kube_version),
            arch=self.config.deploy.arch,
            skip_steps=frozenset(),
            on_log=on_log,
        )
        runner = self._create_runner(run)
        step = self.pipeline.get(StepName.K8S_VERIFY) or Step(
            StepName.K8S_VERIFY, failure_policy=StepFailurePolicy.CONTINUE
        )
        session = self._open_session(run, primary)
        try:
            return self._run_step(run, runner, step, primary, session)
        finally:
            session.close()


async def deploy_async(
    engine: DeploymentEngine,
    nodes: list[Node],
    version: Optional[str] = None,
    arch: Optional[str] = None,
    skip_steps: Optional[Iterable[str]] = None,
    cancel: Optional[threading.Event] = None,
    on_log: Optional[OnLog] = None,
) -> DeploymentResult:
    """Async convenience wrapper running deploy() in the default executor.

    Args:
        engine: Engine to run
        nodes: Nodes to deploy
        version: Kubernetes version
        arch: CPU architecture
        skip_steps: Step names to skip
        cancel: Cancellation signal
        on_log: Progress callback (invoked from worker threads)

    Returns:
        DeploymentResult
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        None,
        lambda: engine.deploy(nodes, version, arch, skip_steps, cancel, on_log),
    )
