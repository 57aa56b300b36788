"""Deployment steps and their execution on a node.

A :class:`Pipeline` is an ordered tuple of :class:`Step` templates. The
:class:`StepRunner` executes one step against one node's session:
detect the distribution, resolve the script, stream it, classify the
outcome.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from clusterup.orchestrator.builtin_scripts import (
    DETECT_DISTRO,
    IP_FORWARD_ASSERT,
    K8S_COMPONENTS_FROM_UPLOAD,
    render,
)
from clusterup.orchestrator.errors import (
    CommandFailed,
    CommandTimeout,
    DeploymentError,
    UnsupportedDistribution,
)
from clusterup.orchestrator.nodes import Node
from clusterup.orchestrator.packages import (
    PackageCache,
    normalize_version,
    resolve_kube_binaries,
)
from clusterup.orchestrator.scripts import ScriptResolver
from clusterup.orchestrator.ssh import CommandResult, LineCallback
from clusterup.telemetry.logger import get_logger

logger = get_logger(__name__)


class StepName(str, Enum):
    """Canonical step names, in default pipeline order."""

    SYSTEM_PREP = "system_prep"
    IP_FORWARD = "ip_forward"
    CONTAINERD_INSTALL = "containerd_install"
    CONTAINERD_CONFIG = "containerd_config"
    REPO_CONFIG = "repo_config"
    K8S_COMPONENTS = "k8s_components"
    K8S_INIT = "k8s_init"
    K8S_JOIN = "k8s_join"
    K8S_VERIFY = "k8s_verify"

    @property
    def title(self) -> str:
        return STEP_TITLES[self]

    @classmethod
    def parse(cls, value: str) -> Optional["StepName"]:
        """Match a value, member name, or title; None when unrecognized."""
        text = str(value).strip()
        if not text:
            return None
        normalized = text.lower().replace("-", "_").replace(" ", "_")
        for step in cls:
            if normalized in (step.value, step.name.lower()):
                return step
            if text.lower() == step.title.lower():
                return step
        return None


STEP_TITLES = {
    StepName.SYSTEM_PREP: "System Preparation",
    StepName.IP_FORWARD: "IP Forward Configuration",
    StepName.CONTAINERD_INSTALL: "Container Runtime Install",
    StepName.CONTAINERD_CONFIG: "Container Runtime Configure",
    StepName.REPO_CONFIG: "Repository Configuration",
    StepName.K8S_COMPONENTS: "Components Install",
    StepName.K8S_INIT: "Primary Init",
    StepName.K8S_JOIN: "Secondary Join",
    StepName.K8S_VERIFY: "Cluster Verification",
}


class StepScope(str, Enum):
    """Which nodes a step runs on."""

    EACH_NODE = "each_node"
    PRIMARY = "primary"
    SECONDARIES = "secondaries"


class StepFailurePolicy(str, Enum):
    """What a failed step does to the run."""

    CONTINUE = "continue"  # Log a warning, keep going
    ABORT = "abort"  # Stop the run with the error


class StepStatus(str, Enum):
    """Outcome of one step on one node."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Step:
    """A named unit of work in the pipeline.

    Attributes:
        name: Canonical name, used for skipping and script lookup
        scope: Which nodes the step runs on
        failure_policy: What a failure does to the run
        settle_seconds: Pause after success so kernel/daemon state settles
    """

    name: StepName
    scope: StepScope = StepScope.EACH_NODE
    failure_policy: StepFailurePolicy = StepFailurePolicy.ABORT
    settle_seconds: float = 0.0

    @property
    def title(self) -> str:
        return self.name.title


DEFAULT_STEPS: tuple[Step, ...] = (
    Step(StepName.SYSTEM_PREP, failure_policy=StepFailurePolicy.CONTINUE, settle_seconds=1.0),
    Step(StepName.IP_FORWARD, failure_policy=StepFailurePolicy.CONTINUE, settle_seconds=1.0),
    Step(StepName.CONTAINERD_INSTALL),
    Step(StepName.CONTAINERD_CONFIG, settle_seconds=1.0),
    Step(StepName.REPO_CONFIG),
    Step(StepName.K8S_COMPONENTS),
    Step(StepName.K8S_INIT, scope=StepScope.PRIMARY),
    Step(StepName.K8S_JOIN, scope=StepScope.SECONDARIES),
    Step(StepName.K8S_VERIFY, scope=StepScope.PRIMARY, failure_policy=StepFailurePolicy.CONTINUE),
)


class Pipeline:
    """Ordered step configuration for a deployment.

    Variants (for example, a pipeline without repository configuration
    because nodes are pre-provisioned) are expressed as a different step
    tuple, never as separate code paths.
    """

    def __init__(self, steps: Iterable[Step] = DEFAULT_STEPS) -> None:
        self.steps: tuple[Step, ...] = tuple(steps)
        names = [step.name for step in self.steps]
        if len(names) != len(set(names)):
            raise ValueError("Pipeline steps must be unique")

    def common_steps(self) -> list[Step]:
        """Steps run on every node, in order."""
        return [step for step in self.steps if step.scope == StepScope.EACH_NODE]

    def get(self, name: StepName) -> Optional[Step]:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def names(self) -> list[StepName]:
        return [step.name for step in self.steps]

    def __iter__(self):
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)


def parse_skip_steps(values: Optional[Iterable[str]]) -> frozenset[StepName]:
    """Build a skip set; unrecognized names are ignored.

    Items may themselves be comma-separated lists.
    """
    skipped: set[StepName] = set()
    for value in values or ():
        if isinstance(value, StepName):
            skipped.add(value)
            continue
        for part in str(value).split(","):
            step = StepName.parse(part)
            if step is None:
                if part.strip():
                    logger.debug("Ignoring unknown step in skip list", step=part.strip())
                continue
            skipped.add(step)
    return frozenset(skipped)


@dataclass
class StepResult:
    """Outcome of one step on one node."""

    node_id: str
    step: StepName
    status: StepStatus
    output: str = ""
    error: Optional[DeploymentError] = None
    duration_ms: float = 0.0
    source: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status != StepStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "node_id": self.node_id,
            "step": self.step.value,
            "status": self.status.value,
            "error": str(self.error) if self.error else None,
            "duration_ms": self.duration_ms,
            "source": self.source,
        }


class StepRunner:
    """Executes single steps on single nodes.

    One runner is shared by a whole run; it carries the run's version,
    architecture and script resolver.
    """

    def __init__(
        self,
        resolver: ScriptResolver,
        version: str,
        arch: str,
        pod_cidr: str,
        package_cache: Optional[PackageCache] = None,
        sleep: Callable[[float], None] = time.sleep,
        settle_scale: float = 1.0,
    ) -> None:
        """Initialize the runner.

        Args:
            resolver: Script resolver for this run
            version: Kubernetes version, with or without a leading "v"
            arch: CPU architecture
            pod_cidr: Pod network CIDR for cluster init
            package_cache: Optional source of pre-staged binaries
            sleep: Delay function, replaceable in tests
            settle_scale: Multiplier applied to every step's settle delay
        """
        self.resolver = resolver
        self.version = normalize_version(version)
        self.arch = arch
        self.pod_cidr = pod_cidr
        self.package_cache = package_cache
        self.sleep = sleep
        self.settle_scale = settle_scale

    @property
    def minor_version(self) -> str:
        """Major.minor part of the version (1.29 for 1.29.3)."""
        return ".".join(self.version.split(".")[:2])

    def render(self, text: str) -> str:
        return render(
            text,
            version=self.version,
            minor=self.minor_version,
            arch=self.arch,
            pod_cidr=self.pod_cidr,
        )

    def detect_distro(self, node: Node, session: Any) -> str:
        """Detect and cache the node's os-release ID.

        Raises:
            UnsupportedDistribution: If detection yields nothing
        """
        if node.distro:
            return node.distro

        result: CommandResult = session.run_buffered(DETECT_DISTRO)
        lines = [line.strip() for line in result.output.splitlines() if line.strip()]
        distro = lines[-1].strip('"').lower() if result.success and lines else ""
        if not distro:
            raise UnsupportedDistribution("", node_id=node.id)

        node.distro = distro
        logger.info("Distribution detected", node_id=node.id, distro=distro)
        return distro

    def run(
        self,
        step: Step,
        node: Node,
        session: Any,
        on_line: LineCallback,
    ) -> StepResult:
        """Execute a step on a node.

        Command failures and timeouts are reported in the result, not raised.

        Raises:
            UnsupportedDistribution: If the step has no script for the node
        """
        distro = self.detect_distro(node, session)
        started = time.perf_counter()

        if step.name == StepName.K8S_INIT:
            self._assert_ip_forward(node, session, on_line)

        source, result = self._execute(step, node, session, distro, on_line)
        duration_ms = (time.perf_counter() - started) * 1000

        error: Optional[DeploymentError] = None
        if result.timed_out:
            error = CommandTimeout(
                f"{step.title} timed out on {node.display_name}",
                node_id=node.id,
                step=step.name.value,
            )
        elif not result.success:
            error = CommandFailed(
                f"{step.title} failed on {node.display_name}: {result.error}",
                exit_code=result.exit_code,
                output=result.output,
                node_id=node.id,
                step=step.name.value,
            )

        if error is None and step.settle_seconds:
            self.sleep(step.settle_seconds * self.settle_scale)

        return StepResult(
            node_id=node.id,
            step=step.name,
            status=StepStatus.FAILED if error else StepStatus.SUCCESS,
            output=result.output,
            error=error,
            duration_ms=duration_ms,
            source=source,
        )

    def _execute(
        self,
        step: Step,
        node: Node,
        session: Any,
        distro: str,
        on_line: LineCallback,
    ) -> tuple[str, CommandResult]:
        if step.name == StepName.K8S_COMPONENTS:
            binaries = resolve_kube_binaries(self.package_cache, self.version, self.arch, distro)
            if binaries:
                on_line("Installing pre-staged kubeadm, kubelet and kubectl")
                for name, path in binaries.items():
                    session.upload_file(path, f"/tmp/clusterup-{name}", mode=0o755)
                return "package_cache", session.run_streaming(K8S_COMPONENTS_FROM_UPLOAD, on_line)

        source, text = self.resolver.explain(step.name, distro)
        return source, session.run_streaming(self.render(text), on_line)

    def _assert_ip_forward(self, node: Node, session: Any, on_line: LineCallback) -> None:
        # kubeadm preflight hard-fails when ip_forward is 0 at this instant
        result = session.run_buffered(IP_FORWARD_ASSERT)
        if result.success:
            on_line("net.ipv4.ip_forward = 1 confirmed")
        else:
            on_line(f"Warning: could not confirm net.ipv4.ip_forward: {result.error}")
            logger.warning("IP forward assertion failed", node_id=node.id, error=result.error)
