"""Pytest configuration and fixtures."""

import threading
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Generator, Optional

import pytest

from clusterup.config.schemas import ClusterUpConfig, DeployConfig
from clusterup.orchestrator.builtin_scripts import DETECT_DISTRO
from clusterup.orchestrator.errors import NodeConnectionError
from clusterup.orchestrator.nodes import Node, NodeRole
from clusterup.orchestrator.ssh import CommandResult
from clusterup.telemetry.events import get_event_emitter

CA_HASH = "sha256:" + "ab" * 32
TOKEN = "abcdef.0123456789abcdef"
JOIN_COMMAND = (
    f"kubeadm join 10.0.0.10:6443 --token {TOKEN} --discovery-token-ca-cert-hash {CA_HASH}"
)
INIT_OUTPUT = f"""\
Your Kubernetes control-plane has initialized successfully!

Then you can join any number of worker nodes by running the following on each as root:

kubeadm join 10.0.0.10:6443 --token {TOKEN} \\
\t--discovery-token-ca-cert-hash {CA_HASH}
"""


def make_node(
    node_id: str,
    address: str = "10.0.0.10",
    role: NodeRole = NodeRole.SECONDARY,
    distro: Optional[str] = None,
    username: str = "root",
) -> Node:
    """Build a password-authenticated node."""
    return Node(
        id=node_id,
        name=node_id,
        address=address,
        username=username,
        password="secret",
        role=role,
        distro=distro,
    )


class FakeSession:
    """Stands in for RemoteSession; answers commands from the cluster's rules."""

    def __init__(self, cluster: "FakeCluster", node: Node) -> None:
        self.cluster = cluster
        self.node = node
        self.closed = False

    def run_buffered(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        return self.cluster.execute(self.node, command)

    def run_streaming(
        self,
        command: str,
        on_line: Callable[[str], None],
        timeout: Optional[float] = None,
    ) -> CommandResult:
        result = self.cluster.execute(self.node, command)
        for line in result.output.splitlines():
            on_line(line)
        return result

    def upload_file(self, local_path: Path, remote_path: str, mode: Optional[int] = None) -> None:
        with self.cluster.lock:
            self.cluster.uploads[self.node.id].append((Path(local_path), remote_path, mode))

    def close(self) -> None:
        self.closed = True


class FakeCluster:
    """A set of scripted nodes.

    Rules match by substring, node-specific rules first; the first matching
    rule answers. A rule given several results returns them in turn and then
    keeps repeating the last one. Unmatched commands succeed with no output.
    """

    def __init__(self, distro: str = "ubuntu") -> None:
        self.distro = distro
        self.rules: dict[str, list[tuple[str, list[dict[str, Any]]]]] = defaultdict(list)
        self.commands: dict[str, list[str]] = defaultdict(list)
        self.uploads: dict[str, list[tuple[Path, str, Optional[int]]]] = defaultdict(list)
        self.sessions: list[FakeSession] = []
        self.unreachable: set[str] = set()
        self.lock = threading.Lock()

    def respond(self, match: str, *results: dict[str, Any], node_id: str = "*", **result: Any) -> None:
        """Add a rule; pass one result as keywords or several as dicts."""
        self.rules[node_id].append((match, list(results) or [result]))

    def connect(self, node: Node) -> FakeSession:
        if node.id in self.unreachable:
            raise NodeConnectionError(f"Failed to connect to {node.address}:22: timed out")
        session = FakeSession(self, node)
        with self.lock:
            self.sessions.append(session)
        return session

    def execute(self, node: Node, command: str) -> CommandResult:
        with self.lock:
            self.commands[node.id].append(command)
            rule = self._match(node.id, command)
        if rule is None:
            rule = {"output": f"{self.distro}\n"} if command == DETECT_DISTRO else {}

        exit_code = rule.get("exit_code", 0)
        timed_out = rule.get("timed_out", False)
        success = exit_code == 0 and not timed_out
        return CommandResult(
            node_id=node.id,
            command=command,
            exit_code=-1 if timed_out else exit_code,
            output=rule.get("output", ""),
            duration_ms=1.0,
            success=success,
            error=None if success else rule.get("error", f"Exit code {exit_code}"),
            timed_out=timed_out,
        )

    def _match(self, node_id: str, command: str) -> Optional[dict[str, Any]]:
        for key in (node_id, "*"):
            for match, results in self.rules.get(key, []):
                if match in command:
                    return results.pop(0) if len(results) > 1 else results[0]
        return None

    def ran(self, node_id: str, fragment: str) -> bool:
        """Whether any command run on the node contains ``fragment``."""
        return any(fragment in command for command in self.commands.get(node_id, []))


@pytest.fixture
def cluster() -> FakeCluster:
    """Scripted nodes reporting Ubuntu."""
    return FakeCluster()


@pytest.fixture
def test_config() -> ClusterUpConfig:
    """Configuration without settle pauses or query delays."""
    return ClusterUpConfig(deploy=DeployConfig(settle_factor=0, join_query_delay=0))


@pytest.fixture(autouse=True)
def clear_event_handlers() -> Generator[None, None, None]:
    """Keep the process-wide event emitter clean between tests."""
    yield
    get_event_emitter().clear_handlers()


@pytest.fixture
def temp_config_file(tmp_path: Path) -> Path:
    """Create a temporary config file."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text("""
ssh:
  connect_timeout: 10
  command_timeout: 900

deploy:
  kube_version: v1.28.2
  arch: arm64
  skip_steps:
    - system_prep

log_level: DEBUG
""")
    return config_file
