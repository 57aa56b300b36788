"""Multi-node Kubernetes deployment over SSH.

Provides the deployment engine and its building blocks:
- Remote sessions with bounded, logged command execution
- Script override resolution with integrity checks
- The step pipeline
- Join command discovery and concurrent secondary join
"""

from clusterup.orchestrator.engine import (
    DeploymentEngine,
    DeploymentResult,
    Transcript,
    deploy_async,
    validate_topology,
)
from clusterup.orchestrator.errors import (
    AuthenticationError,
    CommandFailed,
    CommandTimeout,
    DeploymentCancelled,
    DeploymentError,
    JoinCredentialUnavailable,
    NodeConnectionError,
    ScriptIntegrityRejected,
    TopologyError,
    UnsupportedDistribution,
)
from clusterup.orchestrator.fanout import FanOutCoordinator, JoinOutcome, JoinStatus
from clusterup.orchestrator.join import (
    JoinCommandResolver,
    JoinCredential,
    JoinSource,
    JoinWatcher,
)
from clusterup.orchestrator.logsink import JsonlLogSink, LogEntry, LogSink, MemoryLogSink
from clusterup.orchestrator.nodes import (
    Node,
    NodeInventory,
    NodeProvider,
    NodeRole,
    NodeStatus,
    create_node,
)
from clusterup.orchestrator.packages import LocalPackageCache, PackageCache
from clusterup.orchestrator.scripts import ScriptProvider, ScriptResolver, ScriptStore
from clusterup.orchestrator.ssh import CommandResult, RemoteSession
from clusterup.orchestrator.steps import (
    Pipeline,
    Step,
    StepName,
    StepResult,
    StepStatus,
    parse_skip_steps,
)

__all__ = [
    # Engine
    "DeploymentEngine",
    "DeploymentResult",
    "Transcript",
    "deploy_async",
    "validate_topology",
    # Errors
    "AuthenticationError",
    "CommandFailed",
    "CommandTimeout",
    "DeploymentCancelled",
    "DeploymentError",
    "JoinCredentialUnavailable",
    "NodeConnectionError",
    "ScriptIntegrityRejected",
    "TopologyError",
    "UnsupportedDistribution",
    # Join
    "FanOutCoordinator",
    "JoinCommandResolver",
    "JoinCredential",
    "JoinOutcome",
    "JoinSource",
    "JoinStatus",
    "JoinWatcher",
    # Collaborators
    "JsonlLogSink",
    "LocalPackageCache",
    "LogEntry",
    "LogSink",
    "MemoryLogSink",
    "Node",
    "NodeInventory",
    "NodeProvider",
    "NodeRole",
    "NodeStatus",
    "PackageCache",
    "ScriptProvider",
    "ScriptResolver",
    "ScriptStore",
    "create_node",
    # Sessions and steps
    "CommandResult",
    "Pipeline",
    "RemoteSession",
    "Step",
    "StepName",
    "StepResult",
    "StepStatus",
    "parse_skip_steps",
]
