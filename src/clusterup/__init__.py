"""
clusterup - Multi-node Kubernetes (kubeadm) deployment over SSH.

clusterup drives a fixed sequence of remote shell steps on each machine:
- System preparation, container runtime and Kubernetes packages on every node
- Control-plane initialization on the primary node
- Concurrent join of all secondary nodes
- Per-step skipping and operator-supplied script overrides
"""

__version__ = "0.1.0"
__author__ = "clusterup Team"

from clusterup.config.schemas import ClusterUpConfig
from clusterup.orchestrator.engine import DeploymentEngine, DeploymentResult

__all__ = [
    "__version__",
    "ClusterUpConfig",
    "DeploymentEngine",
    "DeploymentResult",
]
