"""Default configuration values for clusterup."""

from pathlib import Path

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".clusterup"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_NODES_FILE = DEFAULT_CONFIG_DIR / "nodes.yaml"
DEFAULT_SCRIPTS_FILE = DEFAULT_CONFIG_DIR / "scripts.yaml"
DEFAULT_DEPLOY_LOG = DEFAULT_CONFIG_DIR / "deploy-log.jsonl"
DEFAULT_PACKAGES_DIR = DEFAULT_CONFIG_DIR / "packages"
DEFAULT_LOG_FILE = DEFAULT_CONFIG_DIR / "clusterup.log"

SYSTEM_CONFIG_FILE = Path("/etc/clusterup/config.yaml")
PROJECT_CONFIG_NAME = ".clusterup.yaml"
ENV_PREFIX = "CLUSTERUP_"

# SSH
DEFAULT_SSH_PORT = 22
DEFAULT_SSH_USERNAME = "root"
DEFAULT_CONNECT_TIMEOUT = 30.0
# Long enough for a package install over a slow mirror
DEFAULT_COMMAND_TIMEOUT = 3600.0

# Deployment
DEFAULT_KUBE_VERSION = "1.29.3"
DEFAULT_ARCH = "amd64"
DEFAULT_POD_NETWORK_CIDR = "10.244.0.0/16"
DEFAULT_API_SERVER_PORT = 6443
DEFAULT_SETTLE_FACTOR = 1.0
DEFAULT_JOIN_QUERY_ATTEMPTS = 3
DEFAULT_JOIN_QUERY_DELAY = 5.0

SUPPORTED_ARCHES = ("amd64", "arm64")

# Node id/name used for cluster-wide transcript lines
CLUSTER_NODE_ID = "cluster"
CLUSTER_NODE_NAME = "Kubernetes Cluster"
