"""Configuration loading and schemas."""

from clusterup.config.loader import create_default_config, load_config
from clusterup.config.schemas import (
    ClusterUpConfig,
    DeployConfig,
    JoinConfig,
    SSHConfig,
    StorageConfig,
    TelemetryConfig,
)

__all__ = [
    "ClusterUpConfig",
    "DeployConfig",
    "JoinConfig",
    "SSHConfig",
    "StorageConfig",
    "TelemetryConfig",
    "create_default_config",
    "load_config",
]
