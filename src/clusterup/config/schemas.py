"""Configuration schemas using Pydantic for validation."""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from clusterup.config.defaults import (
    DEFAULT_ARCH,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_DEPLOY_LOG,
    DEFAULT_JOIN_QUERY_ATTEMPTS,
    DEFAULT_JOIN_QUERY_DELAY,
    DEFAULT_KUBE_VERSION,
    DEFAULT_NODES_FILE,
    DEFAULT_PACKAGES_DIR,
    DEFAULT_POD_NETWORK_CIDR,
    DEFAULT_SCRIPTS_FILE,
    DEFAULT_SETTLE_FACTOR,
    DEFAULT_SSH_USERNAME,
    SUPPORTED_ARCHES,
)


class SSHConfig(BaseModel):
    """Remote session configuration."""

    connect_timeout: float = Field(
        default=DEFAULT_CONNECT_TIMEOUT,
        gt=0,
        description="Seconds to wait for the SSH handshake",
    )
    command_timeout: float = Field(
        default=DEFAULT_COMMAND_TIMEOUT,
        gt=0,
        description="Upper bound in seconds for any single remote command",
    )
    default_username: str = Field(
        default=DEFAULT_SSH_USERNAME,
        description="Username used when a node record has none",
    )


class DeployConfig(BaseModel):
    """Deployment pipeline configuration."""

    kube_version: str = Field(
        default=DEFAULT_KUBE_VERSION,
        description="Kubernetes version to install when none is given",
    )
    arch: str = Field(
        default=DEFAULT_ARCH,
        description="CPU architecture of the target nodes",
    )
    pod_network_cidr: str = Field(
        default=DEFAULT_POD_NETWORK_CIDR,
        description="Pod network CIDR passed to kubeadm init",
    )
    skip_steps: list[str] = Field(
        default_factory=list,
        description="Step names skipped on every run",
    )
    settle_factor: float = Field(
        default=DEFAULT_SETTLE_FACTOR,
        ge=0,
        description="Multiplier for the pause after settling steps (0 disables)",
    )
    join_query_attempts: int = Field(
        default=DEFAULT_JOIN_QUERY_ATTEMPTS,
        ge=1,
        description="Attempts at querying the primary for a join command",
    )
    join_query_delay: float = Field(
        default=DEFAULT_JOIN_QUERY_DELAY,
        ge=0,
        description="Seconds between join command queries",
    )

    @field_validator("skip_steps", mode="before")
    @classmethod
    def split_skip_steps(cls, v: object) -> object:
        """Accept a comma-separated string (as set from the environment)."""
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @field_validator("arch")
    @classmethod
    def validate_arch(cls, v: str) -> str:
        """Validate the architecture is one we ship packages for."""
        if v not in SUPPORTED_ARCHES:
            raise ValueError(f"Invalid arch: {v}. Must be one of {SUPPORTED_ARCHES}")
        return v


class JoinConfig(BaseModel):
    """Join credential for secondary-only deployments.

    Used when no primary node is part of the run. Empty fields fall back to
    the KUBEADM_* environment variables.
    """

    token: Optional[str] = Field(
        default=None,
        description="Bootstrap token (abcdef.0123456789abcdef)",
    )
    ca_cert_hash: Optional[str] = Field(
        default=None,
        description="CA public key hash (sha256:...)",
    )
    control_plane_endpoint: Optional[str] = Field(
        default=None,
        description="API server endpoint (host:6443)",
    )
    join_command: Optional[str] = Field(
        default=None,
        description="Complete kubeadm join command, overrides the fields above",
    )


class StorageConfig(BaseModel):
    """Locations of the local collaborator stores."""

    nodes_file: Path = Field(
        default=DEFAULT_NODES_FILE,
        description="Node inventory YAML file",
    )
    scripts_file: Path = Field(
        default=DEFAULT_SCRIPTS_FILE,
        description="Script override YAML file",
    )
    deploy_log: Path = Field(
        default=DEFAULT_DEPLOY_LOG,
        description="JSON lines file receiving remote command log entries",
    )
    packages_dir: Path = Field(
        default=DEFAULT_PACKAGES_DIR,
        description="Directory of pre-staged Kubernetes binaries",
    )


class TelemetryConfig(BaseModel):
    """Logging configuration."""

    log_file: Optional[Path] = Field(
        default=None,
        description="Optional file receiving application logs",
    )
    json_logs: bool = Field(
        default=False,
        description="Render logs as JSON instead of console output",
    )


class ClusterUpConfig(BaseModel):
    """Root configuration for clusterup."""

    ssh: SSHConfig = Field(
        default_factory=SSHConfig,
        description="Remote session configuration",
    )
    deploy: DeployConfig = Field(
        default_factory=DeployConfig,
        description="Deployment pipeline configuration",
    )
    join: JoinConfig = Field(
        default_factory=JoinConfig,
        description="External join credential",
    )
    storage: StorageConfig = Field(
        default_factory=StorageConfig,
        description="Local store locations",
    )
    telemetry: TelemetryConfig = Field(
        default_factory=TelemetryConfig,
        description="Logging configuration",
    )
    log_level: str = Field(
        default="INFO",
        description="Global log level",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()
