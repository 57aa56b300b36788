"""Errors raised while deploying a cluster."""

from typing import Optional


class DeploymentError(Exception):
    """Base class for deployment failures.

    Attributes:
        node_id: Node the failure concerns, if any
        step: Canonical step name the failure occurred in, if any
    """

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        step: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.node_id = node_id
        self.step = step


class NodeConnectionError(DeploymentError):
    """A node could not be reached."""

    pass


class AuthenticationError(NodeConnectionError):
    """A node rejected the supplied credential."""

    pass


class CommandTimeout(DeploymentError):
    """A remote command exceeded its execution bound."""

    def __init__(
        self,
        message: str,
        timeout: float = 0,
        node_id: Optional[str] = None,
        step: Optional[str] = None,
    ) -> None:
        super().__init__(message, node_id=node_id, step=step)
        self.timeout = timeout


class CommandFailed(DeploymentError):
    """A remote command exited non-zero."""

    def __init__(
        self,
        message: str,
        exit_code: int = -1,
        output: str = "",
        node_id: Optional[str] = None,
        step: Optional[str] = None,
    ) -> None:
        super().__init__(message, node_id=node_id, step=step)
        self.exit_code = exit_code
        self.output = output


class UnsupportedDistribution(DeploymentError):
    """No script exists for the node's distribution."""

    def __init__(
        self,
        distro: str,
        node_id: Optional[str] = None,
        step: Optional[str] = None,
    ) -> None:
        label = distro or "unknown"
        super().__init__(f"Unsupported distribution: {label}", node_id=node_id, step=step)
        self.distro = distro


class ScriptIntegrityRejected(DeploymentError):
    """An override script lacks required commands and was not used."""

    def __init__(
        self,
        script_name: str,
        missing: list[str],
        step: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"Override '{script_name}' rejected, missing: {', '.join(missing)}",
            step=step,
        )
        self.script_name = script_name
        self.missing = missing


class DeploymentCancelled(DeploymentError):
    """The run was cancelled by the caller."""

    pass


class TopologyError(DeploymentError):
    """The node list cannot form a cluster."""

    pass


class JoinCredentialUnavailable(DeploymentError):
    """No join command could be obtained for secondary nodes."""

    pass
