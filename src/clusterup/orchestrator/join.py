"""Join credential discovery for secondary nodes.

Secondary nodes need a ``kubeadm join`` command produced by the primary.
It is obtained, in order, by:

1. watching the primary's init output for the printed join command,
2. asking the primary to print a fresh one (bounded retries),
3. creating a token and hashing the CA public key, then templating.

Scraping init output is only a shortcut; the explicit query is the
authoritative path since the printed format is not a stable interface.
Secondary-only runs take the credential from configuration instead.
"""

import os
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from clusterup.config.defaults import DEFAULT_API_SERVER_PORT
from clusterup.config.schemas import JoinConfig
from clusterup.orchestrator.logsink import redact_secrets
from clusterup.orchestrator.nodes import Node
from clusterup.orchestrator.ssh import LineCallback
from clusterup.telemetry.logger import get_logger

logger = get_logger(__name__)

JOIN_SENTINEL = "kubeadm join"

PRINT_JOIN_COMMAND = "kubeadm token create --print-join-command"
CREATE_TOKEN = "kubeadm token create"
CA_CERT_HASH = (
    "openssl x509 -pubkey -in /etc/kubernetes/pki/ca.crt"
    " | openssl rsa -pubin -outform der 2>/dev/null"
    " | openssl dgst -sha256 -hex | sed 's/^.* //'"
)

TOKEN_PATTERN = re.compile(r"^[a-z0-9]{6}\.[a-z0-9]{16}$")
HASH_PATTERN = re.compile(r"^(?:sha256:)?[0-9a-f]{64}$")

ENV_JOIN_COMMAND = "KUBEADM_JOIN_COMMAND"
ENV_TOKEN = "KUBEADM_TOKEN"
ENV_CA_CERT_HASH = "KUBEADM_CA_CERT_HASH"
ENV_ENDPOINT = "KUBEADM_CONTROL_PLANE_ENDPOINT"


@dataclass(frozen=True)
class JoinCredential:
    """Token, CA certificate hash and control-plane endpoint.

    Attributes:
        endpoint: API server address, host:port
        token: Bootstrap token
        ca_cert_hash: CA public key hash, "sha256:<hex>"
    """

    endpoint: str
    token: str
    ca_cert_hash: str

    @property
    def is_complete(self) -> bool:
        return bool(self.endpoint and self.token and self.ca_cert_hash)

    def command(self) -> str:
        """Render the kubeadm join command."""
        ca_hash = self.ca_cert_hash
        if not ca_hash.startswith("sha256:"):
            ca_hash = f"sha256:{ca_hash}"
        return (
            f"kubeadm join {self.endpoint} --token {self.token}"
            f" --discovery-token-ca-cert-hash {ca_hash}"
        )

    @classmethod
    def parse(cls, command: str) -> Optional["JoinCredential"]:
        """Extract the credential from a join command; None if incomplete."""
        endpoint = re.search(r"kubeadm\s+join\s+(\S+)", command)
        token = re.search(r"--token[\s=]+(\S+)", command)
        ca_hash = re.search(r"--discovery-token-ca-cert-hash[\s=]+(\S+)", command)
        if not (endpoint and token and ca_hash):
            return None
        return cls(endpoint.group(1), token.group(1), ca_hash.group(1))


def redact_join_command(command: str) -> str:
    """Hide the bootstrap token and certificate key for display."""
    return redact_secrets(" ".join(command.split()))


def external_join_command(
    config: Optional[JoinConfig] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """Join command supplied from outside the run.

    Configuration wins over the KUBEADM_* environment variables; a full
    command wins over separate fields.

    Returns:
        The join command, or None if no complete credential is configured
    """
    environ = os.environ if environ is None else environ
    config = config or JoinConfig()

    full = config.join_command or environ.get(ENV_JOIN_COMMAND)
    if full and full.strip():
        return " ".join(full.split())

    credential = JoinCredential(
        endpoint=config.control_plane_endpoint or environ.get(ENV_ENDPOINT, ""),
        token=config.token or environ.get(ENV_TOKEN, ""),
        ca_cert_hash=config.ca_cert_hash or environ.get(ENV_CA_CERT_HASH, ""),
    )
    return credential.command() if credential.is_complete else None


class JoinWatcher:
    """Line callback that captures the worker join command from init output.

    kubeadm prints the command across several lines joined by trailing
    backslashes, and with ``--upload-certs`` it prints a control-plane
    variant first; that one is skipped.
    """

    def __init__(self) -> None:
        self.command: Optional[str] = None
        self._parts: list[str] = []
        self._collecting = False

    @property
    def done(self) -> bool:
        return self.command is not None

    def __call__(self, line: str) -> None:
        if self.done:
            return

        text = line.strip()
        if not self._collecting:
            if not text.startswith(JOIN_SENTINEL):
                return
            self._collecting = True
            self._parts = []

        continued = text.endswith("\\")
        self._parts.append(text.rstrip("\\").strip())
        if continued:
            return

        self._collecting = False
        command = " ".join(part for part in self._parts if part)
        if "--control-plane" in command:
            return
        self.command = command


def extract_join_command(output: str) -> Optional[str]:
    """Find the worker join command in command output."""
    watcher = JoinWatcher()
    for line in output.splitlines():
        watcher(line)
    return watcher.command


class JoinSource(str, Enum):
    """Where a join command came from."""

    STREAM = "stream"
    QUERY = "query"
    SYNTHESIZED = "synthesized"
    EXTERNAL = "external"
    NONE = "none"


@dataclass
class JoinResolution:
    """Result of join command resolution."""

    command: Optional[str]
    source: JoinSource

    @property
    def found(self) -> bool:
        return bool(self.command)


class JoinCommandResolver:
    """Obtains a join command from the primary node.

    Example:
        resolver = JoinCommandResolver(attempts=3, delay=5.0)
        resolution = resolver.resolve(primary, session, captured=watcher.command)
    """

    def __init__(
        self,
        attempts: int = 3,
        delay: float = 5.0,
        api_port: int = DEFAULT_API_SERVER_PORT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the resolver.

        Args:
            attempts: Query attempts before synthesizing
            delay: Seconds between query attempts
            api_port: API server port used when synthesizing the endpoint
            sleep: Delay function, replaceable in tests
        """
        self.attempts = max(1, attempts)
        self.delay = delay
        self.api_port = api_port
        self.sleep = sleep

    def resolve(
        self,
        primary: Node,
        session: Any,
        captured: Optional[str] = None,
        on_line: Optional[LineCallback] = None,
    ) -> JoinResolution:
        """Walk the fallback ladder until a join command is found.

        Args:
            primary: Primary node
            session: Open session to the primary
            captured: Command captured from init output, if any
            on_line: Progress callback
        """
        report = on_line or (lambda message: None)

        if captured:
            report("Join command captured from init output")
            return JoinResolution(captured, JoinSource.STREAM)

        command = self.query(primary, session, report)
        if command:
            return JoinResolution(command, JoinSource.QUERY)

        report("Join command query failed, generating token and CA hash")
        command = self.synthesize(primary, session)
        if command:
            return JoinResolution(command, JoinSource.SYNTHESIZED)

        logger.error("No join command could be obtained", node_id=primary.id)
        return JoinResolution(None, JoinSource.NONE)

    def query(self, primary: Node, session: Any, report: LineCallback) -> Optional[str]:
        """Ask the primary to print a join command, retrying while its API starts."""
        for attempt in range(1, self.attempts + 1):
            result = session.run_buffered(primary.privileged(PRINT_JOIN_COMMAND))
            if result.success:
                command = extract_join_command(result.output)
                if command:
                    report(f"Join command obtained from primary (attempt {attempt})")
                    return command

            logger.warning(
                "Join command query failed",
                attempt=attempt,
                attempts=self.attempts,
                error=result.error,
            )
            report(f"Join command query attempt {attempt}/{self.attempts} failed")
            if attempt < self.attempts:
                self.sleep(self.delay)
        return None

    def synthesize(self, primary: Node, session: Any) -> Optional[str]:
        """Create a token, hash the CA key and template the join command."""
        token_result = session.run_buffered(primary.privileged(CREATE_TOKEN))
        token = _last_line(token_result.output) if token_result.success else ""
        if not TOKEN_PATTERN.match(token):
            logger.warning("Token creation failed", node_id=primary.id, error=token_result.error)
            return None

        hash_result = session.run_buffered(CA_CERT_HASH)
        ca_hash = _last_line(hash_result.output) if hash_result.success else ""
        if not HASH_PATTERN.match(ca_hash):
            logger.warning("CA hash computation failed", node_id=primary.id, error=hash_result.error)
            return None

        credential = JoinCredential(
            endpoint=f"{primary.address}:{self.api_port}",
            token=token,
            ca_cert_hash=ca_hash,
        )
        return credential.command()


def _last_line(output: str) -> str:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    return lines[-1] if lines else ""
