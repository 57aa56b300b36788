"""SSH sessions to deployment targets.

Provides an authenticated session per node with two execution modes:
buffered (run to completion) and streaming (callback per output line).
Every command is bounded by a wall-clock timeout and logged to the
configured :class:`LogSink`.
"""

import codecs
import io
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

import paramiko

from clusterup.config.defaults import DEFAULT_COMMAND_TIMEOUT, DEFAULT_CONNECT_TIMEOUT
from clusterup.orchestrator.errors import AuthenticationError, NodeConnectionError
from clusterup.orchestrator.logsink import LogEntry, LogSink, LogStatus, redact_secrets
from clusterup.orchestrator.nodes import Node
from clusterup.telemetry.logger import get_logger

logger = get_logger(__name__)

LineCallback = Callable[[str], None]

# Key classes tried, in order, for inline private keys
KEY_CLASSES = (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey)

POLL_INTERVAL = 0.05
RECV_CHUNK = 32768


@dataclass
class CommandResult:
    """Result of a remote command.

    Attributes:
        node_id: Node the command ran on
        command: Command that was executed
        exit_code: Exit status (-1 when none was received)
        output: Combined stdout and stderr, in arrival order
        duration_ms: Execution duration in milliseconds
        success: Whether the command exited 0 within its bound
        error: Error message if execution failed
        timed_out: Whether the command exceeded its bound
        timestamp: When the command started
    """

    node_id: str
    command: str
    exit_code: int
    output: str
    duration_ms: float
    success: bool
    error: Optional[str] = None
    timed_out: bool = False
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "node_id": self.node_id,
            "command": self.command,
            "exit_code": self.exit_code,
            "output": self.output,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "timed_out": self.timed_out,
            "timestamp": self.timestamp.isoformat(),
        }


def load_private_key(text: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Parse an inline PEM/OpenSSH private key.

    Raises:
        AuthenticationError: If no supported key type can parse the text
    """
    last_error: Optional[Exception] = None
    for key_cls in KEY_CLASSES:
        try:
            return key_cls.from_private_key(io.StringIO(text), password=passphrase)
        except (paramiko.SSHException, ValueError) as e:
            last_error = e
    raise AuthenticationError(f"Unsupported or invalid private key: {last_error}")


class RemoteSession:
    """An open SSH session to one node.

    Sessions are owned by a single unit of work and are not shared between
    threads. Use :meth:`connect` to open one.

    Example:
        with RemoteSession.connect(node) as session:
            result = session.run_streaming("apt-get update", print)
    """

    def __init__(
        self,
        node: Node,
        client: paramiko.SSHClient,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        log_sink: Optional[LogSink] = None,
    ) -> None:
        """Wrap an already connected client.

        Args:
            node: Node the client is connected to
            client: Connected paramiko client
            command_timeout: Default upper bound for each command, in seconds
            log_sink: Receives a start and an end entry per command
        """
        self.node = node
        self.command_timeout = command_timeout
        self.log_sink = log_sink
        self._client: Optional[paramiko.SSHClient] = client
        self._lock = threading.Lock()

    @classmethod
    def connect(
        cls,
        node: Node,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        log_sink: Optional[LogSink] = None,
    ) -> "RemoteSession":
        """Open an authenticated session.

        A private key takes priority over a password; the node record must
        carry exactly one of them.

        Args:
            node: Target node
            connect_timeout: Handshake timeout in seconds
            command_timeout: Default per-command bound in seconds
            log_sink: Optional command log sink

        Returns:
            Connected RemoteSession

        Raises:
            AuthenticationError: If the credential is missing or rejected
            NodeConnectionError: If the node cannot be reached
        """
        if node.credential_kind is None:
            raise AuthenticationError(
                "Exactly one of password or private key is required",
                node_id=node.id,
            )

        connect_kwargs: dict[str, Any] = {
            "hostname": node.address,
            "port": node.port,
            "username": node.username,
            "timeout": connect_timeout,
            "banner_timeout": connect_timeout,
            "auth_timeout": connect_timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if node.private_key:
            connect_kwargs["pkey"] = load_private_key(node.private_key, node.passphrase)
        elif node.private_key_path:
            connect_kwargs["key_filename"] = str(Path(node.private_key_path).expanduser())
            connect_kwargs["passphrase"] = node.passphrase
        else:
            connect_kwargs["password"] = node.password

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            client.close()
            logger.error("SSH authentication failed", node_id=node.id, address=node.address)
            raise AuthenticationError(
                f"Authentication failed for {node.username}@{node.address}: {e}",
                node_id=node.id,
            ) from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            logger.error(
                "SSH connection failed",
                node_id=node.id,
                address=node.address,
                error=str(e),
            )
            raise NodeConnectionError(
                f"Failed to connect to {node.address}:{node.port}: {e}",
                node_id=node.id,
            ) from e

        logger.debug(
            "SSH connected",
            node_id=node.id,
            address=node.address,
            auth=node.credential_kind,
        )
        return cls(node, client, command_timeout=command_timeout, log_sink=log_sink)

    @property
    def is_connected(self) -> bool:
        """Check if the underlying transport is active."""
        if not self._client:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def run_buffered(
        self,
        command: str,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a command to completion and return its combined output.

        Args:
            command: Shell command
            timeout: Bound in seconds (defaults to the session's command timeout)
        """
        return self._run(command, None, timeout)

    def run_streaming(
        self,
        command: str,
        on_line: LineCallback,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a command, calling ``on_line`` for every output line as it arrives.

        Lines are delivered synchronously and in order, without their
        trailing newline. The accumulated output is still returned.

        Args:
            command: Shell command
            on_line: Callback invoked once per line
            timeout: Bound in seconds (defaults to the session's command timeout)
        """
        return self._run(command, on_line, timeout)

    def _run(
        self,
        command: str,
        on_line: Optional[LineCallback],
        timeout: Optional[float],
    ) -> CommandResult:
        bound = timeout or self.command_timeout
        entry = LogEntry(
            node_id=self.node.id,
            node_name=self.node.display_name,
            operation="ssh_command",
            command=redact_secrets(command),
        )
        self._log(entry)

        start_time = time.perf_counter()
        chunks: list[str] = []
        exit_code = -1
        timed_out = False
        error: Optional[str] = None

        with self._lock:
            channel = None
            try:
                channel = self._open_channel()
                channel.set_combine_stderr(True)
                channel.exec_command(command)
                timed_out = self._pump(channel, chunks, on_line, time.monotonic() + bound)
                if timed_out:
                    error = f"Command timed out after {bound:g}s"
                else:
                    exit_code = channel.recv_exit_status()
            except (paramiko.SSHException, OSError) as e:
                error = str(e)
            finally:
                if channel is not None:
                    channel.close()

        output = "".join(chunks)
        duration_ms = (time.perf_counter() - start_time) * 1000
        success = error is None and exit_code == 0
        if error is None and not success:
            error = f"Exit code {exit_code}"

        if timed_out:
            logger.warning(
                "SSH command timed out",
                node_id=self.node.id,
                command=redact_secrets(command)[:80],
                timeout=bound,
            )
        else:
            logger.debug(
                "SSH command executed",
                node_id=self.node.id,
                command=redact_secrets(command)[:80],
                exit_code=exit_code,
                duration_ms=round(duration_ms, 1),
            )

        if timed_out:
            status = LogStatus.TIMEOUT
        else:
            status = LogStatus.SUCCESS if success else LogStatus.FAILED
        self._log(replace(entry, output=redact_secrets(output), status=status, updated_at=datetime.now()))

        return CommandResult(
            node_id=self.node.id,
            command=command,
            exit_code=exit_code,
            output=output,
            duration_ms=duration_ms,
            success=success,
            error=None if success else error,
            timed_out=timed_out,
        )

    def _open_channel(self) -> paramiko.Channel:
        transport = self._client.get_transport() if self._client else None
        if transport is None or not transport.is_active():
            raise paramiko.SSHException(f"Session to {self.node.address} is closed")
        return transport.open_session()

    @staticmethod
    def _pump(
        channel: paramiko.Channel,
        chunks: list[str],
        on_line: Optional[LineCallback],
        deadline: float,
    ) -> bool:
        """Read the channel until the command exits or the deadline passes.

        Returns:
            True if the deadline passed first
        """
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""

        def feed(text: str) -> None:
            nonlocal pending
            chunks.append(text)
            if on_line is None:
                return
            pending += text
            while "\n" in pending:
                line, pending = pending.split("\n", 1)
                on_line(line.rstrip("\r"))

        while True:
            if time.monotonic() > deadline:
                return True
            if channel.recv_ready():
                data = channel.recv(RECV_CHUNK)
                if data:
                    feed(decoder.decode(data))
                continue
            if channel.exit_status_ready():
                break
            time.sleep(POLL_INTERVAL)

        tail = decoder.decode(b"", final=True)
        if tail:
            feed(tail)
        if on_line is not None and pending:
            on_line(pending.rstrip("\r"))
        return False

    def _log(self, entry: LogEntry) -> None:
        if self.log_sink is None:
            return
        try:
            self.log_sink.append(entry)
        except Exception as e:
            logger.warning("Log sink append failed", node_id=self.node.id, error=str(e))

    def upload_file(self, local_path: Path, remote_path: str, mode: Optional[int] = None) -> None:
        """Copy a local file to the node over SFTP.

        Raises:
            NodeConnectionError: If the transfer fails
        """
        if not self._client:
            raise NodeConnectionError("Session is closed", node_id=self.node.id)
        try:
            sftp = self._client.open_sftp()
            try:
                sftp.put(str(local_path), remote_path)
                if mode is not None:
                    sftp.chmod(remote_path, mode)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            raise NodeConnectionError(
                f"Upload of {local_path} to {self.node.address}:{remote_path} failed: {e}",
                node_id=self.node.id,
            ) from e
        logger.debug("File uploaded", node_id=self.node.id, remote_path=remote_path)

    def close(self) -> None:
        """Close the session."""
        with self._lock:
            if self._client:
                self._client.close()
                self._client = None

    def __enter__(self) -> "RemoteSession":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def check_connection(
    node: Node,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
) -> CommandResult:
    """Open a session and run a trivial command.

    Raises:
        NodeConnectionError: If the node cannot be reached or authenticated
    """
    with RemoteSession.connect(node, connect_timeout=connect_timeout) as session:
        return session.run_buffered("echo ok", timeout=connect_timeout)
