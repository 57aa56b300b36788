"""Tests for SSH sessions."""

import time
from pathlib import Path
from typing import Optional
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from clusterup.orchestrator.errors import AuthenticationError, NodeConnectionError
from clusterup.orchestrator.logsink import LogStatus, MemoryLogSink
from clusterup.orchestrator.nodes import Node
from clusterup.orchestrator.ssh import (
    CommandResult,
    RemoteSession,
    check_connection,
    load_private_key,
)


class FakeChannel:
    """Minimal paramiko channel replaying canned output chunks."""

    def __init__(self, chunks: Optional[list[bytes]] = None, exit_code: int = 0, hang: bool = False):
        self._chunks = list(chunks or [])
        self._exit_code = exit_code
        self._hang = hang
        self.command: Optional[str] = None
        self.combined = False
        self.closed = False

    def set_combine_stderr(self, combine: bool) -> None:
        self.combined = combine

    def exec_command(self, command: str) -> None:
        self.command = command

    def recv_ready(self) -> bool:
        return bool(self._chunks)

    def recv(self, size: int) -> bytes:
        return self._chunks.pop(0)

    def exit_status_ready(self) -> bool:
        return not self._hang and not self._chunks

    def recv_exit_status(self) -> int:
        return self._exit_code

    def close(self) -> None:
        self.closed = True


class ChattyChannel(FakeChannel):
    """Channel for a command that never exits and never stops printing."""

    def __init__(self):
        super().__init__(hang=True)
        self.reads = 0

    def recv_ready(self) -> bool:
        return True

    def recv(self, size: int) -> bytes:
        self.reads += 1
        return b"waiting for dpkg lock...\n"


class BrokenChannel(FakeChannel):
    """Channel whose exec request fails."""

    def exec_command(self, command: str) -> None:
        raise paramiko.SSHException("Channel request failed")


def _node(**kwargs) -> Node:
    values = {"id": "m1", "name": "master", "address": "10.0.0.10", "password": "secret"}
    values.update(kwargs)
    return Node(**values)


def _session(channel: FakeChannel, log_sink=None, node: Optional[Node] = None) -> RemoteSession:
    client = MagicMock()
    client.get_transport.return_value.is_active.return_value = True
    client.get_transport.return_value.open_session.return_value = channel
    return RemoteSession(node or _node(), client, command_timeout=5, log_sink=log_sink)


class TestCommandResult:
    """Tests for CommandResult dataclass."""

    def test_to_dict(self) -> None:
        """Should convert to dictionary."""
        result = CommandResult(
            node_id="m1",
            command="uptime",
            exit_code=0,
            output="up 3 days",
            duration_ms=12.5,
            success=True,
        )
        d = result.to_dict()
        assert d["node_id"] == "m1"
        assert d["output"] == "up 3 days"
        assert d["timed_out"] is False
        assert d["error"] is None


class TestConnect:
    """Tests for RemoteSession.connect."""

    def test_password_auth(self) -> None:
        """Should connect with the node's password and no agent keys."""
        with patch("clusterup.orchestrator.ssh.paramiko.SSHClient") as mock_client_cls:
            session = RemoteSession.connect(_node(), connect_timeout=7)

        kwargs = mock_client_cls.return_value.connect.call_args.kwargs
        assert kwargs["hostname"] == "10.0.0.10"
        assert kwargs["username"] == "root"
        assert kwargs["password"] == "secret"
        assert kwargs["timeout"] == 7
        assert kwargs["look_for_keys"] is False
        assert kwargs["allow_agent"] is False
        assert session.node.id == "m1"

    def test_key_file_auth(self) -> None:
        """Should pass a key file instead of a password."""
        node = _node(password=None, private_key_path=Path("/keys/id_ed25519"), passphrase="pp")
        with patch("clusterup.orchestrator.ssh.paramiko.SSHClient") as mock_client_cls:
            RemoteSession.connect(node)

        kwargs = mock_client_cls.return_value.connect.call_args.kwargs
        assert kwargs["key_filename"] == "/keys/id_ed25519"
        assert kwargs["passphrase"] == "pp"
        assert "password" not in kwargs

    def test_inline_key_auth(self) -> None:
        """Should parse an inline key and pass it as pkey."""
        node = _node(password=None, private_key="-----BEGIN KEY-----")
        key = MagicMock()
        with patch("clusterup.orchestrator.ssh.paramiko.SSHClient") as mock_client_cls, patch(
            "clusterup.orchestrator.ssh.load_private_key", return_value=key
        ):
            RemoteSession.connect(node)

        assert mock_client_cls.return_value.connect.call_args.kwargs["pkey"] is key

    def test_missing_credential(self) -> None:
        """Should refuse to connect without exactly one credential."""
        with patch("clusterup.orchestrator.ssh.paramiko.SSHClient") as mock_client_cls:
            with pytest.raises(AuthenticationError):
                RemoteSession.connect(_node(password=None))
        mock_client_cls.assert_not_called()

    def test_authentication_rejected(self) -> None:
        """Should map rejected credentials to AuthenticationError."""
        with patch("clusterup.orchestrator.ssh.paramiko.SSHClient") as mock_client_cls:
            mock_client_cls.return_value.connect.side_effect = paramiko.AuthenticationException("denied")
            with pytest.raises(AuthenticationError) as exc_info:
                RemoteSession.connect(_node())

        assert exc_info.value.node_id == "m1"
        mock_client_cls.return_value.close.assert_called_once()

    def test_unreachable(self) -> None:
        """Should map socket errors to NodeConnectionError."""
        with patch("clusterup.orchestrator.ssh.paramiko.SSHClient") as mock_client_cls:
            mock_client_cls.return_value.connect.side_effect = OSError("No route to host")
            with pytest.raises(NodeConnectionError) as exc_info:
                RemoteSession.connect(_node())

        assert not isinstance(exc_info.value, AuthenticationError)
        assert "No route to host" in str(exc_info.value)


class TestLoadPrivateKey:
    """Tests for load_private_key."""

    def test_invalid_key(self) -> None:
        """Should raise AuthenticationError for unparseable text."""
        with pytest.raises(AuthenticationError):
            load_private_key("not a key")


class TestRun:
    """Tests for buffered and streaming execution."""

    def test_buffered_success(self) -> None:
        """Should collect output and the exit status."""
        channel = FakeChannel([b"hello\n", b"world\n"])
        result = _session(channel).run_buffered("echo hello")

        assert result.success is True
        assert result.exit_code == 0
        assert result.output == "hello\nworld\n"
        assert channel.command == "echo hello"
        assert channel.combined is True
        assert channel.closed is True

    def test_nonzero_exit(self) -> None:
        """Should report a non-zero exit as failure."""
        result = _session(FakeChannel([b"oops\n"], exit_code=2)).run_buffered("false")

        assert result.success is False
        assert result.exit_code == 2
        assert result.error == "Exit code 2"
        assert result.timed_out is False

    def test_streaming_lines(self) -> None:
        """Should deliver complete lines in order, including a trailing partial line."""
        lines = []
        channel = FakeChannel([b"line1\nli", b"ne2\r\n", b"tail"])

        result = _session(channel).run_streaming("cmd", lines.append)

        assert lines == ["line1", "line2", "tail"]
        assert result.output == "line1\nline2\r\ntail"

    def test_streaming_split_utf8(self) -> None:
        """Should decode characters split across reads."""
        lines = []
        _session(FakeChannel([b"caf\xc3", b"\xa9\n"])).run_streaming("cmd", lines.append)
        assert lines == ["café"]

    def test_timeout(self) -> None:
        """Should give up on a command that never exits."""
        result = _session(FakeChannel(hang=True)).run_buffered("sleep 1000", timeout=0.01)

        assert result.timed_out is True
        assert result.success is False
        assert "timed out" in result.error

    def test_timeout_while_output_flows(self) -> None:
        """Should enforce the bound even when the command keeps printing."""
        channel = ChattyChannel()
        started = time.monotonic()

        result = _session(channel).run_buffered("apt-get install -y containerd", timeout=0.05)

        assert result.timed_out is True
        assert time.monotonic() - started < 1.0
        assert "waiting for dpkg lock" in result.output
        assert channel.closed is True

    def test_channel_closed_on_error(self) -> None:
        """Should close the channel when the command cannot be started."""
        channel = BrokenChannel()

        result = _session(channel).run_buffered("uptime")

        assert result.success is False
        assert "Channel request failed" in result.error
        assert channel.closed is True

    def test_log_sink_masks_join_secrets(self) -> None:
        """Should keep the bootstrap token out of log entries."""
        sink = MemoryLogSink()
        token = "abcdef.0123456789abcdef"
        command = f"kubeadm join 10.0.0.10:6443 --token {token} --discovery-token-ca-cert-hash sha256:{'ab' * 32}"
        channel = FakeChannel([f"{command}\n".encode()])

        result = _session(channel, log_sink=sink).run_buffered("kubeadm token create --print-join-command")

        assert token in result.output
        start, end = sink.entries
        assert token not in end.output
        assert "--token <redacted>" in end.output
        assert start.command == "kubeadm token create --print-join-command"

        sink = MemoryLogSink()
        _session(FakeChannel([b"ok\n"]), log_sink=sink).run_buffered(command)
        assert all(token not in entry.command for entry in sink.entries)

    def test_log_sink_start_and_end(self) -> None:
        """Should log a running entry and a final entry with the same ID."""
        sink = MemoryLogSink()
        _session(FakeChannel([b"ok\n"]), log_sink=sink).run_buffered("uptime")

        start, end = sink.entries
        assert start.id == end.id
        assert start.status == LogStatus.RUNNING
        assert start.output == ""
        assert end.status == LogStatus.SUCCESS
        assert end.output == "ok\n"
        assert end.node_name == "master"

    def test_log_sink_timeout_status(self) -> None:
        """Should log timeouts as such."""
        sink = MemoryLogSink()
        _session(FakeChannel(hang=True), log_sink=sink).run_buffered("sleep 1000", timeout=0.01)
        assert sink.entries[-1].status == LogStatus.TIMEOUT

    def test_log_sink_failure_ignored(self) -> None:
        """Should keep running when the sink fails."""
        sink = MagicMock()
        sink.append.side_effect = OSError("disk full")

        result = _session(FakeChannel([b"ok\n"]), log_sink=sink).run_buffered("uptime")

        assert result.success is True

    def test_closed_session(self) -> None:
        """Should report an error instead of raising once closed."""
        session = _session(FakeChannel())
        session.close()

        result = session.run_buffered("uptime")

        assert result.success is False
        assert "closed" in result.error


class TestUploadFile:
    """Tests for SFTP uploads."""

    def test_upload_with_mode(self, tmp_path: Path) -> None:
        """Should put the file and set its mode."""
        session = _session(FakeChannel())
        sftp = session._client.open_sftp.return_value
        local = tmp_path / "kubeadm"

        session.upload_file(local, "/tmp/clusterup-kubeadm", mode=0o755)

        sftp.put.assert_called_once_with(str(local), "/tmp/clusterup-kubeadm")
        sftp.chmod.assert_called_once_with("/tmp/clusterup-kubeadm", 0o755)
        sftp.close.assert_called_once()

    def test_upload_failure(self, tmp_path: Path) -> None:
        """Should wrap transfer errors."""
        session = _session(FakeChannel())
        session._client.open_sftp.return_value.put.side_effect = OSError("No space left")

        with pytest.raises(NodeConnectionError):
            session.upload_file(tmp_path / "kubeadm", "/tmp/clusterup-kubeadm")


class TestCheckConnection:
    """Tests for check_connection."""

    def test_runs_echo(self) -> None:
        """Should run a trivial command and close the session."""
        session = MagicMock()
        session.__enter__.return_value = session
        with patch(
            "clusterup.orchestrator.ssh.RemoteSession.connect", return_value=session
        ) as mock_connect:
            check_connection(_node(), connect_timeout=3)

        mock_connect.assert_called_once()
        session.run_buffered.assert_called_once_with("echo ok", timeout=3)
        session.__exit__.assert_called_once()
