"""Tests for command log sinks."""

import json
from pathlib import Path

from clusterup.orchestrator.logsink import (
    JsonlLogSink,
    LogEntry,
    LogStatus,
    MemoryLogSink,
    redact_secrets,
)


def _entry(node_id: str = "m1", status: LogStatus = LogStatus.RUNNING) -> LogEntry:
    return LogEntry(
        node_id=node_id,
        node_name=node_id,
        operation="ssh_command",
        command="uptime",
        status=status,
    )


class TestRedactSecrets:
    """Tests for redact_secrets."""

    def test_masks_flags_and_bare_tokens(self) -> None:
        """Should mask token flags, certificate keys and tokens printed alone."""
        text = (
            "kubeadm join 10.0.0.10:6443 --token abcdef.0123456789abcdef \\\n"
            "\t--certificate-key 9f8e7d\n"
            "abcdef.0123456789abcdef\n"
        )

        redacted = redact_secrets(text)

        assert "abcdef.0123456789abcdef" not in redacted
        assert "9f8e7d" not in redacted
        assert redacted.count("<redacted>") == 3
        assert redacted.startswith("kubeadm join 10.0.0.10:6443 --token <redacted>")

    def test_leaves_ordinary_output(self) -> None:
        """Should not touch output without secrets."""
        text = "node1.example.com Ready control-plane v1.29.3"
        assert redact_secrets(text) == text


class TestLogEntry:
    """Tests for LogEntry."""

    def test_defaults(self) -> None:
        """Should start as running with no output."""
        entry = _entry()
        assert entry.status == LogStatus.RUNNING
        assert entry.output == ""
        assert entry.id

    def test_to_dict(self) -> None:
        """Should serialize status as its value."""
        d = _entry(status=LogStatus.TIMEOUT).to_dict()
        assert d["status"] == "timeout"
        assert d["command"] == "uptime"


class TestMemoryLogSink:
    """Tests for MemoryLogSink."""

    def test_append_and_filter(self) -> None:
        """Should keep entries and filter them by node."""
        sink = MemoryLogSink()
        sink.append(_entry("m1"))
        sink.append(_entry("w1"))

        assert len(sink.entries) == 2
        assert [e.node_id for e in sink.for_node("w1")] == ["w1"]


class TestJsonlLogSink:
    """Tests for JsonlLogSink."""

    def test_append_writes_lines(self, tmp_path: Path) -> None:
        """Should append one JSON object per entry."""
        path = tmp_path / "logs" / "deploy-log.jsonl"
        sink = JsonlLogSink(path)
        sink.append(_entry("m1"))
        sink.append(_entry("m1", LogStatus.SUCCESS))

        lines = path.read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["status"] == "success"

    def test_read_filters_and_limits(self, tmp_path: Path) -> None:
        """Should filter by node and keep the newest entries."""
        sink = JsonlLogSink(tmp_path / "log.jsonl")
        for node_id in ("m1", "w1", "m1", "m1"):
            sink.append(_entry(node_id))

        assert len(sink.read()) == 4
        assert len(sink.read(node_id="m1")) == 3
        assert len(sink.read(node_id="m1", limit=2)) == 2

    def test_read_skips_corrupt_lines(self, tmp_path: Path) -> None:
        """Should ignore lines that are not JSON."""
        path = tmp_path / "log.jsonl"
        path.write_text('{"node_id": "m1"}\nnot json\n\n')

        assert JsonlLogSink(path).read() == [{"node_id": "m1"}]

    def test_read_missing_file(self, tmp_path: Path) -> None:
        """Should return nothing when the file does not exist."""
        assert JsonlLogSink(tmp_path / "none.jsonl").read() == []
