"""Durable log of remote command executions.

Every remote command produces a ``running`` entry when it starts and a
final entry (same ``id``) when it ends. Sinks are write-only and their
failures never interrupt a deployment.
"""

import json
import re
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from clusterup.telemetry.logger import get_logger

logger = get_logger(__name__)

SECRET_PATTERNS = (
    re.compile(r"(--token[ \t=]+)\S+"),
    re.compile(r"(--certificate-key[ \t=]+)\S+"),
    re.compile(r"()\b[a-z0-9]{6}\.[a-z0-9]{16}\b"),
)


def redact_secrets(text: str) -> str:
    """Mask bootstrap tokens and certificate keys in command text or output."""
    for pattern in SECRET_PATTERNS:
        text = pattern.sub(r"\1<redacted>", text)
    return text


class LogStatus(str, Enum):
    """Status of a logged command."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class LogEntry:
    """One log record for a remote command.

    Attributes:
        node_id: Node the command ran on
        node_name: Display name of that node
        operation: What the command was for (e.g. "ssh_command")
        command: Command text
        output: Output collected so far (empty while running)
        status: Command status
        id: Entry identifier, shared by start and end records
        created_at: When the command started
        updated_at: When this record was produced
    """

    node_id: str
    node_name: str
    operation: str
    command: str
    output: str = ""
    status: LogStatus = LogStatus.RUNNING
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "node_id": self.node_id,
            "node_name": self.node_name,
            "operation": self.operation,
            "command": self.command,
            "output": self.output,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class LogSink(ABC):
    """Write-only destination for log entries."""

    @abstractmethod
    def append(self, entry: LogEntry) -> None:
        """Record an entry.

        Args:
            entry: Entry to record
        """
        pass


class MemoryLogSink(LogSink):
    """Keeps entries in memory; handy for dry runs and tests."""

    def __init__(self) -> None:
        self._entries: list[LogEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    @property
    def entries(self) -> list[LogEntry]:
        with self._lock:
            return list(self._entries)

    def for_node(self, node_id: str) -> list[LogEntry]:
        return [entry for entry in self.entries if entry.node_id == node_id]


class JsonlLogSink(LogSink):
    """Appends entries as JSON lines to a file.

    Example:
        sink = JsonlLogSink(Path("~/.clusterup/deploy-log.jsonl"))
        sink.append(LogEntry(node_id="n1", node_name="master", operation="ssh_command", command="uptime"))
    """

    def __init__(self, path: Path) -> None:
        """Initialize the sink.

        Args:
            path: File to append to (created on first write)
        """
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def append(self, entry: LogEntry) -> None:
        line = json.dumps(entry.to_dict(), ensure_ascii=False)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read(self, node_id: Optional[str] = None, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """Read back recorded entries, newest last.

        Args:
            node_id: Only return entries for this node
            limit: Only return the last ``limit`` entries
        """
        if not self.path.exists():
            return []

        records = []
        with self._lock, open(self.path, "r", encoding="utf-8") as f:
            for raw in f:
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    record = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupt log line", path=str(self.path))
                    continue
                if node_id is None or record.get("node_id") == node_id:
                    records.append(record)

        return records[-limit:] if limit else records
