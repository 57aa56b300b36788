"""Node records and inventory for cluster deployments.

A node is one target machine. The engine reads nodes through the
:class:`NodeProvider` interface and only ever writes back last-known status
and the detected distribution.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

import yaml

from clusterup.telemetry.logger import get_logger

logger = get_logger(__name__)


class NodeRole(str, Enum):
    """Role of a node in the cluster."""

    PRIMARY = "primary"
    SECONDARY = "secondary"

    @classmethod
    def parse(cls, value: Any) -> "NodeRole":
        """Parse a role, accepting the master/worker spellings.

        Raises:
            ValueError: If the value is not a known role
        """
        if isinstance(value, NodeRole):
            return value
        text = str(value or "").strip().lower()
        aliases = {
            "master": cls.PRIMARY,
            "control-plane": cls.PRIMARY,
            "worker": cls.SECONDARY,
            "": cls.SECONDARY,
        }
        if text in aliases:
            return aliases[text]
        return cls(text)


class NodeStatus(str, Enum):
    """Last-known node status."""

    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"
    DEPLOYING = "deploying"
    READY = "ready"
    ERROR = "error"


@dataclass
class Node:
    """A target machine.

    Exactly one credential kind must be set: ``password``, or a private key
    given inline (``private_key``) or as a file (``private_key_path``).

    Attributes:
        id: Unique node identifier
        name: Display name
        address: IP address or hostname
        port: SSH port
        username: SSH username
        password: SSH password
        private_key: PEM-encoded private key text
        private_key_path: Path to a private key file
        passphrase: Passphrase for an encrypted private key
        role: Primary or secondary
        distro: Distribution ID detected on first contact (/etc/os-release ID)
        status: Last-known status
        created_at: When the node was added
        updated_at: When the node was last changed
    """

    id: str
    name: str
    address: str
    port: int = 22
    username: str = "root"
    password: Optional[str] = None
    private_key: Optional[str] = None
    private_key_path: Optional[Path] = None
    passphrase: Optional[str] = None
    role: NodeRole = NodeRole.SECONDARY
    distro: Optional[str] = None
    status: NodeStatus = NodeStatus.UNKNOWN
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_primary(self) -> bool:
        return self.role == NodeRole.PRIMARY

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def credential_kind(self) -> Optional[str]:
        """Which credential is configured ("password" or "key"), if exactly one is."""
        kinds = [
            kind
            for kind, value in (
                ("password", self.password),
                ("key", self.private_key),
                ("key", self.private_key_path),
            )
            if value
        ]
        return kinds[0] if len(kinds) == 1 else None

    def privileged(self, command: str) -> str:
        """Prefix a command with sudo unless logging in as root."""
        return command if self.username == "root" else f"sudo {command}"

    def validate(self) -> None:
        """Check the record is usable for a deployment.

        Raises:
            ValueError: If address is missing or the credential is ambiguous
        """
        if not self.address:
            raise ValueError(f"Node '{self.id}' has no address")
        if not 0 < self.port < 65536:
            raise ValueError(f"Node '{self.id}' has invalid port {self.port}")
        if self.credential_kind is None:
            raise ValueError(
                f"Node '{self.id}' needs exactly one of password or private key"
            )

    def to_dict(self, include_secrets: bool = True) -> dict[str, Any]:
        """Convert node to dictionary for serialization."""
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "port": self.port,
            "username": self.username,
            "role": self.role.value,
            "distro": self.distro,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if include_secrets:
            data["password"] = self.password
            data["private_key"] = self.private_key
            data["passphrase"] = self.passphrase
        data["private_key_path"] = str(self.private_key_path) if self.private_key_path else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Node":
        """Create node from dictionary.

        Accepts ``ip`` for ``address`` and ``node_type`` for ``role``.
        """
        key_path = data.get("private_key_path")
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            address=data.get("address") or data.get("ip", ""),
            port=int(data.get("port", 22)),
            username=data.get("username") or "root",
            password=data.get("password") or None,
            private_key=data.get("private_key") or None,
            private_key_path=Path(key_path).expanduser() if key_path else None,
            passphrase=data.get("passphrase") or None,
            role=NodeRole.parse(data.get("role", data.get("node_type"))),
            distro=data.get("distro") or None,
            status=NodeStatus(data.get("status", "unknown")),
            created_at=datetime.fromisoformat(data["created_at"])
            if data.get("created_at")
            else datetime.now(),
            updated_at=datetime.fromisoformat(data["updated_at"])
            if data.get("updated_at")
            else datetime.now(),
        )


class NodeProvider(ABC):
    """Read access to the node inventory, as consumed by the engine."""

    @abstractmethod
    def list_nodes(self) -> List[Node]:
        """Return every known node."""
        pass

    @abstractmethod
    def get_node(self, node_id: str) -> Optional[Node]:
        """Return one node, or None if unknown."""
        pass

    def update_status(
        self,
        node_id: str,
        status: NodeStatus,
        distro: Optional[str] = None,
    ) -> None:
        """Record last-known status and detected distribution.

        Read-only providers keep this default, which ignores the update.
        """
        return None


class NodeInventory(NodeProvider):
    """YAML-backed node inventory.

    Example:
        inventory = NodeInventory(Path("nodes.yaml"))
        inventory.add(create_node("10.0.0.10", password="secret", role=NodeRole.PRIMARY))
        inventory.save()
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        """Initialize node inventory.

        Args:
            path: Optional path for persistence
        """
        self._nodes: dict[str, Node] = {}
        self._path: Optional[Path] = path
        # Join workers report status concurrently
        self._lock = threading.RLock()

        if path and path.exists():
            self.load(path)

    def load(self, path: Path) -> None:
        """Load inventory from a YAML file."""
        self._path = path

        if not path.exists():
            logger.warning("Inventory file not found", path=str(path))
            return

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        with self._lock:
            for node_data in data.get("nodes", []):
                try:
                    node = Node.from_dict(node_data)
                except (KeyError, ValueError, TypeError) as e:
                    logger.error(
                        "Failed to load node",
                        node_id=node_data.get("id"),
                        error=str(e),
                    )
                    continue
                self._nodes[node.id] = node

        logger.info("Inventory loaded", path=str(path), node_count=len(self._nodes))

    def save(self, path: Optional[Path] = None) -> None:
        """Save inventory to a YAML file.

        Raises:
            ValueError: If no path was given here or at construction
        """
        save_path = path or self._path
        if not save_path:
            raise ValueError("No path specified for saving inventory")

        save_path.parent.mkdir(parents=True, exist_ok=True)

        with self._lock:
            data = {
                "version": "1.0",
                "updated_at": datetime.now().isoformat(),
                "nodes": [node.to_dict() for node in self._nodes.values()],
            }
            with open(save_path, "w") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

        logger.debug("Inventory saved", path=str(save_path), node_count=len(data["nodes"]))

    def get_node(self, node_id: str) -> Optional[Node]:
        with self._lock:
            return self._nodes.get(node_id)

    def list_nodes(self) -> List[Node]:
        with self._lock:
            return list(self._nodes.values())

    def add(self, node: Node) -> None:
        """Add a node.

        Raises:
            ValueError: If the ID already exists or the record is invalid
        """
        node.validate()
        with self._lock:
            if node.id in self._nodes:
                raise ValueError(f"Node with ID '{node.id}' already exists")
            self._nodes[node.id] = node
        logger.info("Node added", node_id=node.id, address=node.address, role=node.role.value)

    def remove(self, node_id: str) -> bool:
        """Remove a node.

        Returns:
            True if the node was removed, False if not found
        """
        with self._lock:
            removed = self._nodes.pop(node_id, None)
        if removed:
            logger.info("Node removed", node_id=node_id)
        return removed is not None

    def update_status(
        self,
        node_id: str,
        status: NodeStatus,
        distro: Optional[str] = None,
    ) -> None:
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                return
            node.status = status
            if distro:
                node.distro = distro
            node.updated_at = datetime.now()
            if self._path:
                self.save()

    def __len__(self) -> int:
        return len(self._nodes)


def create_node(
    address: str,
    name: Optional[str] = None,
    role: NodeRole = NodeRole.SECONDARY,
    port: int = 22,
    username: str = "root",
    password: Optional[str] = None,
    private_key_path: Optional[Path] = None,
    node_id: Optional[str] = None,
) -> Node:
    """Convenience function to build a node record.

    Args:
        address: IP address or hostname
        name: Display name (defaults to the address)
        role: Node role
        port: SSH port
        username: SSH username
        password: SSH password
        private_key_path: Path to a private key file
        node_id: Explicit ID (random when omitted)

    Returns:
        New Node instance
    """
    return Node(
        id=node_id or f"node-{uuid.uuid4().hex[:8]}",
        name=name or address,
        address=address,
        port=port,
        username=username,
        password=password,
        private_key_path=private_key_path,
        role=role,
    )
