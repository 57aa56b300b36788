"""Script override storage and resolution.

Operators can replace the command text of any step, for every distribution
or for one. :class:`ScriptResolver` decides which text a step actually runs:

1. ``<distro>_<step>`` override (e.g. ``ubuntu_containerd_install``)
2. ``<step>_<distro>`` override, the older naming
3. ``<step>`` override
4. the built-in script for the distribution family

Overrides for steps that manage a service are checked before use; one
that would leave the service stopped is rejected and the built-in script
runs instead.
"""

import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

import yaml

from clusterup.orchestrator.builtin_scripts import DEFAULT_SCRIPTS, default_script
from clusterup.orchestrator.errors import ScriptIntegrityRejected
from clusterup.telemetry.events import EventType, emit_event
from clusterup.telemetry.logger import get_logger

logger = get_logger(__name__)

BUILTIN_SOURCE = "builtin"

# Evidence an override must show before it may configure a managed service
SERVICE_INTEGRITY_RULES: dict[str, dict[str, re.Pattern[str]]] = {
    "containerd_config": {
        "restart-or-start": re.compile(
            r"systemctl\s+(?:-\S+\s+)*(?:restart|start|enable\s+--now)\b"
            r"|\bservice\s+\S+\s+(?:restart|start)\b",
        ),
        "enable": re.compile(r"systemctl\s+(?:-\S+\s+)*enable\b|\bchkconfig\s+\S+\s+on\b"),
        "reload": re.compile(r"daemon-reload|systemctl\s+(?:-\S+\s+)*reload\b"),
    },
}

StepKey = Union[str, Enum]


def _step_key(step: StepKey) -> str:
    return step.value if isinstance(step, Enum) else str(step)


class ScriptProvider(ABC):
    """Source of operator-supplied override scripts."""

    @abstractmethod
    def get_script(self, name: str) -> tuple[str, bool]:
        """Look up an override.

        Args:
            name: Override name, e.g. ``ubuntu_containerd_install``

        Returns:
            Tuple of (text, found)
        """
        pass


class ScriptStore(ScriptProvider):
    """In-memory override store, optionally persisted as YAML.

    Example:
        store = ScriptStore(Path("scripts.yaml"))
        store.set("ubuntu_containerd_install", "apt-get install -y containerd")
        store.save()
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        scripts: Optional[dict[str, str]] = None,
    ) -> None:
        """Initialize the store.

        Args:
            path: Optional YAML file to load from and save to
            scripts: Initial overrides
        """
        self._scripts: dict[str, str] = dict(scripts or {})
        self._path = path
        self._lock = threading.Lock()

        if path and path.exists():
            self.load(path)

    def load(self, path: Path) -> None:
        """Load overrides from a YAML file (``scripts: {name: text}``)."""
        self._path = path
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        scripts = data.get("scripts", {})
        if not isinstance(scripts, dict):
            raise ValueError(f"'scripts' must be a mapping in {path}")

        with self._lock:
            for name, text in scripts.items():
                if isinstance(text, str):
                    self._scripts[str(name)] = text

        logger.info("Script overrides loaded", path=str(path), count=len(self._scripts))

    def save(self, path: Optional[Path] = None) -> None:
        """Persist overrides to YAML.

        Raises:
            ValueError: If no path is known
        """
        save_path = path or self._path
        if not save_path:
            raise ValueError("No path specified for saving scripts")
        save_path.parent.mkdir(parents=True, exist_ok=True)

        with self._lock:
            data = {
                "version": "1.0",
                "updated_at": datetime.now().isoformat(),
                "scripts": dict(sorted(self._scripts.items())),
            }
        with open(save_path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    def get_script(self, name: str) -> tuple[str, bool]:
        with self._lock:
            if name in self._scripts:
                return self._scripts[name], True
        return "", False

    def set(self, name: str, text: str) -> None:
        with self._lock:
            self._scripts[name] = text

    def remove(self, name: str) -> bool:
        with self._lock:
            return self._scripts.pop(name, None) is not None

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._scripts)


def override_names(step: StepKey, distro: Optional[str]) -> list[str]:
    """Override names to try for a step, most specific first."""
    key = _step_key(step)
    names = []
    if distro:
        names.append(f"{distro}_{key}")
        names.append(f"{key}_{distro}")
    names.append(key)
    return names


def check_integrity(step: StepKey, text: str) -> list[str]:
    """Return the evidence labels an override is missing (empty when acceptable)."""
    rules = SERVICE_INTEGRITY_RULES.get(_step_key(step), {})
    return [label for label, pattern in rules.items() if not pattern.search(text)]


class ScriptResolver:
    """Resolves the command text a step runs on a distribution.

    Results are cached per (step, distro), so a run sees one consistent
    script per step even if the provider changes underneath it.
    """

    def __init__(
        self,
        provider: Optional[ScriptProvider] = None,
        on_rejected: Optional[Callable[[ScriptIntegrityRejected], None]] = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            provider: Override source (built-in scripts only when None)
            on_rejected: Called when an override fails its integrity check
        """
        self.provider = provider
        self.on_rejected = on_rejected
        self._cache: dict[tuple[str, str], tuple[str, str]] = {}
        self._lock = threading.Lock()

    def resolve(self, step: StepKey, distro: Optional[str]) -> str:
        """Resolve the command text for a step.

        Raises:
            UnsupportedDistribution: If no override exists and the built-in
                script does not cover the distribution
        """
        return self.explain(step, distro)[1]

    def explain(self, step: StepKey, distro: Optional[str]) -> tuple[str, str]:
        """Resolve a step and report where the text came from.

        Returns:
            Tuple of (source, text); source is the override name or "builtin"
        """
        key = _step_key(step)
        cache_key = (key, distro or "")
        with self._lock:
            if cache_key in self._cache:
                return self._cache[cache_key]

        resolved = self._lookup(key, distro)
        with self._lock:
            self._cache[cache_key] = resolved
        return resolved

    def _lookup(self, step: str, distro: Optional[str]) -> tuple[str, str]:
        if self.provider is not None:
            for name in override_names(step, distro):
                text, found = self.provider.get_script(name)
                if not found or not text.strip():
                    continue

                missing = check_integrity(step, text)
                if missing:
                    self._reject(ScriptIntegrityRejected(name, missing, step=step))
                    break

                logger.debug("Using script override", step=step, distro=distro, name=name)
                return name, text

        return BUILTIN_SOURCE, default_script(step, distro)

    def _reject(self, error: ScriptIntegrityRejected) -> None:
        logger.warning(
            "Script override rejected, using built-in script",
            script=error.script_name,
            step=error.step,
            missing=error.missing,
        )
        emit_event(
            EventType.SCRIPT_REJECTED,
            data={"script": error.script_name, "step": error.step, "missing": error.missing},
        )
        if self.on_rejected is not None:
            self.on_rejected(error)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()


def builtin_step_names() -> list[str]:
    """Steps that have a built-in script."""
    return list(DEFAULT_SCRIPTS)
