"""Pre-staged Kubernetes binaries.

A package cache maps (name, version, arch, distro) to a local file. When
kubeadm, kubelet and kubectl are all cached for a run, the components step
uploads them instead of installing from a package repository.
"""

import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from clusterup.telemetry.logger import get_logger

logger = get_logger(__name__)

KUBE_BINARIES = ("kubeadm", "kubelet", "kubectl")


def normalize_version(version: str) -> str:
    """Strip a leading "v" so "v1.29.3" and "1.29.3" share a cache entry."""
    return version[1:] if version.startswith("v") else version


class PackageCache(ABC):
    """Resolves pre-staged artifacts."""

    @abstractmethod
    def resolve_path(
        self,
        name: str,
        version: str,
        arch: str,
        distro: str,
    ) -> Optional[Path]:
        """Return the local path of an artifact, or None if not staged."""
        pass


class LocalPackageCache(PackageCache):
    """Directory-backed cache laid out as ``<root>/<name>-<version>-<arch>-<distro>/<name>``.

    Entries staged for ``distro="any"`` serve every distribution.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()

    def _entry_dir(self, name: str, version: str, arch: str, distro: str) -> Path:
        return self.root / f"{name}-{normalize_version(version)}-{arch}-{distro}"

    def resolve_path(
        self,
        name: str,
        version: str,
        arch: str,
        distro: str,
    ) -> Optional[Path]:
        for candidate_distro in (distro, "any"):
            path = self._entry_dir(name, version, arch, candidate_distro) / name
            if path.is_file():
                return path
        return None

    def stage(
        self,
        source: Path,
        name: str,
        version: str,
        arch: str,
        distro: str = "any",
    ) -> Path:
        """Copy a binary into the cache.

        Returns:
            Path of the cached artifact
        """
        target_dir = self._entry_dir(name, version, arch, distro)
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / name
        shutil.copy2(source, target)
        target.chmod(0o755)
        logger.info(
            "Package staged",
            name=name,
            version=normalize_version(version),
            arch=arch,
            distro=distro,
        )
        return target

    def list_entries(self) -> list[str]:
        """Names of all staged entries."""
        if not self.root.is_dir():
            return []
        return sorted(path.name for path in self.root.iterdir() if path.is_dir())


def resolve_kube_binaries(
    cache: Optional[PackageCache],
    version: str,
    arch: str,
    distro: str,
) -> Optional[dict[str, Path]]:
    """Resolve all three Kubernetes binaries, or None unless every one is staged."""
    if cache is None:
        return None

    paths: dict[str, Path] = {}
    for name in KUBE_BINARIES:
        path = cache.resolve_path(name, version, arch, distro)
        if path is None:
            return None
        paths[name] = path
    return paths
