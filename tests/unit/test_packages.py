"""Tests for the pre-staged package cache."""

from pathlib import Path

from clusterup.orchestrator.packages import (
    LocalPackageCache,
    normalize_version,
    resolve_kube_binaries,
)


def _binary(tmp_path: Path, name: str) -> Path:
    source = tmp_path / "src" / name
    source.parent.mkdir(parents=True, exist_ok=True)
    source.write_bytes(b"\x7fELF")
    return source


class TestNormalizeVersion:
    """Tests for normalize_version."""

    def test_strips_v(self) -> None:
        """Should drop one leading v."""
        assert normalize_version("v1.29.3") == "1.29.3"
        assert normalize_version("1.29.3") == "1.29.3"


class TestLocalPackageCache:
    """Tests for LocalPackageCache."""

    def test_stage_and_resolve(self, tmp_path: Path) -> None:
        """Should find a staged binary by version, arch and distro."""
        cache = LocalPackageCache(tmp_path / "cache")
        staged = cache.stage(_binary(tmp_path, "kubeadm"), "kubeadm", "v1.29.3", "amd64", "ubuntu")

        assert cache.resolve_path("kubeadm", "1.29.3", "amd64", "ubuntu") == staged
        assert cache.resolve_path("kubeadm", "1.29.3", "arm64", "ubuntu") is None
        assert cache.resolve_path("kubeadm", "1.29.3", "amd64", "rocky") is None

    def test_any_distro_fallback(self, tmp_path: Path) -> None:
        """Should serve entries staged for any distro."""
        cache = LocalPackageCache(tmp_path / "cache")
        cache.stage(_binary(tmp_path, "kubectl"), "kubectl", "1.29.3", "amd64")

        assert cache.resolve_path("kubectl", "1.29.3", "amd64", "rocky") is not None

    def test_list_entries(self, tmp_path: Path) -> None:
        """Should list staged entry directories."""
        cache = LocalPackageCache(tmp_path / "cache")
        assert cache.list_entries() == []

        cache.stage(_binary(tmp_path, "kubelet"), "kubelet", "1.29.3", "amd64")
        assert cache.list_entries() == ["kubelet-1.29.3-amd64-any"]


class TestResolveKubeBinaries:
    """Tests for resolve_kube_binaries."""

    def test_all_present(self, tmp_path: Path) -> None:
        """Should resolve all three binaries."""
        cache = LocalPackageCache(tmp_path / "cache")
        for name in ("kubeadm", "kubelet", "kubectl"):
            cache.stage(_binary(tmp_path, name), name, "1.29.3", "amd64")

        paths = resolve_kube_binaries(cache, "1.29.3", "amd64", "ubuntu")

        assert set(paths) == {"kubeadm", "kubelet", "kubectl"}

    def test_partial_cache(self, tmp_path: Path) -> None:
        """Should return None unless every binary is staged."""
        cache = LocalPackageCache(tmp_path / "cache")
        cache.stage(_binary(tmp_path, "kubeadm"), "kubeadm", "1.29.3", "amd64")

        assert resolve_kube_binaries(cache, "1.29.3", "amd64", "ubuntu") is None
        assert resolve_kube_binaries(None, "1.29.3", "amd64", "ubuntu") is None
