"""Tests for configuration schemas and loading."""

from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from pydantic import ValidationError

from clusterup.config.loader import (
    create_default_config,
    deep_merge,
    get_env_overrides,
    load_config,
    load_yaml_config,
)
from clusterup.config.schemas import ClusterUpConfig, DeployConfig, JoinConfig


class TestSchemas:
    """Tests for configuration models."""

    def test_defaults(self) -> None:
        """Should have sensible defaults."""
        config = ClusterUpConfig()

        assert config.log_level == "INFO"
        assert config.ssh.default_username == "root"
        assert config.deploy.kube_version == "1.29.3"
        assert config.deploy.arch == "amd64"
        assert config.deploy.pod_network_cidr == "10.244.0.0/16"
        assert config.deploy.skip_steps == []
        assert config.deploy.join_query_attempts == 3
        assert config.join.join_command is None

    def test_log_level_normalized(self) -> None:
        """Should accept lowercase log levels."""
        assert ClusterUpConfig(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self) -> None:
        """Should reject unknown log levels."""
        with pytest.raises(ValidationError):
            ClusterUpConfig(log_level="LOUD")

    def test_invalid_arch(self) -> None:
        """Should reject architectures without packages."""
        with pytest.raises(ValidationError):
            DeployConfig(arch="riscv64")

    def test_skip_steps_from_comma_string(self) -> None:
        """Should split a comma-separated skip list."""
        config = DeployConfig(skip_steps="system_prep, ip_forward,")
        assert config.skip_steps == ["system_prep", "ip_forward"]

    def test_negative_settle_factor_rejected(self) -> None:
        """Should reject a negative settle factor."""
        with pytest.raises(ValidationError):
            DeployConfig(settle_factor=-1)

    def test_zero_join_attempts_rejected(self) -> None:
        """Should require at least one join query attempt."""
        with pytest.raises(ValidationError):
            DeployConfig(join_query_attempts=0)

    def test_join_config_fields(self) -> None:
        """Should hold the external join credential."""
        join = JoinConfig(token="abcdef.0123456789abcdef", control_plane_endpoint="10.0.0.10:6443")
        assert join.token == "abcdef.0123456789abcdef"
        assert join.ca_cert_hash is None


class TestDeepMerge:
    """Tests for deep_merge."""

    def test_nested_override(self) -> None:
        """Should merge nested dictionaries key by key."""
        base = {"ssh": {"connect_timeout": 30, "command_timeout": 3600}, "log_level": "INFO"}
        override = {"ssh": {"connect_timeout": 5}}

        merged = deep_merge(base, override)

        assert merged == {
            "ssh": {"connect_timeout": 5, "command_timeout": 3600},
            "log_level": "INFO",
        }

    def test_does_not_mutate_base(self) -> None:
        """Should leave the base dictionary untouched."""
        base = {"deploy": {"arch": "amd64"}}
        deep_merge(base, {"deploy": {"arch": "arm64"}})
        assert base["deploy"]["arch"] == "amd64"


class TestEnvOverrides:
    """Tests for environment variable overrides."""

    def test_nested_keys(self) -> None:
        """Should map double underscores to nesting."""
        overrides = get_env_overrides(
            {
                "CLUSTERUP_LOG_LEVEL": "DEBUG",
                "CLUSTERUP_SSH__COMMAND_TIMEOUT": "600",
                "HOME": "/root",
            }
        )

        assert overrides == {"log_level": "DEBUG", "ssh": {"command_timeout": "600"}}

    def test_ignores_other_prefixes(self) -> None:
        """Should ignore unrelated variables."""
        assert get_env_overrides({"KUBEADM_TOKEN": "x", "PATH": "/bin"}) == {}


class TestLoadConfig:
    """Tests for load_config."""

    def test_load_explicit_file(self, temp_config_file: Path) -> None:
        """Should load values from an explicit file."""
        with patch("clusterup.config.loader.get_config_paths", return_value=[]):
            config = load_config(temp_config_file, include_env=False)

        assert config.ssh.connect_timeout == 10
        assert config.ssh.command_timeout == 900
        assert config.deploy.kube_version == "v1.28.2"
        assert config.deploy.arch == "arm64"
        assert config.deploy.skip_steps == ["system_prep"]
        assert config.log_level == "DEBUG"

    def test_env_overrides_file(self, temp_config_file: Path) -> None:
        """Should let environment variables win over files."""
        environ = {
            "CLUSTERUP_DEPLOY__ARCH": "amd64",
            "CLUSTERUP_DEPLOY__SKIP_STEPS": "repo_config,k8s_verify",
            "CLUSTERUP_SSH__CONNECT_TIMEOUT": "2.5",
        }
        with patch("clusterup.config.loader.get_config_paths", return_value=[]):
            config = load_config(temp_config_file, environ=environ)

        assert config.deploy.arch == "amd64"
        assert config.deploy.skip_steps == ["repo_config", "k8s_verify"]
        assert config.ssh.connect_timeout == 2.5

    def test_missing_explicit_file(self, tmp_path: Path) -> None:
        """Should raise when an explicit file does not exist."""
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml", include_env=False)

    def test_unreadable_hierarchy_file_skipped(self, tmp_path: Path) -> None:
        """Should skip a broken file found in the hierarchy."""
        broken = tmp_path / "broken.yaml"
        broken.write_text("- just\n- a list\n")

        with patch("clusterup.config.loader.get_config_paths", return_value=[broken]):
            config = load_config(include_env=False)

        assert config == ClusterUpConfig()

    def test_non_mapping_root_rejected(self, tmp_path: Path) -> None:
        """Should reject a YAML file whose root is not a mapping."""
        path = tmp_path / "list.yaml"
        path.write_text("- a\n")
        with pytest.raises(ValueError):
            load_yaml_config(path)


class TestCreateDefaultConfig:
    """Tests for create_default_config."""

    def test_writes_loadable_file(self, tmp_path: Path) -> None:
        """Should write a file that loads back to the defaults."""
        path = tmp_path / "sub" / "config.yaml"
        create_default_config(path)

        assert path.exists()
        data = yaml.safe_load(path.read_text())
        assert data["deploy"]["kube_version"] == "1.29.3"

        with patch("clusterup.config.loader.get_config_paths", return_value=[]):
            config = load_config(path, include_env=False)
        assert config.deploy == DeployConfig()
