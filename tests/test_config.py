"""Tests for harness configuration loading and validation."""
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from rigging.config.loader import ConfigLoader, find_config
from rigging.core.config import RuntimeTimeouts, get_timeouts, set_timeouts
from rigging.core.errors import ConfigValidationError
from rigging.models.config import HarnessConfig, HealthSettings, IsolationSettings


def write_config(path, data):
    path.write_text(yaml.safe_dump(data))
    return path


class TestHarnessConfig:
    """Test configuration models."""

    def test_defaults(self):
        """Empty config yields usable defaults."""
        config = HarnessConfig()
        assert config.runtime == "podman"
        assert config.isolation.max_concurrent == 4
        assert config.provision.lock_stale_seconds == 1800
        assert config.health.enabled_checks == ["connectivity", "process_running", "file_system"]
        assert config.artifacts_path == Path(".rigging") / "artifacts"
        assert config.log_path == Path(".rigging") / "logs" / "rigging.log"

    def test_artifacts_dir_override(self):
        """Explicit artifacts dir wins over the work dir default."""
        config = HarnessConfig(artifacts={'artifacts_dir': '/srv/artifacts'})
        assert config.artifacts_path == Path("/srv/artifacts")

    def test_unknown_field_rejected(self):
        """Typos in config keys are reported."""
        with pytest.raises(ValidationError):
            HarnessConfig(wrok_dir="x")

    def test_invalid_prefix(self):
        """Resource prefix must be a lowercase identifier."""
        with pytest.raises(ValidationError) as exc_info:
            HarnessConfig(resource_prefix="Bad_Prefix")
        assert "resource_prefix" in str(exc_info.value)

    def test_port_range_must_fit(self):
        """Port range cannot run past 65535."""
        with pytest.raises(ValidationError):
            IsolationSettings(port_range_start=65000, port_range_size=1000)

    def test_ports_per_environment_bounded(self):
        """Ports per environment cannot exceed the range."""
        with pytest.raises(ValidationError):
            IsolationSettings(port_range_size=5, ports_per_environment=10)

    def test_unknown_health_check(self):
        """Only known health checks may be enabled."""
        with pytest.raises(ValidationError) as exc_info:
            HealthSettings(enabled_checks=["connectivity", "vibes"])
        assert "vibes" in str(exc_info.value)

    def test_recipe_guest_path_absolute(self):
        """Recipe mount point must be absolute."""
        with pytest.raises(ValidationError):
            HarnessConfig(provision={'recipe_guest_path': 'relative/path'})


class TestConfigLoader:
    """Test YAML loading with environment overrides."""

    def test_load_file(self, tmp_path):
        """Values from YAML are validated into the model."""
        path = write_config(tmp_path / "rigging.yml", {
            'work_dir': '/tmp/rig',
            'isolation': {'max_concurrent': 2},
        })
        config = ConfigLoader(str(path), environ={}).load()
        assert config.work_dir == '/tmp/rig'
        assert config.isolation.max_concurrent == 2

    def test_missing_explicit_file(self, tmp_path):
        """An explicit path that does not exist is an error."""
        with pytest.raises(FileNotFoundError):
            ConfigLoader(str(tmp_path / "nope.yml"), environ={}).load()

    def test_empty_file(self, tmp_path):
        """Empty config files are rejected."""
        path = tmp_path / "rigging.yml"
        path.write_text("")
        with pytest.raises(ConfigValidationError, match="empty"):
            ConfigLoader(str(path), environ={}).load()

    def test_non_mapping_file(self, tmp_path):
        """Config must be a mapping."""
        path = tmp_path / "rigging.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigValidationError, match="mapping"):
            ConfigLoader(str(path), environ={}).load()

    def test_invalid_values_wrapped(self, tmp_path):
        """Pydantic errors surface as ConfigValidationError."""
        path = write_config(tmp_path / "rigging.yml", {'runtime': 'lxc'})
        with pytest.raises(ConfigValidationError):
            ConfigLoader(str(path), environ={}).load()

    def test_no_file_uses_defaults(self, tmp_path):
        """Without a config file in the search path, defaults apply."""
        assert find_config(tmp_path) is None
        config = ConfigLoader(environ={}).load()
        assert config == HarnessConfig()

    def test_search_path(self, tmp_path):
        """Config in the working directory is discovered."""
        write_config(tmp_path / ".rigging.yml", {'distribution': 'fedora'})
        assert find_config() == Path.cwd() / ".rigging.yml"
        assert ConfigLoader(environ={}).load().distribution == 'fedora'

    def test_env_overrides(self, tmp_path):
        """RIGGING_* variables override file values."""
        path = write_config(tmp_path / "rigging.yml", {'isolation': {'max_concurrent': 2}})
        config = ConfigLoader(str(path), environ={
            'RIGGING_MAX_CONCURRENT': '8',
            'RIGGING_RUNTIME': 'docker',
            'RIGGING_ARTIFACTS_DIR': '/srv/a',
        }).load()
        assert config.isolation.max_concurrent == 8
        assert config.runtime == 'docker'
        assert config.artifacts.artifacts_dir == '/srv/a'

    def test_bad_env_override(self):
        """Non-numeric numeric override is reported with its variable name."""
        with pytest.raises(ConfigValidationError, match="RIGGING_MAX_CONCURRENT"):
            ConfigLoader(environ={'RIGGING_MAX_CONCURRENT': 'lots'}).load()


class TestRuntimeTimeouts:
    """Test command timeout configuration."""

    def test_from_env(self, monkeypatch):
        """Timeouts read from environment variables."""
        monkeypatch.setenv("RIGGING_COMMAND_TIMEOUT", "42")
        timeouts = RuntimeTimeouts.from_env()
        assert timeouts.command_timeout == 42
        assert timeouts.systemd_wait_timeout == 60

    def test_global_instance(self):
        """set_timeouts replaces the global instance."""
        custom = RuntimeTimeouts(systemd_wait_timeout=1)
        set_timeouts(custom)
        try:
            assert get_timeouts() is custom
        finally:
            set_timeouts(None)
