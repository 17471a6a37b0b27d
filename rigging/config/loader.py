"""YAML configuration loader with environment overrides."""
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from rigging.core.errors import ConfigValidationError
from rigging.core.logger import get_logger
from rigging.models.config import HarnessConfig

logger = get_logger(__name__)

SEARCH_PATHS = (
    "rigging.yml",
    "rigging.yaml",
    ".rigging.yml",
    "config/rigging.yml",
)

# env var -> (section, key, type)
ENV_OVERRIDES = {
    "RIGGING_WORK_DIR": (None, "work_dir", str),
    "RIGGING_RUNTIME": (None, "runtime", str),
    "RIGGING_ARTIFACTS_DIR": ("artifacts", "artifacts_dir", str),
    "RIGGING_MAX_CONCURRENT": ("isolation", "max_concurrent", int),
    "RIGGING_LOCK_STALE_SECONDS": ("provision", "lock_stale_seconds", float),
    "RIGGING_MAX_DISK_GB": ("cleanup", "max_disk_gb", float),
}


def find_config(start: Optional[Path] = None) -> Optional[Path]:
    """Return the first config file found in the search paths, if any."""
    base = Path(start) if start else Path.cwd()
    for candidate in SEARCH_PATHS:
        path = base / candidate
        if path.exists():
            return path
    return None


class ConfigLoader:
    """Loads harness configuration from YAML and the process environment."""

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        self.config_path = Path(config_path) if config_path else None
        self.environ = os.environ if environ is None else environ
        self.raw_config: Dict[str, Any] = {}

    def load(self) -> HarnessConfig:
        """Load, override and validate configuration.

        Returns:
            Validated HarnessConfig

        Raises:
            FileNotFoundError: If an explicit config path does not exist
            ConfigValidationError: If the file is empty or fails validation
        """
        self.raw_config = self._read_file()
        self._apply_env_overrides(self.raw_config)

        try:
            config = HarnessConfig.model_validate(self.raw_config)
        except ValidationError as e:
            raise ConfigValidationError(f"Invalid harness configuration:\n{e}") from e

        logger.debug(f"Loaded configuration (work_dir={config.work_dir})")
        return config

    def _read_file(self) -> Dict[str, Any]:
        path = self.config_path
        if path is None:
            path = find_config()
            if path is None:
                return {}
        elif not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path) as f:
            raw = yaml.safe_load(f)

        if not raw:
            raise ConfigValidationError(f"Config file is empty: {path}")
        if not isinstance(raw, dict):
            raise ConfigValidationError(f"Config file must contain a mapping: {path}")

        logger.debug(f"Read configuration from {path}")
        return raw

    def _apply_env_overrides(self, raw: Dict[str, Any]) -> None:
        for var, (section, key, cast) in ENV_OVERRIDES.items():
            value = self.environ.get(var)
            if value is None or value == "":
                continue
            try:
                typed = cast(value)
            except ValueError as e:
                raise ConfigValidationError(f"{var}={value!r} is not a valid {cast.__name__}") from e

            target = raw if section is None else raw.setdefault(section, {})
            target[key] = typed
            logger.debug(f"Override from {var}: {key}={typed}")


def load_config(config_path: Optional[str] = None) -> HarnessConfig:
    """Convenience wrapper around ConfigLoader."""
    return ConfigLoader(config_path).load()
