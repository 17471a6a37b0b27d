"""Provisioning with checksum-based reuse of existing fixtures."""
import hashlib
import json
import secrets
import shutil
import tempfile
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from rigging.core.errors import ProvisionError, RiggingError
from rigging.core.fs import remove_path
from rigging.core.lock import ProvisionLock, check_lock_status
from rigging.core.logger import get_logger
from rigging.core.state_store import JsonStateFile
from rigging.models.config import ProvisionSettings

logger = get_logger(__name__)

LOCK_FILE = ".provision_lock"
STATE_FILE = "provision_state.json"
WORK_SUBDIRS = ("recipes", "artifacts", "logs", "snapshots", "state")


class ProvisionAction(str, Enum):
    """What provision() did to reach a usable fixture."""
    CREATED = "created"
    REUSED = "reused"
    REBUILT = "rebuilt"


def file_checksum(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


class Provisioner:
    """Brings one fixture to a known-good state, reusing it when unchanged.

    A fixture is reused only when the persisted provision state is fresh, the
    configuration checksum matches, and the fixture is ready and healthy.
    Anything else tears it down and provisions from scratch.
    """

    def __init__(self, environment, state_dir: Optional[Path] = None,
                 settings: Optional[ProvisionSettings] = None,
                 config: Optional[Dict[str, Any]] = None):
        """Initialize provisioner.

        Args:
            environment: Fixture to provision
            state_dir: Directory for lock, state and staged recipes
            settings: Lock staleness, state freshness and recipe mount path
            config: Initial provisioner config (volumes, environment_vars, ports)
        """
        self.environment = environment
        self.settings = settings or ProvisionSettings()
        self.state_dir = Path(
            state_dir or Path(tempfile.gettempdir()) / "rigging-provision" / environment.name
        )
        self.config: Dict[str, Any] = {
            'volumes': [],
            'environment_vars': {},
            'ports': [],
            'recipe_checksums': {},
        }
        self.config.update(config or {})
        self.provision_id = secrets.token_hex(16)
        self._state: Dict[str, Any] = {}
        self._state_file = JsonStateFile(self.state_dir / "state" / STATE_FILE)

        for subdir in WORK_SUBDIRS:
            (self.state_dir / subdir).mkdir(parents=True, exist_ok=True)

    @property
    def state(self) -> Dict[str, Any]:
        return dict(self._state)

    def _lock(self) -> ProvisionLock:
        return ProvisionLock(
            self.state_dir / LOCK_FILE,
            timeout=self.settings.lock_timeout,
            stale_after=self.settings.lock_stale_seconds,
        )

    # Provisioning

    def provision(self) -> ProvisionAction:
        """Provision the fixture, reusing it when nothing changed.

        Returns:
            The action taken

        Raises:
            LockError: If another provision holds a live lock
            EnvironmentSetupError: If the fixture cannot be set up
            ProvisionError: If the fixture is not ready or healthy after setup
        """
        logger.info(f"Provisioning environment: {self.environment.name}")

        with self._lock():
            action = self._provision_locked()

        logger.info(f"Environment provisioning complete: {self.environment.name}")
        return action

    def provision_with_files(self, recipe_paths: Iterable[str]) -> ProvisionAction:
        """Stage recipe files, mount them read-only, then provision.

        Staging happens under the provision lock.
        """
        recipe_paths = [str(path) for path in recipe_paths]
        logger.info(f"Provisioning with recipe files: {', '.join(recipe_paths)}")
        recipes_dir = self.state_dir / "recipes"

        with self._lock():
            self.config['recipe_checksums'] = self._recipe_checksums(recipe_paths)
            self._copy_recipe_files(recipe_paths, recipes_dir)
            self.add_shared_volume(str(recipes_dir), self.settings.recipe_guest_path, readonly=True)
            action = self._provision_locked()

        logger.info("Recipe file provisioning complete")
        return action

    def _provision_locked(self) -> ProvisionAction:
        self._state = self._state_file.load()

        if self._can_reuse():
            logger.info("Reusing existing environment (state matches)")
            return self._restore()

        self._cleanup_existing()
        self._create_fresh()
        self._save_state()
        return ProvisionAction.CREATED

    def _can_reuse(self) -> bool:
        if not self._state.get('provision_id'):
            return False
        if not self._state_fresh():
            return False
        if not self.environment.is_ready():
            return False
        if self._state.get('config_checksum') != self.config_checksum():
            logger.debug("Configuration changed since last provision")
            return False
        if not self.environment.health_check():
            logger.debug("Existing environment failed health check")
            return False
        return True

    def _state_fresh(self) -> bool:
        provisioned_at = self._state.get('provisioned_at')
        if not provisioned_at:
            return False
        try:
            age = datetime.now() - datetime.fromisoformat(provisioned_at)
        except ValueError:
            return False
        if age > timedelta(hours=self.settings.state_max_age_hours):
            logger.debug(f"Provision state is too old ({age.total_seconds():.0f}s)")
            return False
        return True

    def _restore(self) -> ProvisionAction:
        if self.environment.is_ready() and self.environment.health_check():
            logger.debug("Existing environment restored successfully")
            return ProvisionAction.REUSED

        logger.warning("Environment health check failed - will recreate")
        self._cleanup_existing()
        self._create_fresh()
        self._save_state()
        return ProvisionAction.REBUILT

    def _cleanup_existing(self):
        logger.debug("Cleaning up existing environment state")
        if self.environment.is_ready():
            try:
                self.environment.teardown()
            except RiggingError as e:
                logger.warning(f"Failed to tear down existing environment: {e}")
        self.environment.clear_snapshots()
        self._state = {}

    def _create_fresh(self):
        logger.debug("Creating fresh environment")
        self._apply_configuration()
        self.environment.setup()

        if not self.environment.is_ready():
            raise ProvisionError("Environment setup completed but environment is not ready")
        if not self.environment.health_check():
            raise ProvisionError("Environment health check failed after setup")

    def _apply_configuration(self):
        for volume in self.config['volumes']:
            self.environment.add_volume(volume['host_path'], volume['guest_path'], volume.get('readonly', False))
        for key, value in self.config['environment_vars'].items():
            self.environment.set_environment(key, value)
        for mapping in self.config['ports']:
            self.environment.add_port(mapping['host'], mapping.get('guest'))

    def config_checksum(self) -> str:
        """sha256 over the environment class, its options and this provisioner's config."""
        payload = {
            'environment_class': type(self.environment).__name__,
            'environment_options': self.environment.options,
            'provisioner_config': self.config,
        }
        encoded = json.dumps(payload, sort_keys=True, default=str).encode()
        return hashlib.sha256(encoded).hexdigest()

    def _save_state(self):
        self._state.update({
            'provision_id': self.provision_id,
            'provisioned_at': datetime.now().isoformat(),
            'environment_type': type(self.environment).__name__,
            'environment_options': self.environment.options,
            'config_checksum': self.config_checksum(),
            'recipe_checksums': self.config.get('recipe_checksums', {}),
        })
        self._state.setdefault('snapshots', {})
        self._state_file.save(self._state)

    def _recipe_checksums(self, recipe_paths: List[str]) -> Dict[str, Optional[str]]:
        checksums = {}
        for path in recipe_paths:
            if Path(path).is_file():
                checksums[path] = file_checksum(Path(path))
            else:
                logger.warning(f"Recipe file not found: {path}")
                checksums[path] = None
        return checksums

    def _copy_recipe_files(self, recipe_paths: List[str], recipes_dir: Path):
        recipes_dir.mkdir(parents=True, exist_ok=True)
        for path in recipe_paths:
            source = Path(path)
            if source.is_file():
                shutil.copy2(source, recipes_dir / source.name)
                logger.debug(f"Copied recipe file: {source} -> {recipes_dir / source.name}")

    # Teardown

    def cleanup(self) -> bool:
        """Tear down the fixture and delete provisioning state. Never raises."""
        logger.info(f"Cleaning up environment: {self.environment.name}")
        try:
            with self._lock():
                torn_down = self.environment.cleanup()
                self._state = {}
                removed = remove_path(self.state_dir / "state")
        except RiggingError as e:
            logger.error(f"Provisioner cleanup failed for {self.environment.name}: {e}")
            return False
        remove_path(self.state_dir)
        logger.info(f"Environment cleanup complete: {self.environment.name}")
        return torn_down and removed

    def lock_status(self) -> Optional[Dict[str, str]]:
        """Holder of a live provision lock on this state dir, or None."""
        return check_lock_status(self.state_dir / LOCK_FILE, self.settings.lock_stale_seconds)

    def environment_ready(self) -> bool:
        """Ready, provisioned recently, and healthy."""
        if not self.environment.is_ready():
            return False
        if not self._state.get('provision_id') or not self._state_fresh():
            return False
        return bool(self.environment.health_check())

    # Configuration

    def add_shared_volume(self, host_path: str, guest_path: str, readonly: bool = False) -> None:
        volume = {
            'host_path': str(Path(host_path).expanduser().resolve()),
            'guest_path': guest_path,
            'readonly': readonly,
        }
        if volume not in self.config['volumes']:
            self.config['volumes'].append(volume)

    def set_environment_variable(self, key: str, value: Any) -> None:
        self.config['environment_vars'][str(key)] = str(value)

    def add_port_mapping(self, host_port: int, guest_port: Optional[int] = None) -> None:
        mapping = {'host': host_port, 'guest': guest_port or host_port}
        if mapping not in self.config['ports']:
            self.config['ports'].append(mapping)

    # Snapshots

    def create_snapshot(self, name: str) -> Optional[str]:
        """Snapshot the fixture; None when the kind has no snapshot support."""
        if not self.environment.supports_snapshots:
            logger.info(f"{self.environment.name} does not support snapshots")
            return None

        logger.info(f"Creating environment snapshot: {name}")
        snapshot_id = self.environment.create_snapshot(name)
        self._state.setdefault('snapshots', {})[name] = {
            'id': snapshot_id,
            'created_at': datetime.now().isoformat(),
            'provision_id': self.provision_id,
        }
        self._state_file.save(self._state)
        return snapshot_id

    def restore_snapshot(self, name: str) -> bool:
        snapshot = self._state.get('snapshots', {}).get(name)
        if snapshot is None or not self.environment.supports_snapshots:
            return False

        logger.info(f"Restoring environment snapshot: {name}")
        try:
            self.environment.restore_snapshot(snapshot['id'])
        except RiggingError as e:
            logger.error(f"Failed to restore snapshot {name}: {e}")
            return False
        logger.info(f"Snapshot restored successfully: {name}")
        return True

    def list_snapshots(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._state.get('snapshots', {}))
