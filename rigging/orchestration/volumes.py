"""Host directories shared into fixtures as bind mounts."""
import shutil
import tarfile
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from rigging.core.errors import RiggingError
from rigging.core.fs import directory_size, is_within, remove_path
from rigging.core.logger import get_logger
from rigging.core.state_store import JsonStateFile

logger = get_logger(__name__)

VOLUME_STATE_FILE = "volume_state.json"
STANDARD_VOLUMES = ("recipes", "artifacts", "config", "logs", "cache")

DEFAULT_GUEST_PATHS = {
    'recipes': "/opt/rigging/recipes",
    'artifacts': "/opt/rigging/artifacts",
    'config': "/opt/rigging/config",
    'logs': "/var/log/rigging",
    'cache': "/var/cache/rigging",
}


@dataclass
class Volume:
    """A host directory mounted into a fixture."""
    name: str
    host_path: str
    guest_path: str
    readonly: bool = False
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def mount_spec(self) -> str:
        return f"{self.host_path}:{self.guest_path}:{'ro' if self.readonly else 'rw'}"


class VolumeManager:
    """Owns the host side of a fixture's shared directories.

    Host paths inside the work directory are managed: they are created on
    demand and deleted by cleanup_volumes(). Host paths outside the work
    directory are only mounted, never deleted.
    """

    def __init__(self, work_dir: Path):
        self.work_dir = Path(work_dir).resolve()
        self.volumes_dir = self.work_dir / "volumes"
        self.volumes: Dict[str, Volume] = {}
        self.managed_directories: List[str] = []
        self._state = JsonStateFile(self.work_dir / VOLUME_STATE_FILE)

        for name in STANDARD_VOLUMES:
            (self.volumes_dir / name).mkdir(parents=True, exist_ok=True)
        self._load_state()

    # Standard volumes

    def add_recipe_volume(self, recipe_paths: Iterable[str], guest_path: str = DEFAULT_GUEST_PATHS['recipes']) -> Volume:
        recipe_paths = list(recipe_paths)
        logger.debug(f"Adding recipe volume for {len(recipe_paths)} files")
        target = self._stage_files(recipe_paths, "recipes")
        return self._add("recipes", target, guest_path, readonly=True)

    def add_artifact_volume(self, guest_path: str = DEFAULT_GUEST_PATHS['artifacts']) -> Volume:
        return self._add("artifacts", self.volumes_dir / "artifacts", guest_path, readonly=False)

    def add_config_volume(self, config_files: Iterable[str], guest_path: str = DEFAULT_GUEST_PATHS['config']) -> Volume:
        target = self._stage_files(list(config_files), "config")
        return self._add("config", target, guest_path, readonly=True)

    def add_logs_volume(self, guest_path: str = DEFAULT_GUEST_PATHS['logs']) -> Volume:
        return self._add("logs", self.volumes_dir / "logs", guest_path, readonly=False)

    def add_cache_volume(self, guest_path: str = DEFAULT_GUEST_PATHS['cache']) -> Volume:
        return self._add("cache", self.volumes_dir / "cache", guest_path, readonly=False)

    def add_custom_volume(self, name: str, host_path: str, guest_path: str, readonly: bool = False) -> Volume:
        logger.debug(f"Adding custom volume: {name}")
        return self._add(name, Path(host_path), guest_path, readonly=readonly)

    def _stage_files(self, paths: List[str], volume: str) -> Path:
        target = self.volumes_dir / volume
        target.mkdir(parents=True, exist_ok=True)
        for source in paths:
            source_path = Path(source)
            if source_path.is_file():
                shutil.copy2(source_path, target / source_path.name)
                logger.debug(f"Copied {volume} file: {source_path} -> {target / source_path.name}")
            else:
                logger.warning(f"{volume.capitalize()} file not found: {source_path}")
        return target

    def _add(self, name: str, host_path: Path, guest_path: str, readonly: bool) -> Volume:
        host_path = Path(host_path).expanduser().resolve()
        host_path.mkdir(parents=True, exist_ok=True)

        volume = Volume(name=name, host_path=str(host_path), guest_path=guest_path, readonly=readonly)
        self.volumes[name] = volume

        if is_within(host_path, self.work_dir) and str(host_path) not in self.managed_directories:
            self.managed_directories.append(str(host_path))

        self._save_state()
        logger.debug(f"Added volume: {name} ({host_path} -> {guest_path})")
        return volume

    # Queries

    def volume_mounts(self) -> List[str]:
        """Mount specs in host:guest:ro|rw form."""
        return [volume.mount_spec for volume in self.volumes.values()]

    def volume_paths(self) -> Dict[str, Dict[str, str]]:
        return {
            name: {'host': volume.host_path, 'guest': volume.guest_path}
            for name, volume in self.volumes.items()
        }

    def has_volume(self, name: str) -> bool:
        return name in self.volumes

    def is_managed(self, name: str) -> bool:
        volume = self.volumes.get(name)
        return volume is not None and volume.host_path in self.managed_directories

    def collect_artifacts(self) -> Dict[str, str]:
        """Files in the artifacts volume, keyed by path relative to it."""
        volume = self.volumes.get("artifacts")
        if volume is None:
            return {}
        root = Path(volume.host_path)
        return {
            str(path.relative_to(root)): str(path)
            for path in sorted(root.rglob("*")) if path.is_file()
        }

    def collect_logs(self) -> Dict[str, str]:
        """*.log files from the logs volume and every writable volume."""
        logs = {}
        logs_volume = self.volumes.get("logs")
        if logs_volume is not None:
            root = Path(logs_volume.host_path)
            for path in sorted(root.rglob("*.log")):
                logs[str(path.relative_to(root))] = str(path)

        for name, volume in self.volumes.items():
            if name == "logs" or volume.readonly:
                continue
            root = Path(volume.host_path)
            if not root.exists():
                continue
            for path in sorted(root.rglob("*.log")):
                logs[f"{name}/{path.relative_to(root)}"] = str(path)
        return logs

    # Copy in/out

    def _get(self, name: str) -> Volume:
        volume = self.volumes.get(name)
        if volume is None:
            raise RiggingError(f"Volume '{name}' not found")
        return volume

    def copy_from_volume(self, name: str, source_path: str, destination: str) -> Path:
        volume = self._get(name)
        source = Path(volume.host_path) / source_path
        if not source.exists():
            raise RiggingError(f"File not found in volume: {source}")

        destination = Path(destination)
        if source.is_dir():
            shutil.copytree(source, destination, dirs_exist_ok=True)
        else:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, destination)
        logger.debug(f"Copied from volume {name}: {source_path} -> {destination}")
        return destination

    def copy_to_volume(self, name: str, source: str, destination_path: str) -> Path:
        volume = self._get(name)
        if volume.readonly:
            raise RiggingError(f"Cannot write to readonly volume '{name}'")

        target = Path(volume.host_path) / destination_path
        target.parent.mkdir(parents=True, exist_ok=True)
        source = Path(source)
        if source.is_dir():
            shutil.copytree(source, target, dirs_exist_ok=True)
        else:
            shutil.copy2(source, target)
        logger.debug(f"Copied to volume {name}: {source} -> {destination_path}")
        return target

    def volume_size(self, name: str) -> int:
        volume = self.volumes.get(name)
        return directory_size(volume.host_path) if volume else 0

    def total_volume_size(self) -> int:
        return sum(self.volume_size(name) for name in self.volumes)

    # Lifecycle

    def cleanup_volumes(self) -> List[str]:
        """Delete managed directories and forget all volumes.

        Returns:
            Managed directories that could not be removed
        """
        logger.info("Cleaning up managed volumes")
        failed = []
        for directory in self.managed_directories:
            if not remove_path(directory):
                failed.append(directory)
            else:
                logger.debug(f"Removed managed directory: {directory}")

        self.volumes.clear()
        self.managed_directories = []
        self._state.delete()
        return failed

    def create_backup(self, backup_path: str) -> Path:
        """Archive the managed volumes directory as tar.gz."""
        backup_path = Path(backup_path)
        logger.info(f"Creating volume backup: {backup_path}")
        if not self.volumes_dir.exists():
            raise RiggingError("Failed to create volume backup: no volumes directory")

        backup_path.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(backup_path, "w:gz") as archive:
            archive.add(self.volumes_dir, arcname="volumes")
            state_path = self._state.path
            if state_path.exists():
                archive.add(state_path, arcname=VOLUME_STATE_FILE)

        logger.info(f"Volume backup created: {backup_path} ({backup_path.stat().st_size} bytes)")
        return backup_path

    def restore_backup(self, backup_path: str) -> bool:
        backup_path = Path(backup_path)
        if not backup_path.exists():
            return False

        logger.info(f"Restoring volume backup: {backup_path}")
        try:
            with tarfile.open(backup_path, "r:gz") as archive:
                # Read and check every member before the current volumes are touched
                members = archive.getmembers()
                for member in members:
                    if not is_within(self.work_dir / member.name, self.work_dir):
                        raise RiggingError(f"Refusing to extract {member.name} outside work dir")

                self.cleanup_volumes()
                archive.extractall(self.work_dir, members=members)
        except (tarfile.TarError, EOFError, OSError, RiggingError) as e:
            logger.error(f"Failed to restore volume backup: {e}")
            return False

        self._load_state()
        logger.info("Volume backup restored successfully")
        return True

    def statistics(self) -> Dict[str, Any]:
        return {
            'total_volumes': len(self.volumes),
            'total_size': self.total_volume_size(),
            'volumes': {
                name: {
                    'host_path': volume.host_path,
                    'guest_path': volume.guest_path,
                    'readonly': volume.readonly,
                    'managed': volume.host_path in self.managed_directories,
                    'size': self.volume_size(name),
                    'exists': Path(volume.host_path).exists(),
                }
                for name, volume in self.volumes.items()
            },
        }

    # Persistence

    def _load_state(self):
        state = self._state.load()
        self.volumes = {
            name: Volume(**data) for name, data in state.get('volumes', {}).items()
        }
        self.managed_directories = list(state.get('managed_directories', []))

    def _save_state(self):
        self._state.save({
            'volumes': {name: asdict(volume) for name, volume in self.volumes.items()},
            'managed_directories': self.managed_directories,
            'updated_at': datetime.now().isoformat(),
        })

    def get(self, name: str) -> Optional[Volume]:
        return self.volumes.get(name)
