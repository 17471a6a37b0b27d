"""Discovery and reclamation of leftover fixture resources."""
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import psutil

from rigging.core.errors import RiggingError
from rigging.core.fs import directory_size, remove_path
from rigging.core.logger import get_logger
from rigging.core.state_store import BoundedLog
from rigging.environments.runtime import ContainerRuntime
from rigging.models.config import CleanupSettings

logger = get_logger(__name__)

CLEANUP_STATE_FILE = "cleanup_state.json"
GIB = 1024 ** 3


@dataclass
class DiscoveredResource:
    """A fixture resource found on the host, independent of any registry."""
    id: str
    kind: str  # directory, container or vm
    created_at: Optional[datetime] = None
    path: Optional[Path] = None
    size_bytes: int = 0
    pid: Optional[int] = None
    running: bool = False
    status: str = ""

    def age_hours(self, now: Optional[datetime] = None) -> float:
        if self.created_at is None:
            return 0.0
        return ((now or datetime.now()) - self.created_at).total_seconds() / 3600

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'kind': self.kind,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'age_hours': round(self.age_hours(), 2),
            'path': str(self.path) if self.path else None,
            'size_bytes': self.size_bytes,
            'pid': self.pid,
            'running': self.running,
            'status': self.status,
        }


@dataclass
class CleanupRecord:
    """What one cleanup attempt did."""
    resource_id: str
    kind: str
    success: bool = False
    bytes_freed: int = 0
    actions: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'resource_id': self.resource_id,
            'kind': self.kind,
            'success': self.success,
            'bytes_freed': self.bytes_freed,
            'actions': list(self.actions),
            'errors': list(self.errors),
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }


class CleanupManager:
    """Finds and removes fixture resources by scanning the host.

    Every public operation is best effort: failures are logged and recorded
    on the returned CleanupRecord, never raised.
    """

    def __init__(
        self,
        base_work_dir: Path,
        settings: Optional[CleanupSettings] = None,
        prefix: str = "rigging-test",
        runtime: Optional[ContainerRuntime] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.base_work_dir = Path(base_work_dir)
        self.settings = settings or CleanupSettings()
        self.prefix = prefix
        self.runtime = runtime or ContainerRuntime()
        self.clock = clock
        self.base_work_dir.mkdir(parents=True, exist_ok=True)
        self.operations = BoundedLog(self.base_work_dir / CLEANUP_STATE_FILE, limit=self.settings.log_limit)

    @property
    def max_disk_bytes(self) -> int:
        return int(self.settings.max_disk_gb * GIB)

    # Discovery

    def discover(self) -> List[DiscoveredResource]:
        """Scan work directories, runtime containers and VM pid files."""
        resources = self._discover_directories()
        resources += self._discover_containers()
        resources += self._discover_vms()
        return resources

    def _discover_directories(self) -> List[DiscoveredResource]:
        found = []
        candidates = []
        if self.base_work_dir.exists():
            candidates += [p for p in self.base_work_dir.iterdir() if p.is_dir() and p.name.startswith(self.prefix)]
        environments_dir = self.base_work_dir / "environments"
        if environments_dir.exists():
            candidates += [p for p in environments_dir.iterdir() if p.is_dir()]

        for path in candidates:
            try:
                created_at = datetime.fromtimestamp(path.stat().st_mtime)
            except OSError:
                continue
            found.append(DiscoveredResource(
                id=path.name,
                kind="directory",
                created_at=created_at,
                path=path,
                size_bytes=directory_size(path),
            ))
        return found

    def _discover_containers(self) -> List[DiscoveredResource]:
        if not self.runtime.available():
            return []
        try:
            containers = self.runtime.list_containers(self.prefix)
        except RiggingError as e:
            logger.debug(f"Could not discover containers: {e}")
            return []

        return [
            DiscoveredResource(
                id=container['name'],
                kind="container",
                created_at=container['created_at'],
                running=container['running'],
                status=container['status'],
            )
            for container in containers
        ]

    def _discover_vms(self) -> List[DiscoveredResource]:
        found = []
        if not self.base_work_dir.exists():
            return found

        for pid_file in self.base_work_dir.rglob(f"{self.prefix}-vm-*.pid"):
            pid = _read_pid(pid_file)
            if pid is not None and psutil.pid_exists(pid):
                found.append(DiscoveredResource(
                    id=pid_file.stem,
                    kind="vm",
                    created_at=datetime.fromtimestamp(pid_file.stat().st_mtime),
                    path=pid_file,
                    pid=pid,
                    running=True,
                ))
            else:
                logger.debug(f"Removing stale PID file: {pid_file}")
                remove_path(pid_file)
        return found

    # Cleanup of individual resources

    def cleanup_environment(self, environment, volume_manager=None) -> CleanupRecord:
        """Tear down a live environment object and delete its work directory."""
        record = CleanupRecord(resource_id=environment.name, kind="environment")
        logger.info(f"Cleaning up environment: {environment.name}")

        try:
            if environment.is_ready():
                if environment.cleanup():
                    record.actions.append("stopped")
                else:
                    record.errors.append("teardown failed")

            if volume_manager is not None:
                failed = volume_manager.cleanup_volumes()
                record.actions.append("volumes_cleaned")
                record.errors += [f"could not remove {path}" for path in failed]

            work_dir = environment.work_dir
            if work_dir and Path(work_dir).exists():
                size = directory_size(work_dir)
                if remove_path(work_dir):
                    record.bytes_freed += size
                    record.actions.append("work_dir_removed")
                else:
                    record.errors.append(f"could not remove {work_dir}")
        except Exception as e:
            record.errors.append(f"{type(e).__name__}: {e}")
            logger.error(f"Environment cleanup failed: {environment.name} - {e}")

        return self._finish(record)

    def cleanup_resource(self, resource: DiscoveredResource) -> CleanupRecord:
        record = CleanupRecord(resource_id=resource.id, kind=resource.kind)
        try:
            if resource.kind == "directory":
                self._cleanup_directory(resource, record)
            elif resource.kind == "container":
                self._cleanup_container(resource, record)
            elif resource.kind == "vm":
                self._cleanup_vm(resource, record)
            else:
                record.errors.append(f"Unknown resource kind: {resource.kind}")
        except Exception as e:
            record.errors.append(f"{type(e).__name__}: {e}")
            logger.error(f"Failed to cleanup {resource.kind} {resource.id}: {e}")
        return self._finish(record)

    def _finish(self, record: CleanupRecord) -> CleanupRecord:
        record.success = not record.errors
        record.completed_at = self.clock()
        self.operations.append(record.to_dict())
        return record

    def _cleanup_directory(self, resource: DiscoveredResource, record: CleanupRecord):
        if resource.path is None or not resource.path.exists():
            return
        size = directory_size(resource.path)
        if remove_path(resource.path):
            record.bytes_freed += size
            record.actions.append("directory_removed")
            logger.debug(f"Removed directory: {resource.path} (freed {size // (1024 * 1024)}MB)")
        else:
            record.errors.append(f"could not remove {resource.path}")

    def _cleanup_container(self, resource: DiscoveredResource, record: CleanupRecord):
        if resource.running:
            self.runtime.stop(resource.id)
            record.actions.append("container_stopped")
        result = self.runtime.remove(resource.id)
        if result.success:
            record.actions.append("container_removed")
            logger.debug(f"Cleaned up container: {resource.id}")
        else:
            record.errors.append(f"rm failed: {result.stderr.strip()}")

    def _cleanup_vm(self, resource: DiscoveredResource, record: CleanupRecord):
        if resource.pid is not None and _terminate(resource.pid):
            record.actions.append("vm_stopped")

        if resource.path is not None:
            remove_path(resource.path)
            vm_dir = resource.path.parent
            if vm_dir.exists() and vm_dir != self.base_work_dir:
                size = directory_size(vm_dir)
                if remove_path(vm_dir):
                    record.bytes_freed += size
                    record.actions.append("vm_dir_removed")
        logger.debug(f"Cleaned up VM: {resource.id}")

    # Bulk operations

    def cleanup_all(self) -> List[CleanupRecord]:
        logger.info("Starting cleanup of all test environments")
        records = [self.cleanup_resource(resource) for resource in self.discover()]
        self.cleanup_orphans()
        logger.info(f"Cleanup completed: {len(records)} environments processed")
        return records

    def cleanup_older_than(self, hours: Optional[float] = None) -> List[CleanupRecord]:
        """Remove resources whose age exceeds the given number of hours."""
        hours = self.settings.max_age_hours if hours is None else hours
        logger.info(f"Cleaning up environments older than {hours} hours")
        now = self.clock()
        records = []
        for resource in self.discover():
            if resource.created_at is not None and resource.age_hours(now) > hours:
                logger.info(f"Cleaning up old environment: {resource.id} ({resource.age_hours(now):.1f} hours old)")
                records.append(self.cleanup_resource(resource))
        return records

    def enforce_resource_limits(self) -> List[CleanupRecord]:
        """Apply disk, count and age limits.

        Disk pressure removes the largest resources first until usage is under
        the limit; count pressure removes the oldest until the count is at the
        limit; then anything past the maximum age goes.
        """
        logger.info("Enforcing resource limits")
        records = []

        usage = self.resource_usage()
        if usage['disk_usage'] > self.max_disk_bytes:
            logger.warning(
                f"Disk usage limit exceeded: {usage['disk_usage_gb']:.1f}GB > {self.settings.max_disk_gb}GB"
            )
            records += self._reduce_disk_usage()

        resources = self.discover()
        if len(resources) > self.settings.max_environments:
            logger.warning(
                f"Environment count limit exceeded: {len(resources)} > {self.settings.max_environments}"
            )
            records += self._reduce_count(resources)

        records += self.cleanup_older_than(self.settings.max_age_hours)
        logger.info(f"Resource limit enforcement completed: {len(records)} actions taken")
        return records

    def _reduce_disk_usage(self) -> List[CleanupRecord]:
        records = []
        for resource in sorted(self.discover(), key=lambda r: r.size_bytes, reverse=True):
            records.append(self.cleanup_resource(resource))
            if self.resource_usage()['disk_usage'] <= self.max_disk_bytes:
                break
        return records

    def _reduce_count(self, resources: List[DiscoveredResource]) -> List[CleanupRecord]:
        now = self.clock()
        excess = len(resources) - self.settings.max_environments
        oldest_first = sorted(resources, key=lambda r: r.age_hours(now), reverse=True)
        return [self.cleanup_resource(resource) for resource in oldest_first[:excess]]

    def cleanup_orphans(self) -> None:
        """Prune stopped managed containers, abandoned VM disks and empty dirs."""
        logger.debug("Cleaning up orphaned resources")
        if self.runtime.available():
            try:
                self.runtime.run(["container", "prune", "-f", "--filter", "label=rigging-test=true"])
            except RiggingError as e:
                logger.debug(f"Could not prune containers: {e}")

        if not self.base_work_dir.exists():
            return

        for disk in self.base_work_dir.rglob(f"{self.prefix}-vm-*.qcow2"):
            if not disk.with_suffix(".pid").exists():
                logger.debug(f"Removing orphaned VM disk: {disk}")
                remove_path(disk)

        for directory in sorted(self.base_work_dir.rglob("*"), key=lambda p: len(p.parts), reverse=True):
            if directory.is_dir() and not any(directory.iterdir()):
                try:
                    directory.rmdir()
                    logger.debug(f"Removed empty directory: {directory}")
                except OSError:
                    pass

    def emergency_cleanup(self) -> List[CleanupRecord]:
        """Remove everything: all resources, the whole work tree, runtime leftovers."""
        logger.warning("Performing emergency cleanup - removing all test environments")
        records = self.cleanup_all()

        if self.base_work_dir.exists():
            remove_path(self.base_work_dir)
            logger.warning(f"Removed entire test work directory: {self.base_work_dir}")

        if self.runtime.available():
            try:
                self.runtime.prune()
            except RiggingError as e:
                logger.warning(f"Runtime prune failed: {e}")

        self.operations.clear()
        logger.warning("Emergency cleanup completed")
        return records

    # Reporting

    def resource_usage(self) -> Dict[str, Any]:
        resources = self.discover()
        disk = directory_size(self.base_work_dir)
        return {
            'disk_usage': disk,
            'disk_usage_gb': disk / GIB,
            'environment_count': len(resources),
            'environments': [resource.to_dict() for resource in resources],
        }

    def statistics(self) -> Dict[str, Any]:
        operations = list(self.operations)
        usage = self.resource_usage()
        return {
            'total_cleanups': len(operations),
            'successful_cleanups': sum(1 for op in operations if op.get('success')),
            'failed_cleanups': sum(1 for op in operations if not op.get('success')),
            'bytes_freed': sum(op.get('bytes_freed', 0) for op in operations),
            'last_cleanup': operations[-1]['completed_at'] if operations else None,
            'current_usage': {key: value for key, value in usage.items() if key != 'environments'},
            'resource_limits': self.settings.model_dump(),
            'environments': usage['environment_count'],
        }

    def start_periodic(self, interval_hours: float = 6) -> threading.Event:
        """Run age and limit enforcement periodically in a daemon thread.

        Returns:
            Event that stops the loop when set
        """
        stop_event = threading.Event()
        logger.info(f"Scheduling periodic cleanup every {interval_hours} hours")

        def loop():
            while not stop_event.wait(interval_hours * 3600):
                try:
                    self.enforce_resource_limits()
                except Exception as e:
                    logger.error(f"Periodic cleanup failed: {e}")

        threading.Thread(target=loop, name="periodic-cleanup", daemon=True).start()
        return stop_event


def _read_pid(pid_file: Path) -> Optional[int]:
    try:
        content = pid_file.read_text().strip()
    except OSError:
        return None
    return int(content) if content.isdigit() else None


def _terminate(pid: int, grace: float = 2.0) -> bool:
    """SIGTERM, then SIGKILL after the grace period. Returns True if a process was signalled."""
    try:
        proc = psutil.Process(pid)
        proc.terminate()
        try:
            proc.wait(timeout=grace)
        except psutil.TimeoutExpired:
            proc.kill()
        return True
    except psutil.NoSuchProcess:
        return False
    except psutil.Error as e:
        logger.warning(f"Failed to stop process {pid}: {e}")
        return False
