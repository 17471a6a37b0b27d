"""Slot, port and work-directory isolation for concurrent fixtures."""
import hashlib
import platform
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from rigging.core.errors import ResourceExhaustedError
from rigging.core.fs import directory_size, remove_path
from rigging.core.logger import get_logger
from rigging.core.state_store import JsonStateFile
from rigging.environments import EnvironmentKind, create_environment
from rigging.models.config import IsolationSettings

logger = get_logger(__name__)

ISOLATION_STATE_FILE = "isolation_state.json"
ISOLATION_SUBDIRS = ("environments", "network", "config", "logs")
ESTIMATED_MEMORY_PER_ENV_MB = 512


@dataclass
class IsolationConfig:
    """Resources reserved for one isolated fixture."""
    slot: int
    name: str
    unique_suffix: str
    work_dir: Path
    allocated_ports: List[int]
    environment_options: Dict[str, Any]
    namespace: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)


class IsolatedHandle:
    """An environment together with the isolation resources it holds.

    Attribute access falls through to the wrapped environment, so a handle can
    be used wherever the environment is expected.
    """

    def __init__(self, environment, config: IsolationConfig):
        self.environment = environment
        self.config = config

    def __getattr__(self, attr):
        return getattr(self.environment, attr)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def slot(self) -> int:
        return self.config.slot

    @property
    def work_dir(self) -> Path:
        return self.config.work_dir

    @property
    def allocated_ports(self) -> List[int]:
        return list(self.config.allocated_ports)

    def cleanup_isolation(self) -> bool:
        """Tear down the wrapped environment and delete its work directory. Never raises."""
        logger.debug(f"Cleaning up isolation for environment: {self.name}")
        ok = self.environment.cleanup()
        if self.config.work_dir.exists():
            ok = remove_path(self.config.work_dir) and ok
        return ok

    def info(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'slot': self.slot,
            'work_dir': str(self.work_dir),
            'allocated_ports': self.allocated_ports,
            'namespace': self.config.namespace,
            'environment_type': type(self.environment).__name__,
            'created_at': self.config.created_at.isoformat(),
        }

    def __repr__(self):
        return f"<IsolatedHandle {self.name} slot={self.slot}>"


class IsolationManager:
    """Hands out numbered slots, disjoint port ranges and private work dirs.

    All bookkeeping (slots, port pool, registry) is guarded by one condition
    variable; acquire() waits on it for a free slot and release() notifies it.
    """

    def __init__(
        self,
        base_work_dir: Path,
        settings: Optional[IsolationSettings] = None,
        prefix: str = "rigging-test",
        environment_factory: Optional[Callable[..., Any]] = None,
    ):
        """Initialize isolation manager.

        Args:
            base_work_dir: Root for per-environment work directories and state
            settings: Slot count, port range and wait timeout
            prefix: Resource naming prefix
            environment_factory: Callable (kind, name, options) -> Environment
        """
        self.base_work_dir = Path(base_work_dir)
        self.settings = settings or IsolationSettings()
        self.prefix = prefix
        self.environment_factory = environment_factory or create_environment

        self._cond = threading.Condition()
        self._active: Dict[str, IsolatedHandle] = {}
        self._port_allocations: Dict[str, List[int]] = {}
        self._stale_allocations: Dict[str, List[int]] = {}
        self._namespaces: Dict[str, str] = {}
        start = self.settings.port_range_start
        self._available_ports: List[int] = list(range(start, start + self.settings.port_range_size))
        self._state = JsonStateFile(self.base_work_dir / ISOLATION_STATE_FILE)

        for subdir in ISOLATION_SUBDIRS:
            (self.base_work_dir / subdir).mkdir(parents=True, exist_ok=True)
        self._load_state()

    @property
    def max_concurrent(self) -> int:
        return self.settings.max_concurrent

    # Acquire / release

    def acquire(self, kind, name: str, options: Optional[Dict[str, Any]] = None,
                timeout: Optional[float] = None) -> IsolatedHandle:
        """Reserve a slot, ports and work dir, then construct the environment.

        Blocks until a slot is free or the timeout elapses.

        Raises:
            ValueError: If an environment with this name is already active
            ResourceExhaustedError: If no slot frees up in time or ports run out
        """
        options = dict(options or {})
        timeout = self.settings.acquire_timeout if timeout is None else timeout
        port_count = int(options.pop('port_count', self.settings.ports_per_environment))
        want_namespace = bool(options.pop('network_namespace', self.settings.network_namespaces))
        logger.info(f"Creating isolated environment: {name}")

        with self._cond:
            if name in self._active:
                raise ValueError(f"Environment '{name}' is already active")

            logger.debug("Waiting for available environment slot")
            if not self._cond.wait_for(lambda: len(self._active) < self.max_concurrent, timeout):
                raise ResourceExhaustedError(
                    f"No available environment slots (max: {self.max_concurrent}) after {timeout}s"
                )
            if name in self._active:
                raise ValueError(f"Environment '{name}' is already active")

            slot = self._find_free_slot()
            ports = self._take_ports(port_count)
            if ports is None:
                raise ResourceExhaustedError(
                    f"Cannot allocate {port_count} ports ({len(self._available_ports)} available)"
                )

            work_dir = self.base_work_dir / "environments" / f"{name}-{slot}"
            unique_suffix = hashlib.sha256(f"{name}-{slot}-{time.time()}".encode()).hexdigest()[:8]
            config = IsolationConfig(
                slot=slot,
                name=name,
                unique_suffix=unique_suffix,
                work_dir=work_dir,
                allocated_ports=ports,
                environment_options=self._environment_options(kind, name, slot, ports, work_dir, options),
            )

            try:
                work_dir.mkdir(parents=True, exist_ok=True)
                environment = self.environment_factory(kind, name, config.environment_options)
                if want_namespace and self._create_namespace_locked(name):
                    config.namespace = self._namespaces[name]
            except Exception:
                self._return_ports(ports)
                self._destroy_namespace_locked(name)
                remove_path(work_dir)
                raise

            handle = IsolatedHandle(environment, config)
            self._active[name] = handle
            self._port_allocations[name] = ports
            self._save_state()

        logger.info(f"Isolated environment created: {name} (slot {slot})")
        return handle

    def release(self, name: str) -> bool:
        """Undo acquire(): tear down, return ports, free the slot.

        Returns:
            False if the name is not active (already released)
        """
        with self._cond:
            handle = self._active.get(name)
            if handle is None:
                return False

        logger.info(f"Destroying isolated environment: {name}")
        handle.cleanup_isolation()

        with self._cond:
            if self._active.get(name) is not handle:
                return False
            del self._active[name]
            self._return_ports(self._port_allocations.pop(name, []))
            self._destroy_namespace_locked(name)
            self._save_state()
            self._cond.notify_all()

        logger.info(f"Isolated environment destroyed: {name}")
        return True

    def release_all(self) -> int:
        """Release every active environment and sweep orphans."""
        logger.info("Cleaning up all isolated environments")
        released = sum(1 for name in self.active_names() if self.release(name))
        self.sweep_orphans()
        logger.info("All isolated environments cleaned up")
        return released

    def _find_free_slot(self) -> int:
        used = {handle.slot for handle in self._active.values()}
        for slot in range(1, self.max_concurrent + 1):
            if slot not in used:
                return slot
        raise ResourceExhaustedError(f"No available slots (max: {self.max_concurrent})")

    def _environment_options(self, kind, name: str, slot: int, ports: List[int],
                             work_dir: Path, base_options: Dict[str, Any]) -> Dict[str, Any]:
        options = dict(base_options)
        options.setdefault('resource_prefix', self.prefix)
        options['work_dir'] = str(work_dir)

        if EnvironmentKind(kind) is EnvironmentKind.CONTAINER:
            options['container_name'] = f"{self.prefix}-{name}-{slot}"
        else:
            options['vm_name'] = f"{self.prefix}-vm-{name}-{slot}"

        if len(ports) >= 2:
            options['ssh_port'] = ports[0]
            options['vnc_port'] = ports[1]
            if len(ports) > 2:
                options['service_ports'] = ports[2:]

        env_vars = dict(options.get('environment_vars', {}))
        env_vars.update({
            'RIGGING_TEST_SLOT': str(slot),
            'RIGGING_TEST_NAME': name,
            'RIGGING_TEST_ISOLATED': 'true',
        })
        options['environment_vars'] = env_vars
        return options

    # Ports

    def _take_ports(self, count: int) -> Optional[List[int]]:
        if len(self._available_ports) < count:
            return None
        taken = self._available_ports[:count]
        del self._available_ports[:count]
        return taken

    def _return_ports(self, ports: List[int]):
        pool = set(self._available_ports)
        pool.update(ports)
        self._available_ports = sorted(pool)

    def allocate_ports(self, count: int = 10) -> Optional[List[int]]:
        """Take ports from the pool outside of any environment; None if too few remain."""
        with self._cond:
            return self._take_ports(count)

    def release_ports(self, ports: List[int]) -> None:
        with self._cond:
            self._return_ports(ports)

    # Network namespaces

    def _namespaces_supported(self) -> bool:
        return platform.system() == "Linux" and shutil.which("ip") is not None

    def _create_namespace_locked(self, name: str) -> bool:
        if not self._namespaces_supported() or name in self._namespaces:
            return False
        namespace = f"{self.prefix}-{name}"
        result = subprocess.run(["ip", "netns", "add", namespace], capture_output=True, text=True)
        if result.returncode != 0:
            logger.warning(f"Failed to create network namespace {namespace}: {result.stderr.strip()}")
            return False
        self._namespaces[name] = namespace
        logger.debug(f"Created network namespace: {namespace}")
        return True

    def _destroy_namespace_locked(self, name: str) -> bool:
        namespace = self._namespaces.pop(name, None)
        if namespace is None:
            return False
        result = subprocess.run(["ip", "netns", "delete", namespace], capture_output=True, text=True)
        if result.returncode != 0:
            logger.warning(f"Failed to delete network namespace {namespace}: {result.stderr.strip()}")
        logger.debug(f"Destroyed network namespace: {namespace}")
        return True

    def create_network_namespace(self, name: str) -> bool:
        with self._cond:
            return self._create_namespace_locked(name)

    def destroy_network_namespace(self, name: str) -> bool:
        with self._cond:
            return self._destroy_namespace_locked(name)

    # Orphans

    def sweep_orphans(self) -> Dict[str, Any]:
        """Delete namespaces and work dirs no active environment owns.

        Ports recorded by a previous process are returned to the pool here.
        """
        logger.debug("Cleaning up orphaned isolation resources")
        swept: Dict[str, Any] = {'namespaces': [], 'directories': [], 'ports': 0}

        with self._cond:
            tracked_namespaces = set(self._namespaces.values())
            owned_dirs = {handle.work_dir.name for handle in self._active.values()}

            if self._namespaces_supported():
                listing = subprocess.run(["ip", "netns", "list"], capture_output=True, text=True)
                for line in listing.stdout.splitlines():
                    namespace = line.split()[0] if line.strip() else ""
                    if namespace.startswith(f"{self.prefix}-") and namespace not in tracked_namespaces:
                        subprocess.run(["ip", "netns", "delete", namespace], capture_output=True, text=True)
                        swept['namespaces'].append(namespace)
                        logger.debug(f"Cleaned up orphaned namespace: {namespace}")

            environments_dir = self.base_work_dir / "environments"
            if environments_dir.exists():
                for env_dir in sorted(environments_dir.iterdir()):
                    if env_dir.is_dir() and env_dir.name not in owned_dirs:
                        remove_path(env_dir)
                        swept['directories'].append(str(env_dir))
                        logger.debug(f"Cleaned up orphaned environment directory: {env_dir}")

            for ports in self._stale_allocations.values():
                self._return_ports(ports)
                swept['ports'] += len(ports)
            self._stale_allocations = {}
            self._save_state()

        return swept

    # Queries

    def active_names(self) -> List[str]:
        with self._cond:
            return list(self._active)

    def get(self, name: str) -> Optional[IsolatedHandle]:
        with self._cond:
            return self._active.get(name)

    def info(self, name: str) -> Optional[Dict[str, Any]]:
        handle = self.get(name)
        return handle.info() if handle else None

    def statistics(self) -> Dict[str, Any]:
        with self._cond:
            active = list(self._active.values())
            stats = {
                'active_environments': len(active),
                'max_concurrent': self.max_concurrent,
                'available_slots': self.max_concurrent - len(active),
                'port_allocations': len(self._port_allocations),
                'available_ports': len(self._available_ports),
            }

        disk = sum(directory_size(handle.work_dir) for handle in active)
        stats['resource_usage'] = {
            'disk_usage_bytes': disk,
            'disk_usage_mb': disk / (1024 * 1024),
            'estimated_memory_mb': ESTIMATED_MEMORY_PER_ENV_MB * len(active),
        }
        return stats

    # Persistence

    def _load_state(self):
        state = self._state.load()
        previous = state.get('port_allocations', {})
        if not previous:
            return
        reserved = {port for ports in previous.values() for port in ports}
        self._available_ports = [port for port in self._available_ports if port not in reserved]
        self._stale_allocations = {name: list(ports) for name, ports in previous.items()}
        logger.debug(f"Holding {len(reserved)} ports recorded by a previous run until swept")

    def _save_state(self):
        allocations = dict(self._stale_allocations)
        allocations.update(self._port_allocations)
        self._state.save({
            'port_allocations': allocations,
            'active_environments': list(self._active),
            'updated_at': datetime.now().isoformat(),
        })
