"""Execution environment contract shared by containers and VMs."""
from __future__ import annotations

import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from rigging.core.errors import (
    EnvironmentNotReadyError,
    RiggingError,
    SnapshotUnsupportedError,
)
from rigging.core.logger import get_logger

logger = get_logger(__name__)

DEFAULT_PREFIX = "rigging-test"
TEST_USER = "rigging"

PACKAGE_QUERIES = {
    'arch': "pacman -Q {package}",
    'fedora': "rpm -q {package}",
    'ubuntu': "dpkg -s {package}",
    'debian': "dpkg -s {package}",
    'alpine': "apk info -e {package}",
}

BASE_PACKAGE_INSTALL = {
    'arch': "pacman -Sy --noconfirm base-devel git curl wget",
    'fedora': "dnf install -y @development-tools git curl wget",
    'ubuntu': "apt-get update && apt-get install -y build-essential git curl wget",
    'debian': "apt-get update && apt-get install -y build-essential git curl wget",
    'alpine': "apk add --no-cache build-base git curl wget bash",
}


class EnvironmentKind(str, Enum):
    """Kinds of disposable fixture."""
    CONTAINER = "container"
    VM = "vm"


@dataclass
class CommandResult:
    """Outcome of a command run inside a fixture."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'exit_code': self.exit_code,
            'stdout': self.stdout,
            'stderr': self.stderr,
            'duration': self.duration,
            'success': self.success,
        }


class Environment(ABC):
    """Abstract fixture a recipe can be applied to.

    Lifecycle is one way: not-ready -> ready after a successful setup(), and
    back to not-ready after teardown(). A torn-down fixture is never set up
    again by the orchestration layer; retries use a fresh instance.
    """

    kind: EnvironmentKind
    supports_snapshots = False

    def __init__(self, name: str, options: Optional[Dict[str, Any]] = None):
        """Initialize environment.

        Args:
            name: Logical fixture name
            options: Kind-specific options (distribution, ports, work_dir, ...)
        """
        self.name = name
        self.options: Dict[str, Any] = dict(options or {})
        self.distribution = self.options.get('distribution', 'ubuntu')
        self.prefix = self.options.get('resource_prefix', DEFAULT_PREFIX)
        self.systemd_enabled = bool(self.options.get('systemd', True))
        self.work_dir = Path(self.options['work_dir']) if self.options.get('work_dir') else None

        self.volumes: List[str] = []
        self.ports: List[str] = []
        self.environment_vars: Dict[str, str] = dict(self.options.get('environment_vars', {}))
        self._ready = False

    # Lifecycle

    @abstractmethod
    def setup(self) -> None:
        """Bring the fixture up.

        Raises:
            EnvironmentSetupError: If the fixture cannot be made ready
        """

    @abstractmethod
    def teardown(self) -> None:
        """Stop the fixture and release its host resources."""

    @abstractmethod
    def execute(self, command: str, timeout: Optional[float] = None, user: Optional[str] = None) -> CommandResult:
        """Run a shell command inside the fixture.

        Args:
            command: Shell command line
            timeout: Seconds before the command is abandoned
            user: User to run as (kind-specific default when None)

        Returns:
            CommandResult with exit code and captured output

        Raises:
            EnvironmentNotReadyError: If the fixture is not ready
            CommandTimeoutError: If the command exceeds the timeout
        """

    @abstractmethod
    def copy_to(self, source: str, destination: str) -> None:
        """Copy a host path into the fixture."""

    @abstractmethod
    def copy_from(self, source: str, destination: str) -> None:
        """Copy a fixture path out to the host."""

    @abstractmethod
    def process_alive(self) -> bool:
        """Whether the backing host process (container or hypervisor) is running."""

    @property
    @abstractmethod
    def instance_name(self) -> str:
        """Unique host-level name of the fixture."""

    @abstractmethod
    def resource_handle(self) -> Optional[str]:
        """Identifier of the host resource backing the fixture, if created."""

    def is_ready(self) -> bool:
        return self._ready

    def mark_ready(self):
        self._ready = True

    def mark_not_ready(self):
        self._ready = False

    def _require_ready(self):
        if not self._ready:
            raise EnvironmentNotReadyError(f"{self.kind.value} {self.instance_name} is not ready")

    def cleanup(self) -> bool:
        """Tear down if ready. Never raises.

        Returns:
            True if teardown completed (or nothing needed doing)
        """
        if not self.is_ready():
            return True
        try:
            self.teardown()
            return True
        except Exception as e:
            logger.error(f"Failed to clean up {self.instance_name}: {e}")
            return False

    # Configuration applied before setup()

    def add_volume(self, host_path: str, guest_path: str, readonly: bool = False) -> str:
        """Register a bind mount; returns its host:guest:mode spec."""
        mode = 'ro' if readonly else 'rw'
        spec = f"{Path(host_path).expanduser().resolve()}:{guest_path}:{mode}"
        if spec not in self.volumes:
            self.volumes.append(spec)
        return spec

    def add_port(self, host_port: int, guest_port: Optional[int] = None) -> str:
        spec = f"{host_port}:{guest_port or host_port}"
        if spec not in self.ports:
            self.ports.append(spec)
        return spec

    def set_environment(self, key: str, value: Any) -> None:
        self.environment_vars[str(key)] = str(value)

    # Convenience queries built on execute()

    def file_exists(self, path: str) -> bool:
        return self.execute(f"test -f {shlex.quote(path)}").success

    def read_file(self, path: str) -> str:
        result = self.execute(f"cat {shlex.quote(path)}")
        if not result.success:
            raise RiggingError(f"Failed to read file {path}: {result.stderr}")
        return result.stdout

    def write_file(self, path: str, content: str) -> None:
        result = self.execute(
            f"cat > {shlex.quote(path)} << 'RIGGING_EOF'\n{content}\nRIGGING_EOF"
        )
        if not result.success:
            raise RiggingError(f"Failed to write file {path}: {result.stderr}")

    def package_installed(self, package: str) -> bool:
        query = PACKAGE_QUERIES.get(self.distribution)
        if query is None:
            raise RiggingError(f"Package check not implemented for {self.distribution}")
        return self.execute(query.format(package=shlex.quote(package))).success

    def service_running(self, service: str) -> bool:
        if not self.systemd_enabled:
            return False
        result = self.execute(f"systemctl is-active {shlex.quote(service)}")
        return result.success and result.stdout.strip() == 'active'

    def health_check(self) -> bool:
        """Cheap liveness probe: fixture ready and answering a trivial command."""
        if not self.is_ready():
            return False
        try:
            result = self.execute("echo 'health check'", timeout=10)
        except RiggingError as e:
            logger.debug(f"Health probe failed for {self.instance_name}: {e}")
            return False
        return result.success and 'health check' in result.stdout

    def custom_readiness_check(self) -> Optional[bool]:
        """Kind-specific readiness; None when the kind has none."""
        return None

    def take_screenshot(self, filename: Optional[str] = None) -> Optional[str]:
        """Capture the fixture display; None when the kind has no display."""
        return None

    # Snapshot capability

    def create_snapshot(self, name: str) -> str:
        raise SnapshotUnsupportedError(f"{self.kind.value} fixtures do not support snapshots")

    def restore_snapshot(self, snapshot_id: str) -> None:
        raise SnapshotUnsupportedError(f"{self.kind.value} fixtures do not support snapshots")

    def list_snapshots(self) -> List[str]:
        return []

    def clear_snapshots(self) -> None:
        """Drop all snapshots. No-op for kinds without snapshots."""

    def describe(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'kind': self.kind.value,
            'instance_name': self.instance_name,
            'distribution': self.distribution,
            'ready': self.is_ready(),
            'handle': self.resource_handle(),
            'volumes': list(self.volumes),
            'ports': list(self.ports),
        }

    def __repr__(self):
        return f"<{type(self).__name__} {self.instance_name} ready={self._ready}>"
