"""Container fixtures backed by podman (or docker)."""
import re
import secrets
from typing import Any, Dict, List, Optional

from rigging.core.config import get_timeouts
from rigging.core.errors import (
    EnvironmentSetupError,
    RiggingError,
    SnapshotUnsupportedError,
)
from rigging.core.logger import get_logger
from rigging.core.retry import retry, wait_until
from rigging.environments.base import (
    BASE_PACKAGE_INSTALL,
    TEST_USER,
    CommandResult,
    Environment,
    EnvironmentKind,
)
from rigging.environments.runtime import ContainerRuntime

logger = get_logger(__name__)

DEFAULT_IMAGES = {
    'fedora': "registry.fedoraproject.org/fedora:latest",
    'ubuntu': "docker.io/library/ubuntu:22.04",
    'debian': "docker.io/library/debian:12",
    'arch': "docker.io/library/archlinux:latest",
    'alpine': "docker.io/library/alpine:latest",
}

SYSTEMD_READY_STATES = ("running", "degraded")


class Container(Environment):
    """Disposable container fixture.

    Options:
        image: Image reference (defaults per distribution)
        distribution: ubuntu, debian, fedora, arch or alpine
        systemd: Boot /sbin/init instead of sleeping (default True)
        pull_image: Pull the image before creating the container
        container_name: Fixed name (otherwise prefix-name-random)
        service_ports: Host ports published 1:1 into the container
    """

    kind = EnvironmentKind.CONTAINER
    supports_snapshots = True

    SETUP_ATTEMPTS = 3
    SETUP_RETRY_DELAY = 2.0
    SYSTEMD_POLL_INTERVAL = 1.0

    def __init__(self, name: str, options: Optional[Dict[str, Any]] = None,
                 runtime: Optional[ContainerRuntime] = None):
        super().__init__(name, options)
        self.runtime = runtime or ContainerRuntime(self.options.get('runtime', 'podman'))
        self.image = self.options.get('image') or DEFAULT_IMAGES.get(self.distribution, DEFAULT_IMAGES['fedora'])
        self.container_name = (
            self.options.get('container_name') or f"{self.prefix}-{name}-{secrets.token_hex(4)}"
        )
        self.container_id: Optional[str] = None
        self._snapshots: List[str] = []

        for port in self.options.get('service_ports', []):
            self.add_port(port)

    @property
    def instance_name(self) -> str:
        return self.container_name

    def resource_handle(self) -> Optional[str]:
        return self.container_id

    def setup(self) -> None:
        logger.info(f"Setting up container environment: {self.container_name}")

        attempt = retry(
            max_attempts=self.SETUP_ATTEMPTS,
            delay=self.SETUP_RETRY_DELAY,
            exceptions=(RiggingError, OSError),
            on_retry=lambda _attempt, _error: self._discard_container(),
        )(self._bring_up)

        try:
            attempt()
        except (RiggingError, OSError) as e:
            self._discard_container()
            self.mark_not_ready()
            raise EnvironmentSetupError(f"Failed to setup container {self.container_name}: {e}") from e

        logger.info(f"Container environment ready: {self.container_name} ({self.container_id})")

    def _bring_up(self):
        if not self.runtime.available():
            raise EnvironmentSetupError(f"Container runtime not available: {self.runtime.binary}")
        self.runtime.ensure_user_service()

        if self.options.get('pull_image'):
            logger.info(f"Pulling container image: {self.image}")
            pulled = self.runtime.pull(self.image)
            if not pulled.success:
                raise EnvironmentSetupError(f"Failed to pull {self.image}: {pulled.stderr.strip()}")

        self._create_and_start(self.image)
        self._wait_for_systemd()
        self._configure()
        self.mark_ready()

    def _create_and_start(self, image: str):
        created = self.runtime.create(
            name=self.container_name,
            image=image,
            hostname=self.container_name,
            systemd=self.systemd_enabled,
            volumes=self.volumes,
            ports=self.ports,
            env=self.environment_vars,
            command=["/sbin/init"] if self.systemd_enabled else ["sleep", "infinity"],
        )
        container_id = created.stdout.strip()
        if not created.success or not container_id:
            raise EnvironmentSetupError(f"Failed to create container: {created.stderr.strip()}")
        self.container_id = container_id

        started = self.runtime.start(self.container_id)
        if not started.success:
            raise EnvironmentSetupError(f"Failed to start container: {started.stderr.strip()}")

    def _wait_for_systemd(self):
        if not self.systemd_enabled:
            return
        logger.debug("Waiting for systemd to become ready...")

        def systemd_ready():
            result = self._run("systemctl is-system-running", timeout=5)
            return result.success or any(state in result.stdout for state in SYSTEMD_READY_STATES)

        if not wait_until(systemd_ready, get_timeouts().systemd_wait_timeout, self.SYSTEMD_POLL_INTERVAL):
            raise EnvironmentSetupError("systemd did not reach running state")

    def _configure(self):
        install = BASE_PACKAGE_INSTALL.get(self.distribution)
        if install:
            result = self._run(install, timeout=get_timeouts().command_timeout)
            if not result.success:
                logger.warning(f"Base package install failed in {self.container_name}: {result.stderr.strip()}")

        self._run(f"useradd -m -s /bin/bash {TEST_USER} || true")
        self._run(f"echo '{TEST_USER} ALL=(ALL) NOPASSWD:ALL' > /etc/sudoers.d/{TEST_USER}")

    def _discard_container(self):
        if not self.container_id:
            return
        try:
            self.runtime.remove(self.container_id)
        except RiggingError as e:
            logger.warning(f"Failed to remove container {self.container_id}: {e}")
        self.container_id = None

    def teardown(self) -> None:
        if not self.container_id:
            self.mark_not_ready()
            return

        logger.info(f"Tearing down container: {self.container_name}")
        try:
            self.runtime.stop(self.container_id)
        except RiggingError as e:
            logger.warning(f"Failed to stop container {self.container_id}: {e}")
        self._discard_container()
        self.mark_not_ready()

    def _run(self, command: str, timeout: Optional[float] = None, user: Optional[str] = "root") -> CommandResult:
        return self.runtime.exec(self.container_id, command, user=user, timeout=timeout)

    def execute(self, command: str, timeout: Optional[float] = None, user: Optional[str] = None) -> CommandResult:
        self._require_ready()
        return self._run(command, timeout=timeout, user=user or "root")

    def copy_to(self, source: str, destination: str) -> None:
        self._require_ready()
        result = self.runtime.copy_to(self.container_id, source, destination)
        if not result.success:
            raise RiggingError(f"Failed to copy {source} -> {destination}: {result.stderr.strip()}")

    def copy_from(self, source: str, destination: str) -> None:
        self._require_ready()
        result = self.runtime.copy_from(self.container_id, source, destination)
        if not result.success:
            raise RiggingError(f"Failed to copy {source} -> {destination}: {result.stderr.strip()}")

    def process_alive(self) -> bool:
        if not self.container_id:
            return False
        return self.runtime.inspect(self.container_id, "{{.State.Running}}") == "true"

    def container_ip(self) -> Optional[str]:
        if not self.container_id:
            return None
        return self.runtime.inspect(self.container_id, "{{.NetworkSettings.IPAddress}}")

    def health_check(self) -> bool:
        if not super().health_check():
            return False
        if not self.systemd_enabled:
            return True
        result = self.execute("systemctl is-system-running", timeout=10)
        return result.success or any(state in result.stdout for state in SYSTEMD_READY_STATES)

    # Snapshots are committed images; restoring recreates the container from one

    def create_snapshot(self, name: str) -> str:
        self._require_ready()
        tag = re.sub(r"[^a-z0-9_.-]", "-", name.lower())
        image = f"localhost/{self.container_name}-snapshot:{tag}"
        result = self.runtime.commit(self.container_id, image)
        if not result.success:
            raise RiggingError(f"Failed to snapshot {self.container_name}: {result.stderr.strip()}")
        self._snapshots.append(image)
        logger.info(f"Created snapshot {image}")
        return image

    def restore_snapshot(self, snapshot_id: str) -> None:
        if snapshot_id not in self._snapshots:
            raise SnapshotUnsupportedError(f"Unknown snapshot for {self.container_name}: {snapshot_id}")
        logger.info(f"Restoring {self.container_name} from {snapshot_id}")
        self.teardown()
        try:
            self._create_and_start(snapshot_id)
            self._wait_for_systemd()
        except RiggingError as e:
            self._discard_container()
            raise EnvironmentSetupError(f"Failed to restore snapshot {snapshot_id}: {e}") from e
        self.mark_ready()

    def list_snapshots(self) -> List[str]:
        return list(self._snapshots)

    def clear_snapshots(self) -> None:
        for image in self._snapshots:
            try:
                self.runtime.remove_image(image)
            except RiggingError as e:
                logger.warning(f"Failed to remove snapshot image {image}: {e}")
        self._snapshots = []
