"""Container runtime wrapper (podman or docker CLI)."""
import os
import re
import shutil
import subprocess
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from rigging.core.config import get_timeouts
from rigging.core.errors import CommandTimeoutError
from rigging.core.logger import get_logger
from rigging.environments.base import CommandResult

logger = get_logger(__name__)

SYSTEMD_OPTS = [
    "--systemd=true",
    "--tmpfs=/tmp",
    "--tmpfs=/run",
    "--tmpfs=/run/lock",
    "--volume=/sys/fs/cgroup:/sys/fs/cgroup:ro",
    "--cap-add=SYS_ADMIN",
]

MANAGED_LABEL = "rigging-test=true"

PS_FORMAT = "{{.Names}}\t{{.CreatedAt}}\t{{.Status}}"

RELATIVE_TIME = re.compile(r"(\d+)\s+(minute|hour|day)s?\s+ago")


class ContainerRuntime:
    """Thin wrapper over the container runtime CLI.

    Every call goes through run(), which captures output and converts
    subprocess timeouts into CommandTimeoutError.
    """

    def __init__(self, binary: str = "podman"):
        self.binary = binary

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def run(self, args: List[str], timeout: Optional[float] = None) -> CommandResult:
        """Run a runtime subcommand.

        Args:
            args: Arguments after the runtime binary
            timeout: Seconds before the call is abandoned

        Returns:
            CommandResult; non-zero exit codes are returned, not raised

        Raises:
            CommandTimeoutError: If the call exceeds the timeout
        """
        timeout = timeout or get_timeouts().runtime_timeout
        cmd = [self.binary] + [str(arg) for arg in args]
        logger.debug(f"Running: {' '.join(cmd)}")

        started = time.monotonic()
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise CommandTimeoutError(' '.join(cmd), timeout) from e

        result = CommandResult(
            exit_code=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            duration=time.monotonic() - started,
        )
        if not result.success:
            logger.debug(f"{self.binary} command failed ({result.exit_code}): {' '.join(cmd)}")
            if result.stderr:
                logger.debug(f"STDERR: {result.stderr.strip()}")
        return result

    def ensure_user_service(self) -> None:
        """Start the rootless podman socket if it is not running."""
        if self.binary != "podman" or os.environ.get("USER") == "root":
            return
        check = subprocess.run(
            ["systemctl", "--user", "is-active", "podman.socket"],
            capture_output=True, text=True,
        )
        if check.returncode != 0:
            logger.warning("Podman socket not running. Starting user service...")
            subprocess.run(["systemctl", "--user", "start", "podman.socket"], capture_output=True)

    def pull(self, image: str) -> CommandResult:
        return self.run(["pull", image], timeout=get_timeouts().image_pull_timeout)

    def create(
        self,
        name: str,
        image: str,
        hostname: Optional[str] = None,
        systemd: bool = False,
        volumes: Optional[List[str]] = None,
        ports: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        command: Optional[List[str]] = None,
    ) -> CommandResult:
        """Create (but do not start) a container."""
        args = ["create", f"--name={name}", f"--hostname={hostname or name}", f"--label={MANAGED_LABEL}"]
        if systemd:
            args.extend(SYSTEMD_OPTS)
        for volume in volumes or []:
            args.extend(["--volume", volume])
        for port in ports or []:
            args.extend(["--publish", port])
        for key, value in (env or {}).items():
            args.extend(["--env", f"{key}={value}"])
        args.append(image)
        args.extend(command or [])
        return self.run(args)

    def start(self, container: str) -> CommandResult:
        return self.run(["start", container])

    def stop(self, container: str, timeout: int = 10) -> CommandResult:
        return self.run(["stop", f"--time={timeout}", container], timeout=timeout + 30)

    def remove(self, container: str) -> CommandResult:
        return self.run(["rm", "-f", container])

    def exec(self, container: str, command: str, user: Optional[str] = "root",
             timeout: Optional[float] = None) -> CommandResult:
        args = ["exec"]
        if user:
            args.append(f"--user={user}")
        args.extend([container, "bash", "-c", command])
        return self.run(args, timeout=timeout or get_timeouts().command_timeout)

    def copy_to(self, container: str, source: str, destination: str) -> CommandResult:
        return self.run(["cp", source, f"{container}:{destination}"])

    def copy_from(self, container: str, source: str, destination: str) -> CommandResult:
        return self.run(["cp", f"{container}:{source}", destination])

    def inspect(self, container: str, fmt: Optional[str] = None) -> Optional[str]:
        args = ["inspect"]
        if fmt:
            args.append(f"--format={fmt}")
        args.append(container)
        result = self.run(args)
        return result.stdout.strip() if result.success else None

    def commit(self, container: str, image: str) -> CommandResult:
        return self.run(["commit", container, image], timeout=get_timeouts().image_pull_timeout)

    def remove_image(self, image: str) -> CommandResult:
        return self.run(["rmi", "-f", image])

    def list_containers(self, name_filter: str) -> List[Dict[str, object]]:
        """List containers (running or not) whose name matches the filter.

        Returns:
            List of dicts with name, created_at (datetime or None) and status
        """
        result = self.run(["ps", "-a", "--format", PS_FORMAT, "--filter", f"name={name_filter}"])
        if not result.success:
            return []

        containers = []
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) < 3 or not parts[0]:
                continue
            containers.append({
                'name': parts[0],
                'created_at': parse_runtime_time(parts[1]),
                'status': parts[2],
                'running': parts[2].lower().startswith('up'),
            })
        return containers

    def prune(self) -> List[CommandResult]:
        """Remove stopped managed containers and unused networks/volumes."""
        return [
            self.run(["container", "prune", "-f", "--filter", f"label={MANAGED_LABEL}"]),
            self.run(["network", "prune", "-f"]),
            self.run(["volume", "prune", "-f"]),
        ]


def parse_runtime_time(value: str) -> Optional[datetime]:
    """Parse the CreatedAt column printed by podman/docker ps.

    Podman prints e.g. "2024-01-15 10:30:45.123456789 +0000 UTC"; docker omits
    the fractional part. Returns a naive local datetime or None.
    """
    value = (value or "").strip()
    if not value:
        return None

    relative = RELATIVE_TIME.search(value)
    if relative:
        amount, unit = int(relative.group(1)), relative.group(2)
        return datetime.now() - timedelta(**{f"{unit}s": amount})

    parts = value.split()
    if len(parts) < 2:
        return None
    date_part, time_part = parts[0], parts[1].split(".")[0]
    offset = parts[2] if len(parts) > 2 and parts[2][:1] in "+-" else None

    try:
        if offset:
            parsed = datetime.strptime(f"{date_part} {time_part} {offset}", "%Y-%m-%d %H:%M:%S %z")
            return parsed.astimezone().replace(tzinfo=None)
        return datetime.strptime(f"{date_part} {time_part}", "%Y-%m-%d %H:%M:%S")
    except ValueError:
        logger.debug(f"Unrecognized runtime timestamp: {value}")
        return None
