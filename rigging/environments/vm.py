"""QEMU virtual machine fixtures."""
import os
import platform
import re
import secrets
import shlex
import shutil
import socket
import subprocess
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil
import requests
from jinja2 import Environment as TemplateEnvironment
from jinja2 import FileSystemLoader

from rigging.core.config import get_timeouts
from rigging.core.errors import (
    CommandTimeoutError,
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

logger = get_logger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"

DEFAULT_MEMORY = "2048"
DEFAULT_DISK_SIZE = "20G"
DEFAULT_ARCH = "x86_64"
VNC_PORT_BASE = 5900
SSH_PORT_BASE = 2222

# Failures of the external tools and downloads used while bringing a VM up
SETUP_ERRORS = (RiggingError, OSError, subprocess.SubprocessError, requests.RequestException)

CLOUD_IMAGES = {
    'arch': "https://geo.mirror.pkgbuild.com/images/latest/Arch-Linux-x86_64-cloudimg.qcow2",
    'ubuntu': "https://cloud-images.ubuntu.com/releases/22.04/release/ubuntu-22.04-server-cloudimg-amd64.img",
    'fedora': (
        "https://download.fedoraproject.org/pub/fedora/linux/releases/39/Cloud/x86_64/images/"
        "Fedora-Cloud-Base-39-1.5.x86_64.qcow2"
    ),
    'debian': "https://cloud.debian.org/images/cloud/bookworm/latest/debian-12-generic-amd64.qcow2",
}

QEMU_BINARIES = {
    'x86_64': "qemu-system-x86_64",
    'aarch64': "qemu-system-aarch64",
}

SSH_OPTIONS = [
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "LogLevel=quiet",
]


def find_free_port(base_port: int, span: int = 1000) -> int:
    """Return the first TCP port at or above base_port that can be bound."""
    for port in range(base_port, base_port + span):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind(("127.0.0.1", port))
            except OSError:
                continue
            return port
    raise EnvironmentSetupError(f"Could not find free port starting from {base_port}")


def render_user_data(user: str, public_key: str, distribution: str,
                     environment: Optional[Dict[str, str]] = None) -> str:
    """Render cloud-init user-data for a fixture VM."""
    env = TemplateEnvironment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    template = env.get_template("user-data.j2")
    return template.render(
        user=user,
        public_key=public_key,
        sudo_group="wheel" if distribution in ("fedora", "arch") else "sudo",
        upgrade=False,
        packages=["curl", "wget", "git"],
        environment=environment or {},
    )


class VM(Environment):
    """Disposable QEMU virtual machine fixture.

    The VM boots a cloud image through a qcow2 overlay, is configured by a
    cloud-init seed ISO, and is reached over SSH on a forwarded host port.

    Options:
        distribution: arch, ubuntu, fedora or debian
        memory: Guest memory in MiB (default 2048)
        disk_size: Overlay disk size (default 20G)
        arch: x86_64 or aarch64
        graphical: Expose a VNC display
        ssh_port / vnc_port: Host ports (allocated if absent)
        vm_name: Fixed name (otherwise prefix-vm-name-random)
        image_cache_dir: Where downloaded base images are kept
    """

    kind = EnvironmentKind.VM
    supports_snapshots = True

    SETUP_ATTEMPTS = 3
    SETUP_RETRY_DELAY = 5.0
    SSH_POLL_INTERVAL = 5.0

    def __init__(self, name: str, options: Optional[Dict[str, Any]] = None):
        super().__init__(name, options)
        self.vm_name = self.options.get('vm_name') or f"{self.prefix}-vm-{name}-{secrets.token_hex(4)}"
        if 'distribution' not in self.options:
            self.distribution = 'arch'
        self.memory = str(self.options.get('memory', DEFAULT_MEMORY))
        self.disk_size = self.options.get('disk_size', DEFAULT_DISK_SIZE)
        self.arch = self.options.get('arch', DEFAULT_ARCH)
        self.graphical = bool(self.options.get('graphical', False))
        self.ssh_port = int(self.options.get('ssh_port') or find_free_port(SSH_PORT_BASE))
        self.vnc_port = int(self.options.get('vnc_port') or find_free_port(VNC_PORT_BASE))
        self.ssh_user = TEST_USER
        self.ssh_connect_timeout = 30

        base = self.work_dir or Path(tempfile.gettempdir()) / self.prefix
        self.vm_dir = Path(base) / self.vm_name
        self.disk_path = self.vm_dir / f"{self.vm_name}.qcow2"
        self.pid_file = self.vm_dir / f"{self.vm_name}.pid"
        self.monitor_socket = self.vm_dir / f"{self.vm_name}-monitor.sock"
        self.cloud_init_iso = self.vm_dir / "cloud-init.iso"
        self.ssh_key_path = self.vm_dir / "id_ed25519"
        self.image_cache_dir = Path(
            self.options.get('image_cache_dir') or Path(tempfile.gettempdir()) / self.prefix / "images"
        )
        self._snapshots: List[str] = []

    @property
    def instance_name(self) -> str:
        return self.vm_name

    def resource_handle(self) -> Optional[str]:
        return str(self.pid_file) if self.pid_file.exists() else None

    @property
    def qemu_binary(self) -> str:
        binary = QEMU_BINARIES.get(self.arch)
        if binary is None:
            raise EnvironmentSetupError(f"Unsupported architecture: {self.arch}")
        return binary

    @property
    def vnc_display(self) -> Optional[str]:
        return f"localhost:{self.vnc_port - VNC_PORT_BASE}" if self.graphical else None

    # Lifecycle

    def setup(self) -> None:
        logger.info(f"Setting up VM environment: {self.vm_name}")

        attempt = retry(
            max_attempts=self.SETUP_ATTEMPTS,
            delay=self.SETUP_RETRY_DELAY,
            exceptions=SETUP_ERRORS,
            on_retry=lambda _attempt, _error: self._kill_process(),
        )(self._bring_up)

        try:
            attempt()
        except SETUP_ERRORS as e:
            self._kill_process()
            self._remove_vm_dir()
            self.mark_not_ready()
            raise EnvironmentSetupError(f"Failed to setup VM {self.vm_name}: {e}") from e

        display = f", VNC: {self.vnc_display}" if self.graphical else ""
        logger.info(f"VM environment ready: {self.vm_name} (SSH: localhost:{self.ssh_port}{display})")

    def _bring_up(self):
        self._ensure_qemu()
        self.vm_dir.mkdir(parents=True, exist_ok=True)
        self._ensure_ssh_key()
        self._prepare_disk()
        self._create_cloud_init()
        self._start_qemu()
        self._wait_for_ssh()
        self._configure()
        self.mark_ready()

    def _ensure_qemu(self):
        if shutil.which(self.qemu_binary) is None:
            raise EnvironmentSetupError(f"QEMU not available ({self.qemu_binary})")
        if platform.system() == "Linux" and not os.access("/dev/kvm", os.R_OK):
            logger.warning("KVM not available - VM will run slower")

    def _ensure_ssh_key(self):
        if self.ssh_key_path.exists():
            return
        subprocess.run(
            ["ssh-keygen", "-t", "ed25519", "-N", "", "-q", "-f", str(self.ssh_key_path)],
            capture_output=True, text=True, check=True,
        )
        if not self.ssh_key_path.exists():
            raise EnvironmentSetupError("Failed to generate SSH key")

    def _prepare_disk(self):
        url = CLOUD_IMAGES.get(self.distribution)
        if url is None:
            raise EnvironmentSetupError(f"Unsupported distribution: {self.distribution}")

        base_image = self.image_cache_dir / url.rsplit("/", 1)[-1]
        if not base_image.exists():
            self.download_image(url, base_image)

        logger.debug("Creating VM disk from base image...")
        subprocess.run(
            ["qemu-img", "create", "-f", "qcow2", "-F", "qcow2",
             "-b", str(base_image), str(self.disk_path), self.disk_size],
            capture_output=True, text=True, check=True,
        )
        if not self.disk_path.exists():
            raise EnvironmentSetupError("Failed to create VM disk")

    def download_image(self, url: str, destination: Path) -> Path:
        """Stream a base image to the cache directory."""
        logger.info(f"Downloading base image for {self.distribution}...")
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_suffix(destination.suffix + ".part")

        with requests.get(url, stream=True, timeout=get_timeouts().image_download_timeout) as response:
            response.raise_for_status()
            with open(partial, "wb") as handle:
                for chunk in response.iter_content(chunk_size=1024 * 1024):
                    handle.write(chunk)

        partial.rename(destination)
        return destination

    def _create_cloud_init(self):
        public_key = Path(f"{self.ssh_key_path}.pub").read_text().strip()
        user_data = self.vm_dir / "user-data"
        meta_data = self.vm_dir / "meta-data"
        user_data.write_text(
            render_user_data(self.ssh_user, public_key, self.distribution, self.environment_vars)
        )
        meta_data.write_text(f"instance-id: {self.vm_name}\nlocal-hostname: {self.vm_name}\n")

        subprocess.run(
            ["genisoimage", "-output", str(self.cloud_init_iso), "-volid", "cidata",
             "-joliet", "-rock", str(user_data), str(meta_data)],
            capture_output=True, text=True, check=True,
        )
        if not self.cloud_init_iso.exists():
            raise EnvironmentSetupError("Failed to create cloud-init ISO")

    def build_qemu_command(self) -> List[str]:
        cmd = [self.qemu_binary, "-name", self.vm_name, "-m", self.memory, "-smp", "2"]
        if platform.system() == "Linux" and os.path.exists("/dev/kvm"):
            cmd.append("-enable-kvm")

        cmd += ["-drive", f"file={self.disk_path},format=qcow2,if=virtio"]
        cmd += ["-drive", f"file={self.cloud_init_iso},format=raw,if=virtio"]

        hostfwd = [f"hostfwd=tcp::{self.ssh_port}-:22"]
        for spec in self.ports:
            host_port, guest_port = spec.split(":", 1)
            hostfwd.append(f"hostfwd=tcp::{host_port}-:{guest_port}")
        cmd += ["-netdev", ",".join(["user", "id=net0"] + hostfwd)]
        cmd += ["-device", "virtio-net-pci,netdev=net0"]

        for index, spec in enumerate(self.volumes):
            host_path, _guest, mode = _split_volume(spec)
            tag = f"rigging{index}"
            readonly = ",readonly=on" if mode == "ro" else ""
            cmd += ["-virtfs", f"local,path={host_path},mount_tag={tag},security_model=none{readonly}"]

        if self.graphical:
            cmd += ["-vnc", f":{self.vnc_port - VNC_PORT_BASE}", "-device", "virtio-vga"]
        else:
            cmd += ["-display", "none"]

        cmd += ["-monitor", f"unix:{self.monitor_socket},server,nowait"]
        cmd += ["-daemonize", "-pidfile", str(self.pid_file)]
        return cmd

    def _start_qemu(self):
        cmd = self.build_qemu_command()
        logger.debug(f"QEMU command: {' '.join(cmd)}")
        log_file = self.vm_dir / "qemu.log"
        with open(log_file, "w") as log:
            subprocess.run(cmd, stdout=log, stderr=subprocess.STDOUT, check=True)

        if not self.process_alive():
            raise EnvironmentSetupError(f"VM failed to start - check {log_file}")

    def _wait_for_ssh(self):
        logger.debug("Waiting for SSH to become available...")

        def ssh_ready():
            return self._ssh("echo ssh-ready", timeout=self.ssh_connect_timeout).success

        if not wait_until(ssh_ready, get_timeouts().ssh_wait_timeout, self.SSH_POLL_INTERVAL):
            raise EnvironmentSetupError("SSH did not become available")

    def _configure(self):
        self._ssh("cloud-init status --wait", timeout=get_timeouts().cloud_init_timeout)
        install = BASE_PACKAGE_INSTALL.get(self.distribution)
        if install:
            self._ssh(f"sudo sh -c {shlex.quote(install)}", timeout=get_timeouts().command_timeout)
        for index, spec in enumerate(self.volumes):
            _host, guest_path, _mode = _split_volume(spec)
            tag = f"rigging{index}"
            self._ssh(
                f"sudo mkdir -p {shlex.quote(guest_path)} && "
                f"sudo mount -t 9p -o trans=virtio {tag} {shlex.quote(guest_path)}",
                timeout=60,
            )
        self._ssh("sudo -n true", timeout=10)

    def teardown(self) -> None:
        if not self.pid_file.exists() and not self.vm_dir.exists():
            self.mark_not_ready()
            return

        logger.info(f"Shutting down VM: {self.vm_name}")
        if self.is_ready():
            try:
                self.execute("sudo poweroff", timeout=30)
            except RiggingError as e:
                logger.debug(f"Graceful poweroff failed: {e}")
            wait_until(lambda: not self.process_alive(), 10, 1)

        self._kill_process()
        self._remove_vm_dir()
        self.mark_not_ready()

    def _read_pid(self) -> Optional[int]:
        try:
            content = self.pid_file.read_text().strip()
        except OSError:
            return None
        return int(content) if content.isdigit() else None

    def _kill_process(self):
        pid = self._read_pid()
        if pid is None:
            return
        try:
            proc = psutil.Process(pid)
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except psutil.TimeoutExpired:
                proc.kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.Error as e:
            logger.warning(f"Failed to stop VM process {pid}: {e}")

    def _remove_vm_dir(self):
        if self.vm_dir.exists():
            shutil.rmtree(self.vm_dir, ignore_errors=True)

    def process_alive(self) -> bool:
        pid = self._read_pid()
        if pid is None:
            return False
        try:
            return psutil.Process(pid).is_running()
        except psutil.Error:
            return False

    # Commands

    def _ssh_base(self) -> List[str]:
        return ["ssh", *SSH_OPTIONS, "-o", f"ConnectTimeout={self.ssh_connect_timeout}",
                "-i", str(self.ssh_key_path), "-p", str(self.ssh_port)]

    def _ssh(self, command: str, timeout: Optional[float] = None, user: Optional[str] = None) -> CommandResult:
        timeout = timeout or get_timeouts().command_timeout
        cmd = self._ssh_base() + [f"{user or self.ssh_user}@localhost", command]
        started = time.monotonic()
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise CommandTimeoutError(command, timeout) from e
        return CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "",
                             time.monotonic() - started)

    def execute(self, command: str, timeout: Optional[float] = None, user: Optional[str] = None) -> CommandResult:
        self._require_ready()
        return self._ssh(command, timeout=timeout, user=user)

    def _scp(self, source: str, destination: str):
        cmd = ["scp", *SSH_OPTIONS, "-r", "-i", str(self.ssh_key_path), "-P", str(self.ssh_port),
               source, destination]
        proc = subprocess.run(cmd, capture_output=True, text=True)
        if proc.returncode != 0:
            raise RiggingError(f"Failed to copy {source} -> {destination}: {proc.stderr.strip()}")

    def copy_to(self, source: str, destination: str) -> None:
        self._require_ready()
        self._scp(source, f"{self.ssh_user}@localhost:{destination}")

    def copy_from(self, source: str, destination: str) -> None:
        self._require_ready()
        self._scp(f"{self.ssh_user}@localhost:{source}", destination)

    def write_file(self, path: str, content: str) -> None:
        fd, temp_path = tempfile.mkstemp(prefix="rigging-")
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(content)
            self.copy_to(temp_path, path)
        finally:
            os.unlink(temp_path)

    def service_running(self, service: str) -> bool:
        result = self.execute(f"systemctl is-active {shlex.quote(service)}")
        return result.success and result.stdout.strip() == "active"

    def health_check(self) -> bool:
        if not self.is_ready() or not self.process_alive():
            return False
        return super().health_check()

    def custom_readiness_check(self) -> Optional[bool]:
        """cloud-init must have finished for the VM to count as ready."""
        try:
            return self.execute("test -f /var/log/cloud-init-complete", timeout=10).success
        except RiggingError:
            return False

    # Monitor-based operations

    def send_monitor_command(self, command: str) -> Optional[str]:
        if not self.monitor_socket.exists():
            return None
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.settimeout(10)
                sock.connect(str(self.monitor_socket))
                sock.sendall(f"{command}\n".encode())
                time.sleep(0.5)
                return sock.recv(65536).decode(errors="replace")
        except OSError as e:
            logger.error(f"Failed to send monitor command: {e}")
            return None

    def take_screenshot(self, filename: Optional[str] = None) -> Optional[str]:
        """Dump the VM display to a file; None for headless VMs."""
        if not self.graphical:
            return None
        target = filename or str(self.vm_dir / f"screenshot-{datetime.now().strftime('%Y%m%d-%H%M%S')}.ppm")
        self.send_monitor_command(f"screendump {target}")
        return target if Path(target).exists() else None

    def create_snapshot(self, name: str) -> str:
        self._require_ready()
        tag = re.sub(r"[^A-Za-z0-9_.-]", "-", name)
        response = self.send_monitor_command(f"savevm {tag}")
        if response is None or "Error" in response:
            raise RiggingError(f"Failed to snapshot {self.vm_name}: {response}")
        self._snapshots.append(tag)
        return tag

    def restore_snapshot(self, snapshot_id: str) -> None:
        if snapshot_id not in self._snapshots:
            raise SnapshotUnsupportedError(f"Unknown snapshot for {self.vm_name}: {snapshot_id}")
        response = self.send_monitor_command(f"loadvm {snapshot_id}")
        if response is None or "Error" in response:
            raise RiggingError(f"Failed to restore snapshot {snapshot_id}: {response}")

    def list_snapshots(self) -> List[str]:
        return list(self._snapshots)

    def clear_snapshots(self) -> None:
        for tag in self._snapshots:
            self.send_monitor_command(f"delvm {tag}")
        self._snapshots = []


def _split_volume(spec: str):
    host_path, guest_path, mode = spec.rsplit(":", 2)
    return host_path, guest_path, mode
