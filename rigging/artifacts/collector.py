"""Capture of logs, configuration and system state from one fixture."""
import json
import secrets
import shutil
import tarfile
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

import yaml

from rigging import __version__
from rigging.core.errors import RiggingError
from rigging.core.fs import directory_size
from rigging.core.logger import get_logger

logger = get_logger(__name__)

ARTIFACT_TYPES = (
    "logs",
    "screenshots",
    "system_state",
    "config_files",
    "package_state",
    "service_state",
    "performance_data",
    "test_output",
    "error_traces",
    "environment_info",
)

MINIMAL_TYPES = ("logs", "system_state", "config_files", "environment_info")

METADATA_FILE = "collection_metadata.json"

GUEST_LOGS = {
    'journal': "journalctl --no-pager -n {lines}",
    'dmesg': "dmesg | tail -n {lines}",
    'syslog': "tail -n {lines} /var/log/syslog 2>/dev/null || tail -n {lines} /var/log/messages",
    'cloud_init': "tail -n {lines} /var/log/cloud-init-output.log",
}

SYSTEM_STATE = {
    'processes': "ps aux",
    'memory': "free -m",
    'disk': "df -h",
    'network': "ip addr 2>/dev/null || ifconfig -a",
    'environment_vars': "env | sort",
}

CONFIG_PATHS = (
    "/etc/hosts",
    "/etc/resolv.conf",
    "/etc/passwd",
    "/etc/group",
    "/etc/os-release",
    "/root/.bashrc",
)

PACKAGE_STATE = {
    'dpkg': "dpkg -l",
    'rpm': "rpm -qa | sort",
    'pacman': "pacman -Q",
    'apk': "apk info -v",
    'flatpak': "flatpak list",
}

SERVICE_STATE = {
    'systemd_units': "systemctl list-units --all --no-pager --plain",
    'systemd_failed': "systemctl --failed --no-pager --plain",
}

PERFORMANCE_DATA = {
    'load': "uptime",
    'cpu': "cat /proc/cpuinfo",
    'vmstat': "vmstat 1 3",
    'io': "cat /proc/diskstats",
}

ERROR_TRACES = {
    'failed_units': "journalctl -p err --no-pager -n {lines}",
    'core_dumps': "ls -la /var/lib/systemd/coredump 2>/dev/null",
    'crash_logs': "ls -la /var/crash 2>/dev/null",
}


class ArtifactCollector:
    """Collects one bundle of artifacts from an environment into output_dir.

    Each artifact type is captured independently; a failing type is recorded
    in the session errors and the remaining types still run.
    """

    def __init__(self, environment, output_dir: Path, config: Optional[Dict[str, Any]] = None):
        """Initialize collector.

        Args:
            environment: Fixture to collect from
            output_dir: Directory the bundle is written to
            config: artifact_types, create_archive, max_log_lines, include_screenshots
        """
        self.environment = environment
        self.output_dir = Path(output_dir)
        self.config: Dict[str, Any] = {
            'artifact_types': list(MINIMAL_TYPES),
            'create_archive': False,
            'max_log_lines': 1000,
            'include_screenshots': True,
        }
        self.config.update(config or {})
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self._collectors: Dict[str, Callable[[Path], Dict[str, str]]] = {
            'logs': self.collect_logs,
            'screenshots': self.collect_screenshots,
            'system_state': lambda d: self._capture_commands(d, SYSTEM_STATE),
            'config_files': self.collect_config_files,
            'package_state': lambda d: self._capture_commands(d, PACKAGE_STATE),
            'service_state': lambda d: self._capture_commands(d, SERVICE_STATE),
            'performance_data': lambda d: self._capture_commands(d, PERFORMANCE_DATA),
            'test_output': self.collect_test_output,
            'error_traces': lambda d: self._capture_commands(d, ERROR_TRACES),
            'environment_info': self.collect_environment_info,
        }

    def collect(self, test_result: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Collect every configured artifact type.

        Returns:
            Collection metadata: session_id, timestamp, environment, artifacts
            (type -> name -> path), errors, duration, total_size, success and
            archive_path when an archive was requested
        """
        started = time.monotonic()
        session: Dict[str, Any] = {
            'session_id': secrets.token_hex(8),
            'timestamp': datetime.now().isoformat(),
            'environment': self.environment.name,
            'environment_kind': self.environment.kind.value,
            'test_result': test_result,
            'artifacts': {},
            'errors': [],
        }
        logger.info(f"Collecting artifacts from {self.environment.name} into {self.output_dir}")

        for artifact_type in ARTIFACT_TYPES:
            if artifact_type not in self.config['artifact_types']:
                continue
            type_dir = self.output_dir / artifact_type
            type_dir.mkdir(parents=True, exist_ok=True)
            try:
                session['artifacts'][artifact_type] = self._collectors[artifact_type](type_dir)
            except (RiggingError, OSError) as e:
                message = f"Failed to collect {artifact_type}: {e}"
                session['errors'].append(message)
                logger.error(message)

        session['duration'] = time.monotonic() - started
        session['total_size'] = directory_size(self.output_dir)
        session['success'] = not session['errors']
        self._save_metadata(session)

        if self.config['create_archive']:
            session['archive_path'] = str(self.create_archive(session['session_id']))

        logger.info(
            f"Artifact collection completed: {len(session['artifacts'])} types, "
            f"{session['total_size'] // 1024}KB"
        )
        return session

    def collect_failure(self, test_result: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Collect every artifact type and archive the bundle."""
        logger.info("Collecting failure artifacts")
        saved = dict(self.config)
        self.config.update({'artifact_types': list(ARTIFACT_TYPES), 'create_archive': True})
        try:
            return self.collect(test_result)
        finally:
            self.config = saved

    # Individual artifact types

    def collect_logs(self, logs_dir: Path) -> Dict[str, str]:
        lines = self.config['max_log_lines']
        logs = self._capture_commands(logs_dir, {k: v.format(lines=lines) for k, v in GUEST_LOGS.items()})

        work_dir = self.environment.work_dir
        if work_dir and Path(work_dir).exists():
            for log_file in Path(work_dir).rglob("*.log"):
                if logs_dir in log_file.parents:
                    continue
                destination = logs_dir / f"host-{log_file.name}"
                shutil.copy2(log_file, destination)
                logs[f"host_{log_file.stem}"] = str(destination)
        return logs

    def collect_screenshots(self, screenshots_dir: Path) -> Dict[str, str]:
        if not self.config['include_screenshots']:
            return {}
        target = screenshots_dir / f"current-{datetime.now().strftime('%Y%m%d-%H%M%S')}.ppm"
        path = self.environment.take_screenshot(str(target))
        return {'current': path} if path else {}

    def collect_config_files(self, config_dir: Path) -> Dict[str, str]:
        configs = {}
        for guest_path in CONFIG_PATHS:
            result = self._execute(f"cat {guest_path}")
            if result is None or not result.success:
                continue
            destination = config_dir / guest_path.strip("/").replace("/", "_")
            destination.write_text(result.stdout)
            configs[guest_path] = str(destination)
        return configs

    def collect_test_output(self, output_dir: Path) -> Dict[str, str]:
        outputs = {}
        work_dir = self.environment.work_dir
        if not work_dir or not Path(work_dir).exists():
            return outputs
        for path in Path(work_dir).rglob("*test*"):
            if path.is_file() and output_dir not in path.parents:
                destination = output_dir / path.name
                shutil.copy2(path, destination)
                outputs[str(path.relative_to(work_dir))] = str(destination)
        return outputs

    def collect_environment_info(self, info_dir: Path) -> Dict[str, str]:
        info = {
            'collector_version': __version__,
            'collection_time': datetime.now().isoformat(),
        }
        info.update(self.environment.describe())
        info_path = info_dir / "environment_info.yaml"
        with open(info_path, 'w') as f:
            yaml.safe_dump(info, f, default_flow_style=False, sort_keys=False)
        return {'environment_info': str(info_path)}

    # Helpers

    def _execute(self, command: str):
        if not self.environment.is_ready():
            return None
        try:
            return self.environment.execute(command, timeout=60)
        except RiggingError as e:
            logger.debug(f"Artifact command failed: {command}: {e}")
            return None

    def _capture_commands(self, dest_dir: Path, commands: Dict[str, str]) -> Dict[str, str]:
        captured = {}
        for name, command in commands.items():
            result = self._execute(command)
            if result is None or not result.success or not result.stdout:
                continue
            destination = dest_dir / f"{name}.txt"
            destination.write_text(result.stdout)
            captured[name] = str(destination)
        return captured

    def _save_metadata(self, session: Dict[str, Any]) -> Path:
        path = self.output_dir / METADATA_FILE
        with open(path, 'w') as f:
            json.dump(session, f, indent=2, default=str)
        return path

    def create_archive(self, session_id: str) -> Path:
        """Pack the bundle into <output_dir>-<session_id>.tar.gz beside it."""
        archive = self.output_dir.parent / f"{self.output_dir.name}-{session_id}.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(self.output_dir, arcname=self.output_dir.name)
        logger.debug(f"Created artifact archive: {archive}")
        return archive


def iter_artifact_files(artifacts: Dict[str, Dict[str, str]]) -> Iterable[tuple]:
    """Yield (artifact_type, name, path) for every file in a collection's index."""
    for artifact_type, entries in artifacts.items():
        for name, path in (entries or {}).items():
            if path and Path(path).is_file():
                yield artifact_type, name, Path(path)
