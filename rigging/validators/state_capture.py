"""Whole-system state snapshots and their structural diff."""
import re
import shlex
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional

from rigging.core.errors import RiggingError
from rigging.core.logger import get_logger

logger = get_logger(__name__)

PACKAGE_COMMANDS = (
    "dpkg-query -W -f='${Package}:${Version}\\n'",
    "rpm -qa --queryformat '%{NAME}:%{VERSION}-%{RELEASE}\\n'",
    "pacman -Q | sed 's/ /:/'",
    "apk info -v",
)

FILE_ATTRIBUTES = ("exists", "mode", "owner", "group", "size", "checksum")

SERVICE_STATUS = re.compile(r"\[\s*([+\-?])\s*\]\s+(.+)")


class SystemStateCapture:
    """Captures packages, services, file metadata and a process histogram."""

    def __init__(self, environment, timeout: float = 60):
        self.environment = environment
        self.timeout = timeout

    def _run(self, command: str):
        try:
            return self.environment.execute(command, timeout=self.timeout)
        except RiggingError as e:
            logger.debug(f"State capture command failed: {command}: {e}")
            return None

    def capture(self, packages: bool = True, services: bool = True,
                files: Optional[Iterable[str]] = None, processes: bool = False) -> Dict[str, Any]:
        state: Dict[str, Any] = {}
        if packages:
            state['packages'] = self.packages()
        if services:
            state['services'] = self.services()
        if files:
            state['files'] = self.files(files)
        if processes:
            state['processes'] = self.processes()
        return state

    def packages(self) -> List[str]:
        """Sorted name:version list from the first package manager that answers."""
        for command in PACKAGE_COMMANDS:
            result = self._run(command)
            if result is not None and result.success:
                return sorted(line.strip() for line in result.stdout.splitlines() if line.strip())
        return []

    def services(self) -> Dict[str, Dict[str, str]]:
        result = self._run("systemctl list-units --type=service --all --no-legend --plain")
        if result is not None and result.success:
            services = {}
            for line in result.stdout.splitlines():
                parts = line.split(None, 4)
                if len(parts) < 4:
                    continue
                name = parts[0].lstrip("●* ")
                if name.endswith(".service"):
                    name = name[:-len(".service")]
                services[name] = {'loaded': parts[1], 'active': parts[2], 'sub': parts[3]}
            return services

        result = self._run("service --status-all 2>&1")
        if result is not None and result.success:
            states = {'+': 'running', '-': 'stopped'}
            return {
                match.group(2).strip(): {'status': states.get(match.group(1), 'unknown')}
                for match in map(SERVICE_STATUS.search, result.stdout.splitlines())
                if match
            }
        return {}

    def files(self, paths: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        states = {}
        for path in paths:
            quoted = shlex.quote(path)
            stat = self._run(f"stat -c '%a:%U:%G:%s:%Y' {quoted}")
            if stat is None or not stat.success:
                states[path] = {'exists': False}
                continue

            mode, owner, group, size, mtime = (stat.stdout.strip().split(":") + [""] * 5)[:5]
            checksum = self._run(f"sha256sum {quoted} | cut -d' ' -f1")
            states[path] = {
                'exists': True,
                'mode': mode,
                'owner': owner,
                'group': group,
                'size': int(size) if size.isdigit() else None,
                'mtime': int(mtime) if mtime.isdigit() else None,
                'checksum': checksum.stdout.strip() if checksum is not None and checksum.success else None,
            }
        return states

    def processes(self) -> Dict[str, int]:
        """Count of running processes per executable, excluding the ps call itself."""
        result = self._run("ps aux --no-headers")
        if result is None or not result.success:
            return {}
        histogram: Counter = Counter()
        for line in result.stdout.splitlines():
            parts = line.split(None, 10)
            if len(parts) < 11 or "ps aux" in parts[10]:
                continue
            histogram[parts[10].split()[0]] += 1
        return dict(histogram)


def diff_states(before: Dict[str, Any], after: Dict[str, Any]) -> List[Dict[str, Any]]:
    """List every difference between two captures.

    Only components present in both captures are compared.
    """
    differences: List[Dict[str, Any]] = []

    if 'packages' in before and 'packages' in after:
        added = sorted(set(after['packages']) - set(before['packages']))
        removed = sorted(set(before['packages']) - set(after['packages']))
        if added:
            differences.append({'type': 'packages', 'added': added})
        if removed:
            differences.append({'type': 'packages', 'removed': removed})

    if 'services' in before and 'services' in after:
        for name in sorted(set(before['services']) | set(after['services'])):
            old, new = before['services'].get(name), after['services'].get(name)
            if old != new:
                differences.append({'type': 'service', 'name': name, 'before': old, 'after': new})

    if 'files' in before and 'files' in after:
        for path, old in before['files'].items():
            new = after['files'].get(path, {'exists': False})
            changes = [
                {'attribute': attribute, 'before': old.get(attribute), 'after': new.get(attribute)}
                for attribute in FILE_ATTRIBUTES
                if old.get(attribute) != new.get(attribute)
            ]
            if changes:
                differences.append({'type': 'file', 'path': path, 'changes': changes})

    if 'processes' in before and 'processes' in after:
        for command in sorted(set(before['processes']) | set(after['processes'])):
            old, new = before['processes'].get(command, 0), after['processes'].get(command, 0)
            if old != new:
                differences.append({'type': 'process', 'command': command, 'before': old, 'after': new})

    return differences
