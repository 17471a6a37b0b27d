"""Health and readiness checks for running fixtures."""
from __future__ import annotations

import json
import re
import secrets
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import yaml

from rigging.core.logger import get_logger
from rigging.models.config import HealthSettings

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    UNHEALTHY = "unhealthy"
    ERROR = "error"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


# Worst first
SEVERITY_ORDER = (
    HealthStatus.UNHEALTHY,
    HealthStatus.ERROR,
    HealthStatus.WARNING,
    HealthStatus.TIMEOUT,
)


@dataclass
class CheckResult:
    """Outcome of one health dimension."""
    status: HealthStatus
    details: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'details': self.details,
            'errors': list(self.errors),
            'duration': round(self.duration, 3),
        }


@dataclass
class HealthResult:
    environment_id: str
    timestamp: datetime
    overall_status: HealthStatus = HealthStatus.UNKNOWN
    checks: Dict[str, CheckResult] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def healthy(self) -> bool:
        return self.overall_status == HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            'environment_id': self.environment_id,
            'timestamp': self.timestamp.isoformat(),
            'overall_status': self.overall_status.value,
            'checks': {name: check.to_dict() for name, check in self.checks.items()},
            'errors': list(self.errors),
            'duration': round(self.duration, 3),
        }


@dataclass
class ReadinessResult:
    environment_id: str
    timestamp: datetime
    ready: bool = False
    checks: Dict[str, CheckResult] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'environment_id': self.environment_id,
            'timestamp': self.timestamp.isoformat(),
            'ready': self.ready,
            'checks': {name: check.to_dict() for name, check in self.checks.items()},
            'errors': list(self.errors),
            'duration': round(self.duration, 3),
        }


def overall_status(checks: Dict[str, CheckResult]) -> HealthStatus:
    """Fold per-dimension statuses into one, worst first.

    An empty check set is an error: nothing was verified.
    """
    if not checks:
        return HealthStatus.ERROR
    statuses = {check.status for check in checks.values()}
    for status in SEVERITY_ORDER:
        if status in statuses:
            return status
    return HealthStatus.HEALTHY


def _threshold_status(value: float, threshold: float, unhealthy_factor: float) -> HealthStatus:
    if value > threshold * unhealthy_factor:
        return HealthStatus.UNHEALTHY
    if value > threshold:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


class HealthChecker:
    """Runs health dimensions and readiness probes against one fixture.

    Args:
        environment: The fixture to probe
        settings: Thresholds, timeouts and enabled dimensions
        sleep: Sleep function (injectable for tests)
        clock: Monotonic clock (injectable for tests)
    """

    SYSTEMD_POLL_INTERVAL = 2.0

    def __init__(self, environment, settings: Optional[HealthSettings] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.environment = environment
        self.settings = settings or HealthSettings()
        self.sleep = sleep
        self.clock = clock
        self._history: List[HealthResult] = []
        self._last_result: Optional[HealthResult] = None
        self._history_lock = threading.Lock()
        self._monitor_thread: Optional[threading.Thread] = None
        self._monitor_stop: Optional[threading.Event] = None

        self._checks: Dict[str, Callable[[], CheckResult]] = {
            'connectivity': self._check_connectivity,
            'process_running': self._check_process_running,
            'file_system': self._check_file_system,
            'systemd_status': self._check_systemd_status,
            'services_running': self._check_services_running,
            'dns_resolution': self._check_dns_resolution,
            'port_connectivity': self._check_port_connectivity,
            'memory_usage': self._check_memory_usage,
            'disk_usage': self._check_disk_usage,
            'cpu_usage': self._check_cpu_usage,
        }

    @property
    def environment_id(self) -> str:
        return self.environment.instance_name

    # Health

    def perform_health_check(self, checks: Optional[List[str]] = None) -> HealthResult:
        """Run the given (or enabled) dimensions under the batch timeout.

        Returns:
            HealthResult; never raises
        """
        check_names = list(self.settings.enabled_checks if checks is None else checks)
        logger.debug(f"Performing health check: {', '.join(check_names)}")

        result = HealthResult(environment_id=self.environment_id, timestamp=datetime.now())
        started = time.monotonic()
        completed: Dict[str, CheckResult] = {}
        completed_lock = threading.Lock()

        def run_all():
            for name in check_names:
                check_result = self.run_check(name)
                with completed_lock:
                    completed[name] = check_result

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="health-check")
        future = executor.submit(run_all)
        try:
            future.result(timeout=self.settings.check_timeout)
            result.checks = dict(completed)
            result.overall_status = overall_status(result.checks)
        except FutureTimeout:
            with completed_lock:
                result.checks = dict(completed)
            for name in check_names:
                result.checks.setdefault(
                    name, CheckResult(HealthStatus.TIMEOUT, errors=["Check did not complete"])
                )
            result.errors.append(f"Health check timed out after {self.settings.check_timeout}s")
            result.overall_status = HealthStatus.TIMEOUT
        finally:
            executor.shutdown(wait=False)

        result.duration = time.monotonic() - started
        self._record(result)
        self._log_result(result)
        return result

    def run_check(self, name: str) -> CheckResult:
        """Run one dimension, converting any failure into an error result."""
        started = time.monotonic()
        check = self._checks.get(name)
        if check is None:
            check_result = CheckResult(HealthStatus.ERROR, errors=[f"Unknown check type: {name}"])
        elif not self.environment.is_ready():
            check_result = CheckResult(HealthStatus.ERROR, errors=["Environment not ready"])
        else:
            try:
                check_result = check()
            except Exception as e:
                check_result = CheckResult(HealthStatus.ERROR, errors=[f"{type(e).__name__}: {e}"])
        check_result.duration = time.monotonic() - started
        return check_result

    def _record(self, result: HealthResult):
        with self._history_lock:
            self._last_result = result
            self._history.append(result)
            if len(self._history) > self.settings.history_size:
                self._history = self._history[-self.settings.history_size:]

    def _log_result(self, result: HealthResult):
        if result.healthy:
            logger.debug(f"Health check passed for {result.environment_id} ({result.duration:.2f}s)")
            return
        failing = [
            name for name, check in result.checks.items() if check.status != HealthStatus.HEALTHY
        ]
        logger.warning(
            f"Health check {result.overall_status.value} for {result.environment_id}: "
            f"{', '.join(failing) or 'no checks run'}"
        )

    # Readiness

    def perform_readiness_check(self) -> ReadinessResult:
        """Check the fixture is ready for recipe application.

        Ready iff every readiness dimension is healthy.
        """
        result = ReadinessResult(environment_id=self.environment_id, timestamp=datetime.now())
        started = time.monotonic()
        deadline = self.clock() + self.settings.readiness_timeout
        checks: Dict[str, CheckResult] = {}

        ready = self.environment.is_ready()
        checks['environment_ready'] = CheckResult(
            HealthStatus.HEALTHY if ready else HealthStatus.UNHEALTHY, details={'ready': ready}
        )

        if ready:
            checks['connectivity'] = self.run_check('connectivity')

            if self.environment.systemd_enabled:
                checks['systemd_ready'] = self._poll_until_healthy('systemd_status', deadline)

            if self.settings.required_services:
                checks['required_services'] = self._poll_until_healthy('services_running', deadline)

            try:
                custom = self.environment.custom_readiness_check()
            except Exception as e:
                custom = False
                result.errors.append(f"Custom readiness check failed: {e}")
            if custom is not None:
                checks['custom'] = CheckResult(
                    HealthStatus.HEALTHY if custom else HealthStatus.UNHEALTHY
                )

            if self.clock() > deadline:
                result.errors.append(
                    f"Readiness check timed out after {self.settings.readiness_timeout}s"
                )

        result.checks = checks
        result.ready = not result.errors and all(
            check.status == HealthStatus.HEALTHY for check in checks.values()
        )
        result.duration = time.monotonic() - started
        logger.info(f"Readiness check completed: {'READY' if result.ready else 'NOT READY'}")
        return result

    def _poll_until_healthy(self, check_name: str, deadline: float) -> CheckResult:
        while True:
            check_result = self.run_check(check_name)
            if check_result.status == HealthStatus.HEALTHY:
                return check_result
            if self.clock() + self.SYSTEMD_POLL_INTERVAL > deadline:
                check_result.errors.append(f"{check_name} not healthy within readiness timeout")
                return check_result
            self.sleep(self.SYSTEMD_POLL_INTERVAL)

    def wait_for_ready(self, max_wait: float = 300, interval: float = 10) -> bool:
        """Poll readiness until it passes or the budget runs out.

        Returns:
            True if ready within max_wait; False otherwise (never raises)
        """
        logger.info(f"Waiting for environment to become ready (max {max_wait}s)")
        started = self.clock()

        while True:
            try:
                readiness = self.perform_readiness_check()
            except Exception as e:
                logger.error(f"Readiness check failed: {e}")
                readiness = None

            if readiness is not None and readiness.ready:
                logger.info(f"Environment is ready after {self.clock() - started:.1f}s")
                return True

            elapsed = self.clock() - started
            if elapsed >= max_wait:
                logger.error(f"Environment not ready after {max_wait}s timeout")
                return False

            logger.debug(f"Environment not ready, waiting {interval}s... ({elapsed:.1f}s elapsed)")
            self.sleep(min(interval, max_wait - elapsed))

    # Reporting

    def health_status(self) -> Dict[str, Any]:
        with self._history_lock:
            last = self._last_result
        if last is None:
            return {'status': HealthStatus.UNKNOWN.value, 'message': 'No health checks performed'}
        return {
            'status': last.overall_status.value,
            'last_check': last.timestamp.isoformat(),
            'checks': {name: check.to_dict() for name, check in last.checks.items()},
            'errors': list(last.errors),
        }

    def history(self, limit: int = 10) -> List[HealthResult]:
        with self._history_lock:
            return list(self._history[-limit:])

    def export_report(self, fmt: str = "yaml"):
        report = {
            'environment_id': self.environment_id,
            'generated_at': datetime.now().isoformat(),
            'current_status': self.health_status(),
            'history': [entry.to_dict() for entry in self.history()],
            'configuration': self.settings.model_dump(),
        }
        if fmt == "yaml":
            return yaml.safe_dump(report, sort_keys=False)
        if fmt == "json":
            return json.dumps(report, indent=2)
        return report

    # Monitoring

    def start_monitoring(self, interval: float = 60,
                         on_unhealthy: Optional[Callable[[HealthResult], None]] = None) -> threading.Event:
        """Run health checks periodically in a daemon thread.

        Returns:
            Event that stops the monitor when set
        """
        self.stop_monitoring()
        stop_event = threading.Event()
        logger.info(f"Starting continuous health monitoring (interval: {interval}s)")

        def monitor():
            while not stop_event.is_set():
                result = self.perform_health_check()
                if not result.healthy:
                    logger.warning(f"Health check failed: {result.overall_status.value}")
                    if on_unhealthy is not None:
                        try:
                            on_unhealthy(result)
                        except Exception as e:
                            logger.error(f"Health monitoring callback error: {e}")
                stop_event.wait(interval)

        thread = threading.Thread(target=monitor, name=f"health-{self.environment_id}", daemon=True)
        thread.start()
        self._monitor_thread = thread
        self._monitor_stop = stop_event
        return stop_event

    def stop_monitoring(self, timeout: float = 5) -> None:
        if self._monitor_stop is not None:
            self._monitor_stop.set()
        if self._monitor_thread is not None:
            self._monitor_thread.join(timeout)
        self._monitor_thread = None
        self._monitor_stop = None

    # Individual dimensions

    def _check_connectivity(self) -> CheckResult:
        result = self.environment.execute("echo 'connectivity_test'", timeout=10)
        if result.success and result.stdout.strip() == "connectivity_test":
            return CheckResult(HealthStatus.HEALTHY, details={'response_time': result.duration})
        return CheckResult(
            HealthStatus.UNHEALTHY, errors=[f"Connectivity test failed: {result.stderr.strip()}"]
        )

    def _check_process_running(self) -> CheckResult:
        alive = self.environment.process_alive()
        details = {'handle': self.environment.resource_handle()}
        if alive:
            return CheckResult(HealthStatus.HEALTHY, details=details)
        return CheckResult(HealthStatus.UNHEALTHY, details=details, errors=["Backing process not running"])

    def _check_file_system(self) -> CheckResult:
        test_file = f"/tmp/health_check_{secrets.token_hex(8)}"
        content = "health_check_test"

        if not self.environment.execute(f"echo '{content}' > {test_file}").success:
            return CheckResult(HealthStatus.UNHEALTHY, errors=["Cannot write to filesystem"])

        read = self.environment.execute(f"cat {test_file}")
        self.environment.execute(f"rm -f {test_file}")
        if not read.success or read.stdout.strip() != content:
            return CheckResult(HealthStatus.UNHEALTHY, errors=["Cannot read from filesystem"])
        return CheckResult(HealthStatus.HEALTHY, details={'test_file': test_file})

    def _check_systemd_status(self) -> CheckResult:
        result = self.environment.execute("systemctl is-system-running", timeout=10)
        state = result.stdout.strip()
        if "running" in state:
            return CheckResult(HealthStatus.HEALTHY, details={'systemd_state': state})
        if "degraded" in state:
            return CheckResult(HealthStatus.WARNING, details={'systemd_state': state})
        return CheckResult(HealthStatus.UNHEALTHY, errors=[f"systemd not running: {state}"])

    def _check_services_running(self) -> CheckResult:
        statuses = {}
        for service in self.settings.required_services:
            result = self.environment.execute(f"systemctl is-active {service}")
            statuses[service] = result.success and result.stdout.strip() == "active"
        healthy = all(statuses.values())
        return CheckResult(
            HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY,
            details={'services': statuses},
            errors=[] if healthy else [
                f"Service not active: {name}" for name, ok in statuses.items() if not ok
            ],
        )

    def _check_dns_resolution(self) -> CheckResult:
        host = self.settings.dns_host
        result = self.environment.execute(f"getent hosts {host} || nslookup {host}", timeout=10)
        return CheckResult(
            HealthStatus.HEALTHY if result.success else HealthStatus.UNHEALTHY,
            details={'dns_resolution': {host: result.success}},
        )

    def _check_port_connectivity(self) -> CheckResult:
        reachable = {}
        for port in self.settings.required_ports:
            result = self.environment.execute(f"nc -z localhost {port}", timeout=5)
            reachable[f"localhost:{port}"] = result.success
        healthy = all(reachable.values())
        return CheckResult(
            HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY,
            details={'port_connectivity': reachable},
        )

    def _check_memory_usage(self) -> CheckResult:
        result = self.environment.execute("free -m | grep '^Mem:'")
        if not result.success:
            return CheckResult(HealthStatus.ERROR, errors=["Cannot get memory info"])

        parts = result.stdout.split()
        total_mb, used_mb = int(parts[1]), int(parts[2])
        usage = round(used_mb / total_mb * 100, 1) if total_mb else 0.0
        threshold = self.settings.memory_threshold
        return CheckResult(
            _threshold_status(usage, threshold, 1.5),
            details={'total_mb': total_mb, 'used_mb': used_mb, 'usage_percent': usage, 'threshold': threshold},
        )

    def _check_disk_usage(self) -> CheckResult:
        result = self.environment.execute("df -h / | tail -1")
        if not result.success:
            return CheckResult(HealthStatus.ERROR, errors=["Cannot get disk info"])

        parts = result.stdout.split()
        usage = int(parts[4].rstrip('%'))
        threshold = self.settings.disk_threshold
        return CheckResult(
            _threshold_status(usage, threshold, 1.2),
            details={
                'usage_percent': usage,
                'threshold': threshold,
                'filesystem': parts[0],
                'size': parts[1],
                'used': parts[2],
                'available': parts[3],
            },
        )

    def _check_cpu_usage(self) -> CheckResult:
        result = self.environment.execute("uptime")
        if not result.success:
            return CheckResult(HealthStatus.ERROR, errors=["Cannot get load average"])

        match = re.search(r"load averages?:\s+([\d.]+)", result.stdout)
        if not match:
            return CheckResult(HealthStatus.ERROR, errors=["Cannot parse load average"])

        load_1min = float(match.group(1))
        threshold = self.settings.cpu_load_threshold
        return CheckResult(
            _threshold_status(load_1min, threshold, 2.0),
            details={'load_1min': load_1min, 'threshold': threshold},
        )
