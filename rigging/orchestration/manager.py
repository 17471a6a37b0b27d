"""Root orchestrator composing isolation, provisioning, health, cleanup and artifacts."""
import secrets
import signal
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from rigging.artifacts import ARTIFACT_TYPES, ArtifactManager
from rigging.core.errors import EnvironmentSetupError, RiggingError
from rigging.core.logger import get_logger, setup_file_logging
from rigging.environments import ContainerRuntime, EnvironmentKind, create_environment
from rigging.models.config import HarnessConfig
from rigging.orchestration.cleanup import CleanupManager, CleanupRecord
from rigging.orchestration.health import HealthChecker, HealthResult
from rigging.orchestration.isolation import IsolatedHandle, IsolationManager
from rigging.orchestration.provisioner import Provisioner
from rigging.orchestration.volumes import VolumeManager
from rigging.validators import IdempotencyValidator, MitamaeRunner, RecipeRunner, Validator

logger = get_logger(__name__)


class ShutdownContext:
    """Cancellation shared by normal shutdown and termination signals.

    Callbacks registered here run exactly once, on the first request(),
    whether that comes from close() or from SIGINT/SIGTERM.
    """

    def __init__(self):
        self.event = threading.Event()
        self.reason: Optional[str] = None
        self._callbacks: List[Callable[[], Any]] = []
        self._lock = threading.Lock()
        self._previous_handlers: Dict[int, Any] = {}

    @property
    def requested(self) -> bool:
        return self.event.is_set()

    def register(self, callback: Callable[[], Any]) -> None:
        with self._lock:
            self._callbacks.append(callback)

    def request(self, reason: str = "shutdown requested") -> bool:
        """Set the shutdown event and run callbacks.

        Returns:
            False if shutdown had already been requested
        """
        with self._lock:
            if self.event.is_set():
                return False
            self.event.set()
            self.reason = reason
            callbacks = list(self._callbacks)

        logger.info(f"Shutting down: {reason}")
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Shutdown callback failed: {e}")
        return True

    def install_signal_handlers(self, signals=(signal.SIGINT, signal.SIGTERM)) -> bool:
        """Route termination signals into request(). Main thread only."""
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Signal handlers can only be installed from the main thread")
            return False
        for signum in signals:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)
        return True

    def restore_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers = {}

    def _handle_signal(self, signum, frame):
        name = signal.Signals(signum).name
        logger.warning(f"Received {name} signal, cleaning up environments...")
        self.request(f"signal {name}")
        raise SystemExit(128 + signum)


@dataclass
class RunResult:
    """Aggregated outcome of one environment run.

    Cleanup errors are reported but never affect success.
    """
    name: str
    ready: bool = False
    validators: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    cleanup_errors: List[str] = field(default_factory=list)
    artifacts: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.ready and not self.errors and all(v['success'] for v in self.validators)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'success': self.success,
            'ready': self.ready,
            'validators': self.validators,
            'errors': self.errors,
            'cleanup_errors': self.cleanup_errors,
            'artifacts': self.artifacts.get('collection_dir') if self.artifacts else None,
        }


class EnvironmentContext:
    """An isolated environment together with the helpers bound to it."""

    def __init__(self, handle: IsolatedHandle, provisioner: Provisioner,
                 volume_manager: VolumeManager, health_checker: HealthChecker,
                 manager: "EnvironmentManager"):
        self.handle = handle
        self.provisioner = provisioner
        self.volume_manager = volume_manager
        self.health_checker = health_checker
        self.manager = manager

    @property
    def name(self) -> str:
        return self.handle.name

    @property
    def environment(self):
        return self.handle.environment

    def is_ready(self) -> bool:
        return self.environment.is_ready()

    def execute(self, command: str, timeout: Optional[float] = None, user: Optional[str] = None):
        return self.environment.execute(command, timeout=timeout, user=user)

    def health_check(self) -> HealthResult:
        return self.health_checker.perform_health_check()

    def collect_artifacts(self, test_result: Any = None, config: Optional[Dict[str, Any]] = None):
        return self.manager.collect_artifacts(self.name, test_result, config)

    def collect_failure_artifacts(self, test_failure: Any):
        return self.manager.collect_failure_artifacts(self.name, test_failure)

    def collect_logs(self) -> Dict[str, str]:
        return self.volume_manager.collect_logs()

    def artifact_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self.manager.artifact_manager.history(self.name, limit)

    def create_snapshot(self, name: str) -> Optional[str]:
        return self.provisioner.create_snapshot(name)

    def restore_snapshot(self, name: str) -> bool:
        return self.provisioner.restore_snapshot(name)

    def cleanup(self) -> Optional[CleanupRecord]:
        return self.manager.destroy_environment(self.name)


class EnvironmentManager:
    """Creates, provisions and destroys named environments.

    Usable as a context manager; leaving the block runs the same cleanup path
    as a termination signal.
    """

    def __init__(
        self,
        config: Optional[HarnessConfig] = None,
        runtime: Optional[ContainerRuntime] = None,
        recipe_runner: Optional[RecipeRunner] = None,
        environment_factory: Optional[Callable[..., Any]] = None,
        shutdown: Optional[ShutdownContext] = None,
    ):
        """Initialize environment manager.

        Args:
            config: Harness configuration
            runtime: Container runtime shared by container environments and cleanup
            recipe_runner: Runner handed to validators that apply recipes
            environment_factory: Callable (kind, name, options) -> Environment
            shutdown: Shared cancellation context
        """
        self.config = config or HarnessConfig()
        setup_file_logging(self.config.log_path, verbose=self.config.verbose)
        self.base_work_dir = self.config.work_path
        self.runtime = runtime or ContainerRuntime(self.config.runtime)
        self.recipe_runner = recipe_runner or MitamaeRunner()
        self.shutdown_context = shutdown or ShutdownContext()

        self.isolation_manager = IsolationManager(
            self.base_work_dir,
            settings=self.config.isolation,
            prefix=self.config.resource_prefix,
            environment_factory=environment_factory or self._build_environment,
        )
        self.cleanup_manager = CleanupManager(
            self.base_work_dir,
            settings=self.config.cleanup,
            prefix=self.config.resource_prefix,
            runtime=self.runtime,
        )
        self.artifact_manager = ArtifactManager(
            self.config.artifacts_path,
            self._lookup_environment,
            settings=self.config.artifacts,
        )

        self._contexts: Dict[str, EnvironmentContext] = {}
        self._lock = threading.RLock()
        self.shutdown_context.register(self.cleanup_all)

    def _build_environment(self, kind, name: str, options: Dict[str, Any]):
        merged: Dict[str, Any] = {
            'distribution': self.config.distribution,
            'systemd': self.config.systemd,
            'runtime': self.config.runtime,
        }
        if self.config.image:
            merged['image'] = self.config.image
        merged.update(options)
        environment_vars = dict(self.config.environment)
        environment_vars.update(options.get('environment_vars', {}))
        merged['environment_vars'] = environment_vars
        return create_environment(kind, name, merged, runtime=self.runtime)

    def _lookup_environment(self, name: str):
        context = self.get(name)
        return context.environment if context else None

    # Lifecycle

    def create_environment(self, kind, name: str, options: Optional[Dict[str, Any]] = None) -> EnvironmentContext:
        """Acquire isolation resources and construct the environment (not yet set up).

        Raises:
            ValueError: If the kind is unknown or the name already active
            ResourceExhaustedError: If no slot or ports are available in time
        """
        kind = EnvironmentKind(kind)
        logger.info(f"Creating {kind.value} environment: {name}")
        handle = self.isolation_manager.acquire(kind, name, options)
        try:
            context = EnvironmentContext(
                handle,
                Provisioner(handle.environment, state_dir=handle.work_dir / "provision",
                            settings=self.config.provision),
                VolumeManager(handle.work_dir),
                HealthChecker(handle.environment, settings=self.config.health),
                self,
            )
        except Exception:
            self.isolation_manager.release(name)
            raise

        with self._lock:
            self._contexts[name] = context
        logger.info(f"Environment created successfully: {name} ({kind.value})")
        return context

    def get(self, name: str) -> Optional[EnvironmentContext]:
        with self._lock:
            return self._contexts.get(name)

    def _require(self, name: str) -> EnvironmentContext:
        context = self.get(name)
        if context is None:
            raise KeyError(f"Environment not found: {name}")
        return context

    def list_environments(self) -> List[str]:
        with self._lock:
            return list(self._contexts)

    def provision_environment(self, name: str, recipe_paths: Iterable[str] = ()) -> EnvironmentContext:
        """Mount standard volumes, provision, and block until ready.

        Raises:
            KeyError: If the environment does not exist
            EnvironmentSetupError: If setup fails or readiness is not reached
            ProvisionError: If the fixture is unhealthy after setup
            LockError: If another provision holds the lock
        """
        context = self._require(name)
        recipe_paths = [str(path) for path in recipe_paths]
        logger.info(f"Provisioning environment: {name}")

        volumes = context.volume_manager
        volumes.add_artifact_volume()
        volumes.add_logs_volume()
        volumes.add_cache_volume()
        for volume in volumes.volumes.values():
            context.provisioner.add_shared_volume(volume.host_path, volume.guest_path, readonly=volume.readonly)

        if recipe_paths:
            context.provisioner.provision_with_files(recipe_paths)
        else:
            context.provisioner.provision()

        settings = self.config.provision
        if not context.health_checker.wait_for_ready(settings.ready_timeout, settings.ready_interval):
            raise EnvironmentSetupError(f"Environment failed to become ready: {name}")

        logger.info(f"Environment provisioned successfully: {name}")
        return context

    def destroy_environment(self, name: str) -> Optional[CleanupRecord]:
        """Tear down an environment and release its isolation resources. Never raises.

        Returns:
            The cleanup record, or None if the name was not active
        """
        with self._lock:
            context = self._contexts.pop(name, None)
        if context is None:
            return None

        logger.info(f"Destroying environment: {name}")
        record = self.cleanup_manager.cleanup_environment(context.environment, context.volume_manager)
        try:
            self.isolation_manager.release(name)
        except Exception as e:
            record.errors.append(f"isolation release failed: {e}")
            record.success = False
            logger.error(f"Failed to release isolation for {name}: {e}")
        logger.info(f"Environment destroyed: {name}")
        return record

    def cleanup_all(self) -> Dict[str, Optional[CleanupRecord]]:
        logger.info("Cleaning up all environments")
        results = {name: self.destroy_environment(name) for name in self.list_environments()}
        try:
            self.isolation_manager.release_all()
            self.cleanup_manager.cleanup_all()
        except Exception as e:
            logger.error(f"Cleanup of leftover resources failed: {e}")
        logger.info("All environments cleaned up")
        return results

    def emergency_cleanup(self) -> None:
        logger.warning("Performing emergency cleanup of all environments")
        with self._lock:
            contexts = list(self._contexts.values())
            self._contexts.clear()
        for context in contexts:
            context.environment.cleanup()
        try:
            self.isolation_manager.release_all()
            self.cleanup_manager.emergency_cleanup()
        except Exception as e:
            logger.error(f"Emergency cleanup failed: {e}")
        logger.warning("Emergency cleanup completed")

    def enforce_resource_limits(self) -> List[CleanupRecord]:
        return self.cleanup_manager.enforce_resource_limits()

    def install_signal_handlers(self) -> bool:
        return self.shutdown_context.install_signal_handlers()

    def close(self) -> None:
        """Clean up everything once; later calls are no-ops."""
        self.shutdown_context.request("environment manager closed")
        self.shutdown_context.restore_signal_handlers()
        self.artifact_manager.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # Status

    def status(self, name: str) -> Optional[Dict[str, Any]]:
        context = self.get(name)
        if context is None:
            return None
        return {
            'name': name,
            'kind': context.environment.kind.value,
            'ready': context.is_ready(),
            'health': context.health_checker.health_status(),
            'isolation': context.handle.info(),
            'volumes': context.volume_manager.statistics(),
            'snapshots': context.provisioner.list_snapshots(),
            'provision_lock': context.provisioner.lock_status(),
        }

    def all_status(self) -> Dict[str, Dict[str, Any]]:
        return {name: self.status(name) for name in self.list_environments()}

    def resource_usage(self) -> Dict[str, Any]:
        return {
            'isolation': self.isolation_manager.statistics(),
            'cleanup': self.cleanup_manager.resource_usage(),
            'active_environments': len(self.list_environments()),
        }

    # Artifacts

    def collect_artifacts(self, name: str, test_result: Any = None,
                          config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.artifact_manager.collect(name, test_result, config)

    def collect_failure_artifacts(self, name: str, test_failure: Any) -> Dict[str, Any]:
        config = {'artifact_types': list(ARTIFACT_TYPES), 'create_archive': True}
        return self.artifact_manager.collect(name, test_failure, config)

    # Sessions and runs

    def idempotency_validator(self) -> IdempotencyValidator:
        """Idempotency validator bound to this manager's recipe runner."""
        return IdempotencyValidator(self.recipe_runner)

    def create_session(self, session_config: Dict[str, Any]) -> "TestSession":
        """Create every environment listed in session_config['environments'].

        Each entry has kind, name and optional options. If any creation fails,
        the environments already created for the session are destroyed.
        """
        entries = session_config.get('environments', [])
        logger.info(f"Creating test session with {len(entries)} environments")
        session = TestSession(self, session_config)
        try:
            for entry in entries:
                context = self.create_environment(entry['kind'], entry['name'], entry.get('options'))
                session.add_environment(entry['name'], context)
        except Exception:
            session.cleanup()
            raise
        logger.info(f"Test session created successfully: {session.session_id}")
        return session

    def run(self, kind, name: str, recipe_paths: Iterable[str] = (),
            validators: Iterable[Validator] = (), options: Optional[Dict[str, Any]] = None,
            validator_context: Optional[Dict[str, Any]] = None) -> RunResult:
        """Create, provision, validate, collect artifacts and destroy one environment.

        Validators receive the environment plus validator_context; by default
        recipe_path points at the first recipe's guest path.
        """
        result = RunResult(name=name)
        recipe_paths = [str(path) for path in recipe_paths]
        if self.shutdown_context.requested:
            result.errors.append(f"Shutdown requested: {self.shutdown_context.reason}")
            return result

        try:
            context = self.create_environment(kind, name, options)
        except (RiggingError, ValueError) as e:
            result.errors.append(f"Environment creation failed: {e}")
            return result

        try:
            try:
                self.provision_environment(name, recipe_paths)
                result.ready = True
            except Exception as e:
                logger.error(f"Provisioning failed for {name}: {type(e).__name__}: {e}")
                result.errors.append(f"Provisioning failed: {e}")

            if result.ready:
                run_context = dict(validator_context or {})
                if recipe_paths:
                    guest_dir = self.config.provision.recipe_guest_path
                    run_context.setdefault('recipe_path', f"{guest_dir}/{Path(recipe_paths[0]).name}")
                for validator in validators:
                    result.validators.append(self._run_validator(validator, context, run_context))

            try:
                if result.success:
                    result.artifacts = self.collect_artifacts(name, {'success': True})
                else:
                    result.artifacts = self.collect_failure_artifacts(name, {'success': False, 'errors': result.errors})
            except Exception as e:
                logger.error(f"Artifact collection failed for {name}: {e}")
        finally:
            record = self.destroy_environment(name)
            if record is not None and not record.success:
                result.cleanup_errors.extend(record.errors)

        logger.info(f"Run {name}: {'PASSED' if result.success else 'FAILED'}")
        return result

    def _run_validator(self, validator: Validator, context: EnvironmentContext,
                       run_context: Dict[str, Any]) -> Dict[str, Any]:
        try:
            validator.validate(context.environment, **run_context)
        except Exception as e:
            validator.add_error(f"Validator raised {type(e).__name__}: {e}")
        return validator.to_dict()


class TestSession:
    """A group of environments created and torn down together."""

    __test__ = False

    def __init__(self, manager: EnvironmentManager, config: Optional[Dict[str, Any]] = None):
        self.manager = manager
        self.config = dict(config or {})
        self.session_id = secrets.token_hex(8)
        self.environments: Dict[str, EnvironmentContext] = {}

    def add_environment(self, name: str, context: EnvironmentContext) -> None:
        self.environments[name] = context

    def environment_names(self) -> List[str]:
        return list(self.environments)

    def get(self, name: str) -> Optional[EnvironmentContext]:
        return self.environments.get(name)

    def provision_all(self, recipe_paths: Iterable[str] = ()) -> Dict[str, bool]:
        """Provision every environment; a failure in one does not stop the rest."""
        logger.info("Provisioning all session environments")
        recipe_paths = list(recipe_paths)
        results = {}
        for name in self.environments:
            try:
                self.manager.provision_environment(name, recipe_paths)
                results[name] = True
            except Exception as e:
                logger.error(f"Provisioning failed for {name}: {e}")
                results[name] = False
        return results

    def health_check_all(self) -> Dict[str, HealthResult]:
        return {name: context.health_check() for name, context in self.environments.items()}

    def collect_all_artifacts(self, session_result: Any = None) -> Dict[str, Any]:
        return self.manager.artifact_manager.collect_session(self, session_result)

    def collect_all_logs(self) -> Dict[str, Dict[str, str]]:
        return {name: context.collect_logs() for name, context in self.environments.items()}

    def cleanup(self) -> Dict[str, Optional[CleanupRecord]]:
        logger.info(f"Cleaning up test session {self.session_id}")
        results = {name: self.manager.destroy_environment(name) for name in list(self.environments)}
        self.environments.clear()
        return results

    def status(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'environments': {name: self.manager.status(name) for name in self.environments},
        }
