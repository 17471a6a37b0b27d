"""Orchestration of isolated, provisioned and health-checked environments."""
from rigging.orchestration.cleanup import CleanupManager, CleanupRecord, DiscoveredResource
from rigging.orchestration.health import HealthChecker, HealthStatus
from rigging.orchestration.isolation import IsolatedHandle, IsolationManager
from rigging.orchestration.manager import (
    EnvironmentContext,
    EnvironmentManager,
    RunResult,
    ShutdownContext,
    TestSession,
)
from rigging.orchestration.provisioner import ProvisionAction, Provisioner
from rigging.orchestration.volumes import Volume, VolumeManager

__all__ = [
    "CleanupManager",
    "CleanupRecord",
    "DiscoveredResource",
    "EnvironmentContext",
    "EnvironmentManager",
    "HealthChecker",
    "HealthStatus",
    "IsolatedHandle",
    "IsolationManager",
    "ProvisionAction",
    "Provisioner",
    "RunResult",
    "ShutdownContext",
    "TestSession",
    "Volume",
    "VolumeManager",
]
