"""Harness configuration models."""
import re
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

HEALTH_CHECKS = (
    "connectivity",
    "process_running",
    "file_system",
    "systemd_status",
    "services_running",
    "dns_resolution",
    "port_connectivity",
    "memory_usage",
    "disk_usage",
    "cpu_usage",
)

BASIC_HEALTH_CHECKS = ["connectivity", "process_running", "file_system"]


class IsolationSettings(BaseModel):
    """Slot and port allocation limits."""

    model_config = ConfigDict(extra='forbid')

    max_concurrent: int = Field(4, ge=1, description="Number of isolation slots")
    port_range_start: int = Field(10000, ge=1024, le=65535)
    port_range_size: int = Field(1000, ge=1)
    ports_per_environment: int = Field(10, ge=0)
    acquire_timeout: float = Field(300, ge=0, description="Seconds to wait for a free slot")
    network_namespaces: bool = False

    @model_validator(mode='after')
    def validate_port_range(self) -> 'IsolationSettings':
        """Port range must fit in the TCP port space."""
        if self.port_range_start + self.port_range_size - 1 > 65535:
            raise ValueError(
                f"Port range {self.port_range_start}+{self.port_range_size} exceeds 65535"
            )
        if self.ports_per_environment > self.port_range_size:
            raise ValueError("ports_per_environment cannot exceed port_range_size")
        return self


class HealthSettings(BaseModel):
    """Health and readiness check behaviour."""

    model_config = ConfigDict(extra='forbid')

    check_timeout: float = Field(30, gt=0, description="Overall timeout for one batch of checks")
    readiness_timeout: float = Field(60, gt=0)
    history_size: int = Field(50, ge=1)
    enabled_checks: List[str] = Field(default_factory=lambda: list(BASIC_HEALTH_CHECKS))
    memory_threshold: float = Field(80.0, gt=0, le=100, description="Memory usage percent")
    disk_threshold: float = Field(85.0, gt=0, le=100, description="Disk usage percent")
    cpu_load_threshold: float = Field(2.0, gt=0, description="1-minute load average")
    required_services: List[str] = Field(default_factory=list)
    required_ports: List[int] = Field(default_factory=list)
    check_systemd: bool = False
    dns_host: str = "localhost"

    @field_validator('enabled_checks')
    @classmethod
    def validate_checks(cls, v):
        """Only known check dimensions may be enabled."""
        unknown = [check for check in v if check not in HEALTH_CHECKS]
        if unknown:
            raise ValueError(
                f"Unknown health checks: {', '.join(unknown)}. "
                f"Valid checks: {', '.join(HEALTH_CHECKS)}"
            )
        return v


class CleanupSettings(BaseModel):
    """Resource limits enforced by the cleanup manager."""

    model_config = ConfigDict(extra='forbid')

    max_disk_gb: float = Field(10, gt=0)
    max_age_hours: float = Field(24, gt=0)
    max_environments: int = Field(50, ge=1)
    log_limit: int = Field(100, ge=1, description="Cleanup records kept in the operation log")


class ArtifactSettings(BaseModel):
    """Artifact collection and retention."""

    model_config = ConfigDict(extra='forbid')

    artifacts_dir: Optional[str] = Field(None, description="Defaults to <work_dir>/artifacts")
    storage_limit_gb: float = Field(5, gt=0)
    retention_days: int = Field(30, ge=1)
    registry_limit: int = Field(100, ge=1, description="Collections kept per environment")
    include_screenshots: bool = True
    max_log_lines: int = Field(1000, ge=1)


class ProvisionSettings(BaseModel):
    """Provisioner locking and reuse policy."""

    model_config = ConfigDict(extra='forbid')

    lock_stale_seconds: float = Field(1800, gt=0)
    lock_timeout: float = Field(0, ge=0)
    state_max_age_hours: float = Field(24, gt=0)
    recipe_guest_path: str = "/opt/rigging/recipes"
    ready_timeout: float = Field(300, gt=0)
    ready_interval: float = Field(10, gt=0)

    @field_validator('recipe_guest_path')
    @classmethod
    def validate_guest_path(cls, v):
        """Guest mount point must be absolute."""
        if not v.startswith('/'):
            raise ValueError(f"recipe_guest_path must be absolute, got: {v}")
        return v


class HarnessConfig(BaseModel):
    """Top-level harness configuration."""

    model_config = ConfigDict(extra='forbid')

    work_dir: str = ".rigging"
    runtime: Literal["podman", "docker"] = "podman"
    resource_prefix: str = "rigging-test"
    distribution: str = "ubuntu"
    image: Optional[str] = None
    systemd: bool = True
    environment: Dict[str, str] = Field(default_factory=dict)
    log_file: Optional[str] = Field(None, description="Defaults to <work_dir>/logs/rigging.log")
    verbose: bool = False

    isolation: IsolationSettings = Field(default_factory=IsolationSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    cleanup: CleanupSettings = Field(default_factory=CleanupSettings)
    artifacts: ArtifactSettings = Field(default_factory=ArtifactSettings)
    provision: ProvisionSettings = Field(default_factory=ProvisionSettings)

    @field_validator('resource_prefix')
    @classmethod
    def validate_prefix(cls, v):
        """Prefix becomes part of container, VM and namespace names."""
        if not re.match(r'^[a-z][a-z0-9\-]*$', v):
            raise ValueError(
                f"resource_prefix '{v}' must start with a lowercase letter and contain "
                "only lowercase letters, numbers and hyphens"
            )
        return v

    @property
    def work_path(self) -> Path:
        return Path(self.work_dir)

    @property
    def log_path(self) -> Path:
        return Path(self.log_file) if self.log_file else self.work_path / "logs" / "rigging.log"

    @property
    def artifacts_path(self) -> Path:
        if self.artifacts.artifacts_dir:
            return Path(self.artifacts.artifacts_dir)
        return self.work_path / "artifacts"
