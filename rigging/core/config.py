"""Runtime timeouts for fixture commands."""
import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class RuntimeTimeouts:
    """Timeouts applied to commands against containers and VMs.

    Attributes:
        command_timeout: Default timeout for a command run inside a fixture (default: 300)
        runtime_timeout: Timeout for container runtime bookkeeping calls (default: 60)
        image_pull_timeout: Timeout for pulling a container image (default: 900)
        systemd_wait_timeout: Seconds to wait for systemd inside a container (default: 60)
        ssh_wait_timeout: Seconds to wait for a VM's SSH server (default: 300)
        cloud_init_timeout: Seconds to wait for cloud-init to finish in a VM (default: 600)
        image_download_timeout: Timeout for downloading a VM base image (default: 1800)
    """

    command_timeout: int = 300
    runtime_timeout: int = 60
    image_pull_timeout: int = 900
    systemd_wait_timeout: int = 60

    # VM boot
    ssh_wait_timeout: int = 300
    cloud_init_timeout: int = 600
    image_download_timeout: int = 1800

    @classmethod
    def from_env(cls) -> "RuntimeTimeouts":
        """Create timeouts from environment variables.

        Environment variables:
            RIGGING_COMMAND_TIMEOUT: Default fixture command timeout in seconds
            RIGGING_RUNTIME_TIMEOUT: Container runtime call timeout in seconds
            RIGGING_IMAGE_PULL_TIMEOUT: Image pull timeout in seconds
            RIGGING_SYSTEMD_WAIT_TIMEOUT: systemd wait in seconds
            RIGGING_SSH_WAIT_TIMEOUT: VM SSH wait in seconds
            RIGGING_CLOUD_INIT_TIMEOUT: cloud-init wait in seconds
            RIGGING_IMAGE_DOWNLOAD_TIMEOUT: VM image download timeout in seconds

        Returns:
            RuntimeTimeouts instance with values from environment or defaults
        """
        return cls(
            command_timeout=int(os.getenv("RIGGING_COMMAND_TIMEOUT", cls.command_timeout)),
            runtime_timeout=int(os.getenv("RIGGING_RUNTIME_TIMEOUT", cls.runtime_timeout)),
            image_pull_timeout=int(
                os.getenv("RIGGING_IMAGE_PULL_TIMEOUT", cls.image_pull_timeout)
            ),
            systemd_wait_timeout=int(
                os.getenv("RIGGING_SYSTEMD_WAIT_TIMEOUT", cls.systemd_wait_timeout)
            ),
            ssh_wait_timeout=int(os.getenv("RIGGING_SSH_WAIT_TIMEOUT", cls.ssh_wait_timeout)),
            cloud_init_timeout=int(
                os.getenv("RIGGING_CLOUD_INIT_TIMEOUT", cls.cloud_init_timeout)
            ),
            image_download_timeout=int(
                os.getenv("RIGGING_IMAGE_DOWNLOAD_TIMEOUT", cls.image_download_timeout)
            ),
        )


# Global instance, created lazily from the environment
_timeouts: Optional[RuntimeTimeouts] = None


def get_timeouts() -> RuntimeTimeouts:
    """Get the global timeouts instance."""
    global _timeouts
    if _timeouts is None:
        _timeouts = RuntimeTimeouts.from_env()
    return _timeouts


def set_timeouts(timeouts: Optional[RuntimeTimeouts]) -> None:
    """Set the global timeouts instance (mainly for tests)."""
    global _timeouts
    _timeouts = timeouts
