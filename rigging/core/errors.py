"""Exception hierarchy for harness operations."""


class RiggingError(Exception):
    """Base class for all harness errors."""
    pass


class ConfigValidationError(RiggingError):
    """Raised when harness configuration cannot be loaded or validated."""
    pass


class EnvironmentSetupError(RiggingError):
    """Raised when a fixture cannot be brought up."""
    pass


class EnvironmentNotReadyError(RiggingError):
    """Raised when a command is issued to a fixture that is not ready."""
    pass


class CommandTimeoutError(RiggingError):
    """Raised when a command inside a fixture exceeds its timeout."""

    def __init__(self, command: str, timeout: float):
        super().__init__(f"Command timed out after {timeout}s: {command}")
        self.command = command
        self.timeout = timeout


class ResourceExhaustedError(RiggingError):
    """Raised when no slot or ports are available within the wait budget."""
    pass


class ProvisionError(RiggingError):
    """Raised when a provision attempt leaves the fixture unusable."""
    pass


class SnapshotUnsupportedError(RiggingError):
    """Raised when the fixture kind has no snapshot capability."""
    pass


class ArtifactError(RiggingError):
    """Raised for unknown collections or missing artifact storage."""
    pass
