"""Validators collect failures instead of raising them."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from rigging.core.errors import RiggingError
from rigging.core.logger import get_logger
from rigging.environments.base import CommandResult

logger = get_logger(__name__)


@dataclass
class ValidationIssue:
    level: str  # error or warning
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'level': self.level, 'message': self.message, 'details': self.details}


class Validator:
    """Base class for checks run against a ready environment.

    A validator accumulates errors and warnings during validate(); success
    is simply the absence of errors, so one failing check never stops the
    others from running.
    """

    name = "validator"

    def __init__(self):
        self.errors: List[ValidationIssue] = []
        self.warnings: List[ValidationIssue] = []

    def validate(self, environment, **context) -> "Validator":
        raise NotImplementedError

    @property
    def success(self) -> bool:
        return not self.errors

    def add_error(self, message: str, details: Optional[Dict[str, Any]] = None):
        logger.error(f"[{self.name}] {message}")
        self.errors.append(ValidationIssue("error", message, details or {}))

    def add_warning(self, message: str, details: Optional[Dict[str, Any]] = None):
        logger.warning(f"[{self.name}] {message}")
        self.warnings.append(ValidationIssue("warning", message, details or {}))

    def clear(self):
        self.errors = []
        self.warnings = []

    def execute_command(self, environment, command: str, timeout: Optional[float] = None) -> CommandResult:
        """Run a command, turning environment errors into a failed result."""
        try:
            return environment.execute(command, timeout=timeout)
        except RiggingError as e:
            logger.debug(f"[{self.name}] command failed: {command}: {e}")
            return CommandResult(exit_code=-1, stderr=str(e))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'validator': self.name,
            'success': self.success,
            'errors': [issue.to_dict() for issue in self.errors],
            'warnings': [issue.to_dict() for issue in self.warnings],
        }
