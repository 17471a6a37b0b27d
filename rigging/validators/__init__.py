"""Validators run against ready environments."""
from rigging.validators.base import ValidationIssue, Validator
from rigging.validators.configuration import ConfigurationFileValidator
from rigging.validators.functional import FunctionalTestValidator
from rigging.validators.idempotency import IdempotencyValidator
from rigging.validators.package import PackageValidator
from rigging.validators.runner import ApplyResult, MitamaeRunner, RecipeRunner
from rigging.validators.service import ServiceValidator
from rigging.validators.state_capture import SystemStateCapture, diff_states

__all__ = [
    "ApplyResult",
    "ConfigurationFileValidator",
    "FunctionalTestValidator",
    "IdempotencyValidator",
    "MitamaeRunner",
    "PackageValidator",
    "RecipeRunner",
    "ServiceValidator",
    "SystemStateCapture",
    "ValidationIssue",
    "Validator",
    "diff_states",
]
