"""Double-apply idempotency check."""
from typing import Any, Dict, Iterable, Optional

from rigging.core.errors import RiggingError
from rigging.validators.base import Validator
from rigging.validators.runner import ApplyResult, MitamaeRunner, RecipeRunner
from rigging.validators.state_capture import SystemStateCapture, diff_states


class IdempotencyValidator(Validator):
    """Proves a second application of a recipe changes nothing.

    The recipe is applied, state captured, applied again, and state captured
    again. Changes reported by the second run, or any difference between the
    two captures, fail validation. A final dry run only produces warnings.
    """

    name = "idempotency"

    def __init__(self, runner: Optional[RecipeRunner] = None):
        super().__init__()
        self.runner = runner or MitamaeRunner()

    def validate(self, environment, recipe_path: Optional[str] = None,
                 node_attributes: Optional[Dict[str, Any]] = None,
                 check_packages: bool = True, check_services: bool = True,
                 check_files: Optional[Iterable[str]] = None,
                 check_processes: bool = False) -> "IdempotencyValidator":
        """Run the double-apply protocol.

        Args:
            environment: Ready environment to apply against
            recipe_path: Recipe path inside the environment
            node_attributes: Node JSON passed to the recipe engine
            check_packages: Compare installed package lists
            check_services: Compare service states
            check_files: Guest paths whose metadata and checksum are compared
            check_processes: Compare per-command process counts

        Returns:
            self, with errors and warnings populated
        """
        self.clear()
        if not recipe_path:
            self.add_error("No recipe path provided for idempotency validation")
            return self

        capture = SystemStateCapture(environment)

        def snapshot():
            return capture.capture(
                packages=check_packages,
                services=check_services,
                files=list(check_files or []),
                processes=check_processes,
            )

        first = self._apply(environment, recipe_path, node_attributes, "first run")
        if first is None:
            return self
        before = snapshot()

        second = self._apply(environment, recipe_path, node_attributes, "second run")
        if second is None:
            return self
        if second.changes_made():
            self.add_error(
                "Recipe is not idempotent - changes detected on second run",
                {'changes': second.change_list()},
            )

        differences = diff_states(before, snapshot())
        if differences:
            self.add_error("System state changed during idempotent run", {'differences': differences})

        dry_run = self._apply(environment, recipe_path, node_attributes, "dry run", dry_run=True, fatal=False)
        if dry_run is not None and dry_run.would_change():
            self.add_warning(
                "Dry run detected potential changes after convergence",
                {'potential_changes': dry_run.change_list()},
            )
        return self

    def _apply(self, environment, recipe_path: str, node_attributes, description: str,
               dry_run: bool = False, fatal: bool = True) -> Optional[ApplyResult]:
        try:
            result = self.runner.apply(environment, recipe_path, node_attributes, dry_run=dry_run)
        except RiggingError as e:
            result = ApplyResult(exit_code=-1, output=str(e))

        if result.success:
            return result
        message = f"Recipe {description} failed"
        details = {'exit_code': result.exit_code, 'output': result.output[-2000:]}
        if fatal:
            self.add_error(message, details)
        else:
            self.add_warning(message, details)
        return None
