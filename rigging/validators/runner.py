"""Recipe engine adapters used by validators."""
import json
import re
import shlex
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from rigging.core.errors import RiggingError
from rigging.core.logger import get_logger

logger = get_logger(__name__)

APPLY_TIMEOUT = 300

CHANGE_PATTERNS = [
    re.compile(r"\[INFO\].*(created|updated|changed|deleted|modified)\s*$", re.MULTILINE),
    re.compile(r"diff:"),
    re.compile(r"^\+[^+]", re.MULTILINE),
    re.compile(r"^-[^-]", re.MULTILINE),
]

DRY_RUN_PATTERNS = [
    re.compile(r"\(dry-run\)"),
    re.compile(r"would (create|update|change|delete)"),
]

RESOURCE_CHANGE = re.compile(
    r"\[INFO\].*?(\w+)\[([^\]]+)\].*?(created|updated|changed|deleted|modified)"
)


@dataclass
class ApplyResult:
    """Outcome of one recipe application.

    changes is the engine's machine-readable change report when it produced
    one, otherwise None.
    """
    exit_code: int
    output: str = ""
    changes: Optional[List[Dict[str, Any]]] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def changes_made(self) -> bool:
        if self.changes is not None:
            return bool(self.changes)
        return any(pattern.search(self.output) for pattern in CHANGE_PATTERNS)

    def would_change(self) -> bool:
        if self.changes is not None:
            return bool(self.changes)
        return any(pattern.search(self.output) for pattern in DRY_RUN_PATTERNS)

    def change_list(self) -> List[Dict[str, Any]]:
        """Report entries, or resource changes parsed from the log text."""
        if self.changes is not None:
            return list(self.changes)
        return [
            {'resource_type': m.group(1), 'resource_name': m.group(2), 'action': m.group(3)}
            for m in RESOURCE_CHANGE.finditer(self.output)
        ]


class RecipeRunner(ABC):
    """Applies a recipe file inside an environment."""

    @abstractmethod
    def apply(self, environment, recipe_path: str,
              node_attributes: Optional[Dict[str, Any]] = None,
              dry_run: bool = False) -> ApplyResult:
        """Apply the recipe and report exit code, output and changes."""


class MitamaeRunner(RecipeRunner):
    """Runs recipes with `mitamae local` inside the environment."""

    def __init__(self, binary: str = "mitamae", log_level: str = "info",
                 change_report: Optional[str] = None, timeout: float = APPLY_TIMEOUT):
        """Initialize runner.

        Args:
            binary: mitamae executable inside the environment
            log_level: --log-level value
            change_report: Guest path of a JSON change report written by the recipe run
            timeout: Seconds allowed per application
        """
        self.binary = binary
        self.log_level = log_level
        self.change_report = change_report
        self.timeout = timeout

    def build_command(self, recipe_path: str, node_json: Optional[str] = None, dry_run: bool = False) -> str:
        parts = [self.binary, "local", f"--log-level={self.log_level}", "--color=false"]
        if dry_run:
            parts.append("--dry-run")
        if node_json:
            parts.append(f"--node-json={shlex.quote(node_json)}")
        parts.append(shlex.quote(recipe_path))
        return " ".join(parts)

    def apply(self, environment, recipe_path: str,
              node_attributes: Optional[Dict[str, Any]] = None,
              dry_run: bool = False) -> ApplyResult:
        node_json = None
        if node_attributes:
            node_json = f"/tmp/node_{int(time.time() * 1000)}.json"
            environment.write_file(node_json, json.dumps(node_attributes))

        if self.change_report:
            environment.execute(f"rm -f {shlex.quote(self.change_report)}")

        command = self.build_command(recipe_path, node_json, dry_run)
        logger.debug(f"Applying recipe: {command}")
        result = environment.execute(command, timeout=self.timeout)
        return ApplyResult(
            exit_code=result.exit_code,
            output=result.stdout + result.stderr,
            changes=self._read_change_report(environment),
        )

    def _read_change_report(self, environment) -> Optional[List[Dict[str, Any]]]:
        if not self.change_report:
            return None
        try:
            if not environment.file_exists(self.change_report):
                return None
            report = json.loads(environment.read_file(self.change_report))
        except (RiggingError, ValueError) as e:
            logger.warning(f"Unreadable change report {self.change_report}: {e}")
            return None
        if isinstance(report, dict):
            report = report.get('changes', [])
        return report if isinstance(report, list) else None
