"""JSON state files shared by the orchestration components."""
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from rigging.core.logger import get_logger

logger = get_logger(__name__)


class JsonStateFile:
    """A JSON document persisted with atomic replace.

    Readers never observe a partially written file: saves go to a sibling
    temp file which is then renamed over the target.
    """

    def __init__(self, path: Path, default: Optional[Callable[[], Any]] = None):
        """Initialize state file.

        Args:
            path: Location of the JSON document
            default: Factory for the value returned when the file is absent or unreadable
        """
        self.path = Path(path)
        self.default = default or dict

    def load(self) -> Any:
        """Load the document, falling back to the default on any read error."""
        if not self.path.exists():
            return self.default()

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
                logger.debug(f"Loaded state from {self.path}")
                return data
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Failed to load state file {self.path}: {e}, using empty state")
            return self.default()

    def save(self, data: Any) -> bool:
        """Write the document atomically.

        Returns:
            True if saved successfully
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self.path.with_suffix(self.path.suffix + '.tmp')
            with open(temp_file, 'w') as f:
                json.dump(data, f, indent=2, sort_keys=True, default=str)
            os.replace(temp_file, self.path)
            logger.debug(f"Saved state to {self.path}")
            return True
        except (IOError, OSError, TypeError) as e:
            logger.error(f"Failed to save state file {self.path}: {e}")
            return False

    def delete(self) -> bool:
        """Remove the document if present."""
        try:
            self.path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Failed to remove state file {self.path}: {e}")
            return False


class BoundedLog:
    """Append-only list of records persisted to a state file, keeping the newest entries."""

    def __init__(self, path: Path, limit: int = 100):
        self.store = JsonStateFile(path, default=list)
        self.limit = limit
        self.entries: List[Dict[str, Any]] = self.store.load()
        if not isinstance(self.entries, list):
            self.entries = []

    def append(self, entry: Dict[str, Any]) -> bool:
        entry.setdefault('recorded_at', datetime.now().isoformat())
        self.entries.append(entry)
        if len(self.entries) > self.limit:
            self.entries = self.entries[-self.limit:]
        return self.store.save(self.entries)

    def clear(self) -> bool:
        self.entries = []
        return self.store.save(self.entries)

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(list(self.entries))
