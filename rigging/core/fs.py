"""Filesystem helpers used by cleanup, volume and artifact handling."""
import os
import shutil
from pathlib import Path
from typing import Union

from rigging.core.logger import get_logger

logger = get_logger(__name__)


def directory_size(path: Union[str, Path]) -> int:
    """Total size in bytes of regular files under path (0 if missing)."""
    path = Path(path)
    if not path.exists():
        return 0
    if path.is_file():
        return path.stat().st_size

    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except OSError:
                continue
    return total


def remove_path(path: Union[str, Path]) -> bool:
    """Delete a file or directory tree.

    Returns:
        True if the path no longer exists afterwards
    """
    path = Path(path)
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")
    return not path.exists()


def is_within(path: Union[str, Path], base: Union[str, Path]) -> bool:
    """Whether path resolves to a location inside base."""
    try:
        Path(path).resolve().relative_to(Path(base).resolve())
        return True
    except ValueError:
        return False
