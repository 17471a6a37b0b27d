"""Unified logging for rigging with console and file output."""
import logging
import tempfile
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

console = Console()

ROOT_LOGGER = "rigging"
FILE_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"

# Handler installed by setup_file_logging; one per process
_file_handler: Optional[logging.FileHandler] = None


def setup_file_logging(log_file: Union[str, Path], verbose: bool = False) -> Path:
    """Send every rigging logger's records to a file as well as the console.

    Only the first call installs a handler; later calls return the file
    already in use.

    Args:
        log_file: Usually <work_dir>/logs/rigging.log
        verbose: Log DEBUG records to the file

    Returns:
        Path of the log file actually written
    """
    global _file_handler

    if _file_handler is not None:
        return Path(_file_handler.baseFilename)

    target = Path(log_file)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        target = Path(tempfile.gettempdir()) / "rigging.log"

    level = logging.DEBUG if verbose else logging.INFO
    handler = logging.FileHandler(target)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    _file_handler = handler

    root_logger.info(f"Rigging logging initialized: {target}")
    return target


def get_logger(name: str) -> logging.Logger:
    """Get a logger with a Rich console handler attached once.

    Records also propagate to the package root logger, which carries the
    file handler once setup_file_logging() has run.
    """
    logger = logging.getLogger(name)

    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(console=console, show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    return logger
