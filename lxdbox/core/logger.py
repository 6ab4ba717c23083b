"""Diagnostic logging for lxdbox.

All module loggers hang below the ``lxdbox`` logger. A single rich handler on
that logger writes diagnostics to stderr, so stdout stays reserved for the
messenger and command output. An optional file handler records everything
at INFO (or DEBUG when verbose).
"""
import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "lxdbox"

LOG_FILE = Path.home() / ".lxdbox" / "lxdbox.log"
FALLBACK_LOG_FILE = Path("/tmp/lxdbox.log")

FILE_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"

console = Console(stderr=True)

_file_handler: Optional[logging.FileHandler] = None


def _root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(console=console, show_path=False, show_time=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler.setLevel(logging.WARNING)
        root.addHandler(handler)
        root.setLevel(logging.INFO)
    return root


def get_logger(name: str) -> logging.Logger:
    """Return the logger for a module (usually ``__name__``).

    Loggers outside the lxdbox namespace are re-rooted under it so they share
    its handlers.
    """
    _root()
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def set_verbose(verbose: bool = True) -> None:
    """Show debug output on the console (or go back to warnings only)."""
    root = _root()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in root.handlers:
        if isinstance(handler, RichHandler):
            handler.setLevel(logging.DEBUG if verbose else logging.WARNING)


def setup_file_logging(log_file: Optional[str] = None, verbose: bool = False) -> Path:
    """Also write lxdbox logs to a file; repeated calls are ignored.

    Args:
        log_file: Target file (default ~/.lxdbox/lxdbox.log)
        verbose: Record DEBUG messages as well

    Returns:
        The file being written, which is /tmp/lxdbox.log when the requested
        directory cannot be created
    """
    global _file_handler

    if _file_handler is not None:
        return Path(_file_handler.baseFilename)

    target = Path(log_file) if log_file else LOG_FILE
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        target = FALLBACK_LOG_FILE

    level = logging.DEBUG if verbose else logging.INFO
    _file_handler = logging.FileHandler(target)
    _file_handler.setLevel(level)
    _file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    root = _root()
    root.addHandler(_file_handler)
    if root.level > level:
        root.setLevel(level)

    root.info(f"Logging to {target}")
    return target
