"""Centralized logging for storage-lab.

Library logging conventions:
- Attach NullHandler to the library root logger
- Never add handlers on import -- that's the entry point's job
- Support STORAGE_LAB_LOG_LEVEL env var for level control
- Provide configure_logging() for the CLI

CLI output format:
    WARNING [10:02:54] storage_lab.vm_controller - message

Session log file format (one file per CLI invocation under <lab_dir>/logs):
    [2026-02-25 10:02:54] WARNING storage_lab.vm_controller - message
"""

import logging
import os
from pathlib import Path

import click

LIBRARY_LOGGER_NAME: str = "storage_lab"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

# Honor STORAGE_LAB_LOG_LEVEL env var (e.g. "DEBUG", "WARNING", "ERROR")
_env_level = os.environ.get("STORAGE_LAB_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:  # excludes NOTSET (0) and missing keys (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_CLI_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_CLI_DATEFMT = "%H:%M:%S"
_FILE_FMT = "[%(asctime)s] %(levelname)s %(name)s - %(message)s"
_FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"

_LEVEL_COLORS: dict[int, str] = {
    logging.DEBUG: "bright_black",
    logging.INFO: "cyan",
    logging.WARNING: "yellow",
    logging.ERROR: "red",
    logging.CRITICAL: "red",
}


class _ClickHandler(logging.Handler):
    """Writes records to stderr via click.echo, colored by level.

    click.echo() strips ANSI codes automatically when stderr is not a TTY.
    """

    def __init__(self) -> None:
        super().__init__()
        self.formatter = logging.Formatter(fmt=_CLI_FMT, datefmt=_CLI_DATEFMT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            click.echo(click.style(msg, fg=_LEVEL_COLORS.get(record.levelno)), err=True)
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _SessionFileHandler(logging.FileHandler):
    """Plain-text session log; directory is created on first use."""

    def __init__(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(path, encoding="utf-8", delay=True)
        self.formatter = logging.Formatter(fmt=_FILE_FMT, datefmt=_FILE_DATEFMT)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name.

    All storage_lab modules should use this instead of logging.getLogger()
    directly for consistent logger hierarchy.
    """
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
    log_file: Path | None = None,
) -> None:
    """Configure library logging for CLI / application entry points.

    Adds a _ClickHandler if none exists (idempotent) and, when log_file is
    given, a _SessionFileHandler for that path. Library consumers who
    configure their own handlers are unaffected.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides env var.
        quiet: If True, set level to ERROR (suppress WARNING/INFO).
               Takes precedence over level.
        log_file: Optional session log file path.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _ClickHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_ClickHandler())

    if log_file is not None:
        resolved = log_file.resolve()
        already = any(
            isinstance(h, _SessionFileHandler) and Path(h.baseFilename) == resolved for h in lib_logger.handlers
        )
        if not already:
            lib_logger.addHandler(_SessionFileHandler(resolved))

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        # setLevel() accepts both int and str; for str it validates
        # internally and raises ValueError on unknown names
        lib_logger.setLevel(level)
    elif lib_logger.level == logging.NOTSET:
        lib_logger.setLevel(logging.INFO)
