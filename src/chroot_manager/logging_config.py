"""Logging setup for the command-line tool."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

from chroot_manager.config import SandboxConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("chroot_manager")


def setup_logging(
    config: SandboxConfig,
    verbose: bool = False,
    console: Console | None = None,
    log_to_file: bool = True,
) -> None:
    """Send package logs to the terminal and to the append-only log file.

    The log file is a sink: if it cannot be opened the tool keeps running
    with terminal output only.

    Args:
        config: Supplies the log file location.
        verbose: Show debug messages on the terminal.
        console: Terminal to log to; defaults to stderr.
        log_to_file: Attach the file sink. Off for commands that never touch
            the host, and when not running as root.
    """
    level = logging.DEBUG if verbose else logging.INFO

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.DEBUG)

    terminal = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        markup=False,
        rich_tracebacks=verbose,
    )
    terminal.setLevel(level)
    logger.addHandler(terminal)

    if not log_to_file:
        return

    try:
        config.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(config.log_file, mode="a", encoding="utf-8")
    except OSError as e:
        logger.warning(f"Cannot write log file {config.log_file}: {e}")
        return

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(file_handler)
