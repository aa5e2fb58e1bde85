"""Logging for ampel-sync, built on loguru.

Application code asks for a named logger (``get_logger(__name__)``) or one
of the ``bind_*`` helpers, which attach ids (never tokens) as extra context.
Library output from SQLAlchemy and httpx is routed through the same sinks.
``setup_logging`` runs once from the CLI callback; ``--verbose`` and
``--quiet`` override the configured level.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from loguru import logger

if TYPE_CHECKING:
    from loguru import Logger, Record

LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

_configured = False

_CONSOLE_FORMAT = (
    "<dim>{time:HH:mm:ss}</dim> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> - "
    "<level>{message}</level>"
)
_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[name]}:{function}:{line} | {extra} | {message}"
)

# Libraries whose loggers are quiet unless we are debugging
_NOISY_LIBRARIES = ("httpx", "httpcore")


def _has_name(record: Record) -> bool:
    return "name" in record["extra"]


def _from_stdlib(record: Record) -> bool:
    return "name" not in record["extra"]


class InterceptHandler(logging.Handler):
    """Forward stdlib ``logging`` records to loguru, keeping the caller's frame."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame = logging.currentframe()
        depth = 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _effective_level(level: LogLevel, verbose: bool, quiet: bool) -> LogLevel:
    # verbose wins when both flags are given
    if verbose:
        return "DEBUG"
    if quiet:
        return "WARNING"
    return level


def setup_logging(
    level: LogLevel = "INFO",
    *,
    verbose: bool = False,
    quiet: bool = False,
    log_file: Path | None = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
    serialize: bool = False,
) -> Logger:
    """Install the console sinks and, optionally, a rotating file sink.

    Args:
        level: Level from ``Settings.log_level``
        verbose: Force DEBUG
        quiet: Force WARNING
        log_file: Also write DEBUG and above to this file, gzip-rotated
        rotation: loguru rotation rule for the file sink
        retention: How long rotated files are kept
        serialize: Write the file sink as JSON lines
    """
    global _configured

    effective = _effective_level(level, verbose, quiet)
    logger.remove()

    console = {"level": effective, "colorize": True, "backtrace": True, "diagnose": False}
    logger.add(sys.stderr, format=_CONSOLE_FORMAT, filter=_has_name, **console)
    logger.add(
        sys.stderr,
        format=_CONSOLE_FORMAT.replace("{extra[name]}", "{name}"),
        filter=_from_stdlib,
        **console,
    )

    if log_file:
        logger.add(
            log_file,
            level="DEBUG",
            format=_FILE_FORMAT,
            rotation=rotation,
            retention=retention,
            compression="gz",
            serialize=serialize,
            filter=_has_name,
        )

    _route_library_logs(effective)
    _configured = True
    return logger


def _route_library_logs(level: LogLevel) -> None:
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    debugging = level in ("TRACE", "DEBUG")
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debugging else logging.WARNING)
    # httpx logs every request URL at INFO, including GitLab instance hosts
    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.DEBUG if level == "DEBUG" else logging.WARNING)


def get_logger(name: str) -> Logger:
    """Logger tagged with ``name``; pass ``__name__``."""
    return logger.bind(name=name)


def bind_account(account_id: int | None, provider: str) -> Logger:
    """Logger for credential work on one account (``None`` before it is stored)."""
    return logger.bind(name="vault", account=account_id, provider=provider)


def bind_repo(provider: str, full_name: str) -> Logger:
    return logger.bind(name="sync", provider=provider, repo=full_name)


def bind_job(job_id: int, repository_id: int | None) -> Logger:
    """Logger for one scheduler job; token refresh jobs have no repository."""
    return logger.bind(name="scheduler", job=job_id, repository=repository_id)


def is_configured() -> bool:
    return _configured


def reset_logging() -> None:
    """Drop every sink and mark logging unconfigured (tests, CLI reruns)."""
    global _configured
    logger.remove()
    _configured = False
