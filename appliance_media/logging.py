"""
Loguru configuration for the media builder.

A build writes to up to four sinks:

- stderr: human readable, level chosen by ``--debug`` / ``--trace``
- ``operations.log``: INFO+ with the build job id, kept for a week
- ``debug.log``: every command line and tool output, only with ``--debug``
- ``structured.jsonl``: serialized INFO+ records for later analysis

Records always carry ``source``, ``job_id`` and ``tags`` extras so that the
file formats never fail on a record logged outside a bound logger.
"""

from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "APPLIANCE_MEDIA_LOG_DIR",
        Path.home() / ".local" / "state" / "appliance-media" / "logs",
    )
)

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> "
    "<level>{level.name:<7}</level> "
    "<cyan>[{extra[source]}]</cyan> {message}"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} {level.name:<7} {extra[source]:<9} {extra[job_id]:<16} {message}"
DEBUG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} {level.name:<7} {extra[source]:<9} "
    "{extra[job_id]:<16} {name}:{function}:{line} {extra[tags]} {message}"
)

_DEFAULT_EXTRA = {"job_id": "-", "tags": [], "source": "app"}


def _console_level(debug: bool, trace: bool) -> str:
    if trace:
        return "TRACE"
    return "DEBUG" if debug else "INFO"


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Replace any existing handlers with the console and file sinks.

    Args:
        debug: Also log DEBUG records and write ``debug.log``
        trace: Log TRACE records (implies the debug log)
        log_dir: Directory for the log files, ``DEFAULT_LOG_DIR`` if omitted
    """
    logger.remove()
    logger.configure(extra=dict(_DEFAULT_EXTRA))

    logger.add(
        sys.stderr,
        level=_console_level(debug, trace),
        format=CONSOLE_FORMAT,
        colorize=True,
        backtrace=False,
        diagnose=False,
    )

    directory = log_dir or DEFAULT_LOG_DIR
    directory.mkdir(parents=True, exist_ok=True)

    file_sinks = [
        ("operations.log", "INFO", {"format": FILE_FORMAT, "rotation": "5 MB", "retention": "7 days"}),
        ("structured.jsonl", "INFO", {"serialize": True, "rotation": "10 MB", "retention": "7 days"}),
    ]
    if debug or trace:
        file_sinks.append(
            (
                "debug.log",
                "TRACE" if trace else "DEBUG",
                {"format": DEBUG_FORMAT, "rotation": "10 MB", "retention": "3 days",
                 "backtrace": True, "diagnose": True},
            )
        )

    for filename, level, options in file_sinks:
        options.setdefault("backtrace", False)
        options.setdefault("diagnose", False)
        logger.add(directory / filename, level=level, compression="zip", **options)

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """Return the global logger bound with whichever context fields are given."""
    context: dict[str, object] = {}
    if source is not None:
        context["source"] = source
    if job_id is not None:
        context["job_id"] = job_id
    if tags is not None:
        context["tags"] = list(tags)
    return logger.bind(**context)


def _new_job_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


@contextmanager
def operation_context(operation: str, **details):
    """
    Log the start and outcome of a long-running operation.

    Every record emitted inside the block, from any module, carries the same
    job id. The outcome record includes the elapsed seconds, and on failure
    the error text and type; the exception is re-raised.

    Example:
        with operation_context("build", disk=2, source="D:\\\\") as log:
            log.debug("Preparing target disk")
    """
    job_id = _new_job_id(operation)
    title = operation.capitalize()
    started = time.monotonic()

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])
        log.info(f"{title} started", **details)
        try:
            yield log
        except Exception as error:
            log.error(
                f"{title} failed",
                error=str(error),
                error_type=type(error).__name__,
                duration_seconds=round(time.monotonic() - started, 2),
            )
            raise
        log.success(f"{title} completed", duration_seconds=round(time.monotonic() - started, 2))


class LoggerFactory:
    """Loggers pre-bound with the source and tags of one pipeline stage."""

    @staticmethod
    def _stage(source: str, *tags: str, **extra) -> Logger:
        return logger.bind(source=source, tags=[source, *tags], **extra)

    @staticmethod
    def for_fetch() -> Logger:
        """Downloads, redirects, archive expansion and signature checks."""
        return LoggerFactory._stage("fetch", "network")

    @staticmethod
    def for_image(job_id: str | None = None) -> Logger:
        return LoggerFactory._stage("image", "dism", job_id=job_id or _new_job_id("image"))

    @staticmethod
    def for_disk() -> Logger:
        return LoggerFactory._stage("disk", "storage")

    @staticmethod
    def for_mirror() -> Logger:
        return LoggerFactory._stage("mirror", "storage")

    @staticmethod
    def for_manifest() -> Logger:
        return LoggerFactory._stage("manifest")

    @staticmethod
    def for_menu() -> Logger:
        """Decision graph traversal."""
        return LoggerFactory._stage("menu", "ui")

    @staticmethod
    def for_system() -> Logger:
        """Startup, host preconditions and self-update."""
        return LoggerFactory._stage("system")


class ThrottledLogger:
    """
    Emit at most one record per key per interval.

    Download progress calls this for every chunk; keying by file name keeps
    one progress line per artifact in the debug log every few seconds.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def due(self, key: str) -> bool:
        return time.time() - self.last_log_time.get(key, 0.0) >= self.interval

    def emit(self, level: str, key: str, message: str, **kwargs) -> None:
        if not self.due(key):
            return
        self.log.log(level, message, **kwargs)
        self.last_log_time[key] = time.time()

    def debug(self, key: str, message: str, **kwargs) -> None:
        self.emit("DEBUG", key, message, **kwargs)

    def info(self, key: str, message: str, **kwargs) -> None:
        self.emit("INFO", key, message, **kwargs)
