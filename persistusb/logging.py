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
        "PERSISTUSB_LOG_DIR",
        Path.home() / ".local" / "state" / "persistusb" / "logs",
    )
)

_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[source]: <10} | {extra[job_id]: <15} | {message}"
)
_DEBUG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[source]: <10} | {extra[job_id]: <15} | {extra[tags]} | {message}"
)


def _console_filter(record) -> bool:
    """Keep command chatter off the operator console unless it is a warning."""
    if "command" not in record["extra"].get("tags", []):
        return True
    return record["level"].no >= logger.level("WARNING").no


def _file_sinks(log_dir: Path, verbose_level: str | None) -> list[dict]:
    sinks = [
        dict(
            sink=log_dir / "operations.log",
            level="INFO",
            rotation="5 MB",
            retention="7 days",
            format=_FILE_FORMAT,
        ),
        dict(
            sink=log_dir / "structured.jsonl",
            level="INFO",
            rotation="10 MB",
            retention="7 days",
            serialize=True,
            format="{message}",
        ),
    ]
    if verbose_level:
        sinks.append(
            dict(
                sink=log_dir / "debug.log",
                level=verbose_level,
                rotation="10 MB",
                retention="3 days",
                backtrace=True,
                diagnose=True,
                format=_DEBUG_FORMAT,
            )
        )
    return sinks


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Route provisioning logs to the console and to rotating files.

    The console gets one plain status line per event. External command
    output stays off the console unless ``debug`` or ``trace`` is set.

    Files under ``log_dir``:
    - operations.log: INFO and above, kept 7 days
    - structured.jsonl: the same events serialized as JSON
    - debug.log: only with --debug (DEBUG) or --trace (TRACE), kept 3 days

    If ``log_dir`` cannot be created the run continues with console output
    only.
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    verbose_level = "TRACE" if trace else "DEBUG" if debug else None
    logger.add(
        sys.stdout,
        level=verbose_level or "INFO",
        backtrace=False,
        diagnose=False,
        colorize=False,
        filter=None if verbose_level else _console_filter,
        format="{message}",
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        logger.warning(f"Log directory {log_dir} unavailable, file logging disabled: {error}")
        return logger

    for options in _file_sinks(log_dir, verbose_level):
        options.setdefault("backtrace", False)
        options.setdefault("diagnose", False)
        logger.add(compression="zip", **options)
    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """Return the global logger bound to whichever context fields are given."""
    context = {
        "job_id": job_id,
        "tags": list(tags) if tags is not None else None,
        "source": source,
    }
    return logger.bind(**{key: value for key, value in context.items() if value is not None})


def _elapsed(started: float) -> float:
    return round(time.monotonic() - started, 2)


@contextmanager
def operation_context(operation: str, **details):
    """
    Time one provisioning stage.

    Yields a logger bound to the stage name and ``details``. Start and
    completion are logged at DEBUG; a failure is logged with its exception
    type and re-raised unchanged.

    Example:
        with operation_context("format", device="/dev/sdb1") as log:
            log.debug("Running mkfs")
    """
    stage_log = logger.bind(source=operation, tags=[operation], **details)
    title = operation.capitalize()
    started = time.monotonic()
    stage_log.debug(f"{title} started")
    try:
        yield stage_log
    except Exception as exc:
        stage_log.bind(
            error_type=type(exc).__name__, duration_seconds=_elapsed(started)
        ).debug(f"{title} failed: {exc}")
        raise
    stage_log.bind(duration_seconds=_elapsed(started)).debug(f"{title} completed")


class LoggerFactory:
    """Loggers pre-bound with the source and tags of each layer."""

    @staticmethod
    def for_session(job_id: str | None = None, **details) -> Logger:
        """Logger for one provisioning session; a job id is generated if absent."""
        return get_logger(
            job_id=job_id or f"session-{uuid.uuid4().hex[:8]}",
            tags=["session", "storage"],
            source="session",
        ).bind(**details)

    @staticmethod
    def for_device() -> Logger:
        return get_logger(tags=["device", "storage"], source="device")

    @staticmethod
    def for_command() -> Logger:
        return get_logger(tags=["command"], source="command")

    @staticmethod
    def for_system() -> Logger:
        return get_logger(tags=["system"], source="system")


class ThrottledLogger:
    """
    Emit at most one line per key per interval.

    dd reports progress several times a second. Lines flagged ``final``
    always go through so the last percentage reaches the log.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self._log = log
        self._interval = interval_seconds
        self._emitted_at: dict[str, float] = {}

    def emit(self, key: str, message: str, *, level: str = "INFO", final: bool = False) -> bool:
        now = time.monotonic()
        previous = self._emitted_at.get(key)
        if not final and previous is not None and now - previous < self._interval:
            return False
        self._emitted_at[key] = now
        self._log.log(level, message)
        return True
