"""Logging setup for drivesync.

Every component logs through a structlog logger bound with keyword context
(``path=``, ``remote_id=``, ``error=``). Output goes to a colored console
handler and, optionally, a size-rotated file.
"""

import functools
import logging
import logging.handlers
import sys
import time
from pathlib import Path, PurePath
from typing import Any, Dict, Optional

import structlog
import colorlog
from structlog.typing import Processor


# Third-party loggers that are chatty at INFO during a sync run.
QUIET_LOGGERS = {
    "googleapiclient.discovery_cache": logging.ERROR,
    "googleapiclient.http": logging.WARNING,
    "google.auth.transport.requests": logging.WARNING,
    "apscheduler.executors.default": logging.WARNING,
    "apscheduler.scheduler": logging.WARNING,
    "watchdog.observers.inotify_buffer": logging.WARNING,
    "aiohttp.access": logging.WARNING,
}

LOG_COLORS = {
    'DEBUG': 'cyan',
    'INFO': 'green',
    'WARNING': 'yellow',
    'ERROR': 'red',
    'CRITICAL': 'red,bg_white',
}


def _stringify_paths(logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Render Path values as POSIX strings so local and Drive paths read alike."""
    for key, value in event_dict.items():
        if isinstance(value, PurePath):
            event_dict[key] = value.as_posix()
    return event_dict


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None
) -> None:
    """Configure structlog and the stdlib root logger.

    Arguments left as ``None`` fall back to the ``LOG_*`` settings. Calling
    this again replaces the handlers installed by the previous call.
    """
    from ..config.settings import get_settings

    settings = get_settings()

    level = (log_level or settings.logging.level).upper()
    format_type = log_format or settings.logging.format
    file_path = log_file or settings.logging.file_path

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(getattr(logging, level))

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(quiet_level, getattr(logging, level)))

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stringify_paths,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if format_type == "json":
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    setup_console_logging(level)
    if file_path:
        setup_file_logging(file_path, level)


def setup_file_logging(file_path: str, level: str, max_bytes: int = 5 * 1024 * 1024, backups: int = 3) -> None:
    """Add a size-rotated file handler to the root logger."""
    Path(file_path).parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        file_path,
        maxBytes=max_bytes,
        backupCount=backups,
        encoding="utf-8"
    )
    file_handler.setLevel(getattr(logging, level.upper()))
    # structlog has already rendered the event into the message
    file_handler.setFormatter(logging.Formatter("%(message)s"))

    logging.getLogger().addHandler(file_handler)


def setup_console_logging(level: str) -> None:
    console_handler = colorlog.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper()))
    console_handler.setFormatter(colorlog.ColoredFormatter(
        "%(log_color)s%(levelname)-8s%(reset)s %(message)s",
        reset=True,
        log_colors=LOG_COLORS
    ))

    logging.getLogger().addHandler(console_handler)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def log_async_execution_time(func):
    """Log how long a coroutine took, at DEBUG on success and WARNING on failure.

    Failures are re-raised untouched; callers such as the retry executor
    decide whether they are fatal.
    """
    operation = func.__qualname__

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        logger = get_logger(func.__module__)
        started = time.perf_counter()

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            logger.warning(
                "Operation failed",
                operation=operation,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
                error_type=type(e).__name__,
                error=str(e)
            )
            raise

        logger.debug(
            "Operation finished",
            operation=operation,
            duration_ms=round((time.perf_counter() - started) * 1000, 1)
        )
        return result

    return wrapper
