"""
Logging setup for the calibration engine.

loguru is the application logger. structlog is configured alongside it for
callers that want key/value events (get_logger), and stdlib logging from
SQLAlchemy, APScheduler and urllib3 is routed into loguru.

Job runs bind their name and season with job_logger() so every line of a
cycle can be filtered on.
"""

import sys
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger
import structlog
from structlog.typing import EventDict, WrappedLogger

from tradecal.config import settings


REDACTED_KEYS = ("admin_key", "database_url", "password", "token", "secret", "api_key")

TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

# stdlib loggers and the level they are capped at
THIRD_PARTY_LEVELS = {
    "sqlalchemy.engine": logging.WARNING,
    "urllib3": logging.WARNING,
    "apscheduler": logging.INFO,
}


class SecretFilter:
    """structlog processor that masks credential-looking keys."""

    def __call__(self, logger: WrappedLogger, name: str, event_dict: EventDict) -> EventDict:
        for key in list(event_dict):
            if any(secret in key.lower() for secret in REDACTED_KEYS):
                event_dict[key] = "[REDACTED]"
        return event_dict


def add_log_level(logger: WrappedLogger, name: str, event_dict: EventDict) -> EventDict:
    event_dict["level"] = name.upper()
    return event_dict


def add_utc_timestamp(logger: WrappedLogger, name: str, event_dict: EventDict) -> EventDict:
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


class InterceptHandler(logging.Handler):
    """Forward stdlib records to loguru, keeping the caller's frame."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _sink_options(level: str, serialize: bool) -> Dict[str, Any]:
    return {
        "format": "{message}" if serialize else TEXT_FORMAT,
        "level": level,
        "serialize": serialize,
        "backtrace": True,
        "diagnose": settings.is_development,
    }


def _configure_structlog(level: str, json_output: bool) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        add_utc_timestamp,
        add_log_level,
        SecretFilter(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(),
    ]
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """
    Install the stderr sink, the optional rotating file sink, structlog and
    the stdlib bridge. Safe to call again; sinks are replaced.
    """
    level = (level or settings.log_level).upper()
    serialize = (log_format or settings.log_format) == "json"

    logger.remove()
    logger.add(sys.stderr, **_sink_options(level, serialize))

    if settings.log_file:
        Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            settings.log_file,
            rotation="50 MB",
            retention="14 days",
            compression="zip",
            **_sink_options(level, serialize),
        )

    _configure_structlog(level, serialize)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name, cap in THIRD_PARTY_LEVELS.items():
        logging.getLogger(name).setLevel(cap)

    logger.debug(f"Logging configured: level={level}, json={serialize}, env={settings.app_env}")


def job_logger(job: str, season: Optional[int] = None):
    """loguru logger bound to a job name and season."""
    return logger.bind(job=job, season=season)


def get_logger(name: str) -> Any:
    """structlog logger for key/value events."""
    return structlog.get_logger(name)


configure_logging()
