"""
Structured logging configuration using structlog.

Every line is a JSON object on stdout. Request and task identifiers are
carried in contextvars, so anything logged while a request or a delivery
is in flight picks them up automatically.
"""
import logging
import sys
from contextlib import contextmanager

import structlog

from hookrelay.config import settings

# Libraries that log every outbound request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "arq.jobs")


def _add_service(logger, method_name, event_dict):
    event_dict.setdefault("service", settings.APP_NAME)
    event_dict.setdefault("env", settings.ENVIRONMENT)
    return event_dict


def _log_level() -> int:
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging():
    """Configure stdlib logging and structlog; safe to call more than once."""
    level = _log_level()

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_service,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


logger = configure_logging()


def get_logger(**context):
    """
    Get a logger with additional context bound.

    Usage:
        log = get_logger(component="retry_scheduler")
        log.info("retry_pass_started", task_count=12)
    """
    return logger.bind(**context)


@contextmanager
def log_context(**context):
    """Bind context for everything logged inside the block, including nested calls."""
    with structlog.contextvars.bound_contextvars(**context):
        yield
