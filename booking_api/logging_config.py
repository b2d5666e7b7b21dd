"""
Structured logging (structlog over stdlib logging)

Every entry carries the request context bound by the tracing middleware
(request_id, method, path, user_id) plus app/version/environment. Records
from stdlib loggers (uvicorn, asyncpg) are rendered by the same formatter.
"""
import logging
from typing import Any, Callable

import structlog

from . import __version__

APP_NAME = "space-booking-api"

# Too chatty at INFO once request_completed is logged by the middleware
QUIET_LOGGERS = ("uvicorn.access",)


def app_context(environment: str) -> Callable[[Any, str, dict], dict]:
    """Processor stamping app name, version and environment"""
    def processor(logger: Any, method_name: str, event_dict: dict) -> dict:
        event_dict.setdefault("app", APP_NAME)
        event_dict.setdefault("version", __version__)
        event_dict.setdefault("environment", environment)
        return event_dict
    return processor


def drop_color_message_key(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Uvicorn adds 'color_message' for its own console output"""
    event_dict.pop("color_message", None)
    return event_dict


def configure_logging(log_level: str = "INFO", json_logs: bool = True, environment: str = "production"):
    """
    Configure structlog and the root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_logs: JSON lines when True, coloured console output otherwise
        environment: stamped on every entry

    Usage:
        configure_logging(settings.log_level, settings.json_logs, settings.environment)
        logger = structlog.get_logger(__name__)
        logger.info("reservation_admitted", reservation_id=42, space_id=3)
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        app_context(environment),
        drop_color_message_key,
    ]

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=[structlog.stdlib.filter_by_level, *shared_processors,
                    structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    ))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level.upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root_logger.level))

    return structlog.get_logger()
