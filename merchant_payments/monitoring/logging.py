"""
Structured logging configuration.

Every log line is one JSON object carrying the service name and environment,
plus the request id when emitted inside an HTTP request.
"""
import logging
import sys
from typing import Any, Dict

import structlog
from pythonjsonlogger import jsonlogger

from merchant_payments.config import Settings

# Third-party loggers that chatter at INFO on every request or frame
_QUIET_LOGGERS = ("httpx", "httpcore", "websockets", "uvicorn.access")


class AppContext:
    """structlog processor stamping each event with the service identity."""

    def __init__(self, app_name: str, app_env: str) -> None:
        self.app_name = app_name
        self.app_env = app_env

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("app_name", self.app_name)
        event_dict.setdefault("app_env", self.app_env)
        return event_dict


def setup_logging(settings: Settings) -> None:
    """
    Configure structlog and the stdlib root logger from settings.

    Args:
        settings: Settings the application was built with; level, service
            name and environment are taken from here
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            AppContext(settings.app_name, settings.app_env),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(timestamp)s %(level)s %(name)s %(message)s",
            rename_fields={"timestamp": "@timestamp", "name": "logger"},
        )
    )
    root_logger.addHandler(json_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        stream_enabled=settings.stream_enabled,
        status_poll_interval=settings.status_poll_interval,
    )


def bind_request_context(request_id: str, method: str, path: str) -> None:
    """Attach request fields to every event logged until the request ends."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, method=method, path=path)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
