"""
Structured logging configuration.

Purchase events are JSON lines tagged with the service, its environment
and the PayPal environment it talks to, so sandbox and live captures are
never confused in the log store. Escalations are written at critical
level and double as the manual reconciliation record when Redis is down.
"""
import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from lesson_payments.config import get_settings

# Event keys that may carry gateway credentials or buyer tokens
REDACTED_KEYS = frozenset({"access_token", "authorization", "client_secret", "jwt", "password"})


def add_service_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Tag every purchase event with the service and gateway environment."""
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    event_dict["paypal_environment"] = settings.paypal_environment
    return event_dict


def redact_credentials(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask gateway and auth secrets that were bound to an event."""
    for key in event_dict:
        if key.lower() in REDACTED_KEYS:
            event_dict[key] = "[redacted]"
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog and the stdlib root logger.

    structlog renders purchase events to JSON; third-party loggers (uvicorn,
    SQLAlchemy, httpx) go through the python-json-logger handler so every
    line on stdout is JSON.
    """
    settings = get_settings()

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
            add_service_context,
            redact_credentials,
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

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(stdout_handler)

    # httpx logs every request line at INFO, including OAuth calls
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        paypal_environment=settings.paypal_environment,
    )
