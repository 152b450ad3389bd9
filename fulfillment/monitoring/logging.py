"""
Structured logging configuration.

Every line is one JSON object carrying the service name, the environment,
whether payments go to the gateway sandbox, and the request ``trace_id``
bound by the HTTP middleware. Provider credentials never reach the output.
"""
import logging
import sys
from typing import Any, Callable, Dict, Iterable, Optional

import structlog
from pythonjsonlogger import jsonlogger

from fulfillment.config import Settings, get_settings

EventDict = Dict[str, Any]
Processor = Callable[[Any, str, EventDict], EventDict]

REDACTED = "[redacted]"
SECRET_KEYS = frozenset(
    {
        "authorization",
        "apikey",
        "api_key",
        "x-api-key",
        "poskey",
        "pos_key",
        "password",
        "api_password",
        "token",
        "bearer",
    }
)


def _redact(value: Any, secret_keys: Iterable[str]) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTED if str(key).lower() in secret_keys else _redact(item, secret_keys)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item, secret_keys) for item in value]
    return value


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credential fields, including inside logged provider payloads."""
    return _redact(event_dict, SECRET_KEYS)


def service_context(settings: Settings) -> Processor:
    """Processor stamping the service identity, resolved once from settings."""
    context = {
        "service": settings.app_name,
        "env": settings.app_env,
        "test_gateway": settings.is_test_gateway,
    }

    def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in context.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_service_context


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure structlog and the stdlib root logger for JSON output."""
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            service_context(settings),
            redact_secrets,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Records from libraries (uvicorn, sqlalchemy) get the same JSON shape
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
            static_fields={"service": settings.app_name, "env": settings.app_env},
        )
    )
    root_logger.addHandler(json_handler)

    # Provider clients log their own calls; the transport logs are noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        service=settings.app_name,
    )
