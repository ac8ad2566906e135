# insurepay/core/logger.py
from __future__ import annotations
import logging
import sys
import structlog
from insurepay.core.settings import settings

# never rendered, whatever the caller passes
_REDACTED_KEYS = frozenset({"authorization", "access_code", "token", "stripe_signature", "api_key"})


def _redact_secrets(logger, method_name, event_dict):
    for key in _REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def setup_logging() -> None:
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        stream=sys.stdout,
    )
    # stripe's own request logging is noisy at INFO
    logging.getLogger("stripe").setLevel(max(level, logging.WARNING))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_secrets,
    ]
    if settings.DEV_MODE:
        processors.append(structlog.processors.ExceptionRenderer())
        processors.append(structlog.processors.KeyValueRenderer(sort_keys=True))
    else:
        processors.append(structlog.processors.dict_tracebacks)
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(app=settings.APP_NAME, env=settings.ENV)
