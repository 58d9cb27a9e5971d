"""Logging setup for flowguard.

Every module logs through ``get_logger(__name__)``, below the ``flowguard``
logger. Calls pass the guarded call's context with
``extra=get_log_context(...)``; ``settings.log_format`` picks whether those
fields are appended to a text line or emitted as JSON keys.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from flowguard.app.core.config import settings

# Context a record may carry, in output order
CONTEXT_FIELDS = (
    "rate_limit_key",
    "url",
    "cache_name",
    "attempt",
    "delay",
    "status_code",
)

_SHORT_NAMES = {"rate_limit_key": "key"}

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s%(context)s"


class ContextFilter(logging.Filter):
    """Fill in missing context fields and render them for text output.

    Sets ``record.context`` to e.g. ``" [key=labs attempt=2]"``, or to an
    empty string when the record carries no context.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        parts = []
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            setattr(record, field, value)
            if value is not None:
                parts.append(f"{_SHORT_NAMES.get(field, field)}={value}")
        record.context = f" [{' '.join(parts)}]" if parts else ""
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with context fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(log_data, default=str, ensure_ascii=False)


def get_logging_config() -> Dict[str, Any]:
    """Build a ``dictConfig`` mapping from the current settings."""
    log_level = settings.log_level.upper()
    formatter = "json" if settings.log_format == "json" else "text"

    formatters: Dict[str, Dict[str, Any]] = {
        "text": {"format": TEXT_FORMAT},
        "json": {"()": "flowguard.app.core.logging.JSONFormatter"},
    }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {formatter: formatters[formatter]},
        "filters": {
            "context": {"()": "flowguard.app.core.logging.ContextFilter"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": formatter,
                "stream": sys.stdout,
                "filters": ["context"],
            },
        },
        "loggers": {
            "flowguard": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
    }


def setup_logging() -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config())

    # Reduce noise from the HTTP stack
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str = "flowguard") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    rate_limit_key: Optional[str] = None,
    url: Optional[str] = None,
    cache_name: Optional[str] = None,
    **extra
) -> Dict[str, Any]:
    """Create a log context dictionary for use with the extra parameter.

    ``None`` values are dropped.

    Example:
        >>> logger.warning(
        ...     "Circuit opened",
        ...     extra=get_log_context(rate_limit_key="consultations", attempt=2)
        ... )
    """
    context = {
        "rate_limit_key": rate_limit_key,
        "url": url,
        "cache_name": cache_name,
    }
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}
