"""
Logging setup for the API and the Celery worker.

JSON lines in production, plain text locally. Peloton credentials and the
scheduler secret must never reach a log sink, so every record passes
through `SecretRedactionFilter` before it is formatted.
"""
import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from core.config import settings

REDACTED = "[REDACTED]"

# Keys whose values are masked when passed via extra={"extra_fields": {...}}
SENSITIVE_KEYS = frozenset({
    "access_token",
    "refresh_token",
    "accesstoken",
    "refreshtoken",
    "authorization",
    "cron_secret",
    "password",
})

_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE)


def redact_text(text: str) -> str:
    return _BEARER_RE.sub(rf"\1{REDACTED}", text)


def redact_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    clean = {}
    for key, value in fields.items():
        if key.lower() in SENSITIVE_KEYS:
            clean[key] = REDACTED
        elif isinstance(value, dict):
            clean[key] = redact_fields(value)
        elif isinstance(value, str):
            clean[key] = redact_text(value)
        else:
            clean[key] = value
    return clean


class SecretRedactionFilter(logging.Filter):
    """Masks bearer credentials in the message and sensitive structured fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_text(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        if isinstance(getattr(record, "extra_fields", None), dict):
            record.extra_fields = redact_fields(record.extra_fields)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": settings.SERVICE_NAME,
            "environment": settings.ENVIRONMENT,
        }
        if record.levelno >= logging.WARNING:
            log_data["location"] = f"{record.module}.{record.funcName}:{record.lineno}"

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


def setup_logging():
    """
    Configure the root logger once per process.

    LOG_FORMAT=json (or ENVIRONMENT=production) selects JSON output.
    """
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(formatter)
    handler.addFilter(SecretRedactionFilter())
    root_logger.addHandler(handler)

    # Request/response bodies would carry Peloton tokens at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)

    return root_logger
