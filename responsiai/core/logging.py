"""
Logging setup for the billing core.

Everything logs under the "responsiai" logger. Production gets one JSON
object per line; development gets a readable line with the correlation id
and any structured fields appended as key=value pairs.

The correlation id lives in a ContextVar. HTTP requests bind it in
RequestIdMiddleware; webhook workers bind the processor event id so every
line written while applying an event can be grepped by that id.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Attributes every LogRecord carries; anything else came in through `extra=`
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "request_id"}

_PRETTY_FIELDS = ("user_id", "event_id", "event_type", "subscription_id", "outcome", "error_code", "status")


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


@contextmanager
def bound_request_id(value: Optional[str]) -> Iterator[None]:
    """Bind the correlation id for the duration of the block."""
    token = request_id_ctx_var.set(value)
    try:
        yield
    finally:
        request_id_ctx_var.reset(token)


def _structured_fields(record: logging.LogRecord) -> Dict[str, object]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_") and value is not None
    }


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": _timestamp(record),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(_structured_fields(record))
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = _structured_fields(record)
        parts = [_timestamp(record), f"{record.levelname:<7}", record.name]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"[{rid}]")
        parts.append(record.getMessage())
        parts.extend(f"{key}={fields[key]}" for key in _PRETTY_FIELDS if key in fields)
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: Optional[str] = None) -> None:
    """Install a single stdout handler on the "responsiai" logger.

    Safe to call more than once; the handler list is replaced, not appended.
    """
    logger = logging.getLogger("responsiai")
    logger.setLevel((level or os.getenv("LOG_LEVEL") or "INFO").upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())
    logger.handlers = [handler]
    logger.propagate = True


def _truncate(value, limit: int = 500) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unprintable>"
    return text if len(text) <= limit else f"{text[:limit]}...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    user_id: Optional[str] = None,
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
) -> None:
    """Log one structured line; values in `extra` are truncated to 500 chars."""
    logger = logging.getLogger("responsiai")
    fields: Dict[str, object] = {
        "user_id": user_id,
        "event_id": event_id,
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        fields[key] = _truncate(value)
    logger.log(logging.getLevelName(level.upper()), msg, extra=fields)
