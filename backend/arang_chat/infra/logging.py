import contextvars
import json
import logging
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Dict

# Applied in order to every string that reaches a log line.
_REDACTIONS = (
    (re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"), "[REDACTED_EMAIL]"),
    # Indonesian mobile numbers: +62 8xx..., 62 8xx..., 08xx...
    (re.compile(r"(?<!\w)(?:\+?62|0)[\s-]?8\d{1,3}[\s-]?\d{3,4}[\s-]?\d{3,5}(?!\w)"), "[REDACTED_PHONE]"),
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+"), "Bearer [REDACTED_TOKEN]"),
    (re.compile(r"(?i)\bkey=[A-Za-z0-9._:\-]+"), "key=[REDACTED_TOKEN]"),
)

# Chat bodies and contact details never reach logs, whatever their shape.
REDACTED_KEYS = frozenset(
    {
        "phone",
        "email",
        "to",
        "to_number",
        "content",
        "body",
        "authorization",
        "token",
        "fcm_token",
        "server_key",
        "proxy_secret",
    }
)

LOG_CONTEXT: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("log_context", default={})
_RESERVED_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


def redact_pii(value: str) -> str:
    for pattern, replacement in _REDACTIONS:
        value = pattern.sub(replacement, value)
    return value


def sanitize(value: Any, key: str | None = None) -> Any:
    if key is not None and key.lower() in REDACTED_KEYS:
        return "[REDACTED]"
    if isinstance(value, str):
        return redact_pii(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): sanitize(v, str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [sanitize(item) for item in value]
    return value


def update_log_context(**kwargs: Any) -> dict[str, Any]:
    merged = {**LOG_CONTEXT.get({}), **{key: value for key, value in kwargs.items() if value is not None}}
    LOG_CONTEXT.set(merged)
    return merged


def clear_log_context() -> None:
    LOG_CONTEXT.set({})


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Fields passed via ``extra=``; a nested ``extra`` dict is flattened."""
    fields = {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }
    nested = fields.pop("extra", None)
    if isinstance(nested, Mapping):
        fields.update(nested)
    return fields


class RedactingJsonFormatter(logging.Formatter):
    """One JSON object per line, with PII scrubbed from every field."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_pii(record.getMessage()),
        }
        payload.update(sanitize(LOG_CONTEXT.get({})))
        payload.update(sanitize(_record_fields(record)))
        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_type"] = record.exc_info[0].__name__
            payload["exc_message"] = redact_pii(str(record.exc_info[1]))
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: int | str = logging.INFO) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    handler = logging.StreamHandler()
    handler.setFormatter(RedactingJsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
