from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Mapping
from uuid import uuid4

from flask import Flask, g, has_request_context, request, session

from bookmarket.config import Config

# Attributes every LogRecord carries; anything else came in through ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)))
_CONTEXT_ATTRS = ("request_id", "path", "method", "user_id")
_PROMOTED_KEYS = ("order_id", "seller_id", "reference")

# Never written to logs in clear
SENSITIVE_FIELDS = frozenset(
    {
        "account_number",
        "bank_code",
        "authorization",
        "secret_key",
        "signature",
        "encrypted_account_number",
        "encrypted_bank_code",
    }
)


def redact(value: Any) -> Any:
    """Mask sensitive keys in nested dicts and lists, keeping the last four characters."""
    if isinstance(value, Mapping):
        return {
            key: _mask(item) if str(key).lower() in SENSITIVE_FIELDS else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def _mask(value: Any) -> str:
    text = "" if value is None else str(value)
    if len(text) <= 4:
        return "****"
    return "*" * (len(text) - 4) + text[-4:]


class RequestContextFilter(logging.Filter):
    """Stamp request id, route and session user onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        in_request = has_request_context()
        record.request_id = getattr(g, "request_id", None) if in_request else None
        record.path = request.path if in_request else None
        record.method = request.method if in_request else None
        record.user_id = session.get("user_id") if in_request else None
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line. Order, seller and payment references are lifted to the top level."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": Config.APP_NAME,
            "message": record.getMessage(),
        }
        for attr in _CONTEXT_ATTRS:
            payload[attr] = getattr(record, attr, None)

        context = redact(
            {
                key: value
                for key, value in vars(record).items()
                if key not in _RECORD_ATTRS and key not in _CONTEXT_ATTRS and key not in {"message", "asctime"}
            }
        )
        for key in _PROMOTED_KEYS:
            if key in context:
                payload[key] = context.pop(key)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PlainFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s [%(name)s] [req=%(request_id)s] %(message)s")


def configure_logging(app: Flask) -> None:
    """Install one stdout handler on the root logger, JSON or plain per Config."""
    root_logger = logging.getLogger()
    root_logger.setLevel(Config.LOG_LEVEL)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if Config.STRUCTURED_LOGS_ENABLED else PlainFormatter())
    handler.addFilter(RequestContextFilter())

    # Replacing rather than appending keeps reloads from duplicating lines
    root_logger.handlers = [handler]
    app.logger.handlers = []
    app.logger.propagate = True
    app.logger.setLevel(Config.LOG_LEVEL)

    app.logger.debug("Logging configured (structured=%s)", Config.STRUCTURED_LOGS_ENABLED)


def ensure_request_id() -> str:
    """Return the active request id, generating one if needed."""
    if getattr(g, "request_id", None):
        return g.request_id
    incoming = request.headers.get(Config.REQUEST_ID_HEADER)
    g.request_id = incoming or str(uuid4())
    return g.request_id
