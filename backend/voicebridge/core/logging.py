"""
VoiceBridge - Structured Logging

Provides structured JSON logging with per-call context (connection id,
stream SID) carried on log records by an explicit adapter. Components
receive their logger from the caller instead of reaching for module state.
All sensitive data is automatically masked.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from typing import Any, MutableMapping, Optional


# =============================================================================
# Masking Utilities
# =============================================================================

PARTY_KEYS = {"to", "from", "caller", "callee"}
CREDENTIAL_MARKERS = ("phone", "password", "token", "secret", "authorization", "api_key")


def mask_connection_id(cid: Optional[str]) -> Optional[str]:
    """Mask connection ID to first 8 characters."""
    if not cid:
        return None
    return cid[:8] if len(cid) > 8 else cid


def mask_stream_sid(sid: Optional[str]) -> Optional[str]:
    """Mask stream SID to last 4 characters."""
    if not sid:
        return None
    return f"***{sid[-4:]}" if len(sid) > 4 else "***"


def mask_sensitive_data(data: dict) -> dict:
    """
    Recursively mask sensitive fields in a dictionary.

    Party fields (to, from, caller) match exactly; credential fields
    (token, secret, password) match anywhere in the key.
    """
    masked = {}
    for key, value in data.items():
        key_lower = key.lower()

        if key_lower in PARTY_KEYS or any(s in key_lower for s in CREDENTIAL_MARKERS):
            if isinstance(value, str):
                masked[key] = f"***{value[-2:]}" if len(value) > 2 else "***"
            else:
                masked[key] = "[REDACTED]"
        elif isinstance(value, dict):
            masked[key] = mask_sensitive_data(value)
        else:
            masked[key] = value

    return masked


# =============================================================================
# Call Context Adapter
# =============================================================================

class CallLogAdapter(logging.LoggerAdapter):
    """
    Logger adapter that stamps call context onto every record.

    One adapter is created per call and handed to each component working on
    that call, so log lines can be correlated without global state.

    Usage:
        log = CallLogAdapter(logging.getLogger(__name__), connection_id="c1")
        log.bind(stream_sid="MZ123")
        log.info("Stream started")
    """

    def __init__(
        self,
        logger: logging.Logger,
        connection_id: Optional[str] = None,
        stream_sid: Optional[str] = None,
    ):
        super().__init__(logger, {"connection_id": connection_id, "stream_sid": stream_sid})

    def bind(self, **context: Any) -> "CallLogAdapter":
        """Add or replace context fields. Children see the change too."""
        self.extra.update(context)
        return self

    def child(self, name: str) -> "CallLogAdapter":
        """Adapter over another named logger sharing this call's context."""
        adapter = CallLogAdapter(logging.getLogger(name))
        adapter.extra = self.extra
        return adapter

    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def get_call_logger(
    name: str,
    connection_id: Optional[str] = None,
    stream_sid: Optional[str] = None,
) -> CallLogAdapter:
    """Get a call-scoped logger."""
    return CallLogAdapter(logging.getLogger(name), connection_id, stream_sid)


# =============================================================================
# Structured Formatter
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """
    JSON formatter that renders call context and masks sensitive data.

    Output format:
    {
        "timestamp": "2024-11-30T00:00:00.000Z",
        "level": "INFO",
        "logger": "module.submodule",
        "connection_id": "c0ffee12",
        "stream_sid": "***1234",
        "message": "Human-readable message",
        "data": { ... }
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        connection_id = getattr(record, "connection_id", None)
        if connection_id:
            log_entry["connection_id"] = mask_connection_id(connection_id)

        stream_sid = getattr(record, "stream_sid", None)
        if stream_sid:
            log_entry["stream_sid"] = mask_stream_sid(stream_sid)

        if hasattr(record, 'data') and record.data:
            log_entry["data"] = mask_sensitive_data(record.data)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter for development.
    Includes timestamp, level, logger, and message with call context.
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S")

        context_parts = []

        connection_id = getattr(record, "connection_id", None)
        if connection_id:
            context_parts.append(f"conn={mask_connection_id(connection_id)}")

        stream_sid = getattr(record, "stream_sid", None)
        if stream_sid:
            context_parts.append(f"stream={mask_stream_sid(stream_sid)}")

        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""

        message = f"{timestamp} | {record.levelname:<8} | {record.name}{context_str} | {record.getMessage()}"

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


# =============================================================================
# Logger Setup
# =============================================================================

def setup_structured_logging(
    level: str = "INFO",
    json_format: bool = False,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production, False for development)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter())

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("twilio.http_client").setLevel(logging.WARNING)
