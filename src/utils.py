"""
Deferred Logger Utilities
Shared utilities for structured logging, correlation ids and payload formatting.
"""

import time
import uuid
from typing import Any, Dict, Mapping, Optional

import orjson
import structlog

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.JSONRenderer(serializer=orjson.dumps)
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.BytesLoggerFactory(),
    cache_logger_on_first_use=True,
)

CORRELATION_KEYS = ("request_id", "trace_id", "parent_request_id", "session_id")

TRUNCATION_MARKER = "...[truncated]"


def generate_request_id() -> str:
    """Generate unique request ID."""
    return str(uuid.uuid4())


def correlation_ids() -> Dict[str, Any]:
    """Return the correlation ids bound in the current structlog context."""
    bound = structlog.contextvars.get_contextvars()
    return {key: bound[key] for key in CORRELATION_KEYS if bound.get(key)}


def ensure_correlation_ids(context: Dict[str, Any]) -> Dict[str, Any]:
    """
    Make sure request_id and trace_id are present in a log context.

    Values already in the context win, then the bound contextvars, then a
    freshly generated id. trace_id falls back to request_id so both stay linked.
    """
    bound = correlation_ids()

    if not context.get("request_id"):
        context["request_id"] = bound.get("request_id") or generate_request_id()

    if not context.get("trace_id"):
        context["trace_id"] = bound.get("trace_id") or context["request_id"]

    return context


class LatencyTracker:
    """Track elapsed time."""

    def __init__(self):
        self.start_time = None

    def start(self):
        """Start timing."""
        self.start_time = time.perf_counter()

    def elapsed_ms(self) -> float:
        """Get elapsed time in milliseconds."""
        if self.start_time is None:
            return 0.0
        return (time.perf_counter() - self.start_time) * 1000


def format_json_if_valid(value: Optional[str]) -> Optional[str]:
    """
    Pretty-print a JSON string, or return it unchanged when it is not JSON.

    Empty strings are treated as missing.
    """
    if value is None or value == "":
        return None

    try:
        decoded = orjson.loads(value)
    except orjson.JSONDecodeError:
        return value

    return orjson.dumps(decoded, option=orjson.OPT_INDENT_2).decode("utf-8")


def format_mapping_as_json(data: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Serialize a mapping (e.g. headers) to a pretty JSON string."""
    if not data:
        return None

    return orjson.dumps(dict(data), option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS, default=str).decode("utf-8")


def truncate(value: str, max_size: int) -> str:
    """Cut a string to max_size characters, flagging the cut."""
    if max_size >= 0 and len(value) > max_size:
        return value[:max_size] + TRUNCATION_MARKER
    return value


def dumps_line(payload: Dict[str, Any]) -> bytes:
    """Encode one JSON document for a JSONL/NDJSON stream (no trailing newline)."""
    return orjson.dumps(payload, option=orjson.OPT_NON_STR_KEYS, default=str)


def classify_sink_error(exception: Exception) -> str:
    """
    Classify sink write failures for structured logging.

    Args:
        exception: The exception raised while talking to a sink

    Returns:
        A short failure reason such as "sink_timeout" or "http_error_503"
    """
    import httpx

    error_type = type(exception).__name__

    if isinstance(exception, (httpx.TimeoutException, TimeoutError)):
        return "sink_timeout"
    elif isinstance(exception, (httpx.ConnectError, ConnectionError)):
        return "sink_unreachable"
    elif isinstance(exception, httpx.HTTPStatusError):
        return f"http_error_{exception.response.status_code}"
    elif isinstance(exception, httpx.TransportError):
        return "transport_error"
    elif isinstance(exception, PermissionError):
        return "permission_denied"
    elif isinstance(exception, OSError):
        return "filesystem_error"

    return f"unknown_error_{error_type}"
