"""
ASGI middleware hosting one deferred logging scope per HTTP request.

Binds the request id into structlog contextvars, records the API access log
(deferred) and flushes the buffer when the request ends, or before the error
propagates when the application raises.
"""

import re
from typing import Any, Dict, List, Optional, Tuple

import structlog
from fastapi.concurrency import run_in_threadpool

from channels import LogManager
from config import LoggerSettings, get_settings
from lifecycle import LoggingContext
from log_objects import ApiLogObject
from utils import LatencyTracker, generate_request_id, truncate

logger = structlog.get_logger()

SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "x-api-key", "x-auth-token"})
REDACTED = "[redacted]"

BODYLESS_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

_API_VERSION_PATTERNS = (
    re.compile(r"^/api/v(\d+(?:\.\d+)?)/"),
    re.compile(r"^/v(\d+(?:\.\d+)?)/"),
)


def decode_headers(raw_headers: List[Tuple[bytes, bytes]]) -> Dict[str, str]:
    """ASGI header list to a lowercased dict, first value wins."""
    headers: Dict[str, str] = {}
    for key, value in raw_headers or []:
        name = key.decode("latin-1").lower()
        if name not in headers:
            headers[name] = value.decode("latin-1")
    return headers


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {key: REDACTED if key in SENSITIVE_HEADERS else value for key, value in headers.items()}


def detect_api_version(path: str, headers: Dict[str, str]) -> Optional[str]:
    """Version from /api/vN/ or /vN/ path prefixes, else the version headers."""
    for pattern in _API_VERSION_PATTERNS:
        match = pattern.match(path)
        if match:
            return "v" + match.group(1)
    return headers.get("x-api-version") or headers.get("api-version") or None


def _authenticated_user(scope: Dict[str, Any]) -> Any:
    user = scope.get("user")
    if user is not None and getattr(user, "is_authenticated", False):
        return user
    return None


def detect_authentication_method(scope: Dict[str, Any], headers: Dict[str, str]) -> Optional[str]:
    authorization = headers.get("authorization", "")

    if authorization.lower().startswith("bearer ") and authorization[7:].strip():
        return "bearer"

    if headers.get("x-api-key"):
        return "api_key"

    if _authenticated_user(scope) is not None:
        if scope.get("session"):
            return "session"
        return "authenticated"

    if authorization.startswith("Basic "):
        return "basic"

    return None


def _user_id(scope: Dict[str, Any]) -> Optional[str]:
    user = _authenticated_user(scope)
    if user is None:
        return None
    identity = getattr(user, "identity", None) or getattr(user, "display_name", None)
    return str(identity) if identity else None


def _content_length(headers: Dict[str, str]) -> Optional[int]:
    value = headers.get("content-length", "")
    return int(value) if value.isdigit() else None


class BodyCapture:
    """Keeps the first max_size bytes of a streamed body and counts the rest."""

    def __init__(self, max_size: int, enabled: bool = True):
        self.max_size = max_size
        self.enabled = enabled
        self.size = 0
        self._chunks: List[bytes] = []
        self._kept = 0

    def add(self, chunk: bytes) -> None:
        self.size += len(chunk)
        if self.enabled and self._kept <= self.max_size:
            self._chunks.append(chunk)
            self._kept += len(chunk)

    def text(self) -> Optional[str]:
        if not self.enabled or not self._chunks:
            return None
        body = b"".join(self._chunks).decode("utf-8", errors="replace")
        return truncate(body, self.max_size) or None


class DeferredLoggingMiddleware:
    """Request id, API access log and deferred flush for every HTTP request."""

    def __init__(self, app, manager: Optional[LogManager] = None, settings: Optional[LoggerSettings] = None):
        self.app = app
        if settings is None:
            settings = manager.settings if manager is not None else get_settings()
        self.settings = settings
        self.manager = manager or LogManager(settings)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        options = self.settings.middleware
        limits = self.settings.limits
        request_headers = decode_headers(scope.get("headers"))

        structlog.contextvars.clear_contextvars()
        request_id = None
        if options.request_id_enabled:
            request_id = request_headers.get(options.request_id_header.lower()) or generate_request_id()
            scope["request_id"] = request_id
            scope.setdefault("state", {})["request_id"] = request_id
            structlog.contextvars.bind_contextvars(request_id=request_id, trace_id=request_id)

        method = scope.get("method", "GET")
        request_length = _content_length(request_headers)
        request_body = BodyCapture(
            limits.max_request_body_size,
            enabled=method not in BODYLESS_METHODS
            and not (request_length is not None and request_length > limits.max_request_body_size * 2),
        )
        response_body = BodyCapture(limits.max_response_body_size)
        response: Dict[str, Any] = {}

        async def receive_wrapper():
            message = await receive()
            if message["type"] == "http.request":
                request_body.add(message.get("body", b""))
            return message

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                if request_id is not None:
                    header_name = options.request_id_header.lower().encode("latin-1")
                    if not any(key.lower() == header_name for key, _ in headers):
                        headers.append((options.request_id_header.encode("latin-1"), request_id.encode("latin-1")))
                    message = {**message, "headers": headers}
                response["status"] = message["status"]
                response["headers"] = decode_headers(headers)
                length = _content_length(response["headers"])
                if length is not None and length > limits.max_response_body_size * 2:
                    response_body.enabled = False
            elif message["type"] == "http.response.body":
                response_body.add(message.get("body", b""))
            await send(message)

        context = LoggingContext(self.manager, self.settings).activate()
        tracker = LatencyTracker()
        tracker.start()

        try:
            try:
                await self.app(scope, receive_wrapper, send_wrapper)
            except Exception:
                await run_in_threadpool(context.flush)
                raise

            if options.api_access_log_enabled and "status" in response:
                try:
                    context.log.api(self._api_log_object(
                        scope, request_headers, request_body, response, response_body, tracker.elapsed_ms()
                    ))
                except Exception as e:
                    logger.warning("api_access_log_failed", path=scope.get("path"), error=str(e))
        finally:
            await run_in_threadpool(context.flush)
            context.deactivate()

    def _api_log_object(
        self,
        scope: Dict[str, Any],
        request_headers: Dict[str, str],
        request_body: BodyCapture,
        response: Dict[str, Any],
        response_body: BodyCapture,
        duration_ms: float,
    ) -> ApiLogObject:
        route = scope.get("route")
        query_string = scope.get("query_string", b"").decode("latin-1")
        client = scope.get("client")

        return ApiLogObject(
            message="api_access",
            level="info",
            method=scope.get("method"),
            path=scope.get("path"),
            route_name=getattr(route, "name", None),
            status=response["status"],
            duration_ms=int(round(duration_ms)),
            ip=client[0] if client else None,
            user_id=_user_id(scope),
            user_agent=request_headers.get("user-agent"),
            referer=request_headers.get("referer"),
            query_string=query_string or None,
            request_size_bytes=request_body.size or None,
            response_size_bytes=response_body.size or None,
            authentication_method=detect_authentication_method(scope, request_headers),
            api_version=detect_api_version(scope.get("path", ""), request_headers),
            request_body=request_body.text(),
            response_body=response_body.text(),
            request_headers=redact_headers(request_headers) or None,
            response_headers=response.get("headers") or None,
        )
