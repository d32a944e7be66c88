"""
Typed log events.

Each category produces a flat, null-free field map plus a routing index.
Only general_log carries source location and message; every other category
gets its location from structured fields (job, route, stack trace...).
"""

import traceback
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from records import normalize_level
from utils import format_json_if_valid, format_mapping_as_json


def _compact(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None}


class LogObject(BaseModel):
    """Common fields shared by every log category."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    INDEX: ClassVar[str] = "general_log"

    message: str
    level: str = "info"

    # Correlation
    parent_request_id: Optional[str] = None
    trace_id: Optional[str] = None
    span_id: Optional[str] = None
    session_id: Optional[str] = None

    # Environment
    environment: Optional[str] = None
    hostname: Optional[str] = None
    service_name: Optional[str] = None
    app_version: Optional[str] = None

    # Source location
    file: Optional[str] = None
    line: Optional[int] = None
    class_name: Optional[str] = Field(default=None, alias="class")
    function: Optional[str] = None

    tags: Optional[List[str]] = None

    @field_validator("level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        return normalize_level(value).label

    def index(self) -> str:
        """Routing key for this category."""
        return self.INDEX

    def _common_fields(self, include_source_location: bool = False, include_message: bool = False) -> Dict[str, Any]:
        fields = {
            "level": self.level,
            "parent_request_id": self.parent_request_id,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "session_id": self.session_id,
            "environment": self.environment,
            "hostname": self.hostname,
            "service_name": self.service_name,
            "app_version": self.app_version,
            "tags": list(self.tags) if self.tags is not None else None,
        }

        if include_message:
            fields["message"] = self.message

        if include_source_location:
            fields["file"] = self.file
            fields["line"] = self.line
            fields["class"] = self.class_name
            fields["function"] = self.function

        return _compact(fields)

    def to_field_map(self) -> Dict[str, Any]:
        """Flat document fields for this event, never containing None."""
        raise NotImplementedError


class GeneralLogObject(LogObject):
    """Application event with a human readable message."""

    INDEX: ClassVar[str] = "general_log"

    event: Optional[str] = None
    user_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    feature: Optional[str] = None
    action_type: Optional[str] = None

    def to_field_map(self) -> Dict[str, Any]:
        return {
            **self._common_fields(include_source_location=True, include_message=True),
            **_compact({
                "event": self.event,
                "user_id": self.user_id,
                "entity_type": self.entity_type,
                "entity_id": self.entity_id,
                "feature": self.feature,
                "action_type": self.action_type,
            }),
        }


class ApiLogObject(LogObject):
    """Inbound HTTP request/response."""

    INDEX: ClassVar[str] = "api_log"

    method: Optional[str] = None
    path: Optional[str] = None
    route_name: Optional[str] = None
    status: Optional[int] = None
    duration_ms: Optional[int] = None
    ip: Optional[str] = None
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    query_string: Optional[str] = None
    request_size_bytes: Optional[int] = None
    response_size_bytes: Optional[int] = None
    authentication_method: Optional[str] = None
    api_version: Optional[str] = None
    correlation_id: Optional[str] = None
    request_body: Optional[str] = None
    response_body: Optional[str] = None
    request_headers: Optional[Dict[str, Any]] = None
    response_headers: Optional[Dict[str, Any]] = None

    def to_field_map(self) -> Dict[str, Any]:
        # Call site is always the middleware, so no source location.
        return {
            **self._common_fields(),
            **_compact({
                "method": self.method,
                "path": self.path,
                "route_name": self.route_name,
                "status": self.status,
                "duration_ms": self.duration_ms,
                "ip": self.ip,
                "user_id": self.user_id,
                "user_agent": self.user_agent,
                "referer": self.referer,
                "query_string": self.query_string,
                "request_size_bytes": self.request_size_bytes,
                "response_size_bytes": self.response_size_bytes,
                "authentication_method": self.authentication_method,
                "api_version": self.api_version,
                "correlation_id": self.correlation_id,
                "request_body": format_json_if_valid(self.request_body),
                "response_body": format_json_if_valid(self.response_body),
                "request_headers": format_mapping_as_json(self.request_headers),
                "response_headers": format_mapping_as_json(self.response_headers),
            }),
        }


class JobLogObject(LogObject):
    """Queued job execution."""

    INDEX: ClassVar[str] = "job_log"

    job: Optional[str] = None
    job_id: Optional[str] = None
    queue_name: Optional[str] = None
    attempts: Optional[int] = None
    max_attempts: Optional[int] = None
    command: Optional[str] = None
    status: Optional[str] = None
    duration_ms: Optional[int] = None
    exit_code: Optional[int] = None
    memory_peak_mb: Optional[float] = None
    frequency: Optional[str] = None
    output: Optional[str] = None

    def to_field_map(self) -> Dict[str, Any]:
        # "status" is the HTTP status elsewhere; jobs report theirs as job_status.
        return {
            **self._common_fields(),
            **_compact({
                "job": self.job,
                "job_id": self.job_id,
                "queue_name": self.queue_name,
                "attempts": self.attempts,
                "max_attempts": self.max_attempts,
                "command": self.command,
                "job_status": self.status,
                "duration_ms": self.duration_ms,
                "exit_code": self.exit_code,
                "memory_peak_mb": self.memory_peak_mb,
                "frequency": self.frequency,
                "output": self.output,
            }),
        }


class CronLogObject(JobLogObject):
    """Scheduled command run."""

    INDEX: ClassVar[str] = "cron_log"


class IntegrationLogObject(LogObject):
    """Outbound call to an external service."""

    INDEX: ClassVar[str] = "integration_log"

    integration_name: Optional[str] = None
    url: Optional[str] = None
    method: Optional[str] = None
    status: Optional[int] = None
    duration_ms: Optional[int] = None
    external_id: Optional[str] = None
    correlation_id: Optional[str] = None
    attempt: Optional[int] = None
    max_attempts: Optional[int] = None
    request_size_bytes: Optional[int] = None
    response_size_bytes: Optional[int] = None
    request_body: Optional[str] = None
    response_body: Optional[str] = None
    headers: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None

    def to_field_map(self) -> Dict[str, Any]:
        return {
            **self._common_fields(),
            **_compact({
                "integration_name": self.integration_name,
                "url": self.url,
                "method": self.method,
                "status": self.status,
                "duration_ms": self.duration_ms,
                "external_id": self.external_id,
                "correlation_id": self.correlation_id,
                "attempt": self.attempt,
                "max_attempts": self.max_attempts,
                "request_size_bytes": self.request_size_bytes,
                "response_size_bytes": self.response_size_bytes,
                "request_body": format_json_if_valid(self.request_body),
                "response_body": format_json_if_valid(self.response_body),
                "headers": format_mapping_as_json(self.headers),
                "error_message": self.error_message,
            }),
        }


class OrmLogObject(LogObject):
    """Database query or model change."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, protected_namespaces=())

    INDEX: ClassVar[str] = "orm_log"

    model: Optional[str] = None
    model_id: Optional[str] = None
    action: Optional[str] = None
    query: Optional[str] = None
    query_type: Optional[str] = None
    is_slow_query: Optional[bool] = None
    duration_ms: Optional[int] = None
    bindings: Optional[str] = None
    connection: Optional[str] = None
    table: Optional[str] = None
    transaction_id: Optional[str] = None
    user_id: Optional[str] = None
    previous_value: Optional[Dict[str, Any]] = None
    after_value: Optional[Dict[str, Any]] = None

    def to_field_map(self) -> Dict[str, Any]:
        return {
            **self._common_fields(),
            **_compact({
                "model": self.model,
                "model_id": self.model_id,
                "action": self.action,
                "query": self.query,
                "query_type": self.query_type,
                "is_slow_query": self.is_slow_query,
                "duration_ms": self.duration_ms,
                "bindings": self.bindings,
                "connection": self.connection,
                "table": self.table,
                "transaction_id": self.transaction_id,
                "user_id": self.user_id,
                "previous_value": self.previous_value,
                "after_value": self.after_value,
            }),
        }


class ErrorLogObject(LogObject):
    """Exception or fatal error."""

    level: str = "error"

    INDEX: ClassVar[str] = "error_log"

    stack_trace: Optional[str] = None
    exception_class: Optional[str] = None
    code: Optional[int] = None
    previous_exception: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None
    route: Optional[str] = None
    method: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def from_exception(cls, exception: BaseException, message: Optional[str] = None, **fields: Any) -> "ErrorLogObject":
        """
        Build an error event from a raised exception.

        The origin is only kept in stack_trace; the chained cause (or implicit
        context) is summarized in previous_exception.
        """
        previous = exception.__cause__ or exception.__context__
        previous_summary = None
        if previous is not None:
            previous_summary = _compact({
                "class": _qualified_name(previous),
                "message": str(previous),
                "code": _int_code(previous),
            })

        defaults = {
            "message": message or str(exception) or type(exception).__name__,
            "stack_trace": "".join(traceback.format_exception(type(exception), exception, exception.__traceback__)),
            "exception_class": _qualified_name(exception),
            "code": _int_code(exception),
            "previous_exception": previous_summary,
        }
        defaults.update(fields)
        return cls(**defaults)

    def to_field_map(self) -> Dict[str, Any]:
        # stack_trace already carries per-frame location.
        return {
            **self._common_fields(),
            **_compact({
                "stack_trace": self.stack_trace,
                "exception_class": self.exception_class,
                "code": self.code,
                "previous_exception": self.previous_exception,
                "context_user_id": self.user_id,
                "context_route": self.route,
                "context_method": self.method,
                "context_url": self.url,
            }),
        }


def _qualified_name(exception: BaseException) -> str:
    exc_type = type(exception)
    if exc_type.__module__ == "builtins":
        return exc_type.__qualname__
    return f"{exc_type.__module__}.{exc_type.__qualname__}"


def _int_code(exception: BaseException) -> Optional[int]:
    code = getattr(exception, "code", None)
    if code is None:
        code = getattr(exception, "errno", None)
    return code if isinstance(code, int) and not isinstance(code, bool) else None


ALL_LOG_OBJECTS = (
    GeneralLogObject,
    ApiLogObject,
    JobLogObject,
    CronLogObject,
    IntegrationLogObject,
    OrmLogObject,
    ErrorLogObject,
)
