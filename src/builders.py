"""
Sink payload builders.

Pure functions of a LogRecord: the OpenSearch document (and its index) and
the Kafka REST proxy record value. Builders are pluggable through settings by
dotted path.
"""

import importlib
import socket
import sys
from typing import Any, Callable, Dict, Optional, Protocol

import structlog

from records import DEFAULT_INDEX, LogRecord
from utils import correlation_ids

logger = structlog.get_logger()

NO_SOURCE_LOCATION_INDICES = frozenset({
    "api_log",
    "orm_log",
    "integration_log",
    "cron_log",
    "job_log",
    "error_log",
})

# Frames from these modules are never reported as the caller.
INTERNAL_MODULES = frozenset({
    "builders",
    "channels",
    "deferred",
    "config",
    "handlers",
    "jobs",
    "json_file_writer",
    "lifecycle",
    "log_objects",
    "middleware",
    "multi_channel",
    "orm_listener",
    "records",
    "retention",
    "typed_logger",
    "utils",
})
INTERNAL_MODULE_PREFIXES = ("structlog", "httpx", "httpcore", "logging", "pydantic", "sqlalchemy", "starlette", "fastapi")

CALLER_SEARCH_DEPTH = 20


class OpenSearchDocumentBuilder(Protocol):
    def index(self, record: LogRecord) -> str:
        ...

    def document(self, record: LogRecord) -> Dict[str, Any]:
        ...


KafkaValueBuilder = Callable[[LogRecord], Dict[str, Any]]


def _is_internal(module_name: str) -> bool:
    return module_name in INTERNAL_MODULES or module_name.startswith(INTERNAL_MODULE_PREFIXES)


def find_caller_location(depth: int = CALLER_SEARCH_DEPTH) -> Dict[str, Any]:
    """
    Best-effort source location of the code that emitted a log.

    Walks at most `depth` frames up the stack, skipping this library and the
    logging/HTTP libraries it runs inside. Returns an empty dict when nothing
    outside of them is found.
    """
    frame = sys._getframe(1)
    for _ in range(depth):
        if frame is None:
            break

        module_name = frame.f_globals.get("__name__", "")
        if not _is_internal(module_name):
            location = {
                "file": frame.f_code.co_filename,
                "line": frame.f_lineno,
                "function": frame.f_code.co_name,
            }
            owner = frame.f_locals.get("self")
            if owner is not None:
                location["class"] = type(owner).__qualname__
            elif isinstance(frame.f_locals.get("cls"), type):
                location["class"] = frame.f_locals["cls"].__qualname__
            return location

        frame = frame.f_back

    return {}


class DefaultOpenSearchDocumentBuilder:
    """Flat document: @timestamp, level, request_id, context fields, common fields."""

    def __init__(
        self,
        default_index: str = DEFAULT_INDEX,
        environment: Optional[str] = None,
        service_name: Optional[str] = None,
        app_version: Optional[str] = None,
    ):
        self.default_index = default_index
        self.environment = environment
        self.service_name = service_name
        self.app_version = app_version

    def index(self, record: LogRecord) -> str:
        index = record.context.get("log_index") or record.extra.get("log_index")
        if isinstance(index, str) and index:
            return index
        return self.default_index

    def document(self, record: LogRecord) -> Dict[str, Any]:
        doc = {
            "@timestamp": record.timestamp.isoformat(),
            "level": record.level.label,
            "request_id": record.extra.get("request_id") or record.context.get("request_id"),
        }

        for key, value in record.context.items():
            if key != "log_index" and key not in doc:
                doc[key] = value

        self.populate_common_fields(doc, record)
        return doc

    def populate_common_fields(self, doc: Dict[str, Any], record: LogRecord) -> None:
        """Fill environment, host, service, version, session and caller location when absent."""
        if doc.get("environment") is None and self.environment is not None:
            doc["environment"] = self.environment

        if doc.get("hostname") is None:
            doc["hostname"] = socket.gethostname()

        if doc.get("service_name") is None and self.service_name is not None:
            doc["service_name"] = self.service_name

        if doc.get("app_version") is None and self.app_version is not None:
            doc["app_version"] = self.app_version

        if doc.get("session_id") is None:
            session_id = record.extra.get("session_id") or correlation_ids().get("session_id")
            if session_id:
                doc["session_id"] = session_id

        if self.index(record) in NO_SOURCE_LOCATION_INDICES:
            return

        if doc.get("file") is None or doc.get("line") is None:
            for key, value in find_caller_location().items():
                if doc.get(key) is None:
                    doc[key] = value


class DefaultKafkaValueBuilder:
    """Kafka value mirroring the whole record."""

    def __call__(self, record: LogRecord) -> Dict[str, Any]:
        return {
            "timestamp": record.timestamp.isoformat(timespec="seconds"),
            "level": record.level.name,
            "channel": record.channel,
            "message": record.message,
            "context": dict(record.context),
            "extra": dict(record.extra),
        }


class IndexKeyKafkaValueBuilder:
    """Kafka value keyed by routing index: {"<log_index>": {...fields, "@timestamp"}}."""

    def __call__(self, record: LogRecord) -> Dict[str, Any]:
        doc = {key: value for key, value in record.context.items() if key != "log_index"}
        doc["@timestamp"] = record.timestamp.isoformat(timespec="microseconds")
        return {record.log_index: doc}


def resolve_builder(path: Optional[str], default: type, **kwargs: Any) -> Any:
    """
    Instantiate a builder class from a "module.ClassName" path.

    Falls back to `default` when the path is empty, cannot be imported, or
    does not name a class.
    """
    builder_class = default
    if path:
        module_name, _, attribute = path.rpartition(".")
        try:
            candidate = getattr(importlib.import_module(module_name), attribute)
        except (ImportError, AttributeError, ValueError) as e:
            logger.warning("builder_not_found", path=path, fallback=default.__name__, error=str(e))
        else:
            if isinstance(candidate, type):
                builder_class = candidate
            else:
                logger.warning("builder_not_a_class", path=path, fallback=default.__name__)

    try:
        return builder_class(**kwargs)
    except TypeError:
        return builder_class()
