"""
Execution contexts.

A LoggingContext owns the accumulator, dispatcher and typed facade for one
request, job or command, and flushes when the context ends. The active context
is tracked in a ContextVar so listeners and middleware can find it.
"""

import atexit
import sys
from contextvars import ContextVar, Token
from typing import Any, Dict, Optional

import structlog

from channels import LogManager
from config import LoggerSettings, get_settings
from deferred import DeferredLogger, FlushReport
from log_objects import ErrorLogObject
from multi_channel import MultiChannelLogger
from typed_logger import TypedLogger
from utils import correlation_ids, generate_request_id

logger = structlog.get_logger()

_current_context: ContextVar[Optional["LoggingContext"]] = ContextVar("logging_context", default=None)


def current_context() -> Optional["LoggingContext"]:
    return _current_context.get()


def current_typed_logger() -> Optional[TypedLogger]:
    context = _current_context.get()
    return context.log if context is not None else None


def initialize_cli_correlation_ids() -> Dict[str, str]:
    """Bind request_id and trace_id for processes that never see a request."""
    bound = correlation_ids()
    request_id = bound.get("request_id") or generate_request_id()
    trace_id = bound.get("trace_id") or request_id
    structlog.contextvars.bind_contextvars(request_id=request_id, trace_id=trace_id)
    return {"request_id": request_id, "trace_id": trace_id}


class LoggingContext:
    """Deferred logging scope for one unit of work."""

    def __init__(self, manager: Optional[LogManager] = None, settings: Optional[LoggerSettings] = None):
        if settings is None:
            settings = manager.settings if manager is not None else get_settings()
        self.settings = settings
        self._owns_manager = manager is None
        self.manager = manager or LogManager(settings)
        self.deferred = DeferredLogger.from_settings(self.manager, settings)
        self.multi = MultiChannelLogger(self.manager, self.deferred)
        self.log = TypedLogger(self.multi)
        self._token: Optional[Token] = None
        self._previous_excepthook = None

    def activate(self) -> "LoggingContext":
        """Make this the current context without flushing on the way out."""
        self._token = _current_context.set(self)
        return self

    def deactivate(self) -> None:
        if self._token is not None:
            _current_context.reset(self._token)
            self._token = None

    def __enter__(self) -> "LoggingContext":
        return self.activate()

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self.flush()
        finally:
            self.deactivate()

    def flush(self) -> FlushReport:
        report = self.deferred.flush()
        if report.errors:
            logger.warning("deferred_flush_incomplete", channels=sorted(report.errors), written=report.written)
        return report

    def terminate(self) -> FlushReport:
        """Final flush; releases sink clients when this context created them."""
        report = self.flush()
        if self._owns_manager:
            self.manager.close()
        return report

    def report_fatal_error(self, exception: BaseException, **fields: Any) -> None:
        """Write an uncaught error immediately, then flush whatever was deferred."""
        try:
            error = ErrorLogObject.from_exception(exception, level="critical", **fields)
            self.log.error(error, defer=False)
        except Exception as e:
            logger.error("fatal_error_log_failed", exception_class=type(exception).__name__, error=str(e))
        finally:
            self.flush()

    def install_process_hooks(self, cli: bool = True) -> None:
        """
        Hook the process so nothing deferred is lost.

        Uncaught exceptions are logged as critical errors before the previous
        excepthook runs, and the buffer is flushed at interpreter exit.
        """
        if cli:
            initialize_cli_correlation_ids()

        self._previous_excepthook = sys.excepthook

        def excepthook(exc_type, exc, tb):
            if not issubclass(exc_type, KeyboardInterrupt):
                self.report_fatal_error(exc)
            self._previous_excepthook(exc_type, exc, tb)

        sys.excepthook = excepthook
        atexit.register(self.terminate)

    def uninstall_process_hooks(self) -> None:
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
            self._previous_excepthook = None
        atexit.unregister(self.terminate)
