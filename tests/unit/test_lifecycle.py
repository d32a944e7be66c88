import sys

import pytest
import structlog

import lifecycle
from channels import Channel, LogManager
from config import LoggerSettings
from handlers import Handler, WriteStatus
from lifecycle import LoggingContext, current_context, current_typed_logger, initialize_cli_correlation_ids
from log_objects import GeneralLogObject
from records import Level


class RecordingHandler(Handler):
    def __init__(self):
        super().__init__("debug")
        self.records = []
        self.closed = False

    def write(self, record):
        self.records.append(record)
        return WriteStatus.OK

    def close(self):
        self.closed = True


class ExplodingHandler(Handler):
    def write(self, record):
        raise RuntimeError("sink down")


@pytest.fixture
def manager():
    return LogManager(LoggerSettings(_env_file=None, stack="a"))


def test_context_manager_flushes_on_exit(manager):
    handler = RecordingHandler()
    manager.register(Channel("a", [handler]))

    with LoggingContext(manager) as context:
        assert current_context() is context
        assert current_typed_logger() is context.log
        context.log.general(GeneralLogObject(message="deferred"))
        assert handler.records == []

    assert [r.message for r in handler.records] == ["deferred"]
    assert current_context() is None


def test_context_flushes_when_body_raises(manager):
    handler = RecordingHandler()
    manager.register(Channel("a", [handler]))

    with pytest.raises(ValueError):
        with LoggingContext(manager) as context:
            context.log.general(GeneralLogObject(message="before error"))
            raise ValueError("bad input")

    assert [r.message for r in handler.records] == ["before error"]


def test_flush_warns_on_channel_errors(manager, monkeypatch, fake_logger):
    monkeypatch.setattr(lifecycle, "logger", fake_logger)
    manager.register(Channel("a", [ExplodingHandler()]))
    context = LoggingContext(manager)
    context.log.general(GeneralLogObject(message="lost"))

    report = context.flush()

    assert not report.ok
    assert fake_logger.events("deferred_flush_incomplete") == [{"channels": ["a"], "written": 1}]


def test_fatal_error_is_written_before_deferred_logs(manager):
    handler = RecordingHandler()
    manager.register(Channel("a", [handler]))
    context = LoggingContext(manager)
    context.log.general(GeneralLogObject(message="deferred earlier"))

    try:
        raise ValueError("config missing")
    except ValueError as e:
        context.report_fatal_error(e)

    assert [r.message for r in handler.records] == ["config missing", "deferred earlier"]
    fatal = handler.records[0]
    assert fatal.level == Level.CRITICAL
    assert fatal.log_index == "error_log"
    assert fatal.context["exception_class"] == "ValueError"
    assert "config missing" in fatal.context["stack_trace"]


def test_fatal_error_logging_failure_is_reported(manager, monkeypatch, fake_logger):
    monkeypatch.setattr(lifecycle, "logger", fake_logger)
    manager.register(Channel("a", [ExplodingHandler()]))
    context = LoggingContext(manager)

    context.report_fatal_error(ValueError("boom"))

    assert fake_logger.events("fatal_error_log_failed") == [{"exception_class": "ValueError", "error": "sink down"}]


def test_process_hooks(manager, monkeypatch):
    handler = RecordingHandler()
    manager.register(Channel("a", [handler]))
    previous_calls = []
    registered = []
    monkeypatch.setattr(sys, "excepthook", lambda *args: previous_calls.append(args[0]))
    monkeypatch.setattr(lifecycle.atexit, "register", registered.append)
    monkeypatch.setattr(lifecycle.atexit, "unregister", registered.remove)
    previous_hook = sys.excepthook
    context = LoggingContext(manager)

    context.install_process_hooks()

    assert structlog.contextvars.get_contextvars()["request_id"]
    assert registered == [context.terminate]

    sys.excepthook(RuntimeError, RuntimeError("crash"), None)
    sys.excepthook(KeyboardInterrupt, KeyboardInterrupt(), None)

    assert [r.message for r in handler.records] == ["crash"]
    assert previous_calls == [RuntimeError, KeyboardInterrupt]

    context.uninstall_process_hooks()

    assert sys.excepthook is previous_hook
    assert registered == []


def test_terminate_closes_only_owned_manager(manager, settings):
    borrowed = RecordingHandler()
    manager.register(Channel("a", [borrowed]))
    LoggingContext(manager).terminate()
    assert not borrowed.closed

    owning = LoggingContext(settings=settings)
    owned = RecordingHandler()
    owning.manager.register(Channel("a", [owned]))
    owning.terminate()
    assert owned.closed


def test_cli_correlation_ids_keep_existing_values():
    structlog.contextvars.bind_contextvars(request_id="req-1")

    ids = initialize_cli_correlation_ids()

    assert ids == {"request_id": "req-1", "trace_id": "req-1"}

    structlog.contextvars.clear_contextvars()
    fresh = initialize_cli_correlation_ids()
    assert fresh["request_id"] != "req-1"
    assert fresh["trace_id"] == fresh["request_id"]
