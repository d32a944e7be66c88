import pytest
import structlog

from channels import Channel, LogManager
from config import LoggerSettings
from deferred import DeferredLogger
from handlers import Handler, WriteStatus
from log_objects import ApiLogObject, GeneralLogObject
from multi_channel import MultiChannelLogger
from records import Level


class RecordingHandler(Handler):
    def __init__(self):
        super().__init__("debug")
        self.records = []

    def write(self, record):
        self.records.append(record)
        return WriteStatus.OK


class ExplodingHandler(Handler):
    def write(self, record):
        raise ConnectionError("broker unreachable")


def _manager(stack="a,b", **channels):
    manager = LogManager(LoggerSettings(_env_file=None, stack=stack))
    for name, handler in channels.items():
        manager.register(Channel(name, [handler]))
    return manager


def test_log_writes_every_stack_channel_with_generic_context():
    a, b = RecordingHandler(), RecordingHandler()
    multi = MultiChannelLogger(_manager(a=a, b=b))

    result = multi.log(ApiLogObject(message="api_access", method="GET", status=200))

    assert result == {"a": [WriteStatus.OK], "b": [WriteStatus.OK]}
    record = a.records[0]
    assert record.message == "api_access"
    assert record.level == Level.INFO
    assert record.context["log_index"] == "api_log"
    assert record.context["method"] == "GET"
    assert record.context["request_id"]
    assert record.context["trace_id"] == record.context["request_id"]
    assert b.records[0].context == record.context


def test_bound_correlation_ids_are_used():
    structlog.contextvars.bind_contextvars(request_id="req-1", trace_id="trace-1")
    a = RecordingHandler()
    multi = MultiChannelLogger(_manager(stack="a", a=a))

    multi.log(GeneralLogObject(message="m"))

    record = a.records[0]
    assert record.context["request_id"] == "req-1"
    assert record.context["trace_id"] == "trace-1"
    assert record.extra["request_id"] == "req-1"


def test_failing_channel_does_not_prevent_delivery_to_others():
    b = RecordingHandler()
    multi = MultiChannelLogger(_manager(a=ExplodingHandler(), b=b))

    with pytest.raises(ConnectionError):
        multi.log(GeneralLogObject(message="m"))

    assert len(b.records) == 1


def test_defer_buffers_one_entry_per_channel():
    a, b = RecordingHandler(), RecordingHandler()
    manager = _manager(a=a, b=b)
    deferred_logger = DeferredLogger(manager)
    multi = MultiChannelLogger(manager, deferred_logger)

    assert multi.log(GeneralLogObject(message="later"), defer=True) == {}
    assert deferred_logger.count() == 2
    assert a.records == [] and b.records == []

    deferred_logger.flush()

    assert a.records[0].context["log_index"] == "general_log"
    assert b.records[0].message == "later"


def test_defer_without_accumulator_writes_immediately():
    a = RecordingHandler()
    multi = MultiChannelLogger(_manager(stack="a", a=a))

    multi.log(GeneralLogObject(message="now"), defer=True)

    assert len(a.records) == 1


def test_empty_stack_falls_back_to_default_channel():
    settings = LoggerSettings(_env_file=None, stack=" , ", default_channel="a")
    manager = LogManager(settings)
    a = RecordingHandler()
    manager.register(Channel("a", [a]))

    MultiChannelLogger(manager).log(GeneralLogObject(message="m"))

    assert len(a.records) == 1


def test_stack_is_ordered_and_deduplicated():
    settings = LoggerSettings(_env_file=None, stack=" kafka, index_file ,kafka")
    assert settings.stack_channels == ["kafka", "index_file"]
