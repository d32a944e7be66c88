from datetime import datetime, timezone

import httpx
import orjson
import pytest

from builders import DefaultKafkaValueBuilder, IndexKeyKafkaValueBuilder
from handlers import KafkaRestProxyHandler, WriteStatus
from records import Level, LogRecord


def _record(message="m", **context):
    context.setdefault("log_index", "api_log")
    return LogRecord(
        channel="kafka",
        level=Level.INFO,
        message=message,
        context=context,
        timestamp=datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc),
    )


def _handler(responder, **kwargs):
    requests = []

    def transport(request):
        requests.append(request)
        return responder(request)

    client = httpx.Client(transport=httpx.MockTransport(transport))
    return KafkaRestProxyHandler("http://kafka:8082/", "app-logs", client=client, **kwargs), requests


def test_batch_produces_records_in_order():
    handler, requests = _handler(
        lambda request: httpx.Response(200, json={"offsets": []}),
        value_builder=IndexKeyKafkaValueBuilder(),
    )

    assert handler.write_batch([_record(seq=i) for i in range(3)]) == WriteStatus.OK

    [request] = requests
    assert str(request.url) == "http://kafka:8082/topics/app-logs"
    assert request.headers["content-type"] == "application/vnd.kafka.json.v2+json"
    assert request.headers["accept"] == "application/vnd.kafka.v2+json"

    payload = orjson.loads(request.content)
    assert [entry["value"]["api_log"]["seq"] for entry in payload["records"]] == [0, 1, 2]
    assert payload["records"][0]["value"]["api_log"]["@timestamp"] == "2024-05-10T12:00:00.000000+00:00"


def test_single_write_uses_default_value_builder():
    handler, requests = _handler(lambda request: httpx.Response(200))

    assert handler.write(_record(message="hello", method="GET")) == WriteStatus.OK

    [entry] = orjson.loads(requests[0].content)["records"]
    assert entry["value"]["level"] == "INFO"
    assert entry["value"]["message"] == "hello"
    assert entry["value"]["channel"] == "kafka"
    assert entry["value"]["context"]["method"] == "GET"


def test_failures_are_not_retried():
    handler, requests = _handler(lambda request: httpx.Response(503), silent=True)

    assert handler.write(_record()) == WriteStatus.IGNORED
    assert len(requests) == 1


def test_non_silent_failure_raises():
    handler, _ = _handler(lambda request: httpx.Response(500), silent=False)

    with pytest.raises(httpx.HTTPStatusError):
        handler.write_batch([_record()])


def test_unreachable_proxy_is_ignored_when_silent():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    handler, _ = _handler(refuse)

    assert handler.write(_record()) == WriteStatus.IGNORED


def test_default_value_builder_shape():
    value = DefaultKafkaValueBuilder()(_record(message="x", user_id="1"))

    assert value == {
        "timestamp": "2024-05-10T12:00:00+00:00",
        "level": "INFO",
        "channel": "kafka",
        "message": "x",
        "context": {"log_index": "api_log", "user_id": "1"},
        "extra": {},
    }


def test_unencodable_value_is_ignored_when_silent():
    handler, requests = _handler(lambda request: httpx.Response(200, json={"offsets": []}))

    assert handler.write(_record(big=2 ** 70)) == WriteStatus.IGNORED
    assert requests == []


def test_unencodable_value_raises_when_not_silent():
    handler, requests = _handler(lambda request: httpx.Response(200, json={"offsets": []}), silent=False)

    with pytest.raises(TypeError):
        handler.write_batch([_record(), _record(big=2 ** 70)])
    assert requests == []


def test_silent_batch_produces_only_encodable_records():
    handler, requests = _handler(lambda request: httpx.Response(200, json={"offsets": []}))

    status = handler.write_batch([_record(message="a"), _record(message="b", big=2 ** 70), _record(message="c")])

    assert status == WriteStatus.IGNORED
    [request] = requests
    payload = orjson.loads(request.content)
    assert [entry["value"]["message"] for entry in payload["records"]] == ["a", "c"]
