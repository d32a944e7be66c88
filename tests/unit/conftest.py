import pytest
import structlog

import handlers
from config import LoggerSettings


class FakeLogger:
    def __init__(self):
        self.calls = []

    def debug(self, event, **kwargs):
        self.calls.append(("debug", event, kwargs))

    def info(self, event, **kwargs):
        self.calls.append(("info", event, kwargs))

    def warning(self, event, **kwargs):
        self.calls.append(("warning", event, kwargs))

    def error(self, event, **kwargs):
        self.calls.append(("error", event, kwargs))

    def critical(self, event, **kwargs):
        self.calls.append(("critical", event, kwargs))

    def events(self, name):
        return [kwargs for _level, event, kwargs in self.calls if event == name]


@pytest.fixture(autouse=True)
def clean_contextvars():
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def fake_logger():
    return FakeLogger()


@pytest.fixture
def sleeps(monkeypatch):
    calls = []
    monkeypatch.setattr(handlers.time, "sleep", calls.append)
    return calls


@pytest.fixture
def settings(tmp_path):
    return LoggerSettings(
        _env_file=None,
        stack="a",
        index_file={"directory": str(tmp_path / "logs"), "retention_days": 0},
    )
