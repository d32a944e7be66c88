"""
Log records and levels.

A LogRecord is the generic shape every sink handler consumes: channel, level,
message, context and timestamp, plus extras filled in by channel processors.
"""

import re
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, Union

from pydantic import BaseModel, ConfigDict, Field

from utils import correlation_ids

DEFAULT_INDEX = "general_log"


class Level(IntEnum):
    """Log severities, ordered."""

    DEBUG = 100
    INFO = 200
    NOTICE = 250
    WARNING = 300
    ERROR = 400
    CRITICAL = 500
    ALERT = 550
    EMERGENCY = 600

    @property
    def label(self) -> str:
        return self.name.lower()


_LEVEL_ALIASES = {"warn": Level.WARNING, "fatal": Level.CRITICAL}


def normalize_level(level: Union[Level, str, int]) -> Level:
    """
    Turn a level name, number or Level into a Level.

    Raises:
        ValueError: if the level is unknown
    """
    if isinstance(level, Level):
        return level

    if isinstance(level, int):
        return Level(level)

    name = str(level).strip().lower()
    if name in _LEVEL_ALIASES:
        return _LEVEL_ALIASES[name]

    try:
        return Level[name.upper()]
    except KeyError:
        raise ValueError(f"Unknown log level: {level!r}") from None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LogRecord(BaseModel):
    """A single log entry as seen by sink handlers."""

    model_config = ConfigDict(frozen=True)

    channel: str
    level: Level
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    extra: Dict[str, Any] = Field(default_factory=dict)

    @property
    def log_index(self) -> str:
        """Routing key, defaulting to general_log."""
        index = self.context.get("log_index") or self.extra.get("log_index")
        if isinstance(index, str) and index:
            return index
        return DEFAULT_INDEX


_PLACEHOLDER = re.compile(r"\{([A-Za-z0-9_.]+)\}")


def interpolate_placeholders(record: LogRecord) -> LogRecord:
    """Replace {key} placeholders in the message with scalar context values."""
    if "{" not in record.message:
        return record

    def replace(match):
        value = record.context.get(match.group(1))
        if value is None or isinstance(value, (dict, list, tuple, set)):
            return match.group(0)
        return str(value)

    return record.model_copy(update={"message": _PLACEHOLDER.sub(replace, record.message)})


def add_correlation_extra(record: LogRecord) -> LogRecord:
    """Copy correlation ids bound in structlog contextvars into record.extra."""
    bound = correlation_ids()
    if not bound:
        return record

    extra = dict(record.extra)
    for key, value in bound.items():
        extra.setdefault(key, value)
    return record.model_copy(update={"extra": extra})


DEFAULT_PROCESSORS = (interpolate_placeholders, add_correlation_extra)
