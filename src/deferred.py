"""
Deferred log accumulator.

Entries are buffered in memory for the life of an execution context (request,
job, command) and written in one pass at the end, batched per channel where
the sink supports it. A buffer limit bounds memory: reaching it flushes
synchronously and buffering continues.
"""

from datetime import datetime
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field

from channels import Channel, LogManager
from config import LoggerSettings
from handlers import BatchableHandler, Handler, WriteStatus, worst_status
from records import Level, LogRecord, normalize_level, utcnow
from utils import classify_sink_error

logger = structlog.get_logger()


class BufferedLogEntry(BaseModel):
    """A log call waiting for flush."""

    model_config = ConfigDict(frozen=True)

    channel: str
    level: Level
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class FlushReport(BaseModel):
    """What a flush did, per channel."""

    written: int = 0
    statuses: Dict[str, List[WriteStatus]] = Field(default_factory=dict)
    errors: Dict[str, List[str]] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class DeferredLogger:
    """Buffers log calls and writes them per channel on flush()."""

    def __init__(self, manager: LogManager, max_logs: Optional[int] = None, warn_on_limit: bool = True):
        self.manager = manager
        self._max_logs = max_logs if max_logs is not None and max_logs > 0 else None
        self.warn_on_limit = warn_on_limit
        self._entries: List[BufferedLogEntry] = []
        self._auto_flush_count = 0
        self._lock = Lock()

    @classmethod
    def from_settings(cls, manager: LogManager, settings: LoggerSettings) -> "DeferredLogger":
        return cls(manager, max_logs=settings.deferred.limit, warn_on_limit=settings.deferred.warn_on_limit)

    @property
    def max_logs(self) -> Optional[int]:
        return self._max_logs

    @property
    def auto_flush_count(self) -> int:
        return self._auto_flush_count

    def count(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def defer(
        self,
        channel: str,
        level: Union[Level, str],
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Buffer one log call.

        The buffer never holds more than max_logs entries: the call that
        reaches the limit flushes everything before returning.
        """
        entry = BufferedLogEntry(
            channel=channel,
            level=normalize_level(level),
            message=message,
            context=dict(context or {}),
        )

        with self._lock:
            self._entries.append(entry)
            pending = len(self._entries)
            limit_reached = self._max_logs is not None and pending >= self._max_logs
            if limit_reached:
                self._auto_flush_count += 1

        if limit_reached:
            if self.warn_on_limit:
                # Goes straight to structlog, never back into this buffer.
                logger.warning(
                    "deferred_auto_flush",
                    limit=self._max_logs,
                    logs_flushed=pending,
                    auto_flush_count=self._auto_flush_count,
                )
            self.flush()

    def clear(self) -> None:
        """Drop buffered entries without writing them."""
        with self._lock:
            self._entries = []
            self._auto_flush_count = 0

    def flush(self) -> FlushReport:
        """
        Write every buffered entry, grouped by channel in first-seen order.

        Never raises. The buffer is taken as a whole before writing, so a
        second flush (or a flush from inside a sink) finds it empty.
        """
        with self._lock:
            entries, self._entries = self._entries, []

        report = FlushReport(written=len(entries))
        if not entries:
            return report

        groups: Dict[str, List[BufferedLogEntry]] = {}
        for entry in entries:
            groups.setdefault(entry.channel, []).append(entry)

        for name, group in groups.items():
            try:
                report.statuses[name] = self._flush_channel(self.manager.channel(name), group, report)
            except Exception as e:
                report.errors.setdefault(name, []).append(f"{type(e).__name__}: {e}")
                logger.error("deferred_flush_channel_failed", channel=name, count=len(group), error=str(e))

        return report

    def _flush_channel(self, channel: Channel, group: Sequence[BufferedLogEntry], report: FlushReport) -> List[WriteStatus]:
        records = [channel.make_record(e.level, e.message, e.context, e.timestamp) for e in group]
        statuses = []

        batchable = channel.batchable_handlers()
        if not batchable:
            for record in records:
                statuses.extend(self._handle(handler, record, report) for handler in channel.handlers)
            return statuses

        for handler in batchable:
            statuses.append(self._write_batch(handler, records, report))

        for handler in channel.single_handlers():
            statuses.extend(self._handle(handler, record, report) for record in records)

        return statuses

    def _write_batch(self, handler: BatchableHandler, records: Sequence[LogRecord], report: FlushReport) -> WriteStatus:
        try:
            return handler.write_batch(records)
        except Exception as e:
            logger.warning(
                "deferred_batch_failed",
                channel=records[0].channel,
                handler=type(handler).__name__,
                count=len(records),
                reason=classify_sink_error(e),
            )
            return worst_status(self._handle(handler, record, report) for record in records)

    def _handle(self, handler: Handler, record: LogRecord, report: FlushReport) -> WriteStatus:
        try:
            return handler.handle(record)
        except Exception as e:
            report.errors.setdefault(record.channel, []).append(f"{type(e).__name__}: {e}")
            return WriteStatus.FAILED
