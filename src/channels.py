"""
Named log channels.

A channel is an ordered list of sink handlers plus the processors that turn
(level, message, context) into a LogRecord. The LogManager builds channels on
demand from LoggerSettings and caches them for the life of the process.
"""

from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import structlog

from builders import DefaultOpenSearchDocumentBuilder, IndexKeyKafkaValueBuilder, resolve_builder
from config import LoggerSettings, get_settings
from handlers import (
    BatchableHandler,
    Handler,
    IndexFileHandler,
    KafkaRestProxyHandler,
    OpenSearchIndexHandler,
    StructlogHandler,
    WriteStatus,
)
from records import DEFAULT_PROCESSORS, Level, LogRecord, normalize_level, utcnow

logger = structlog.get_logger()

Processor = Callable[[LogRecord], LogRecord]


class UnknownChannelError(LookupError):
    """No channel is registered or configurable under this name."""


class Channel:
    """Named group of handlers sharing record processors."""

    def __init__(self, name: str, handlers: Sequence[Handler], processors: Sequence[Processor] = DEFAULT_PROCESSORS):
        self.name = name
        self.handlers = list(handlers)
        self.processors = tuple(processors)

    def make_record(
        self,
        level: Union[Level, str],
        message: str,
        context: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> LogRecord:
        record = LogRecord(
            channel=self.name,
            level=normalize_level(level),
            message=message,
            context=dict(context or {}),
            timestamp=timestamp or utcnow(),
        )
        for processor in self.processors:
            record = processor(record)
        return record

    def handle(self, record: LogRecord) -> List[WriteStatus]:
        """Write a record through every handler, in order."""
        return [handler.handle(record) for handler in self.handlers]

    def log(
        self,
        level: Union[Level, str],
        message: str,
        context: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> List[WriteStatus]:
        return self.handle(self.make_record(level, message, context, timestamp))

    def batchable_handlers(self) -> List[BatchableHandler]:
        return [handler for handler in self.handlers if isinstance(handler, BatchableHandler)]

    def single_handlers(self) -> List[Handler]:
        return [handler for handler in self.handlers if not isinstance(handler, BatchableHandler)]

    def close(self) -> None:
        for handler in self.handlers:
            handler.close()


def single_channel(name: str, settings: LoggerSettings) -> Channel:
    return Channel(name, [StructlogHandler(name, settings.single_level)])


def index_file_channel(name: str, settings: LoggerSettings) -> Channel:
    section = settings.index_file
    return Channel(name, [
        IndexFileHandler(section.directory, level=section.level, retention_days=section.retention_days),
    ])


def opensearch_channel(name: str, settings: LoggerSettings) -> Channel:
    section = settings.opensearch
    document_builder = resolve_builder(
        section.document_builder,
        DefaultOpenSearchDocumentBuilder,
        default_index=section.default_index,
        environment=settings.environment,
        service_name=settings.service_name,
        app_version=settings.app_version,
    )
    return Channel(name, [
        OpenSearchIndexHandler(
            base_url=section.url,
            index=section.default_index,
            document_builder=document_builder,
            username=section.username,
            password=section.password,
            level=section.level,
            timeout=section.timeout,
            silent=section.silent,
            verify_tls=section.verify_tls,
            max_retries=section.max_retries,
        ),
    ])


def kafka_channel(name: str, settings: LoggerSettings) -> Channel:
    section = settings.kafka
    return Channel(name, [
        KafkaRestProxyHandler(
            rest_proxy_url=section.rest_proxy_url,
            topic=section.topic,
            value_builder=resolve_builder(section.value_builder, IndexKeyKafkaValueBuilder),
            level=section.level,
            timeout=section.timeout,
            silent=section.silent,
        ),
    ])


ChannelFactory = Callable[[str, LoggerSettings], Channel]

CHANNEL_FACTORIES: Dict[str, ChannelFactory] = {
    "single": single_channel,
    "index_file": index_file_channel,
    "opensearch": opensearch_channel,
    "kafka": kafka_channel,
}


class LogManager:
    """Resolves and caches channels by name."""

    def __init__(self, settings: Optional[LoggerSettings] = None):
        self.settings = settings or get_settings()
        self._channels: Dict[str, Channel] = {}
        self._lock = Lock()

    def register(self, channel: Channel) -> Channel:
        """Add or replace a channel; registered channels win over configured ones."""
        with self._lock:
            previous = self._channels.get(channel.name)
            self._channels[channel.name] = channel
        if previous is not None and previous is not channel:
            previous.close()
        return channel

    def channel(self, name: str) -> Channel:
        """
        Get a channel by name, building it from settings on first use.

        Raises:
            UnknownChannelError: if no channel is registered or configurable under name
        """
        with self._lock:
            channel = self._channels.get(name)
            if channel is not None:
                return channel

            factory = CHANNEL_FACTORIES.get(name)
            if factory is None:
                raise UnknownChannelError(f"Unknown log channel: {name!r}")

            channel = factory(name, self.settings)
            self._channels[name] = channel
            logger.debug("log_channel_created", channel=name, handlers=[type(h).__name__ for h in channel.handlers])
            return channel

    def stack_channels(self) -> List[str]:
        return self.settings.stack_channels

    def close(self) -> None:
        with self._lock:
            channels = list(self._channels.values())
            self._channels.clear()
        for channel in channels:
            channel.close()
