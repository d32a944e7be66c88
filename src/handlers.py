"""
Sink handlers.

Every write returns a WriteStatus. Silent handlers swallow sink failures and
report IGNORED; non-silent handlers re-raise the last error.
"""

import fcntl
import time
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union
from urllib.parse import quote

import httpx
import orjson
import structlog

from builders import DefaultKafkaValueBuilder, DefaultOpenSearchDocumentBuilder, KafkaValueBuilder, OpenSearchDocumentBuilder
from records import Level, LogRecord, normalize_level
from retention import RetentionPruner, index_file_path, pruner_for
from utils import classify_sink_error, dumps_line

logger = structlog.get_logger()

INITIAL_BACKOFF_S = 1

KAFKA_HEADERS = {
    "Content-Type": "application/vnd.kafka.json.v2+json",
    "Accept": "application/vnd.kafka.v2+json",
}


class WriteStatus(str, Enum):
    """Outcome of a sink write."""

    OK = "ok"
    SKIPPED = "skipped"  # below the handler's level
    IGNORED = "ignored"  # failed, swallowed (silent)
    FAILED = "failed"    # failed and raised


_STATUS_RANK = {WriteStatus.SKIPPED: 0, WriteStatus.OK: 1, WriteStatus.IGNORED: 2, WriteStatus.FAILED: 3}


def worst_status(statuses: Iterable[WriteStatus]) -> WriteStatus:
    """Most severe status of a group, SKIPPED when empty."""
    return max(statuses, key=_STATUS_RANK.__getitem__, default=WriteStatus.SKIPPED)


class Handler:
    """Writes one record at a time to a destination."""

    def __init__(self, level: Union[Level, str] = "debug"):
        self.level = normalize_level(level)

    def is_handling(self, record: LogRecord) -> bool:
        return record.level >= self.level

    def handle(self, record: LogRecord) -> WriteStatus:
        if not self.is_handling(record):
            return WriteStatus.SKIPPED
        return self.write(record)

    def write(self, record: LogRecord) -> WriteStatus:
        raise NotImplementedError

    def close(self) -> None:
        pass


class BatchableHandler(Handler):
    """Handler that can write many records in one transport call."""

    def write_batch(self, records: Sequence[LogRecord]) -> WriteStatus:
        raise NotImplementedError

    def _handled(self, records: Sequence[LogRecord]) -> List[LogRecord]:
        return [record for record in records if self.is_handling(record)]


class StructlogHandler(Handler):
    """Emits records through structlog; backs the "single" channel."""

    _METHODS = {
        Level.DEBUG: "debug",
        Level.INFO: "info",
        Level.NOTICE: "info",
        Level.WARNING: "warning",
        Level.ERROR: "error",
        Level.CRITICAL: "critical",
        Level.ALERT: "critical",
        Level.EMERGENCY: "critical",
    }

    def __init__(self, name: str = "single", level: Union[Level, str] = "debug"):
        super().__init__(level)
        self._logger = structlog.get_logger().bind(channel=name)

    def write(self, record: LogRecord) -> WriteStatus:
        emit = getattr(self._logger, self._METHODS[record.level])
        emit(record.message, log_index=record.log_index, severity=record.level.label, context=record.context)
        return WriteStatus.OK


class IndexFileHandler(BatchableHandler):
    """
    Appends JSONL lines to <directory>/<index>-<YYYY-MM-DD>.jsonl.

    Never raises: file logging must not break the application.
    """

    def __init__(
        self,
        directory: Union[str, Path],
        level: Union[Level, str] = "debug",
        retention_days: int = 0,
        pruner: Optional[RetentionPruner] = None,
    ):
        super().__init__(level)
        self.directory = Path(directory)
        self.pruner = pruner or pruner_for(self.directory, retention_days)
        self._lock = Lock()

    def path_for(self, record: LogRecord) -> Path:
        return index_file_path(self.directory, record.log_index, record.timestamp.date())

    def payload_for(self, record: LogRecord) -> Dict[str, Any]:
        doc = {key: value for key, value in record.context.items() if key != "log_index"}
        payload = {
            "@timestamp": record.timestamp.isoformat(timespec="seconds"),
            "log_index": record.log_index,
            **doc,
        }
        payload.setdefault("message", record.message)
        return payload

    def _prepare(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self.pruner.maybe_prune()

    def _append(self, path: Path, lines: List[bytes]) -> None:
        data = b"".join(line + b"\n" for line in lines)
        with self._lock, open(path, "ab") as handle:
            fcntl.flock(handle, fcntl.LOCK_EX)
            try:
                handle.write(data)
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

    def _encode(self, record: LogRecord) -> Optional[bytes]:
        try:
            return dumps_line(self.payload_for(record))
        except orjson.JSONEncodeError as e:
            logger.warning("index_file_encode_failed", log_index=record.log_index, error=str(e))
            return None

    def write(self, record: LogRecord) -> WriteStatus:
        line = self._encode(record)
        if line is None:
            return WriteStatus.IGNORED

        try:
            self._prepare()
            self._append(self.path_for(record), [line])
        except Exception as e:
            logger.warning("index_file_write_failed", directory=str(self.directory), reason=classify_sink_error(e), error=str(e))
            return WriteStatus.IGNORED
        return WriteStatus.OK

    def write_batch(self, records: Sequence[LogRecord]) -> WriteStatus:
        records = self._handled(records)
        if not records:
            return WriteStatus.SKIPPED

        # An unencodable record is dropped alone, as a single write would drop it.
        groups: Dict[Path, List[bytes]] = {}
        dropped = 0
        for record in records:
            line = self._encode(record)
            if line is None:
                dropped += 1
                continue
            groups.setdefault(self.path_for(record), []).append(line)

        if groups:
            try:
                self._prepare()
                for path, lines in groups.items():
                    self._append(path, lines)
            except Exception as e:
                logger.warning("index_file_batch_failed", directory=str(self.directory), reason=classify_sink_error(e), error=str(e))
                return WriteStatus.IGNORED

        return WriteStatus.IGNORED if dropped else WriteStatus.OK


class OpenSearchIndexHandler(BatchableHandler):
    """Indexes documents into OpenSearch with retry and _bulk batching."""

    def __init__(
        self,
        base_url: str,
        index: str = "general_log",
        document_builder: Optional[OpenSearchDocumentBuilder] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        level: Union[Level, str] = "debug",
        timeout: float = 2.0,
        silent: bool = True,
        verify_tls: bool = True,
        max_retries: int = 3,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(level)
        self.base_url = base_url.rstrip("/")
        self.index = index
        self.document_builder = document_builder or DefaultOpenSearchDocumentBuilder(default_index=index)
        self.auth = httpx.BasicAuth(username, password or "") if username else None
        self.silent = silent
        self.max_retries = max(1, max_retries)
        self.failed_documents = 0
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout, verify=verify_tls)

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def _resolve_index(self, record: LogRecord) -> str:
        index = self.document_builder.index(record)
        if not isinstance(index, str) or not index:
            return self.index
        return index

    def _url(self, index: str, endpoint: str) -> str:
        return f"{self.base_url}/{quote(index, safe='')}/{endpoint}"

    def _post_with_retry(self, url: str, **kwargs) -> httpx.Response:
        """
        POST with exponential backoff (1s, 2s, 4s...).

        Retries 5xx responses and transport errors, never 4xx.

        Raises:
            httpx.HTTPError: the last error once attempts are exhausted
        """
        last_exception = None
        delay = INITIAL_BACKOFF_S

        for attempt in range(self.max_retries):
            try:
                response = self.client.post(url, auth=self.auth, **kwargs)
                response.raise_for_status()
                return response

            except httpx.HTTPStatusError as e:
                # Don't retry 4xx errors
                if 400 <= e.response.status_code < 500:
                    raise
                last_exception = e

            except httpx.TransportError as e:
                last_exception = e

            if attempt < self.max_retries - 1:
                if not self.silent:
                    logger.warning(
                        "opensearch_retry",
                        attempt=attempt + 1,
                        backoff_s=delay,
                        reason=classify_sink_error(last_exception),
                    )
                time.sleep(delay)
                delay *= 2

        raise last_exception

    def write(self, record: LogRecord) -> WriteStatus:
        url = self._url(self._resolve_index(record), "_doc")

        try:
            self._post_with_retry(
                url,
                content=dumps_line(self.document_builder.document(record)),
                headers={"Content-Type": "application/json", "Accept": "application/json"},
            )
        except (httpx.HTTPError, orjson.JSONEncodeError):
            if self.silent:
                return WriteStatus.IGNORED
            raise
        return WriteStatus.OK

    def write_batch(self, records: Sequence[LogRecord]) -> WriteStatus:
        records = self._handled(records)
        if not records:
            return WriteStatus.SKIPPED

        groups: Dict[str, List[LogRecord]] = {}
        for record in records:
            groups.setdefault(self._resolve_index(record), []).append(record)

        return worst_status(self._write_bulk(index, group) for index, group in groups.items())

    def _write_bulk(self, index: str, records: List[LogRecord]) -> WriteStatus:
        action = orjson.dumps({"index": {}})
        lines = []
        skipped = 0
        for record in records:
            try:
                document = dumps_line(self.document_builder.document(record))
            except orjson.JSONEncodeError:
                if not self.silent:
                    raise
                skipped += 1
                continue
            lines.append(action)
            lines.append(document)

        if not lines:
            return WriteStatus.IGNORED
        body = b"".join(line + b"\n" for line in lines)

        try:
            response = self._post_with_retry(
                self._url(index, "_bulk"),
                content=body,
                headers={"Content-Type": "application/x-ndjson", "Accept": "application/json"},
            )
        except httpx.HTTPError:
            if self.silent:
                return WriteStatus.IGNORED
            raise

        self.verify_bulk_response(response, index, len(records) - skipped)
        return WriteStatus.IGNORED if skipped else WriteStatus.OK

    def verify_bulk_response(self, response: httpx.Response, index: str, total: int) -> int:
        """
        Count documents the bulk API rejected.

        A partial failure does not fail the call; it is counted in
        failed_documents and, unless silent, reported per item plus a summary.
        """
        if not 200 <= response.status_code < 300:
            return 0

        try:
            data = response.json()
        except ValueError:
            return 0

        if not isinstance(data, dict) or data.get("errors") is not True:
            return 0

        failures = 0
        for item in data.get("items") or []:
            if not isinstance(item, dict):
                continue
            action = item.get("index") or item.get("create") or item.get("update") or item.get("delete")
            if isinstance(action, dict) and action.get("error"):
                failures += 1
                if not self.silent:
                    logger.warning("opensearch_bulk_item_failed", index=index, error=action["error"], status=action.get("status"))

        if failures:
            self.failed_documents += failures
            if not self.silent:
                logger.error("opensearch_bulk_partial_failure", index=index, count=failures, total=total)

        return failures


class KafkaRestProxyHandler(BatchableHandler):
    """Produces records to a Kafka topic through the REST proxy. Single attempt, no retry."""

    def __init__(
        self,
        rest_proxy_url: str,
        topic: str,
        value_builder: Optional[KafkaValueBuilder] = None,
        level: Union[Level, str] = "debug",
        timeout: float = 2.0,
        silent: bool = True,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(level)
        self.rest_proxy_url = rest_proxy_url.rstrip("/")
        self.topic = topic
        self.value_builder = value_builder or DefaultKafkaValueBuilder()
        self.silent = silent
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout)

    @property
    def url(self) -> str:
        return f"{self.rest_proxy_url}/topics/{quote(self.topic, safe='')}"

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def _produce(self, records: Sequence[LogRecord]) -> WriteStatus:
        entries = []
        for record in records:
            try:
                entries.append({"value": orjson.Fragment(dumps_line(self.value_builder(record)))})
            except orjson.JSONEncodeError:
                if not self.silent:
                    raise

        if not entries:
            return WriteStatus.IGNORED

        try:
            response = self.client.post(self.url, content=dumps_line({"records": entries}), headers=KAFKA_HEADERS)
            response.raise_for_status()
        except httpx.HTTPError:
            if self.silent:
                return WriteStatus.IGNORED
            raise
        return WriteStatus.OK if len(entries) == len(records) else WriteStatus.IGNORED

    def write(self, record: LogRecord) -> WriteStatus:
        return self._produce([record])

    def write_batch(self, records: Sequence[LogRecord]) -> WriteStatus:
        records = self._handled(records)
        if not records:
            return WriteStatus.SKIPPED
        return self._produce(records)
