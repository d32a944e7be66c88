"""
Queued job and scheduled command hooks.

A job gets its own request_id with the dispatching request_id kept as
parent_request_id and the trace_id preserved, so logs of the whole chain stay
linked. Job outcomes are logged immediately to job_log and the deferred
buffer is flushed when the job ends.
"""

import resource
import sys
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import structlog
from pydantic import BaseModel

from config import LoggerSettings
from lifecycle import LoggingContext
from log_objects import JobLogObject
from utils import CORRELATION_KEYS, correlation_ids, generate_request_id

logger = structlog.get_logger()


class JobInfo(BaseModel):
    """What the worker knows about a job."""

    name: str
    job_id: Optional[str] = None
    queue_name: Optional[str] = None
    attempts: Optional[int] = None
    max_attempts: Optional[int] = None
    command: Optional[str] = None
    frequency: Optional[str] = None

    @property
    def key(self) -> str:
        return self.job_id or self.name


def propagate_request_id_to_job() -> Dict[str, str]:
    """Rebind correlation ids for a job picked up from the queue."""
    bound = correlation_ids()
    request_id = generate_request_id()

    ids = {
        "request_id": request_id,
        "trace_id": bound.get("trace_id") or request_id,
    }
    if bound.get("request_id"):
        ids["parent_request_id"] = bound["request_id"]
    else:
        structlog.contextvars.unbind_contextvars("parent_request_id")

    structlog.contextvars.bind_contextvars(**ids)
    return ids


def memory_peak_mb() -> float:
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS, kilobytes elsewhere
    if sys.platform == "darwin":
        peak /= 1024
    return round(peak / 1024, 2)


def _exit_code(exception: Optional[BaseException]) -> int:
    code = getattr(exception, "code", None)
    if isinstance(code, int) and not isinstance(code, bool) and code != 0:
        return code
    return 1


class JobEvents:
    """Logs job_log entries around job execution."""

    def __init__(self, context: LoggingContext, settings: Optional[LoggerSettings] = None):
        self.context = context
        self.settings = settings or context.settings
        self._started: Dict[str, float] = {}

    def processing(self, job: JobInfo) -> Dict[str, str]:
        ids = propagate_request_id_to_job()
        self._started[job.key] = time.perf_counter()
        return ids

    def processed(self, job: JobInfo) -> None:
        self._finish(job, "success")

    def failed(self, job: JobInfo, exception: Optional[BaseException] = None) -> None:
        self._finish(job, "failed", exception)

    def _finish(self, job: JobInfo, status: str, exception: Optional[BaseException] = None) -> None:
        try:
            if self.settings.job.enabled:
                self.context.log.job(self.build_log_object(job, status, exception), defer=False)
        except Exception as e:
            logger.error("job_log_failed", job=job.name, error=str(e))
        finally:
            self._started.pop(job.key, None)
            self.context.flush()

    def build_log_object(self, job: JobInfo, status: str, exception: Optional[BaseException] = None) -> JobLogObject:
        started = self._started.get(job.key)
        duration_ms = int(round((time.perf_counter() - started) * 1000)) if started is not None else None

        if status == "failed":
            output = (str(exception) if exception is not None else "") or "Job failed"
        else:
            output = "Job completed successfully"

        return JobLogObject(
            message=f"job_completed: {job.name}" if status == "success" else f"job_failed: {job.name}",
            level="error" if status == "failed" else "info",
            job=job.name,
            job_id=job.job_id,
            queue_name=job.queue_name,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            command=job.command,
            frequency=job.frequency,
            status=status,
            duration_ms=duration_ms,
            exit_code=_exit_code(exception) if status == "failed" else 0,
            memory_peak_mb=memory_peak_mb(),
            output=output,
            parent_request_id=correlation_ids().get("parent_request_id"),
        )

    @contextmanager
    def run(self, job: JobInfo) -> Iterator[Dict[str, str]]:
        """
        Run a job body between processing and processed/failed.

        Correlation ids bound before the job are restored afterwards.
        """
        saved = {key: value for key, value in structlog.contextvars.get_contextvars().items() if key in CORRELATION_KEYS}
        ids = self.processing(job)
        try:
            yield ids
        except Exception as e:
            self.failed(job, e)
            raise
        else:
            self.processed(job)
        finally:
            structlog.contextvars.unbind_contextvars(*CORRELATION_KEYS)
            if saved:
                structlog.contextvars.bind_contextvars(**saved)
