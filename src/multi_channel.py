"""
Multi-channel dispatcher: one log object, every channel of the stack.
"""

from typing import Any, Dict, List, Optional

import structlog

from channels import LogManager
from deferred import DeferredLogger
from handlers import WriteStatus
from log_objects import LogObject
from utils import classify_sink_error, ensure_correlation_ids

logger = structlog.get_logger()


class MultiChannelLogger:
    """Sends a log object to each configured channel, now or at flush time."""

    def __init__(self, manager: LogManager, deferred_logger: Optional[DeferredLogger] = None):
        self.manager = manager
        self.deferred_logger = deferred_logger

    def channels(self) -> List[str]:
        return self.manager.stack_channels()

    def build_context(self, log_object: LogObject) -> Dict[str, Any]:
        """log_index plus the object's fields, with request_id and trace_id always set."""
        context = {"log_index": log_object.index(), **log_object.to_field_map()}
        return ensure_correlation_ids(context)

    def log(self, log_object: LogObject, defer: bool = False) -> Dict[str, List[WriteStatus]]:
        """
        Log to every channel of the stack.

        With defer=True (and an accumulator) entries are buffered and the
        result is empty. Immediate writes try every channel; if a channel
        raised, the first error is re-raised once all channels were tried.
        """
        message = log_object.message
        level = log_object.level
        context = self.build_context(log_object)

        if defer and self.deferred_logger is not None:
            for name in self.channels():
                self.deferred_logger.defer(name, level, message, context)
            return {}

        results: Dict[str, List[WriteStatus]] = {}
        first_error: Optional[Exception] = None

        for name in self.channels():
            try:
                results[name] = self.manager.channel(name).log(level, message, context)
            except Exception as e:
                results[name] = [WriteStatus.FAILED]
                logger.warning("log_channel_failed", channel=name, log_index=context["log_index"], reason=classify_sink_error(e))
                if first_error is None:
                    first_error = e

        if first_error is not None:
            raise first_error

        return results
