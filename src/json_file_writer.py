"""
Direct JSONL writer for log objects, bypassing channels.
"""

from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Union

import orjson
import structlog

from log_objects import LogObject
from retention import index_file_path, pruner_for
from utils import dumps_line

logger = structlog.get_logger()


class JsonFileLogWriter:
    """Append log objects as JSONL records routed by their index."""

    def __init__(self, log_dir: Union[str, Path] = "logs", retention_days: int = 0):
        self.log_dir = Path(log_dir)
        self.pruner = pruner_for(self.log_dir, retention_days, use_mtime_fallback=True)
        self._lock = Lock()

    def path_for(self, log_object: LogObject) -> Path:
        return index_file_path(self.log_dir, log_object.index(), datetime.now(timezone.utc).date())

    def record_for(self, log_object: LogObject) -> Dict[str, Any]:
        return {
            "@timestamp": datetime.now(timezone.utc).isoformat(),
            "log_index": log_object.index(),
            **log_object.to_field_map(),
        }

    def write(self, log_object: LogObject) -> bool:
        """
        Write a single log object.

        Never raises; returns False when nothing could be written.
        """
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self.pruner.maybe_prune()

            try:
                line = dumps_line(self.record_for(log_object))
            except orjson.JSONEncodeError as e:
                line = dumps_line({
                    "@timestamp": datetime.now(timezone.utc).isoformat(),
                    "log_index": log_object.index(),
                    "message": log_object.message,
                    "level": log_object.level,
                    "json_error": str(e),
                })

            with self._lock:
                with open(self.path_for(log_object), "ab") as handle:
                    handle.write(line + b"\n")
        except OSError as e:
            logger.warning("json_file_write_failed", log_dir=str(self.log_dir), error=str(e))
            return False
        return True
