"""
JSONL file routing and retention.

Files live at <directory>/<sanitized-index>-<YYYY-MM-DD>.jsonl. Pruning runs at
most once per day per directory: a marker file holds the last pruned date and
a sibling lock file, taken with a non-blocking exclusive flock, makes sure only
one worker prunes. A worker that cannot get the lock skips pruning.
"""

import fcntl
import re
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Tuple, Union

import structlog

logger = structlog.get_logger()

MARKER_NAME = ".deferred-logger-last-prune"
LOCK_SUFFIX = ".lock"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]+")
_FILENAME_DATE = re.compile(r"\b(\d{4}-\d{2}-\d{2})\b")


def sanitize_index(index: str) -> str:
    """Turn a routing index into a safe, lowercase filename base."""
    cleaned = _UNSAFE_CHARS.sub("_", (index or "").strip()).strip("_")
    return cleaned.lower() or "log"


def index_file_path(directory: Union[str, Path], index: str, day: date) -> Path:
    """Path of the JSONL file for an index on a given day."""
    return Path(directory) / f"{sanitize_index(index)}-{day.isoformat()}.jsonl"


def date_from_filename(filename: str) -> Optional[date]:
    """Extract an embedded YYYY-MM-DD date, or None when missing or invalid."""
    match = _FILENAME_DATE.search(filename)
    if not match:
        return None
    try:
        return date.fromisoformat(match.group(1))
    except ValueError:
        return None


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


class RetentionPruner:
    """Deletes JSONL files older than the retention window, once per day."""

    def __init__(self, directory: Union[str, Path], retention_days: int, use_mtime_fallback: bool = False):
        self.directory = Path(directory)
        self.retention_days = retention_days
        self.use_mtime_fallback = use_mtime_fallback
        self._last_checked: Optional[date] = None

    @property
    def marker_path(self) -> Path:
        return self.directory / MARKER_NAME

    @property
    def lock_path(self) -> Path:
        return self.directory / (MARKER_NAME + LOCK_SUFFIX)

    def _marker_is_fresh(self, today: date) -> bool:
        try:
            return self.marker_path.read_text(encoding="utf-8").strip() == today.isoformat()
        except OSError:
            return False

    def maybe_prune(self, today: Optional[date] = None) -> bool:
        """
        Prune if it has not happened today in this directory.

        Returns:
            True if this call performed the prune, False if it was skipped
        """
        if self.retention_days <= 0:
            return False

        today = today or today_utc()
        if self._last_checked == today or self._marker_is_fresh(today):
            self._last_checked = today
            return False

        try:
            lock_file = open(self.lock_path, "a+")
        except OSError as e:
            logger.warning("retention_lock_unavailable", directory=str(self.directory), error=str(e))
            return False

        with lock_file:
            try:
                fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                # Another worker is pruning right now.
                return False

            try:
                if self._marker_is_fresh(today):
                    self._last_checked = today
                    return False

                deleted = self.prune(today)
                self.marker_path.write_text(today.isoformat(), encoding="utf-8")
                self._last_checked = today
                logger.debug("retention_pruned", directory=str(self.directory), deleted=len(deleted))
                return True
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    def prune(self, today: date) -> List[Path]:
        """Delete every *.jsonl file dated before today - (retention_days - 1)."""
        keep_from = today - timedelta(days=max(0, self.retention_days - 1))
        deleted = []

        for path in sorted(self.directory.glob("*.jsonl")):
            file_date = date_from_filename(path.name)
            if file_date is None and self.use_mtime_fallback:
                try:
                    file_date = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc).date()
                except OSError:
                    continue

            if file_date is None or file_date >= keep_from:
                continue

            try:
                path.unlink()
                deleted.append(path)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("retention_delete_failed", path=str(path), error=str(e))

        return deleted


_pruners: Dict[Tuple[Path, int, bool], RetentionPruner] = {}
_pruners_lock = Lock()


def pruner_for(directory: Union[str, Path], retention_days: int, use_mtime_fallback: bool = False) -> RetentionPruner:
    """Shared pruner for a directory, so all writers of it prune together."""
    key = (Path(directory).resolve(), retention_days, use_mtime_fallback)
    with _pruners_lock:
        if key not in _pruners:
            _pruners[key] = RetentionPruner(directory, retention_days, use_mtime_fallback)
        return _pruners[key]
