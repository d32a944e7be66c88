import fcntl
import os
import time
from datetime import date, timedelta

import pytest

from retention import (
    MARKER_NAME,
    RetentionPruner,
    date_from_filename,
    index_file_path,
    pruner_for,
    sanitize_index,
    today_utc,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("My Index!", "my_index"),
        ("api_log", "api_log"),
        ("Api-Log.v2", "api-log.v2"),
        ("../etc/passwd", ".._etc_passwd"),
        ("", "log"),
        ("___", "log"),
    ],
)
def test_sanitize_index(raw, expected):
    assert sanitize_index(raw) == expected


def test_index_file_path(tmp_path):
    assert index_file_path(tmp_path, "Api Log", date(2024, 1, 2)) == tmp_path / "api_log-2024-01-02.jsonl"


def test_date_from_filename():
    assert date_from_filename("api_log-2024-01-02.jsonl") == date(2024, 1, 2)
    assert date_from_filename("api_log-2024-13-40.jsonl") is None
    assert date_from_filename("notes.jsonl") is None


def _touch_days(directory, today, days):
    for offset in range(days):
        day = today - timedelta(days=offset)
        (directory / f"api_log-{day.isoformat()}.jsonl").write_text("{}\n")


def test_prune_keeps_exactly_the_retention_window(tmp_path):
    today = date(2024, 5, 10)
    _touch_days(tmp_path, today, 5)
    (tmp_path / "notes.txt").write_text("x")

    pruner = RetentionPruner(tmp_path, retention_days=3)
    assert pruner.maybe_prune(today) is True

    remaining = sorted(path.name for path in tmp_path.glob("*.jsonl"))
    assert remaining == [
        "api_log-2024-05-08.jsonl",
        "api_log-2024-05-09.jsonl",
        "api_log-2024-05-10.jsonl",
    ]
    assert (tmp_path / "notes.txt").exists()
    assert (tmp_path / MARKER_NAME).read_text() == "2024-05-10"


def test_prune_runs_once_per_day_across_workers(tmp_path):
    first = RetentionPruner(tmp_path, retention_days=1)
    assert first.maybe_prune(date(2024, 5, 10)) is True
    assert first.maybe_prune(date(2024, 5, 10)) is False

    second = RetentionPruner(tmp_path, retention_days=1)
    assert second.maybe_prune(date(2024, 5, 10)) is False
    assert second.maybe_prune(date(2024, 5, 11)) is True


def test_worker_skips_pruning_while_another_holds_the_lock(tmp_path):
    old = tmp_path / "api_log-2020-01-01.jsonl"
    old.write_text("{}\n")
    pruner = RetentionPruner(tmp_path, retention_days=1)

    with open(pruner.lock_path, "a+") as held:
        fcntl.flock(held, fcntl.LOCK_EX | fcntl.LOCK_NB)
        assert pruner.maybe_prune(date(2024, 5, 10)) is False
        assert old.exists()
        fcntl.flock(held, fcntl.LOCK_UN)

    assert pruner.maybe_prune(date(2024, 5, 10)) is True
    assert not old.exists()


def test_disabled_retention_never_prunes(tmp_path):
    old = tmp_path / "api_log-2020-01-01.jsonl"
    old.write_text("{}\n")

    assert RetentionPruner(tmp_path, retention_days=0).maybe_prune(date(2024, 5, 10)) is False
    assert old.exists()
    assert not (tmp_path / MARKER_NAME).exists()


def test_undated_files_use_mtime_only_when_enabled(tmp_path):
    undated = tmp_path / "custom.jsonl"
    undated.write_text("{}\n")
    ten_days_ago = time.time() - 10 * 86400
    os.utime(undated, (ten_days_ago, ten_days_ago))

    RetentionPruner(tmp_path, retention_days=3).prune(today_utc())
    assert undated.exists()

    RetentionPruner(tmp_path, retention_days=3, use_mtime_fallback=True).prune(today_utc())
    assert not undated.exists()


def test_pruner_is_shared_per_directory(tmp_path):
    assert pruner_for(tmp_path, 3) is pruner_for(str(tmp_path), 3)
    assert pruner_for(tmp_path, 3) is not pruner_for(tmp_path, 3, use_mtime_fallback=True)
