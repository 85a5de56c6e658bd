import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from quotesync.client.cache_table import MAX_FAILURES, CacheTable, RollbackRequired


def test_repeated_registration_counts_failures_until_rollback(tmp_path):
    table = CacheTable()
    path = tmp_path / "a"

    table.register("SSE/DAY/DAY.20230000", path, 0)
    for _ in range(MAX_FAILURES):
        table.register("SSE/DAY/DAY.20230000", path, 0)
    assert table.get("SSE/DAY/DAY.20230000").failure_count == MAX_FAILURES
    assert not table.needs_rollback

    table.register("SSE/DAY/DAY.20230000", path, 0)
    assert table.needs_rollback


def test_rollback_deletes_exactly_the_unextracted_files(tmp_path):
    table = CacheTable()
    applied = tmp_path / "applied"
    pending = tmp_path / "pending"
    missing = tmp_path / "missing"
    applied.write_bytes(b"a")
    pending.write_bytes(b"p")

    table.register("A", applied, 0)
    table.register("B", pending, 1)
    table.register("C", missing, 2)
    table.mark_extracted("A")

    table.rollback_if_needed()
    assert pending.exists()

    table.set_rollback_flag()
    with pytest.raises(RollbackRequired):
        table.rollback_if_needed()

    assert applied.exists()
    assert not pending.exists()


def test_discard_unextracted_reports_removed_paths(tmp_path):
    table = CacheTable()
    pending = tmp_path / "pending"
    pending.write_bytes(b"p")
    table.register("B", pending, 0)

    assert table.discard_unextracted() == [pending]
    assert table.discard_unextracted() == []
    assert len(table) == 1
