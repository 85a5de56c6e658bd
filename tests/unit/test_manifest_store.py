import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from quotesync.manifest import ManifestEntry, ManifestParseError, parse_manifest, split_categories
from quotesync.publisher.manifest_store import ManifestStore


def entry(data_type, uri, md5="0" * 32, update="2024-04-01 18:00:00"):
    return ManifestEntry(data_type, uri, md5, update)


BASELINE = [
    entry("sse.d1", "SSE/DAY/DAY.20230000"),
    entry("sse.d1", "SSE/DAY/DAY.20240328"),
    entry("sse.m5", "SSE/MIN5/MIN5.20240300"),
]


def test_set_twice_is_byte_identical(tmp_path):
    store = ManifestStore(tmp_path / "restable.dat")

    store.set(BASELINE)
    first_file = (tmp_path / "restable.dat").read_bytes()
    first_snapshot = store.snapshot()
    store.set(BASELINE)

    assert (tmp_path / "restable.dat").read_bytes() == first_file
    assert store.snapshot() == first_snapshot
    assert parse_manifest(first_snapshot) == BASELINE


def test_update_replaces_in_place_and_appends_new_keys(tmp_path):
    store = ManifestStore(tmp_path / "restable.dat")
    store.set(BASELINE)

    changed = entry("sse.d1", "SSE/DAY/DAY.20240328", md5="f" * 32)
    added = entry("sse.real_m1", "SSE/MIN1_TODAY/MIN1_TODAY")
    store.update([changed, added])

    assert store.entries() == [BASELINE[0], changed, BASELINE[2], added]
    assert parse_manifest((tmp_path / "restable.dat").read_bytes()) == store.entries()


def test_set_collapses_duplicate_keys(tmp_path):
    store = ManifestStore(tmp_path / "restable.dat")
    newer = entry("sse.d1", "SSE/DAY/DAY.20230000", md5="a" * 32)

    store.set(BASELINE + [newer])

    assert store.entries() == [newer, BASELINE[1], BASELINE[2]]


def test_load_restores_previous_manifest(tmp_path):
    ManifestStore(tmp_path / "restable.dat").set(BASELINE)

    restored = ManifestStore(tmp_path / "restable.dat")
    assert restored.load()
    assert restored.entries() == BASELINE


def test_load_ignores_garbage(tmp_path):
    (tmp_path / "restable.dat").write_bytes(b"not xml")
    store = ManifestStore(tmp_path / "restable.dat")

    assert not store.load()
    assert store.entries() == []
    assert parse_manifest(store.snapshot()) == []


def test_parse_manifest_rejects_authentication_failure():
    body = b'<authenticate><result status="failure" desc="login required"/></authenticate>'
    with pytest.raises(ManifestParseError, match="login required"):
        parse_manifest(body)


def test_split_categories_groups_contiguous_runs():
    entries = BASELINE + [entry("sse.d1", "SSE/DAY/DAY.20240329")]

    categories = split_categories(entries)

    assert [(data_type, len(items)) for data_type, items in categories] == [("sse.d1", 2), ("sse.m5", 1), ("sse.d1", 1)]
