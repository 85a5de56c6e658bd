import sys
from datetime import datetime
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from quotesync.archive_codec import ARCHIVE_MTIME, iter_archive, md5_of
from quotesync.publisher.archive_writer import ArchiveWriter
from quotesync.publisher.transforms import archive_prefix, create_transform


NOW = datetime(2024, 4, 1, 18, 0, 0)


def build(sync_root):
    transform = create_transform("sse", "m5", now=NOW)
    writer = ArchiveWriter(sync_root, "sse.m5", transform, now=NOW)
    prefix = archive_prefix("sse", transform)

    writer.grab_writer(prefix, 20240310, "a").add_entry("MIN5/MIN600000_2024.csv", b"20240310,093500\n")
    writer.grab_writer(prefix, 20240328, "a").add_entry("MIN5/MIN600000_2024.csv", b"20240328,093500\n")
    writer.grab_writer(prefix, 20240311, "b").add_entry("MIN5/MIN600001_2024.csv", b"20240311,093500\n")
    return writer


def test_release_returns_entries_in_bucket_order(tmp_path):
    writer = build(tmp_path)
    assert len(writer) == 2

    entries = writer.release()

    assert [entry.uri for entry in entries] == ["SSE/MIN5/MIN5.20240300", "SSE/MIN5/MIN5.20240328"]
    assert all(entry.data_type == "sse.m5" for entry in entries)
    assert all(entry.updated_at == "2024-04-01 18:00:00" for entry in entries)
    for entry in entries:
        assert md5_of(tmp_path / entry.uri) == entry.md5
    assert len(writer) == 0


def test_archive_entries_carry_fixed_mtime_and_mode(tmp_path):
    build(tmp_path).release()

    members = [(member, stream.read()) for member, stream in iter_archive(tmp_path / "SSE/MIN5/MIN5.20240300")]

    assert [member.name for member, _ in members] == ["MIN5/MIN600000_2024.csv", "MIN5/MIN600001_2024.csv"]
    assert [body for _, body in members] == [b"20240310,093500\n", b"20240311,093500\n"]
    assert all(member.mtime == ARCHIVE_MTIME for member, _ in members)
    assert all(member.mode == 0o644 for member, _ in members)


def test_identical_content_gives_identical_digests(tmp_path):
    first = build(tmp_path / "one").release()
    second = build(tmp_path / "two").release()

    assert [entry.md5 for entry in first] == [entry.md5 for entry in second]


def test_abort_leaves_no_files_behind(tmp_path):
    writer = build(tmp_path)
    writer.abort()

    assert list((tmp_path / "SSE" / "MIN5").iterdir()) == []
