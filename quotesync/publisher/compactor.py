"""
Walks a source folder and compacts it into bucketed archives.

Each regular file that passes the transform's whitelist is read whole and
cut into single-date slices. Slices are appended as tar entries to the
archive for their bucket; the entry name is the file's path relative to the
source folder's parent with the top folder renamed to the kind folder.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import AbstractSet, Callable, Dict, Iterator, List, Optional, Tuple

from ..config import DEFAULT_SKIP_DATES, CodeRangeFilter
from ..manifest import ManifestEntry
from .archive_writer import ArchiveWriteError, ArchiveWriter
from .transforms import RecordTransform, archive_prefix, clock_to_int, create_transform

logger = logging.getLogger(__name__)

MIN_RECORD_DATE = 19901010
MAX_RECORD_DATE = 20301010

# Today's k-line rows are held back while the exchange day is still open.
HOLD_BACK_START = 70101
HOLD_BACK_END = 220010


class CompactionError(RuntimeError):
    """Raised when a source folder cannot be compacted."""


def in_hold_back_hours(now: datetime) -> bool:
    return HOLD_BACK_START <= clock_to_int(now) < HOLD_BACK_END


def walk_source(folder: Path) -> Iterator[Tuple[Path, str]]:
    """Yield ``(path, relative_name)`` depth-first in name order; names start with the folder's own name."""

    folder = Path(folder)
    for current, dirs, files in os.walk(folder):
        dirs.sort()
        relative_dir = Path(current).relative_to(folder)
        for name in sorted(files):
            relative = (Path(folder.name) / relative_dir / name).as_posix()
            yield Path(current) / name, relative


class Compactor:
    """Turns source folders into archives under ``sync_root``."""

    def __init__(
        self,
        sync_root: Path,
        *,
        clock: Callable[[], datetime] = datetime.now,
        event_logger: Optional[logging.Logger] = None,
    ) -> None:
        self.sync_root = Path(sync_root)
        self._clock = clock
        self._logger = event_logger or logger

    def compact(
        self,
        market: str,
        kind: str,
        source_folder: Path,
        *,
        code_filter: Optional[CodeRangeFilter] = None,
        skip_dates: AbstractSet[int] = DEFAULT_SKIP_DATES,
    ) -> List[ManifestEntry]:
        """
        Compact ``source_folder`` as resource type ``market.kind``.

        Returns the manifest entries of the archives written, in apply order.
        Raises ``CompactionError`` when the folder is missing or an archive
        cannot be written; partially written archives are discarded.
        """

        now = self._clock()
        data_type = f"{market}.{kind}"
        source_folder = Path(source_folder)
        if not source_folder.is_dir():
            raise CompactionError(f"{data_type}: source folder {source_folder} does not exist")

        try:
            transform = create_transform(market, kind, now=now, code_filter=code_filter, skip_dates=skip_dates)
        except ValueError as exc:
            raise CompactionError(str(exc)) from exc

        prefix = archive_prefix(market, transform)
        writer = ArchiveWriter(self.sync_root, data_type, transform, now=now)
        files = slices = 0

        self._log("compaction_started", data_type, {"source": str(source_folder)})
        try:
            for path, relative in walk_source(source_folder):
                if not transform.in_whitelist(str(path)):
                    continue
                written = self._compact_file(transform, writer, prefix, path, relative, now)
                if written:
                    files += 1
                    slices += written
            entries = writer.release()
        except (OSError, ArchiveWriteError) as exc:
            writer.abort()
            self._log("compaction_failed", data_type, {"error": str(exc)})
            raise CompactionError(f"{data_type}: {exc}") from exc

        self._log("compacted", data_type, {"files": files, "slices": slices, "archives": len(entries)})
        return entries

    def _compact_file(
        self,
        transform: RecordTransform,
        writer: ArchiveWriter,
        prefix: str,
        path: Path,
        relative: str,
        now: datetime,
    ) -> int:
        data = path.read_bytes()
        entry_name = transform.rewrite_entry_name(relative)
        hold_back = transform.holds_back_today and in_hold_back_hours(now)
        offset = written = 0

        while offset < len(data):
            piece = transform.load_from(data, offset)
            if piece.consumed <= 0:
                break
            offset += piece.consumed
            if not piece.payload:
                continue
            if not MIN_RECORD_DATE <= piece.record_date <= MAX_RECORD_DATE:
                continue
            if hold_back and piece.record_date == transform.today:
                continue

            try:
                sink = writer.grab_writer(prefix, piece.record_date, str(path))
            except ValueError as exc:
                logger.warning("skipping rows dated %d in %s: no archive bucket (%s)", piece.record_date, path, exc)
                continue
            sink.add_entry(entry_name, piece.payload)
            written += 1

        return written

    def _log(self, event_type: str, data_type: str, extra: Dict[str, object]) -> None:
        payload = {
            "event": event_type,
            "phase": "compaction",
            "type": data_type,
        }
        payload.update(extra)
        self._logger.info(payload)
