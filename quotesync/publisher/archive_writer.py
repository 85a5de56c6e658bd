"""Bucketed archive output for one resource type."""

from __future__ import annotations

import io
import logging
import os
import tarfile
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from ..archive_codec import DEFAULT_COMPRESSION, ZlibWriter, md5_of, new_tar_entry
from ..manifest import UPDATE_FORMAT, ManifestEntry
from .transforms import RecordTransform

logger = logging.getLogger(__name__)


class ArchiveWriteError(RuntimeError):
    """Raised when an archive cannot be created or finalised."""


class ArchiveSink:
    """
    One open archive.

    Entries are written to a hidden temp file next to ``path`` and moved into
    place by ``close`` so a concurrent download never sees a half-built file.
    """

    def __init__(self, path: Path, uri: str, level: int = DEFAULT_COMPRESSION) -> None:
        self.path = path
        self.uri = uri
        self.entry_count = 0
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix=".part", prefix=".tmp-archive-")
        self._temp_path = temp_path
        self._raw = os.fdopen(fd, "wb")
        self._zlib = ZlibWriter(self._raw, level)
        self._tar = tarfile.open(fileobj=self._zlib, mode="w|", format=tarfile.GNU_FORMAT)

    def add_entry(self, name: str, payload: bytes) -> None:
        info = new_tar_entry(name, len(payload))
        self._tar.addfile(info, io.BytesIO(payload))
        self.entry_count += 1

    def close(self) -> None:
        try:
            self._tar.close()
            self._zlib.close()
            self._raw.close()
            os.replace(self._temp_path, self.path)
        finally:
            if os.path.exists(self._temp_path):
                os.remove(self._temp_path)

    def discard(self) -> None:
        try:
            self._tar.close()
            self._zlib.close()
        except (OSError, tarfile.TarError) as exc:
            logger.debug("ignoring close failure on %s: %s", self._temp_path, exc)
        finally:
            self._raw.close()
            if os.path.exists(self._temp_path):
                os.remove(self._temp_path)


class ArchiveWriter:
    """
    Keeps one ``ArchiveSink`` per bucket of a single resource type.

    ``grab_writer`` hands out the sink for a record date, opening it on first
    use. ``release`` closes every sink and returns the manifest entries in
    ascending uri order, which is also ascending bucket order.
    """

    def __init__(
        self,
        sync_root: Path,
        data_type: str,
        transform: RecordTransform,
        *,
        now: Optional[datetime] = None,
    ) -> None:
        self._sync_root = Path(sync_root)
        self._data_type = data_type
        self._transform = transform
        self._now = now or datetime.now()
        self._sinks: Dict[str, ArchiveSink] = {}

    def grab_writer(self, prefix: str, record_date: int, src_path: str) -> ArchiveSink:
        uri = self._transform.bucket_for(prefix, record_date, src_path)
        sink = self._sinks.get(uri)
        if sink is None:
            try:
                sink = ArchiveSink(self._sync_root / uri, uri, self._transform.compress_level)
            except OSError as exc:
                raise ArchiveWriteError(f"cannot create archive {uri}: {exc}") from exc
            self._sinks[uri] = sink
            logger.debug("opened archive %s for %s", uri, self._data_type)
        return sink

    def release(self) -> List[ManifestEntry]:
        stamp = self._now.strftime(UPDATE_FORMAT)
        entries: List[ManifestEntry] = []
        uris = sorted(self._sinks)
        for index, uri in enumerate(uris):
            sink = self._sinks[uri]
            try:
                sink.close()
                digest = md5_of(sink.path)
            except (OSError, tarfile.TarError) as exc:
                for pending in uris[index + 1:]:
                    self._sinks[pending].discard()
                self._sinks.clear()
                raise ArchiveWriteError(f"cannot finalise archive {uri}: {exc}") from exc
            entries.append(ManifestEntry(self._data_type, uri, digest, stamp))
        self._sinks.clear()
        return entries

    def abort(self) -> None:
        for sink in self._sinks.values():
            sink.discard()
        self._sinks.clear()

    def __len__(self) -> int:
        return len(self._sinks)
