"""
Archive format shared by the publisher and the client.

An archive is a tar stream wrapped in a single zlib stream (RFC 1950: a
two-byte header, deflate data, an Adler-32 trailer; no gzip framing). Every
inner entry carries the same modification time, ``ARCHIVE_MTIME``, so two
builds over identical content produce byte-identical files and therefore
identical MD5 digests in the manifest.

The zlib wrappers below expose just enough of the file protocol for
``tarfile``'s streaming modes (``w|`` and ``r|``), which keeps memory flat
regardless of archive size.
"""

from __future__ import annotations

import hashlib
import tarfile
import zlib
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Tuple

# 2018-01-02T21:06:09 in local time.
ARCHIVE_MTIME = int(datetime(2018, 1, 2, 21, 6, 9).timestamp())

DEFAULT_COMPRESSION = zlib.Z_DEFAULT_COMPRESSION
BEST_SPEED = zlib.Z_BEST_SPEED

CHUNK_SIZE = 64 * 1024


class ZlibWriter:
    """Write-only file object that zlib-compresses into ``raw``."""

    def __init__(self, raw: BinaryIO, level: int = DEFAULT_COMPRESSION) -> None:
        self._raw = raw
        self._compressor = zlib.compressobj(level)
        self.closed = False

    def write(self, data: bytes) -> int:
        self._raw.write(self._compressor.compress(data))
        return len(data)

    def close(self) -> None:
        if self.closed:
            return
        self._raw.write(self._compressor.flush())
        self.closed = True


class ZlibReader:
    """Read-only file object that inflates a zlib stream from ``raw``."""

    def __init__(self, raw: BinaryIO) -> None:
        self._raw = raw
        self._decompressor = zlib.decompressobj()
        self._buffer = bytearray()
        self._eof = False

    def read(self, size: int = -1) -> bytes:
        while not self._eof and (size < 0 or len(self._buffer) < size):
            chunk = self._raw.read(CHUNK_SIZE)
            if chunk:
                self._buffer += self._decompressor.decompress(chunk)
                continue
            self._buffer += self._decompressor.flush()
            self._eof = True
            if not self._decompressor.eof:
                raise zlib.error("truncated zlib stream")

        if size < 0 or size >= len(self._buffer):
            data = bytes(self._buffer)
            self._buffer.clear()
        else:
            data = bytes(self._buffer[:size])
            del self._buffer[:size]
        return data


def new_tar_entry(name: str, size: int, mode: int = 0o644) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.size = size
    info.mode = mode
    info.mtime = ARCHIVE_MTIME
    return info


def iter_archive(path: Path) -> Iterator[Tuple[tarfile.TarInfo, Optional[BinaryIO]]]:
    """
    Yield ``(member, stream)`` pairs in archive order.

    ``stream`` is ``None`` for anything other than a regular file and is only
    readable until the next pair is requested. Corrupt input surfaces as
    ``zlib.error`` or ``tarfile.TarError``.
    """

    with open(path, "rb") as raw:
        with tarfile.open(fileobj=ZlibReader(raw), mode="r|") as archive:
            for member in archive:
                yield member, archive.extractfile(member) if member.isfile() else None


def md5_of(path: Path) -> str:
    digest = hashlib.md5()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()
