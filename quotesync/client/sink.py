"""
Output files written by the extractor.

Every output file is opened through ``BufferFileTable`` so a single instance
per path exists for the whole run. New files get a header line chosen by
their path; daily files are buffered in memory and written in large chunks.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
from pathlib import Path
from typing import BinaryIO, Dict, Optional, Set

logger = logging.getLogger(__name__)

INTRADAY_HEADER = "date,time,openpx,highpx,lowpx,closepx,settlepx,amount,volume,openinterest,numtrades,voip"
DAY_HEADER = "date,openpx,highpx,lowpx,closepx,settlepx,amount,volume,openinterest,numtrades,voip"
STATIC_HEADER = (
    "code,name,lotsize,contractmult,contractunit,startdate,enddate,xqdate,deliverydate,"
    "expiredate,underlyingcode,underlyingname,optiontype,callorput,exercisepx"
)

_HEADER_MARKERS = (
    ("/MIN/", INTRADAY_HEADER),
    ("/MIN5/", INTRADAY_HEADER),
    ("/MIN60/", INTRADAY_HEADER),
    ("/MIN1_TODAY/", INTRADAY_HEADER),
    ("/DAY/", DAY_HEADER),
    ("/STATIC/", STATIC_HEADER),
)

REWRITE_MARKERS = ("HKSE", "QLFILE", "MIN1_TODAY", "STATIC.", "WEIGHT.")

HEADER_SIZE_LIMIT = 10
DAILY_FLUSH_THRESHOLD = 25 * 1024


def header_for(path: str) -> Optional[str]:
    normalized = path.replace("\\", "/")
    for marker, header in _HEADER_MARKERS:
        if marker in normalized:
            return header
    return None


def opens_truncated(path: str) -> bool:
    """Files matching a rewrite marker are replaced on every open instead of appended to."""

    return any(marker in path for marker in REWRITE_MARKERS)


class BufferFile:
    def __init__(self, market: str, kind: str, path: Path, header: Optional[str] = None) -> None:
        self.market = market
        self.kind = kind
        self.path = Path(path)
        self.header = header
        self._buffer = bytearray()
        self._handle: Optional[BinaryIO] = None

    @property
    def buffered(self) -> bool:
        return self.kind == "d1"

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def open(self, truncate: bool) -> None:
        self.close()
        if truncate:
            self._buffer.clear()
        self._handle = open(self.path, "wb" if truncate else "ab")
        size = os.fstat(self._handle.fileno()).st_size
        if self.header and size < HEADER_SIZE_LIMIT and not self._buffer:
            self._handle.write(f"{self.header}\n".encode("ascii"))

    def write_from(self, stream: BinaryIO) -> None:
        if self._handle is None:
            raise ValueError(f"{self.path} is not open")
        if not self.buffered:
            shutil.copyfileobj(stream, self._handle)
            return
        self._buffer += stream.read()
        if len(self._buffer) >= DAILY_FLUSH_THRESHOLD:
            self._handle.write(self._buffer)
            self._buffer.clear()

    def flush(self) -> None:
        if not self._buffer:
            return
        if self._handle is not None:
            self._handle.write(self._buffer)
        else:
            with open(self.path, "ab") as handle:
                handle.write(self._buffer)
        self._buffer.clear()

    def close(self) -> None:
        if self._handle is None:
            return
        self._handle.close()
        self._handle = None


class BufferFileTable:
    """Process-wide map of output files for one client session."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._files: Dict[Path, BufferFile] = {}
        self._folders: Set[Path] = set()

    def open(self, market: str, kind: str, path: Path, truncate: bool, header: Optional[str] = None) -> BufferFile:
        path = Path(path)
        with self._lock:
            folder = path.parent
            if folder not in self._folders:
                folder.mkdir(parents=True, exist_ok=True)
                self._folders.add(folder)
            buffer_file = self._files.get(path)
            if buffer_file is None:
                buffer_file = BufferFile(market, kind, path, header)
                self._files[path] = buffer_file
        buffer_file.open(truncate)
        return buffer_file

    def flush_all(self) -> None:
        with self._lock:
            for buffer_file in self._files.values():
                buffer_file.flush()
                buffer_file.close()
        logger.debug("flushed %d output files", len(self._files))

    def __len__(self) -> int:
        with self._lock:
            return len(self._files)
