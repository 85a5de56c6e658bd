"""Applies a downloaded archive to the client's data tree."""

from __future__ import annotations

import logging
import posixpath
import re
import tarfile
import zlib
from pathlib import Path, PurePosixPath
from typing import Optional

from ..archive_codec import iter_archive
from .sink import BufferFile, BufferFileTable, header_for, opens_truncated

logger = logging.getLogger(__name__)

STATIC_SNAPSHOT = re.compile(r"STATIC20\d{6}")


class ExtractionError(RuntimeError):
    """Raised when an archive is corrupt or its entries cannot be written."""


class ArchiveExtractor:
    def __init__(self, target_root: Path, sinks: BufferFileTable) -> None:
        self.target_root = Path(target_root)
        self.sinks = sinks

    @staticmethod
    def market_folder(uri: str) -> str:
        """``SSE/DAY/DAY.20230000`` -> ``SSE``; entry names are relative to it."""

        parent = PurePosixPath(uri.replace("\\", "/")).parent.parent
        return "" if str(parent) == "." else parent.as_posix()

    def unzip(self, archive_path: Path, uri: str, data_type: str) -> int:
        """Append every entry of ``archive_path`` to its output file; returns the entry count."""

        market, _, kind = data_type.lower().partition(".")
        folder = self.market_folder(uri)
        current_target = None
        sink: Optional[BufferFile] = None
        written = 0

        try:
            for member, stream in iter_archive(archive_path):
                if stream is None:
                    continue
                name = STATIC_SNAPSHOT.sub("STATIC", member.name.replace("\\", "/").lstrip("/"))
                if "." not in posixpath.basename(name):
                    continue
                if ".." in name.split("/"):
                    logger.warning("skipping unsafe entry %s in %s", member.name, uri)
                    continue

                relative = posixpath.join(folder, name) if folder else name
                target = self.target_root / relative
                if target != current_target:
                    if sink is not None:
                        sink.close()
                    check_path = "/" + relative
                    sink = self.sinks.open(market, kind, target, opens_truncated(check_path), header_for(check_path))
                    current_target = target
                sink.write_from(stream)
                written += 1
        except (zlib.error, tarfile.TarError, EOFError) as exc:
            raise ExtractionError(f"{uri} is not a valid archive: {exc}") from exc
        except OSError as exc:
            raise ExtractionError(f"cannot apply {uri}: {exc}") from exc
        finally:
            if sink is not None:
                sink.close()

        logger.debug("applied %d entries from %s", written, uri)
        return written
