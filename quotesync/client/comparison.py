"""Compares manifest entries with the local cache to decide where a category resumes."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path, PurePosixPath
from typing import Sequence, Tuple

from ..archive_codec import md5_of
from ..manifest import ManifestEntry

logger = logging.getLogger(__name__)


class CacheComparison:
    def __init__(self, cache_root: Path, target_root: Path) -> None:
        self.cache_root = Path(cache_root)
        self.target_root = Path(target_root)

    def local_path(self, uri: str) -> Path:
        parts = [part for part in PurePosixPath(uri.replace("\\", "/")).parts if part not in ("/", "")]
        if not parts or ".." in parts:
            raise ValueError(f"refusing unsafe uri {uri!r}")
        return self.cache_root.joinpath(*parts)

    def is_identical(self, entry: ManifestEntry) -> bool:
        """An entry is unchanged when its cached archive exists with the same MD5."""

        path = self.local_path(entry.uri)
        if not path.is_file():
            return False
        return md5_of(path) == entry.md5.lower()

    def resume_index(self, entries: Sequence[ManifestEntry]) -> Tuple[int, bool]:
        """
        Index of the first entry that must be fetched, plus whether the category was wiped.

        The identical prefix is skipped. If an identical entry shows up after
        a difference, the local history no longer matches the server's order;
        the category's cache and data folders are removed and the whole
        category is fetched again from index 0.
        """

        first_difference = None
        for index, entry in enumerate(entries):
            if self.is_identical(entry):
                if first_difference is not None:
                    logger.warning(
                        "%s: cached history is out of order at %s, re-fetching the category",
                        entry.data_type,
                        entry.uri,
                    )
                    self.clear_category(entry)
                    return 0, True
                continue
            if first_difference is None:
                first_difference = index

        if first_difference is None:
            return len(entries), False
        return first_difference, False

    def clear_category(self, entry: ManifestEntry) -> None:
        uri_parts = self.local_path(entry.uri).relative_to(self.cache_root).parts
        cache_folder = self.cache_root.joinpath(*uri_parts[:-1])
        data_folder = self.target_root.joinpath(*uri_parts[:2]) if len(uri_parts) > 2 else None

        for folder in (cache_folder, data_folder):
            if folder is None or folder == self.cache_root or not folder.exists():
                continue
            shutil.rmtree(folder)
            logger.info("removed %s", folder)
