"""Authoritative manifest kept in memory and mirrored to ``restable.dat``."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from ..manifest import ManifestEntry, ManifestParseError, manifest_to_xml, parse_manifest

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST_PATH = Path("./restable.dat")


class ManifestStore:
    """
    Holds the current manifest and its serialized XML snapshot.

    ``set`` replaces everything, ``update`` merges by ``(type, uri)``. Readers
    always get a complete snapshot: the XML is rendered and written to disk
    before the in-memory reference is swapped.
    """

    def __init__(self, path: Path = DEFAULT_MANIFEST_PATH) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._entries: Tuple[ManifestEntry, ...] = ()
        self._snapshot = manifest_to_xml(())

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> bool:
        """Restore the manifest saved by a previous run, if any."""

        if not self._path.exists():
            return False
        try:
            entries = parse_manifest(self._path.read_bytes())
        except (OSError, ManifestParseError) as exc:
            logger.warning("ignoring unreadable manifest %s: %s", self._path, exc)
            return False
        with self._lock:
            self._entries = tuple(_deduplicate(entries))
            self._snapshot = manifest_to_xml(self._entries)
        logger.info("restored %d manifest entries from %s", len(entries), self._path)
        return True

    def set(self, entries: Iterable[ManifestEntry]) -> None:
        with self._lock:
            self._publish(_deduplicate(entries))

    def update(self, delta: Iterable[ManifestEntry]) -> None:
        with self._lock:
            merged = list(self._entries)
            positions: Dict[Tuple[str, str], int] = {entry.key: index for index, entry in enumerate(merged)}
            for entry in delta:
                index = positions.get(entry.key)
                if index is None:
                    positions[entry.key] = len(merged)
                    merged.append(entry)
                else:
                    merged[index] = entry
            self._publish(merged)

    def entries(self) -> List[ManifestEntry]:
        with self._lock:
            return list(self._entries)

    def snapshot(self) -> bytes:
        with self._lock:
            return self._snapshot

    def _publish(self, entries: List[ManifestEntry]) -> None:
        payload = manifest_to_xml(entries)
        self._write_atomically(payload)
        self._entries = tuple(entries)
        self._snapshot = payload
        logger.debug("manifest now holds %d entries", len(entries))

    def _write_atomically(self, payload: bytes) -> None:
        directory = self._path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=directory, suffix=".dat", prefix=".tmp-restable-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
            os.replace(temp_path, self._path)
        finally:
            if os.path.exists(temp_path):
                os.remove(temp_path)


def _deduplicate(entries: Iterable[ManifestEntry]) -> List[ManifestEntry]:
    """Keep the first position of each ``(type, uri)`` with the last value seen."""

    ordered: Dict[Tuple[str, str], ManifestEntry] = {}
    for entry in entries:
        ordered[entry.key] = entry
    return list(ordered.values())
