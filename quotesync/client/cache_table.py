"""Bookkeeping for archives downloaded during one sync run."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

logger = logging.getLogger(__name__)

MAX_FAILURES = 9


class RollbackRequired(RuntimeError):
    """Raised after a rollback removed every archive that was not applied."""


@dataclass
class CacheEntry:
    uri: str
    local_path: Path
    seq_no: int
    is_extracted: bool = False
    failure_count: int = 0


class CacheTable:
    """
    Thread-safe record of this run's downloads.

    Registering the same uri again counts as a failed attempt; once an
    entry has failed more than ``MAX_FAILURES`` times the run is flagged
    for rollback.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}
        self._rollback = False

    def register(self, uri: str, local_path: Path, seq_no: int) -> CacheEntry:
        with self._lock:
            entry = self._entries.get(uri)
            if entry is None:
                entry = CacheEntry(uri, Path(local_path), seq_no)
                self._entries[uri] = entry
                return entry

            entry.failure_count += 1
            entry.local_path = Path(local_path)
            if entry.failure_count > MAX_FAILURES:
                logger.error("%s failed %d times, rollback required", uri, entry.failure_count)
                self._rollback = True
            return entry

    def mark_extracted(self, uri: str) -> None:
        with self._lock:
            entry = self._entries.get(uri)
            if entry is not None:
                entry.is_extracted = True

    def set_rollback_flag(self) -> None:
        with self._lock:
            self._rollback = True

    @property
    def needs_rollback(self) -> bool:
        with self._lock:
            return self._rollback

    def get(self, uri: str) -> CacheEntry:
        with self._lock:
            return self._entries[uri]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def discard_unextracted(self) -> List[Path]:
        """Delete every cached archive that was not applied; returns the removed paths."""

        removed: List[Path] = []
        with self._lock:
            for entry in self._entries.values():
                if entry.is_extracted:
                    continue
                try:
                    os.remove(entry.local_path)
                    removed.append(entry.local_path)
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    logger.error("cannot remove cached archive %s: %s", entry.local_path, exc)
        if removed:
            logger.warning("discarded %d unapplied cached archives", len(removed))
        return removed

    def rollback_if_needed(self) -> None:
        if not self.needs_rollback:
            return
        removed = self.discard_unextracted()
        raise RollbackRequired(f"rollback removed {len(removed)} cached archives")
