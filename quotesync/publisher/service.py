"""
Publisher coordinator.

``SyncService`` owns the manifest store, the compactor and the realtime
publications and exposes the three rebuild operations the scheduler drives.
"""

from __future__ import annotations

import logging
import os
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..archive_codec import md5_of
from ..config import DataSource, ServerConfig
from ..manifest import UPDATE_FORMAT, ManifestEntry
from .compactor import CompactionError, Compactor
from .manifest_store import ManifestStore
from .realtime import REALTIME_MARKER, RealtimePublications, realtime_uri

logger = logging.getLogger(__name__)

DEFAULT_STATUS_PATH = Path("./status.dat")
REALTIME_KIND = "real_m1"


class SyncService:
    def __init__(
        self,
        config: ServerConfig,
        *,
        store: ManifestStore,
        realtime: Optional[RealtimePublications] = None,
        compactor: Optional[Compactor] = None,
        status_path: Path = DEFAULT_STATUS_PATH,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config
        self.store = store
        self.realtime = realtime or RealtimePublications(config.grace_seconds)
        self.compactor = compactor or Compactor(config.sync_folder, clock=clock)
        self.status_path = Path(status_path)
        self._clock = clock
        self._realtime_entries: Dict[str, ManifestEntry] = {}

    @property
    def sync_root(self) -> Path:
        return self.compactor.sync_root

    @property
    def realtime_markets(self) -> List[str]:
        return sorted(self.config.realtime_folders)

    # ------------------------------------------------------------------ status
    def last_full_rebuild(self) -> Optional[datetime]:
        try:
            text = self.status_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("cannot read %s: %s", self.status_path, exc)
            return None
        try:
            return datetime.strptime(text, UPDATE_FORMAT)
        except ValueError:
            logger.warning("ignoring malformed build status %r", text)
            return None

    def full_rebuild_done_on(self, day: date) -> bool:
        last = self.last_full_rebuild()
        return last is not None and last.date() == day

    def _record_full_rebuild(self, moment: datetime) -> None:
        self.status_path.parent.mkdir(parents=True, exist_ok=True)
        self.status_path.write_text(moment.strftime(UPDATE_FORMAT), encoding="utf-8")

    # ------------------------------------------------------------------ builds
    def _compact_sources(self, sources: List[DataSource]) -> Optional[List[ManifestEntry]]:
        entries: List[ManifestEntry] = []
        for source in sources:
            try:
                entries.extend(
                    self.compactor.compact(
                        source.market,
                        source.kind,
                        source.folder,
                        code_filter=self.config.code_filter(source.market),
                        skip_dates=self.config.skip_dates,
                    )
                )
            except CompactionError as exc:
                logger.error("compaction of %s failed: %s", source.resource_type, exc)
                return None
        return entries

    def rebuild_all(self) -> bool:
        """Compact every configured source and replace the manifest."""

        started = self._clock()
        sources = [self.config.sources[name] for name in sorted(self.config.sources)]
        logger.info("full rebuild of %d sources started", len(sources))

        entries = self._compact_sources(sources)
        if entries is None:
            logger.error("full rebuild abandoned; keeping the previous manifest")
            return False

        entries.extend(self._realtime_entries[market] for market in sorted(self._realtime_entries))
        self.store.set(entries)
        self._record_full_rebuild(started)
        logger.info("full rebuild published %d entries", len(entries))
        return True

    def rebuild_family(self, market: str) -> bool:
        """Recompact every source of ``market`` and merge the result into the manifest."""

        market = market.lower()
        sources = [source for name, source in sorted(self.config.sources.items()) if source.market == market]
        if not sources:
            logger.debug("no %s sources configured", market)
            return False

        entries = self._compact_sources(sources)
        if entries is None:
            return False
        self.store.update(entries)
        logger.info("%s rebuild merged %d entries", market, len(entries))
        return True

    def restore_realtime(self) -> None:
        """
        Re-attach realtime manifest entries restored from a previous run.

        The newest ``MIN1_TODAY.<date>.<HHMM>`` archive left on disk becomes
        the live publication again and older leftovers are removed. Entries
        with nothing on disk are dropped from the manifest so ``/get`` never
        advertises a uri it cannot serve.
        """

        stale: List[ManifestEntry] = []
        refreshed: List[ManifestEntry] = []
        for entry in self.store.entries():
            if entry.kind != REALTIME_KIND:
                continue
            archives = self._published_realtime(entry.market)
            if not archives:
                logger.warning("no realtime archive on disk for %s; dropping it from the manifest", entry.uri)
                stale.append(entry)
                continue

            newest = archives[-1]
            for leftover in archives[:-1]:
                _remove_quietly(leftover)
            md5 = md5_of(newest)
            if md5 != entry.md5:
                entry = ManifestEntry(entry.data_type, entry.uri, md5, entry.updated_at)
                refreshed.append(entry)
            self.realtime.publish(entry.market, newest)
            self._realtime_entries[entry.market] = entry
            logger.info("realtime %s restored from %s", entry.market, newest)

        if stale:
            self.store.set(kept for kept in self.store.entries() if kept not in stale)
        if refreshed:
            self.store.update(refreshed)

    def _published_realtime(self, market: str) -> List[Path]:
        folder = self.sync_root / realtime_uri(market).rsplit("/", 1)[0]
        if not folder.is_dir():
            return []
        archives = [
            path
            for path in folder.glob(f"{REALTIME_MARKER}.*.*")
            if path.is_file() and not path.name.startswith(".")
        ]
        return sorted(archives, key=lambda path: path.name)

    def rebuild_realtime(self, market: str) -> Optional[Path]:
        """Compact today's rows for ``market`` and publish them under a new name."""

        market = market.lower()
        folder = self.config.realtime_folders.get(market)
        if folder is None:
            return None

        now = self._clock()
        try:
            entries = self.compactor.compact(
                market,
                REALTIME_KIND,
                folder,
                code_filter=self.config.code_filter(market),
                skip_dates=self.config.skip_dates,
            )
        except CompactionError as exc:
            logger.error("realtime rebuild for %s failed: %s", market, exc)
            return None
        if not entries:
            logger.info("realtime %s has no rows for today", market)
            return None

        built = entries[-1]
        canonical = self.sync_root / built.uri
        published = canonical.with_name(f"{canonical.name}.{now:%H%M}")
        try:
            os.replace(canonical, published)
        except OSError as exc:
            logger.error("cannot publish realtime archive %s: %s", canonical, exc)
            return None

        self.realtime.publish(market, published)
        entry = ManifestEntry(f"{market}.{REALTIME_KIND}", realtime_uri(market), built.md5, built.updated_at)
        self._realtime_entries[market] = entry
        self.store.update([entry])
        return published


def _remove_quietly(path: Path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("cannot remove stale realtime archive %s: %s", path, exc)
