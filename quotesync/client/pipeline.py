"""
Per-category download and ordered extraction.

Downloads run on short-lived threads, at most ``permits`` at a time. A
finished download waits until every earlier entry of its category has been
extracted, then hands its outcome to the category's extractor loop, so
archives are always applied in manifest order while the next few are
already being fetched.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..manifest import ManifestEntry
from .cache_table import CacheTable
from .combination import CombinationJudge
from .comparison import CacheComparison
from .extractor import ArchiveExtractor, ExtractionError
from .progress import ProgressReporter
from .transport import SyncTransportClient, TransportError

logger = logging.getLogger(__name__)

DEFAULT_PERMITS = 2
DEFAULT_QUEUE_DEPTH = 5
DEFAULT_RETRY_TIMES = 3


class TaskStatus(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    COMPLETED = "completed"
    IGNORE = "ignore"
    ERROR = "error"


@dataclass
class DownloadOutcome:
    seq_no: int
    entry: ManifestEntry
    local_path: Path
    status: TaskStatus = TaskStatus.INITIALIZING


@dataclass
class CategoryResult:
    data_type: str
    total: int
    skipped: int = 0
    extracted: int = 0
    ignored: int = 0
    download_only: int = 0
    failed: bool = False

    @property
    def handled(self) -> int:
        return self.skipped + self.extracted + self.ignored + self.download_only


class CategoryPipeline:
    def __init__(
        self,
        data_type: str,
        entries: Sequence[ManifestEntry],
        *,
        transport: SyncTransportClient,
        cache: CacheTable,
        comparison: CacheComparison,
        judge: CombinationJudge,
        extractor: ArchiveExtractor,
        abort: threading.Event,
        progress: Optional[ProgressReporter] = None,
        permits: int = DEFAULT_PERMITS,
        queue_depth: int = DEFAULT_QUEUE_DEPTH,
        retry_times: int = DEFAULT_RETRY_TIMES,
        retry_delay: float = 1.0,
        poll_interval: float = 1.0,
    ) -> None:
        self.data_type = data_type
        self.entries = list(entries)
        self.transport = transport
        self.cache = cache
        self.comparison = comparison
        self.judge = judge
        self.extractor = extractor
        self.abort = abort
        self.progress = progress or ProgressReporter()
        self.retry_times = max(1, retry_times)
        self.retry_delay = retry_delay
        self.poll_interval = poll_interval

        self._permits = threading.BoundedSemaphore(permits)
        self._handoff: "queue.Queue[DownloadOutcome]" = queue.Queue(maxsize=queue_depth)
        self._turn = threading.Condition()
        self._last_extracted = -1
        self._workers: List[threading.Thread] = []
        self._workers_lock = threading.Lock()

    # ------------------------------------------------------------------ run
    def run(self) -> CategoryResult:
        result = CategoryResult(self.data_type, len(self.entries))
        start, cleared = self.comparison.resume_index(self.entries)
        if cleared:
            self.judge.reset(self.data_type)

        result.skipped = start
        self.progress.advance(start)
        if start >= len(self.entries):
            logger.info("%s: %d archives already current", self.data_type, start)
            return result

        self._log("category_started", None, {"resume_at": start, "total": len(self.entries), "cleared": cleared})
        self._last_extracted = start - 1
        dispatcher = threading.Thread(target=self._dispatch, args=(start,), name=f"dispatch-{self.data_type}", daemon=True)
        dispatcher.start()
        try:
            self._extract_loop(start, result)
        except BaseException:
            self.abort.set()
            raise
        finally:
            dispatcher.join()
            self._join_workers()
        return result

    # ------------------------------------------------------------------ downloads
    def _dispatch(self, start: int) -> None:
        for seq_no in range(start, len(self.entries)):
            while not self._permits.acquire(timeout=self.poll_interval):
                if self.abort.is_set():
                    return
            if self.abort.is_set():
                self._permits.release()
                return
            worker = threading.Thread(
                target=self._download_task,
                args=(seq_no, self.entries[seq_no]),
                name=f"get-{self.data_type}-{seq_no}",
                daemon=True,
            )
            with self._workers_lock:
                self._workers.append(worker)
            worker.start()

    def _download_task(self, seq_no: int, entry: ManifestEntry) -> None:
        try:
            try:
                outcome = self._fetch(seq_no, entry)
            except Exception:
                logger.exception("%s: download task for %s crashed", self.data_type, entry.uri)
                outcome = DownloadOutcome(seq_no, entry, Path(entry.uri), TaskStatus.ERROR)
            if self._wait_turn(seq_no):
                self._hand_off(outcome)
        finally:
            self._permits.release()

    def _fetch(self, seq_no: int, entry: ManifestEntry) -> DownloadOutcome:
        local_path = self.comparison.local_path(entry.uri)
        outcome = DownloadOutcome(seq_no, entry, local_path, TaskStatus.ACTIVE)

        if self.comparison.is_identical(entry):
            self.cache.register(entry.uri, local_path, seq_no)
            outcome.status = TaskStatus.IGNORE
            return outcome

        for attempt in range(1, self.retry_times + 1):
            if self.abort.is_set():
                break
            try:
                self.transport.download(entry.uri, local_path)
            except (TransportError, OSError) as exc:
                self.cache.register(entry.uri, local_path, seq_no)
                logger.warning(
                    "%s: download of %s failed (attempt %d/%d): %s",
                    self.data_type,
                    entry.uri,
                    attempt,
                    self.retry_times,
                    exc,
                )
                if self.cache.needs_rollback or attempt == self.retry_times:
                    break
                self.abort.wait(self.retry_delay)
                continue

            self.cache.register(entry.uri, local_path, seq_no)
            if self.abort.is_set():
                _remove_quietly(local_path)
                break
            outcome.status = TaskStatus.COMPLETED
            return outcome

        outcome.status = TaskStatus.ERROR
        return outcome

    def _wait_turn(self, seq_no: int) -> bool:
        with self._turn:
            while self._last_extracted + 1 < seq_no:
                if self.abort.is_set():
                    return False
                self._turn.wait(self.poll_interval)
        return not self.abort.is_set()

    def _hand_off(self, outcome: DownloadOutcome) -> None:
        while not self.abort.is_set():
            try:
                self._handoff.put(outcome, timeout=self.poll_interval)
                return
            except queue.Full:
                continue

    def _join_workers(self) -> None:
        with self._workers_lock:
            workers = list(self._workers)
        for worker in workers:
            worker.join()

    # ------------------------------------------------------------------ extraction
    def _extract_loop(self, start: int, result: CategoryResult) -> None:
        expected = start
        while expected < len(self.entries):
            if self.abort.is_set():
                return
            try:
                outcome = self._handoff.get(timeout=self.poll_interval)
            except queue.Empty:
                continue

            try:
                applied = self._apply(outcome, result)
            except Exception:
                logger.exception("%s: applying %s crashed", self.data_type, outcome.entry.uri)
                applied = False
            if not applied:
                result.failed = True
                self.cache.set_rollback_flag()
                self.abort.set()
                return

            with self._turn:
                self._last_extracted = outcome.seq_no
                self._turn.notify_all()
            expected += 1
            self.progress.advance(1)

    def _apply(self, outcome: DownloadOutcome, result: CategoryResult) -> bool:
        entry = outcome.entry

        if outcome.status is TaskStatus.IGNORE:
            self.cache.mark_extracted(entry.uri)
            result.ignored += 1
            return True

        if outcome.status is not TaskStatus.COMPLETED:
            logger.error("%s: giving up on %s", self.data_type, entry.uri)
            return False

        if self.judge.is_download_only(entry):
            self._log("download_only", entry.uri, {"seq_no": outcome.seq_no})
            self.cache.mark_extracted(entry.uri)
            self.judge.record(entry)
            result.download_only += 1
            return True

        try:
            self.extractor.unzip(outcome.local_path, entry.uri, entry.data_type)
        except ExtractionError as exc:
            logger.error("%s: %s", self.data_type, exc)
            _remove_quietly(outcome.local_path)
            return False

        self.cache.mark_extracted(entry.uri)
        self.judge.record(entry)
        result.extracted += 1
        self._log("extracted", entry.uri, {"seq_no": outcome.seq_no, "update": entry.updated_at})
        return True

    def _log(self, event_type: str, uri: Optional[str], extra: Dict[str, object]) -> None:
        payload = {
            "event": event_type,
            "phase": "sync",
            "type": self.data_type,
        }
        if uri:
            payload["uri"] = uri
        payload.update(extra)
        logger.info(payload)


def _remove_quietly(path: Path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
