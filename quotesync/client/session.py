"""
One client sync run: login, list, fetch and apply every category, then exit.

Exit codes:

* ``0``: everything applied
* ``1``: login or manifest listing failed, nothing was touched
* ``100``: stopped through the stop-flag file
* ``-100``: rolled back after a download, extraction or TTL failure
"""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..manifest import ManifestParseError, split_categories
from .cache_table import CacheTable, RollbackRequired
from .combination import CombinationJudge
from .comparison import CacheComparison
from .extractor import ArchiveExtractor
from .pipeline import DEFAULT_PERMITS, DEFAULT_QUEUE_DEPTH, DEFAULT_RETRY_TIMES, CategoryPipeline, CategoryResult
from .progress import ProgressReporter
from .sink import BufferFileTable
from .transport import AuthenticationError, SyncTransportClient, TransportError

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_STOPPED = 100
EXIT_ROLLBACK = -100

DEFAULT_TTL_SECONDS = 6 * 3600


class StopRequested(RuntimeError):
    """Raised when the stop-flag file appeared during a run."""


class SyncSession:
    def __init__(
        self,
        transport: SyncTransportClient,
        *,
        account: str,
        password: str,
        target_root: Path,
        cache_root: Path,
        progress_file: Optional[Path] = None,
        stop_flag_file: Optional[Path] = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        permits: int = DEFAULT_PERMITS,
        queue_depth: int = DEFAULT_QUEUE_DEPTH,
        retry_times: int = DEFAULT_RETRY_TIMES,
        retry_delay: float = 1.0,
        poll_interval: float = 1.0,
        judge: Optional[CombinationJudge] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.account = account
        self.password = password
        self.target_root = Path(target_root)
        self.cache_root = Path(cache_root)
        self.stop_flag_file = Path(stop_flag_file) if stop_flag_file else None
        self.ttl_seconds = ttl_seconds
        self.poll_interval = poll_interval
        self._monotonic = monotonic
        self._pipeline_options = dict(
            permits=permits,
            queue_depth=queue_depth,
            retry_times=retry_times,
            retry_delay=retry_delay,
            poll_interval=poll_interval,
        )

        self.cache = CacheTable()
        self.sinks = BufferFileTable()
        self.progress = ProgressReporter(progress_file)
        self.comparison = CacheComparison(self.cache_root, self.target_root)
        self.judge = judge or CombinationJudge(self.cache_root)
        self.extractor = ArchiveExtractor(self.target_root, self.sinks)
        self.abort = threading.Event()

    def run(self) -> int:
        """Run one sync and map the outcome to a process exit code."""

        try:
            results = self.sync()
        except AuthenticationError as exc:
            logger.error("login failed: %s", exc)
            return EXIT_FAILURE
        except (TransportError, ManifestParseError) as exc:
            logger.error("cannot fetch the manifest: %s", exc)
            return EXIT_FAILURE
        except StopRequested as exc:
            logger.warning("%s", exc)
            return EXIT_STOPPED
        except RollbackRequired as exc:
            logger.error("%s", exc)
            return EXIT_ROLLBACK

        extracted = sum(result.extracted for result in results)
        logger.info("sync finished: %d categories, %d archives applied", len(results), extracted)
        return EXIT_SUCCESS

    def sync(self) -> List[CategoryResult]:
        self.progress.dump()
        self.transport.login(self.account, self.password)
        entries = self.transport.list_manifest()
        self.progress.start(len(entries))

        results: Dict[str, CategoryResult] = {}
        threads: List[threading.Thread] = []
        for index, (data_type, category) in enumerate(split_categories(entries)):
            pipeline = CategoryPipeline(
                data_type,
                category,
                transport=self.transport,
                cache=self.cache,
                comparison=self.comparison,
                judge=self.judge,
                extractor=self.extractor,
                abort=self.abort,
                progress=self.progress,
                **self._pipeline_options,
            )
            thread = threading.Thread(
                target=self._run_category,
                args=(f"{index}:{data_type}", pipeline, results),
                name=f"category-{data_type}",
                daemon=True,
            )
            threads.append(thread)
            thread.start()

        self._supervise(threads)

        self.sinks.flush_all()
        self.cache.rollback_if_needed()
        self.progress.dump()
        return list(results.values())

    def _run_category(self, key: str, pipeline: CategoryPipeline, results: Dict[str, CategoryResult]) -> None:
        try:
            results[key] = pipeline.run()
        except Exception:
            logger.exception("category %s crashed", pipeline.data_type)
            self.cache.set_rollback_flag()
            self.abort.set()

    def _supervise(self, threads: List[threading.Thread]) -> None:
        deadline = self._monotonic() + self.ttl_seconds
        while any(thread.is_alive() for thread in threads):
            if self._stop_requested():
                self._shutdown(threads)
                self.sinks.flush_all()
                self.cache.discard_unextracted()
                raise StopRequested("stop flag found, sync stopped")
            if self.cache.needs_rollback:
                self._shutdown(threads)
                return
            if self._monotonic() > deadline:
                logger.error("sync exceeded its %.0fs time limit", self.ttl_seconds)
                self.cache.set_rollback_flag()
                self._shutdown(threads)
                return
            time.sleep(self.poll_interval)

    def _shutdown(self, threads: List[threading.Thread]) -> None:
        self.abort.set()
        for thread in threads:
            thread.join()

    def _stop_requested(self) -> bool:
        if self.stop_flag_file is None or not self.stop_flag_file.exists():
            return False
        try:
            os.remove(self.stop_flag_file)
        except FileNotFoundError:
            pass
        return True
