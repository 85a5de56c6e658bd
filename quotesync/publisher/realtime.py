"""
Realtime (today's 1-minute) archive publications.

Each realtime rebuild produces a fresh archive named after the minute it was
built. The previous one stays readable for a grace period so downloads that
already resolved it can finish, then it is removed.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

REALTIME_MARKER = "MIN1_TODAY"


def realtime_uri(market: str) -> str:
    """Stable manifest uri for a market's realtime archive."""

    return f"{market.upper()}/{REALTIME_MARKER}/{REALTIME_MARKER}"


def is_realtime_uri(uri: str) -> bool:
    return REALTIME_MARKER in uri


class RealtimePublications:
    """Tracks the live realtime archive per market and retires old ones."""

    def __init__(self, grace_seconds: float = 30.0, timer_factory: Callable[..., threading.Timer] = threading.Timer) -> None:
        self._grace_seconds = grace_seconds
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._current: Dict[str, Path] = {}
        self._timers: List[threading.Timer] = []

    def current(self, market: str) -> Optional[Path]:
        with self._lock:
            return self._current.get(market.lower())

    def markets(self) -> List[str]:
        with self._lock:
            return sorted(self._current)

    def publish(self, market: str, path: Path) -> Optional[Path]:
        """Make ``path`` the live archive for ``market``; returns the retired path."""

        key = market.lower()
        with self._lock:
            previous = self._current.get(key)
            self._current[key] = Path(path)
            if previous is None or previous == Path(path):
                return None
            timer = self._timer_factory(self._grace_seconds, self._retire, args=(previous,))
            timer.daemon = True
            self._timers = [item for item in self._timers if item.is_alive()]
            self._timers.append(timer)
        timer.start()
        logger.info("realtime %s now %s, retiring %s in %.0fs", key, path, previous, self._grace_seconds)
        return previous

    def resolve(self, uri: str) -> Optional[Path]:
        """Map a realtime manifest uri to the archive currently on disk."""

        market = uri.replace("\\", "/").strip("/").split("/", 1)[0]
        return self.current(market)

    def shutdown(self) -> None:
        with self._lock:
            timers, self._timers = self._timers, []
        for timer in timers:
            timer.cancel()

    def _retire(self, path: Path) -> None:
        with self._lock:
            if path in self._current.values():
                return
        try:
            os.remove(path)
            logger.debug("removed retired realtime archive %s", path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("cannot remove retired realtime archive %s: %s", path, exc)
