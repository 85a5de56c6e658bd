"""
Background rebuild schedule.

One tick every ``tick_seconds``:

* the daily full rebuild, once per calendar day after ``build_time``;
* the HKSE pull windows 06:40-06:50 and 09:05-09:10, at most once per
  window per day;
* every ``realtime_ticks`` ticks, a realtime rebuild while the exchange is
  open or when a market has nothing published yet.
"""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime
from typing import Callable, Dict, Optional, Protocol

from .puller import ExternalPuller
from .transforms import clock_to_int

logger = logging.getLogger(__name__)

TICK_SECONDS = 15.0
PULL_WINDOWS = ((64000, 65000), (90500, 91000))
PULL_MARKET = "hkse"
REALTIME_START = 93000
REALTIME_END = 153000


class TradingDayCalendar(Protocol):
    def is_trading_day(self, check_date: date) -> bool:
        ...


class SyncScheduler:
    def __init__(
        self,
        service,
        *,
        build_time: int,
        puller: Optional[ExternalPuller] = None,
        calendar: Optional[TradingDayCalendar] = None,
        realtime_ticks: int = 20,
        tick_seconds: float = TICK_SECONDS,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.service = service
        self.build_time = build_time
        self.puller = puller
        self.calendar = calendar
        self.realtime_ticks = max(1, realtime_ticks)
        self.tick_seconds = tick_seconds
        self._clock = clock
        self._ticks = 0
        self._pulled: Dict[int, date] = {}
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------ loop
    def tick(self) -> None:
        now = self._clock()
        self._maybe_full_rebuild(now)
        self._maybe_pull(now)
        if self._ticks % self.realtime_ticks == 0:
            self._maybe_realtime(now)
        self._ticks += 1

    def run(self, stop_event: threading.Event) -> None:
        logger.info("scheduler started: buildtime=%06d tick=%.0fs", self.build_time, self.tick_seconds)
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler tick failed")
            stop_event.wait(self.tick_seconds)
        logger.info("scheduler stopped")

    def start(self) -> threading.Thread:
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, args=(self._stop_event,), name="sync-scheduler", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)

    # ------------------------------------------------------------------ steps
    def _maybe_full_rebuild(self, now: datetime) -> None:
        if self.service.full_rebuild_done_on(now.date()):
            return
        if clock_to_int(now) < self.build_time:
            return
        succeeded = self.service.rebuild_all()
        self._log("full_rebuild", {"success": succeeded})

    def _maybe_pull(self, now: datetime) -> None:
        moment = clock_to_int(now)
        for index, (start, end) in enumerate(PULL_WINDOWS):
            if not start <= moment <= end:
                continue
            if self._pulled.get(index) == now.date():
                continue
            self._pulled[index] = now.date()
            if self.puller is not None and not self.puller.run():
                self._log("pull", {"window": index, "success": False})
                continue
            succeeded = self.service.rebuild_family(PULL_MARKET)
            self._log("pull", {"window": index, "success": succeeded})

    def _maybe_realtime(self, now: datetime) -> None:
        moment = clock_to_int(now)
        in_session = REALTIME_START <= moment <= REALTIME_END
        if in_session and self.calendar is not None:
            in_session = self.calendar.is_trading_day(now.date())

        for market in self.service.realtime_markets:
            if in_session or self.service.realtime.current(market) is None:
                published = self.service.rebuild_realtime(market)
                self._log("realtime", {"market": market, "published": str(published) if published else None})

    def _log(self, event_type: str, extra: Dict[str, object]) -> None:
        payload = {"event": event_type, "phase": "scheduler", "tick": self._ticks}
        payload.update(extra)
        logger.info(payload)
