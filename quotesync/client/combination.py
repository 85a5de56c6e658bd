"""
Decides when a roll-up archive only needs downloading.

Daily and 60-minute history is re-published in coarser buckets as it ages
(per-day, then half-month, then whole year). A client that has already
applied the finer archives must not apply the roll-up again. For each
``sse``/``szse`` ``d1``/``m60`` category a marker file
``<cache_root>/<market>/<kind>.txt`` keeps the last bucket date applied; a
newer bucket that is more than ``ROLLUP_AGE_DAYS`` old is a roll-up of data
already on disk and is cached without being extracted.
"""

from __future__ import annotations

import logging
from datetime import date
from pathlib import Path
from typing import Callable, Optional

from ..manifest import ManifestEntry
from ..trading_calendar import ChinaEquityTradingCalendar

logger = logging.getLogger(__name__)

JUDGED_MARKETS = frozenset({"sse", "szse"})
JUDGED_KINDS = frozenset({"d1", "m60"})
ROLLUP_AGE_DAYS = 32


def bucket_of(uri: str) -> Optional[int]:
    """``SSE/DAY/DAY.20230000`` -> ``20230000``."""

    name = uri.replace("\\", "/").rsplit("/", 1)[-1]
    if "." not in name:
        return None
    token = name.split(".", 2)[1]
    if len(token) != 8 or not token.isdigit():
        return None
    return int(token)


def is_rollup_bucket(bucket: int, kind: str) -> bool:
    """
    Year (``YYYY0000``) and half-month (``YYYYMM00``, ``YYYYMM15``) keys.

    Daily history is only ever split per day or per year, so a ``d1`` key
    ending in 15 is a real day.
    """

    day = bucket % 100
    if day == 0:
        return True
    return day == 15 and kind != "d1"


def bucket_to_date(bucket: int) -> date:
    """Half-month and year buckets map to the first day they cover."""

    return date(bucket // 10000, max(bucket // 100 % 100, 1), max(bucket % 100, 1))


class CombinationJudge:
    def __init__(
        self,
        cache_root: Path,
        *,
        last_weekday_of_year: Callable[[int], date] = ChinaEquityTradingCalendar.last_weekday_of_year,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.cache_root = Path(cache_root)
        self._last_weekday_of_year = last_weekday_of_year
        self._today = today

    def applies_to(self, entry: ManifestEntry) -> bool:
        return entry.market in JUDGED_MARKETS and entry.kind in JUDGED_KINDS

    def marker_path(self, data_type: str) -> Path:
        market, _, kind = data_type.lower().partition(".")
        return self.cache_root / market / f"{kind}.txt"

    def read_marker(self, data_type: str) -> Optional[int]:
        path = self.marker_path(data_type)
        try:
            text = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            return int(text)
        except ValueError:
            logger.warning("ignoring malformed marker %s: %r", path, text)
            return None

    def resolve_bucket(self, bucket: int, today: date) -> int:
        """Last year's ``YYYY0000`` bucket stands for its final weekday."""

        if bucket % 10000 == 0 and bucket // 10000 == today.year - 1:
            last = self._last_weekday_of_year(today.year - 1)
            return last.year * 10000 + last.month * 100 + last.day
        return bucket

    def is_download_only(self, entry: ManifestEntry) -> bool:
        if not self.applies_to(entry):
            return False
        bucket = bucket_of(entry.uri)
        if bucket is None:
            return False
        marker = self.read_marker(entry.data_type)
        if marker is None:
            return False

        today = self._today()
        resolved = self.resolve_bucket(bucket, today)
        if resolved <= marker:
            return False
        return (today - bucket_to_date(resolved)).days > ROLLUP_AGE_DAYS

    def record(self, entry: ManifestEntry) -> None:
        """Remember the per-day bucket just handled for ``entry``'s category; roll-ups leave the marker alone."""

        if not self.applies_to(entry):
            return
        bucket = bucket_of(entry.uri)
        if bucket is None or is_rollup_bucket(bucket, entry.kind):
            return
        path = self.marker_path(entry.data_type)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(self.resolve_bucket(bucket, self._today())), encoding="utf-8")

    def reset(self, data_type: str) -> None:
        try:
            self.marker_path(data_type).unlink()
        except FileNotFoundError:
            pass
