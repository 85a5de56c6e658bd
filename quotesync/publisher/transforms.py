"""
Per-kind record transforms used by the compactor.

A transform turns the raw bytes of one source file into a sequence of
single-date slices. The compactor calls ``load_from(buf, start)`` repeatedly,
advancing ``start`` by ``consumed`` each time, and writes every non-empty
slice into the archive chosen by ``bucket_for``.

Source rows are comma-separated::

    date,time,open,high,low,close,settle,amount,volume,openinterest,numtrades,voip

with ``date`` as ``YYYYMMDD`` and ``time`` either ``HHMMSS`` or
``HHMMSSmmm``. Daily rows omit ``time``. Verbatim kinds (weights, static
snapshots, HKSE and block files) are passed through untouched and stamped
with ``SENTINEL_DATE``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import AbstractSet, Dict, Iterator, List, Optional, Tuple, Type

from ..archive_codec import BEST_SPEED, DEFAULT_COMPRESSION
from ..config import DEFAULT_SKIP_DATES, CodeRangeFilter

logger = logging.getLogger(__name__)

SENTINEL_DATE = 20120609

# Rows are aged from 21:06:09 local time on their own date.
_AGE_ANCHOR = (21, 6, 9)

RECENT_BUCKET_DAYS = 16


@dataclass(frozen=True)
class LoadedSlice:
    payload: bytes
    record_date: int
    consumed: int


# ---------------------------------------------------------------------- dates
def date_to_int(moment: datetime) -> int:
    return moment.year * 10000 + moment.month * 100 + moment.day


def clock_to_int(moment: datetime) -> int:
    return moment.hour * 10000 + moment.minute * 100 + moment.second


def age_in_days(record_date: int, now: datetime) -> float:
    """Days between ``now`` and 21:06:09 on ``record_date``; raises ValueError on bad dates."""

    anchor = datetime(record_date // 10000, record_date // 100 % 100, record_date % 100, *_AGE_ANCHOR)
    return (now - anchor).total_seconds() / 86400


def bucket_key(record_date: int, now: datetime) -> int:
    """
    Archive key for a record date.

    Recent dates get a per-day archive, the rest of the current year is
    split into half-months (``YYYYMM00`` for days 1-15, ``YYYYMM15``
    otherwise) and prior years collapse into ``YYYY0000``.
    """

    if age_in_days(record_date, now) <= RECENT_BUCKET_DAYS:
        return record_date
    if record_date // 10000 < now.year:
        return record_date // 10000 * 10000
    half = 0 if record_date % 100 <= 15 else 15
    return record_date // 100 * 100 + half


def daily_bucket_key(record_date: int, now: datetime) -> int:
    if age_in_days(record_date, now) <= RECENT_BUCKET_DAYS:
        return record_date
    return record_date // 10000 * 10000


# ---------------------------------------------------------------------- parsing
def iter_lines(buf: bytes, start: int = 0) -> Iterator[Tuple[int, bytes]]:
    """Yield ``(offset, line)`` pairs; ``line`` excludes the newline and any trailing CR."""

    size = len(buf)
    offset = start
    while offset < size:
        end = buf.find(b"\n", offset)
        if end < 0:
            end = size
        yield offset, buf[offset:end].rstrip(b"\r")
        offset = end + 1


def leading_date(line: bytes) -> Optional[int]:
    token = line.split(b",", 1)[0].strip()
    if not token:
        return None
    try:
        return int(token)
    except ValueError:
        return None


def _to_float(token: bytes) -> float:
    try:
        return float(token)
    except ValueError:
        return 0.0


def _to_int(token: bytes) -> int:
    try:
        return int(token)
    except ValueError:
        return int(_to_float(token))


def clock_hhmmss(token: bytes) -> int:
    """Normalise a ``HHMMSS`` or ``HHMMSSmmm`` time token to ``HHMMSS``."""

    token = token.strip()
    value = int(token)
    if len(token) > 6:
        return value // 1000
    return value


def extract_code(file_name: str, marker: str, with_year: bool) -> Optional[Tuple[str, Optional[int]]]:
    """
    Pull the numeric code (and file year) out of a source file name.

    ``MIN600000_2024.csv`` gives ``("600000", 2024)`` for marker ``MIN``;
    ``DAY600000.csv`` gives ``("600000", None)`` for marker ``DAY``.
    """

    base = os.path.basename(file_name.replace("\\", "/"))
    dot = base.rfind(".")
    begin = base.rfind(marker)
    if dot < 0 or begin < 0:
        return None
    begin += len(marker)

    if not with_year:
        return base[begin:dot], None

    if dot - 5 < begin:
        return None
    try:
        year = int(base[dot - 4:dot])
    except ValueError:
        return None
    return base[begin:dot - 5], year


@dataclass
class Bar:
    date: int
    time: int
    open: float
    high: float
    low: float
    close: float
    settle: float
    amount: float
    volume: int
    open_interest: int
    num_trades: int
    voip: float

    @classmethod
    def from_fields(cls, fields: List[bytes], label: int) -> "Bar":
        return cls(
            date=int(fields[0]),
            time=label,
            open=_to_float(fields[2]),
            high=_to_float(fields[3]),
            low=_to_float(fields[4]),
            close=_to_float(fields[5]),
            settle=_to_float(fields[6]),
            amount=_to_float(fields[7]),
            volume=_to_int(fields[8]),
            open_interest=_to_int(fields[9]),
            num_trades=_to_int(fields[10]),
            voip=_to_float(fields[11]),
        )

    def accumulate(self, fields: List[bytes]) -> None:
        self.close = _to_float(fields[5])
        self.settle = _to_float(fields[6])
        self.voip = _to_float(fields[11])
        self.amount += _to_float(fields[7])
        self.volume += _to_int(fields[8])
        self.open_interest += _to_int(fields[9])
        self.num_trades += _to_int(fields[10])

    def render(self) -> bytes:
        return (
            f"{self.date},{self.time:06d},{self.open:f},{self.high:f},{self.low:f},"
            f"{self.close:f},{self.settle:f},{self.amount:f},{self.volume},"
            f"{self.open_interest},{self.num_trades},{self.voip:f}\n"
        ).encode("ascii")


BAR_FIELDS = 12


def split_bar_fields(line: bytes) -> Optional[List[bytes]]:
    fields = line.split(b",")
    if len(fields) < BAR_FIELDS or not fields[0].strip():
        return None
    return fields


# ---------------------------------------------------------------------- base
class RecordTransform:
    """
    Strategy for one data kind.

    Subclasses override ``load_from`` and, where the kind needs it,
    ``in_whitelist`` and ``bucket_for``.
    """

    KIND_DIR: Optional[str] = None
    compress_level = DEFAULT_COMPRESSION
    holds_back_today = False

    def __init__(
        self,
        kind: str,
        *,
        now: datetime,
        code_filter: Optional[CodeRangeFilter] = None,
        skip_dates: AbstractSet[int] = DEFAULT_SKIP_DATES,
    ) -> None:
        self.kind = kind
        self.now = now
        self.today = date_to_int(now)
        self._code_filter = code_filter
        self._skip_dates = frozenset(skip_dates)

    @property
    def kind_dir(self) -> str:
        return self.KIND_DIR or self.kind.upper()

    def in_whitelist(self, path: str) -> bool:
        return True

    def rewrite_entry_name(self, path: str) -> str:
        """Replace the top folder of a source-relative path with this kind's folder."""

        parts = path.replace("\\", "/").split("/")
        if len(parts) > 1:
            parts[0] = self.kind_dir
        return "/".join(parts)

    def load_from(self, buf: bytes, start: int = 0) -> LoadedSlice:
        raise NotImplementedError

    def bucket_for(self, prefix: str, record_date: int, src_path: str) -> str:
        return f"{prefix}{bucket_key(record_date, self.now)}"

    # ------------------------------------------------------------------ helpers
    def _code_allowed(self, code: str) -> bool:
        if self._code_filter is None:
            return True
        return self._code_filter.code_in_range(code)

    def _pass_through(self, buf: bytes, start: int, max_age_days: Optional[float]) -> LoadedSlice:
        """Copy every line of the first date found, stopping at the next date."""

        record_date: Optional[int] = None
        lines: List[bytes] = []
        for offset, line in iter_lines(buf, start):
            line_date = leading_date(line)
            if line_date is None or line_date in self._skip_dates:
                continue
            if max_age_days is not None:
                try:
                    if age_in_days(line_date, self.now) > max_age_days:
                        continue
                except ValueError:
                    continue
            if record_date is None:
                record_date = line_date
            elif line_date != record_date:
                return LoadedSlice(b"".join(lines), record_date, offset - start)
            lines.append(line + b"\n")

        return LoadedSlice(b"".join(lines), record_date or 0, len(buf) - start)


# ---------------------------------------------------------------------- k-lines
class DailyTransform(RecordTransform):
    KIND_DIR = "DAY"
    compress_level = BEST_SPEED
    holds_back_today = True

    def in_whitelist(self, path: str) -> bool:
        parsed = extract_code(path, "DAY", with_year=False)
        if parsed is None:
            return False
        return self._code_allowed(parsed[0])

    def load_from(self, buf: bytes, start: int = 0) -> LoadedSlice:
        return self._pass_through(buf, start, max_age_days=None)

    def bucket_for(self, prefix: str, record_date: int, src_path: str) -> str:
        return f"{prefix}{daily_bucket_key(record_date, self.now)}"


class _MinuteTransform(RecordTransform):
    """Shared whitelist for minute sources named ``MIN<code>_<year>.<ext>``."""

    max_file_age_years = 2
    holds_back_today = True

    def in_whitelist(self, path: str) -> bool:
        parsed = extract_code(path, "MIN", with_year=True)
        if parsed is None:
            logger.debug("minute file name has no code/year: %s", path)
            return False
        code, year = parsed
        if not self._year_allowed(year):
            return False
        return self._code_allowed(code)

    def _year_allowed(self, year: int) -> bool:
        return self.now.year - year < self.max_file_age_years


class Minute1Transform(_MinuteTransform):
    KIND_DIR = "MIN"
    retention_days = 14

    def load_from(self, buf: bytes, start: int = 0) -> LoadedSlice:
        return self._pass_through(buf, start, max_age_days=self.retention_days)


class Minute5Transform(_MinuteTransform):
    """
    Down-sample 1-minute rows into 5-minute bars.

    A bar opened by a row at ``HH:MM`` is labelled ``(HHMM + 5) * 100`` and
    closes when a row's ``HHMM * 100`` reaches that label. ``low`` keeps the
    largest low seen in the window, which is how the published m5 history
    has always been computed; clients compare against it, so it stays.
    """

    KIND_DIR = "MIN5"
    retention_days = 366

    def load_from(self, buf: bytes, start: int = 0) -> LoadedSlice:
        record_date: Optional[int] = None
        rows: List[bytes] = []
        bar: Optional[Bar] = None

        for offset, line in iter_lines(buf, start):
            fields = split_bar_fields(line)
            if fields is None:
                continue
            try:
                line_date = int(fields[0])
                if age_in_days(line_date, self.now) > self.retention_days:
                    continue
                hhmm = clock_hhmmss(fields[1]) // 100
            except ValueError:
                continue

            if record_date is None:
                record_date = line_date
            elif line_date != record_date:
                if bar is not None:
                    rows.append(bar.render())
                return LoadedSlice(b"".join(rows), record_date, offset - start)

            if bar is None or bar.time <= hhmm * 100:
                if bar is not None:
                    rows.append(bar.render())
                bar = Bar.from_fields(fields, (hhmm + 5) * 100)
            else:
                bar.high = max(bar.high, _to_float(fields[3]))
                bar.low = max(bar.low, _to_float(fields[4]))
                bar.accumulate(fields)

        if bar is not None:
            rows.append(bar.render())
        return LoadedSlice(b"".join(rows), record_date or 0, len(buf) - start)


# (first HHMMSS, last HHMMSS, inclusive end, label)
MIN60_WINDOWS = (
    (63000, 103000, False, 103000),
    (103000, 113000, True, 113000),
    (113001, 140000, False, 140000),
    (140000, 160000, True, 150000),
)


def min60_window(hhmmss: int) -> Optional[Tuple[int, int]]:
    """Return ``(index, label)`` of the 60-minute window holding ``hhmmss``."""

    for index, (first, last, inclusive, label) in enumerate(MIN60_WINDOWS):
        if hhmmss < first:
            continue
        if hhmmss < last or (inclusive and hhmmss == last):
            return index, label
    return None


class Minute60Transform(_MinuteTransform):
    """
    Down-sample 1-minute rows into the four trading-session bars.

    Bars are built from closing prices: the first close opens the bar and
    the running extremes of the closes give high and low.
    """

    KIND_DIR = "MIN60"
    max_file_age_years = 4
    retention_days = 366 * 3

    def load_from(self, buf: bytes, start: int = 0) -> LoadedSlice:
        record_date: Optional[int] = None
        rows: List[bytes] = []
        bar: Optional[Bar] = None
        window_index = -1

        for offset, line in iter_lines(buf, start):
            fields = split_bar_fields(line)
            if fields is None:
                continue
            try:
                line_date = int(fields[0])
                if line_date in self._skip_dates:
                    continue
                if age_in_days(line_date, self.now) > self.retention_days:
                    continue
                window = min60_window(clock_hhmmss(fields[1]))
            except ValueError:
                continue

            if record_date is None:
                record_date = line_date
            elif line_date != record_date:
                if bar is not None:
                    rows.append(bar.render())
                return LoadedSlice(b"".join(rows), record_date, offset - start)

            if window is None:
                continue

            index, label = window
            if bar is None or index != window_index:
                if bar is not None:
                    rows.append(bar.render())
                close = _to_float(fields[5])
                bar = Bar.from_fields(fields, label)
                bar.open = bar.high = bar.low = close
                window_index = index
            else:
                close = _to_float(fields[5])
                bar.high = max(bar.high, close)
                bar.low = min(bar.low, close)
                bar.accumulate(fields)

        if bar is not None:
            rows.append(bar.render())
        return LoadedSlice(b"".join(rows), record_date or 0, len(buf) - start)


class RealtimeMinute1Transform(_MinuteTransform):
    """Today's 1-minute rows, taken from the tail of a current-year file."""

    KIND_DIR = "MIN1_TODAY"
    holds_back_today = False

    def _year_allowed(self, year: int) -> bool:
        return year == self.now.year

    def load_from(self, buf: bytes, start: int = 0) -> LoadedSlice:
        lines = buf[start:].split(b"\n")
        kept: List[bytes] = []
        for line in reversed(lines):
            line = line.rstrip(b"\r")
            line_date = leading_date(line)
            if line_date is None:
                continue
            if line_date != self.today:
                break
            kept.append(line + b"\n")
        kept.reverse()
        return LoadedSlice(b"".join(kept), self.today, len(buf) - start)


# ---------------------------------------------------------------------- verbatim
class VerbatimTransform(RecordTransform):
    """Whole file as one slice stamped with ``SENTINEL_DATE``."""

    def load_from(self, buf: bytes, start: int = 0) -> LoadedSlice:
        return LoadedSlice(buf[start:], SENTINEL_DATE, len(buf) - start)

    def bucket_for(self, prefix: str, record_date: int, src_path: str) -> str:
        return f"{prefix}{record_date}"


class WeightTransform(VerbatimTransform):
    KIND_DIR = "WEIGHT"


class StaticTransform(VerbatimTransform):
    KIND_DIR = "STATIC"


class NamedFileTransform(VerbatimTransform):
    """Verbatim transform restricted to files whose name contains ``needle``."""

    def __init__(self, kind: str, *, needle: str, **kwargs) -> None:
        super().__init__(kind, **kwargs)
        self._needle = needle.lower()

    def in_whitelist(self, path: str) -> bool:
        return self._needle in os.path.basename(path.replace("\\", "/")).lower()


class BlockInfoTransform(VerbatimTransform):
    """``blockinfo.ini`` plus the numbered ``NNN.ini`` block member files."""

    KIND_DIR = "BLKINFO"

    def in_whitelist(self, path: str) -> bool:
        name = os.path.basename(path.replace("\\", "/")).lower()
        if name.startswith("blockinfo."):
            return "blockinfo.ini" in name
        return len(name) > 5 and name[:3].isdigit() and name[3] == "."


class DateNamedTransform(VerbatimTransform):
    """HKSE by-date files named ``YYYYMMDD.<ext>``, bucketed by that date."""

    def bucket_for(self, prefix: str, record_date: int, src_path: str) -> str:
        name = os.path.basename(src_path.replace("\\", "/"))
        file_date = int(name.split(".", 1)[0])
        return f"{prefix}{bucket_key(file_date, self.now)}"


# ---------------------------------------------------------------------- registry
_KLINE_MARKETS = ("sse", "szse")

_TRANSFORMS: Dict[Tuple[str, str], Type[RecordTransform]] = {}
for _market in _KLINE_MARKETS:
    _TRANSFORMS.update(
        {
            (_market, "d1"): DailyTransform,
            (_market, "m1"): Minute1Transform,
            (_market, "m5"): Minute5Transform,
            (_market, "m60"): Minute60Transform,
            (_market, "real_m1"): RealtimeMinute1Transform,
            (_market, "wt"): WeightTransform,
            (_market, "st"): StaticTransform,
        }
    )
for _kind in ("shase_rzrq", "sznse_rzrq", "shsz_idx", "shsz_detail"):
    _TRANSFORMS[("hkse", _kind)] = DateNamedTransform
_TRANSFORMS[("qlfile", "blkinfo")] = BlockInfoTransform

_NAMED_FILES = {
    ("hkse", "participant"): "participant.txt",
    ("qlfile", "dybk"): "dybk.ini",
    ("qlfile", "gnbk"): "gnbk.ini",
    ("qlfile", "hybk"): "hybk.ini",
    ("qlfile", "zsbk"): "zsbk.ini",
}


def supported_resource_types() -> List[str]:
    keys = set(_TRANSFORMS) | set(_NAMED_FILES)
    return sorted(f"{market}.{kind}" for market, kind in keys)


def create_transform(
    market: str,
    kind: str,
    *,
    now: datetime,
    code_filter: Optional[CodeRangeFilter] = None,
    skip_dates: AbstractSet[int] = DEFAULT_SKIP_DATES,
) -> RecordTransform:
    """Instantiate the transform registered for ``market.kind``."""

    key = (market.lower(), kind.lower())
    options = dict(now=now, code_filter=code_filter, skip_dates=skip_dates)
    if key in _NAMED_FILES:
        return NamedFileTransform(key[1], needle=_NAMED_FILES[key], **options)
    try:
        transform_cls = _TRANSFORMS[key]
    except KeyError:
        raise ValueError(f"unsupported resource type: {market}.{kind}") from None
    return transform_cls(key[1], **options)


def archive_prefix(market: str, transform: RecordTransform) -> str:
    """Sync-root relative prefix such as ``SSE/MIN5/MIN5.``."""

    return f"{market.upper()}/{transform.kind_dir}/{transform.kind_dir}."
