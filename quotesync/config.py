"""
Publisher configuration loaded from ``cfg.xml``.

The file is a flat list of settings::

    <cfg version="1.0">
        <setting name="buildtime" value="180000"/>
        <setting name="syncfolder" value="./SyncFolder"/>
        <setting name="sse.coderange" value="600000~609999"/>
        <setting name="sse.d1" value="/data/sse/DAY"/>
        <setting name="sse.real_m1" value="/data/sse/REAL"/>
    </cfg>

Names without a dot that are not recognised are ignored with a warning;
``<market>.<kind>`` names become data sources.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

logger = logging.getLogger(__name__)

DEFAULT_SKIP_DATES = frozenset({20180618})
DEFAULT_GRACE_SECONDS = 30.0
DEFAULT_REALTIME_TICKS = 20


class ConfigError(ValueError):
    """Raised when ``cfg.xml`` cannot be read or parsed."""


@dataclass(frozen=True)
class CodeRange:
    start: int
    end: int

    @classmethod
    def parse(cls, text: str) -> "CodeRange":
        """Build a range from ``start~end``; the bounds may come in either order."""

        parts = text.split("~")
        if len(parts) != 2:
            raise ValueError(f"code range must look like 'start~end': {text!r}")
        first, second = int(parts[0].strip()), int(parts[1].strip())
        return cls(min(first, second), max(first, second))

    def contains(self, code: int) -> bool:
        return self.start <= code <= self.end


class CodeRangeFilter:
    """Union of code ranges for one market."""

    def __init__(self, ranges: Sequence[CodeRange]) -> None:
        self._ranges = list(ranges)

    def __bool__(self) -> bool:
        return bool(self._ranges)

    def __len__(self) -> int:
        return len(self._ranges)

    def code_in_range(self, code: str) -> bool:
        try:
            number = int(code)
        except ValueError:
            logger.debug("code is not numeric: %s", code)
            return False
        return any(item.contains(number) for item in self._ranges)


@dataclass(frozen=True)
class DataSource:
    market: str
    kind: str
    folder: Path

    @property
    def resource_type(self) -> str:
        return f"{self.market}.{self.kind}"


@dataclass
class ServerConfig:
    version: str = ""
    build_time: int = 0
    sync_folder: Path = Path("./SyncFolder")
    realtime_folders: Dict[str, Path] = field(default_factory=dict)
    code_ranges: Dict[str, List[CodeRange]] = field(default_factory=dict)
    sources: Dict[str, DataSource] = field(default_factory=dict)
    skip_dates: Set[int] = field(default_factory=lambda: set(DEFAULT_SKIP_DATES))
    ftp_command: Optional[str] = None
    grace_seconds: float = DEFAULT_GRACE_SECONDS
    realtime_ticks: int = DEFAULT_REALTIME_TICKS

    def code_filter(self, market: str) -> Optional[CodeRangeFilter]:
        """Return the filter for ``market`` or ``None`` when every code passes."""

        ranges = self.code_ranges.get(market.lower())
        if not ranges:
            return None
        return CodeRangeFilter(ranges)


def _normalize_folder(value: str) -> Path:
    return Path(value.replace("\\", "/"))


def _to_number(kind, name: str, value: str):
    try:
        return kind(value)
    except ValueError as exc:
        raise ConfigError(f"setting {name} is not numeric: {value!r}") from exc


def parse_server_config(xml_text: str) -> ServerConfig:
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise ConfigError(f"cannot parse configuration: {exc}") from exc

    if root.tag != "cfg":
        raise ConfigError(f"unexpected root element <{root.tag}>, expected <cfg>")

    config = ServerConfig(version=root.get("version", ""))
    explicit_skip_dates: Set[int] = set()

    for setting in root.iter("setting"):
        name = (setting.get("name") or "").strip().lower()
        value = (setting.get("value") or "").strip()
        if not name:
            continue

        if name == "buildtime":
            config.build_time = _to_number(int, name, value)
        elif name == "syncfolder":
            config.sync_folder = _normalize_folder(value)
        elif name == "ftpcommand":
            config.ftp_command = value or None
        elif name == "grace":
            config.grace_seconds = _to_number(float, name, value)
        elif name == "realtimeticks":
            config.realtime_ticks = max(1, _to_number(int, name, value))
        elif name == "skipdate":
            explicit_skip_dates.add(_to_number(int, name, value))
        elif name.endswith(".coderange"):
            market = name.split(".", 1)[0]
            try:
                code_range = CodeRange.parse(value)
            except ValueError as exc:
                logger.error("ignoring invalid %s: %s", name, exc)
                continue
            config.code_ranges.setdefault(market, []).append(code_range)
            logger.info("%s: [%d ~ %d]", name, code_range.start, code_range.end)
        elif name.endswith(".real_m1"):
            market = name.split(".", 1)[0]
            config.realtime_folders[market] = _normalize_folder(value)
        elif "." in name:
            market, kind = name.split(".", 1)
            config.sources[name] = DataSource(market, kind, _normalize_folder(value))
        else:
            logger.warning("ignoring unknown setting: %s", name)

    if explicit_skip_dates:
        config.skip_dates = explicit_skip_dates

    return config


def load_server_config(path: Path) -> ServerConfig:
    """Read and parse the configuration file at ``path``."""

    try:
        xml_text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read configuration file {path}: {exc}") from exc

    config = parse_server_config(xml_text)
    logger.info(
        "configuration %s loaded: version=%s buildtime=%06d sources=%d",
        path,
        config.version,
        config.build_time,
        len(config.sources),
    )
    return config
