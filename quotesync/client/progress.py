"""Progress file consumed by the desktop front end."""

from __future__ import annotations

import os
import tempfile
import threading
import xml.etree.ElementTree as ET
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from ..manifest import UPDATE_FORMAT


class ProgressReporter:
    """
    Tracks ``done / total`` across all categories and mirrors it to an XML file::

        <progress><percentage taskcount="120" taskprogress="0.250000" update="..."/></progress>

    With no ``path`` the reporter only counts.
    """

    def __init__(self, path: Optional[Path] = None, *, clock: Callable[[], datetime] = datetime.now) -> None:
        self.path = Path(path) if path else None
        self._clock = clock
        self._lock = threading.Lock()
        self._total = 0
        self._done = 0

    def start(self, total: int) -> None:
        with self._lock:
            self._total = total
            self._done = 0
        self.dump()

    def advance(self, count: int = 1) -> None:
        if count <= 0:
            return
        with self._lock:
            self._done = min(self._total, self._done + count)
        self.dump()

    @property
    def fraction(self) -> float:
        with self._lock:
            if self._total <= 0:
                return 0.0
            return self._done / self._total

    def dump(self) -> None:
        if self.path is None:
            return
        with self._lock:
            total = self._total
            fraction = self._done / total if total > 0 else 0.0
            root = ET.Element("progress")
            ET.SubElement(
                root,
                "percentage",
                {
                    "taskcount": str(total),
                    "taskprogress": f"{fraction:f}",
                    "update": self._clock().strftime(UPDATE_FORMAT),
                },
            )
            payload = ET.tostring(root, encoding="utf-8", xml_declaration=True)

            directory = self.path.parent
            directory.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=directory, suffix=".xml", prefix=".tmp-progress-")
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(payload)
                os.replace(temp_path, self.path)
            finally:
                if os.path.exists(temp_path):
                    os.remove(temp_path)
