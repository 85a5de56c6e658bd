"""
Manifest entries and their XML wire form.

The manifest is the ordered list of archives a client should apply::

    <resource>
        <download type="sse.d1" uri="SSE/DAY/DAY.20230000" md5="..." update="2024-04-01 18:00:03"/>
        ...
    </resource>

Order matters: within one ``type`` the list is the apply order.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

UPDATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ManifestParseError(RuntimeError):
    """Raised when a manifest document cannot be understood."""


@dataclass(frozen=True)
class ManifestEntry:
    data_type: str
    uri: str
    md5: str
    updated_at: str

    @property
    def key(self) -> Tuple[str, str]:
        return (self.data_type, self.uri)

    @property
    def market(self) -> str:
        return self.data_type.split(".", 1)[0].lower()

    @property
    def kind(self) -> str:
        parts = self.data_type.split(".", 1)
        return parts[1].lower() if len(parts) > 1 else ""


def manifest_to_xml(entries: Iterable[ManifestEntry]) -> bytes:
    root = ET.Element("resource")
    for entry in entries:
        ET.SubElement(
            root,
            "download",
            {
                "type": entry.data_type,
                "uri": entry.uri,
                "md5": entry.md5,
                "update": entry.updated_at,
            },
        )
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def parse_manifest(payload: bytes) -> List[ManifestEntry]:
    """
    Parse a ``<resource>`` document into entries, preserving order.

    A server that rejected the session answers with an ``<authenticate>``
    document instead; that and any other unexpected shape raise
    ``ManifestParseError``.
    """

    try:
        root = ET.fromstring(payload)
    except ET.ParseError as exc:
        raise ManifestParseError(f"manifest is not well-formed XML: {exc}") from exc

    if root.tag != "resource":
        result = root.find("result")
        desc = result.get("desc", "") if result is not None else ""
        raise ManifestParseError(f"unexpected manifest root <{root.tag}> {desc}".strip())

    entries: List[ManifestEntry] = []
    for node in root.findall("download"):
        try:
            entries.append(
                ManifestEntry(
                    data_type=node.attrib["type"],
                    uri=node.attrib["uri"],
                    md5=node.attrib.get("md5", ""),
                    updated_at=node.attrib.get("update", ""),
                )
            )
        except KeyError as exc:
            raise ManifestParseError(f"download element missing attribute {exc}") from exc
    return entries


def split_categories(entries: Sequence[ManifestEntry]) -> List[Tuple[str, List[ManifestEntry]]]:
    """Group entries into maximal contiguous runs sharing the same ``data_type``."""

    categories: List[Tuple[str, List[ManifestEntry]]] = []
    for entry in entries:
        if categories and categories[-1][0] == entry.data_type:
            categories[-1][1].append(entry)
        else:
            categories.append((entry.data_type, [entry]))
    return categories
