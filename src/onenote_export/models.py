"""Records exchanged between the scraper, the export driver and the resolvers."""

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from .config import CLOUD_STORAGE_HOSTS, INVALID_IDS


def is_cloud_url(url: str | None) -> bool:
    """True when ``url`` points at a cloud-storage host (SharePoint, OneDrive)."""
    if not url:
        return False
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return False
    return any(host == h or host.endswith("." + h) for h in CLOUD_STORAGE_HOSTS)


def is_valid_id(raw_id: str | None) -> bool:
    """Scraped ids that are empty or the strings 'undefined'/'null' are junk."""
    return raw_id is not None and raw_id not in INVALID_IDS


@dataclass(frozen=True)
class ResourceDescriptor:
    """One asset discovered on a page, independent of how it gets fetched."""

    id: str
    source_url: str = ""
    original_name: str = "file"
    is_cloud_hosted: bool = False

    @classmethod
    def from_scraped(cls, data: dict[str, Any]) -> "ResourceDescriptor":
        """Build a descriptor from the scraper's ``{id, src, originalName}`` record."""
        src = data.get("src") or ""
        return cls(
            id=str(data.get("id", "")),
            source_url=src,
            original_name=data.get("originalName") or "file",
            is_cloud_hosted=is_cloud_url(src),
        )


class Strategy(enum.Enum):
    DIRECT = "Direct"
    UI_INTERACTION = "UI Click"
    FALLBACK = "Fallback"


@dataclass(frozen=True)
class AcquisitionOutcome:
    succeeded: bool
    strategy_used: Strategy | None = None
    bytes_written: bool = False

    def __bool__(self) -> bool:
        return self.succeeded


@dataclass(frozen=True)
class CrossReference:
    """An internal link captured at serialization time, resolved after the run."""

    placeholder_id: str
    href_raw: str
    display_text: str

    @classmethod
    def from_scraped(cls, data: dict[str, Any]) -> "CrossReference":
        return cls(
            placeholder_id=str(data["id"]),
            href_raw=data.get("href") or "",
            display_text=data.get("text") or "",
        )


@dataclass
class IdentifierIndexEntry:
    raw_id: str
    location: Path
    is_container: bool = False
    cross_references: list[CrossReference] = field(default_factory=list)


class IdentifierIndex:
    """Append-only table of exported pages and containers keyed by raw scraped id.

    The export driver adds entries while it walks the notebook; the link
    resolver reads it once, after ``freeze()``.
    """

    def __init__(self):
        self._entries: dict[str, IdentifierIndexEntry] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> "IdentifierIndex":
        self._frozen = True
        return self

    def add(self, entry: IdentifierIndexEntry) -> None:
        if self._frozen:
            raise ValueError("Identifier index is frozen; no entries may be added")
        if not is_valid_id(entry.raw_id):
            raise ValueError(f"Invalid identifier: {entry.raw_id!r}")
        if entry.raw_id in self._entries:
            raise ValueError(f"Duplicate identifier: {entry.raw_id}")
        self._entries[entry.raw_id] = entry

    def get(self, raw_id: str) -> IdentifierIndexEntry | None:
        return self._entries.get(raw_id)

    def keys(self) -> list[str]:
        return list(self._entries)

    def items(self) -> list[tuple[str, IdentifierIndexEntry]]:
        return list(self._entries.items())

    def __contains__(self, raw_id: object) -> bool:
        return raw_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def to_dict(self, output_root: Path) -> dict:
        """Serialize with locations relative to ``output_root``."""
        root = Path(output_root)
        return {
            "version": 1,
            "entries": [
                {
                    "id": entry.raw_id,
                    "path": entry.location.relative_to(root).as_posix(),
                    "is_container": entry.is_container,
                    "links": [
                        {"id": ref.placeholder_id, "href": ref.href_raw, "text": ref.display_text}
                        for ref in entry.cross_references
                    ],
                }
                for entry in self._entries.values()
            ],
        }

    @classmethod
    def from_dict(cls, data: dict, output_root: Path) -> "IdentifierIndex":
        root = Path(output_root)
        index = cls()
        for item in data.get("entries", []):
            if not is_valid_id(item.get("id")):
                continue
            index.add(IdentifierIndexEntry(
                raw_id=item["id"],
                location=root / item["path"],
                is_container=bool(item.get("is_container", False)),
                cross_references=[CrossReference.from_scraped(link) for link in item.get("links", [])],
            ))
        return index
