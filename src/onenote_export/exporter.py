"""Export driver: writes pages and their assets, then resolves internal links.

The scraper hands over one ``ScrapedPage`` at a time, in notebook order.
Assets are fetched in a fixed order (images, attachments, videos), each page
is written as Markdown, and every page and container is recorded in the
identifier index so links can be resolved once the whole notebook is on disk.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urlsplit

from .config import ASSET_DIR_NAME, CONTENT_EXTENSION, INDEX_MANIFEST_NAME
from .downloads import ResourceCoordinator, download_resource
from .links import ResolutionStats, resolve_cross_references
from .models import (
    CrossReference,
    IdentifierIndex,
    IdentifierIndexEntry,
    ResourceDescriptor,
    is_valid_id,
)
from .session import SessionHttp

logger = logging.getLogger(__name__)

# Characters no common filesystem accepts in a file name
_UNSAFE_CHARS_RE = re.compile(r'[/\\?<>:*|"\x00-\x1f\x7f]')
_WINDOWS_RESERVED_RE = re.compile(r"^(con|prn|aux|nul|com\d|lpt\d)(\..*)?$", re.IGNORECASE)
_VIDEO_EXT_RE = re.compile(r"^[a-z0-9]{1,4}$", re.IGNORECASE)
_MAX_NAME_LENGTH = 200


def sanitize_name(name: str | None, fallback: str = "Untitled") -> str:
    """Make a notebook, section or page title safe to use as a file name."""
    safe = _UNSAFE_CHARS_RE.sub("", name or "").strip()
    safe = safe.rstrip(". ")
    if _WINDOWS_RESERVED_RE.match(safe) or set(safe) <= {"."}:
        safe = ""
    return safe[:_MAX_NAME_LENGTH] or fallback


def split_extension(filename: str, default: str = "bin") -> tuple[str, str]:
    """'report.final.pdf' -> ('report.final', 'pdf'); 'README' -> ('README', default)."""
    base, dot, ext = filename.rpartition(".")
    if not dot or not base:
        return filename, default
    return base, ext


def video_extension(url: str | None, default: str = "mp4") -> str:
    """Extension from the URL path when it looks like one (1-4 alphanumerics)."""
    if not url:
        return default
    try:
        path = urlsplit(url).path
    except ValueError:
        return default
    _, dot, ext = path.rpartition(".")
    if dot and _VIDEO_EXT_RE.match(ext):
        return ext
    return default


@dataclass
class ScrapedPage:
    """One page as delivered by the scraper."""

    id: str
    name: str
    html: str = ""
    date_time: str = ""
    images: list[ResourceDescriptor] = field(default_factory=list)
    attachments: list[ResourceDescriptor] = field(default_factory=list)
    videos: list[ResourceDescriptor] = field(default_factory=list)
    cross_references: list[CrossReference] = field(default_factory=list)

    @property
    def asset_count(self) -> int:
        return len(self.images) + len(self.attachments) + len(self.videos)

    @classmethod
    def from_scraped(cls, page_info: dict[str, Any], content: dict[str, Any]) -> "ScrapedPage":
        return cls(
            id=str(page_info.get("id", "")),
            name=page_info.get("name") or "",
            html=content.get("contentHtml") or "",
            date_time=content.get("dateTime") or "",
            images=[ResourceDescriptor.from_scraped(i) for i in content.get("images") or []],
            attachments=[ResourceDescriptor.from_scraped(a) for a in content.get("attachments") or []],
            videos=[ResourceDescriptor.from_scraped(v) for v in content.get("videos") or []],
            cross_references=[CrossReference.from_scraped(r) for r in content.get("internalLinks") or []],
        )


@dataclass
class ExportStats:
    total_pages: int = 0
    total_assets: int = 0
    failed_assets: int = 0
    failed_pages: int = 0
    links: ResolutionStats | None = None


class NotebookExporter:
    """Writes one notebook's pages under ``output_root``.

    Args:
        output_root: Notebook directory; wikilinks are relative to it.
        http: Session-sharing HTTP client for images and videos.
        coordinator: Attachment acquisition cascade.
        render: Converts the page's re-tagged HTML to Markdown. Internal
            links must come out as ``links.placeholder`` markers.
        index: Identifier index to fill; a fresh one by default.
    """

    def __init__(
        self,
        output_root: Path,
        http: SessionHttp,
        coordinator: ResourceCoordinator,
        render: Callable[[str], str],
        index: IdentifierIndex | None = None,
    ):
        self.output_root = Path(output_root)
        self.index = index if index is not None else IdentifierIndex()
        self.stats = ExportStats()
        self._http = http
        self._coordinator = coordinator
        self._render = render
        self._processed: set[str] = set()
        self._reserved_assets: set[Path] = set()

    def is_processed(self, raw_id: str) -> bool:
        return raw_id in self._processed

    def _record(self, entry: IdentifierIndexEntry) -> None:
        if not is_valid_id(entry.raw_id):
            logger.warning(f"Not indexing {entry.location.name}: scraped id is {entry.raw_id!r}")
            return
        self._processed.add(entry.raw_id)
        if entry.raw_id in self.index:
            logger.warning(f"Id {entry.raw_id} already indexed; keeping the first entry")
            return
        self.index.add(entry)

    def register_container(self, raw_id: str, name: str, parent_dir: Path) -> Path:
        """Create the folder for a section group or section and index it."""
        container_dir = Path(parent_dir) / sanitize_name(name)
        container_dir.mkdir(parents=True, exist_ok=True)
        if not self.is_processed(raw_id):
            self._record(IdentifierIndexEntry(raw_id=raw_id, location=container_dir, is_container=True))
        return container_dir

    def _unique_asset_path(self, asset_dir: Path, base: str, ext: str) -> Path:
        name = sanitize_name(base, fallback="file")
        candidate = asset_dir / f"{name}.{ext}"
        counter = 1
        while candidate.exists() or candidate in self._reserved_assets:
            candidate = asset_dir / f"{name}_{counter}.{ext}"
            counter += 1
        self._reserved_assets.add(candidate)
        return candidate

    async def _save_assets(self, page: ScrapedPage, section_dir: Path, note_name: str) -> tuple[str, int]:
        """Fetch a page's assets and point the HTML at their final file names."""
        html = page.html
        saved = 0
        asset_dir = section_dir / ASSET_DIR_NAME
        asset_dir.mkdir(parents=True, exist_ok=True)
        counter = 1

        for image in page.images:
            base = f"{note_name}_img_{counter}"
            counter += 1
            target = asset_dir / f"{base}.png"
            html = html.replace(f'data-local-src="{image.id}"', f'data-local-src="{base}"')
            if await download_resource(self._http, image.source_url, target):
                saved += 1
                logger.debug(f"[Asset] Saved IMAGE to: {target}")
            else:
                self.stats.failed_assets += 1

        for attachment in page.attachments:
            base, ext = split_extension(attachment.original_name)
            target = self._unique_asset_path(asset_dir, base, ext)
            html = re.sub(
                rf'data-local-file="{re.escape(attachment.id)}"( data-filename="[^"]*")?',
                lambda _, name=target.name: f'data-local-file="{name}" data-filename="{name}"',
                html,
            )
            outcome = await self._coordinator.acquire(attachment, target)
            if outcome.succeeded:
                saved += 1
                logger.debug(f"[Asset] Saved ATTACHMENT to: {target}")
            else:
                self.stats.failed_assets += 1

        for video in page.videos:
            base = f"{note_name}_video_{counter}"
            counter += 1
            target = asset_dir / f"{base}.{video_extension(video.source_url)}"
            html = html.replace(f'data-local-video="{video.id}"', f'data-local-video="{base}"')
            if await download_resource(self._http, video.source_url, target):
                saved += 1
                logger.debug(f"[Asset] Saved VIDEO to: {target}")
            else:
                self.stats.failed_assets += 1

        return html, saved

    async def export_page(self, page: ScrapedPage, section_dir: Path, used_names: set[str]) -> Path | None:
        """Write one page and its assets. Returns the Markdown path, or None.

        ``used_names`` holds the note names already taken in this section and
        is updated in place. Failures are logged and counted, never raised.
        """
        if self.is_processed(page.id):
            return None
        section_dir = Path(section_dir)
        logger.info(f"Exporting: {page.name} ...")

        base_name = sanitize_name(page.name)
        note_name = base_name
        collision = 1
        while note_name in used_names:
            note_name = f"{base_name}_{collision}"
            collision += 1
        used_names.add(note_name)

        try:
            html, saved = page.html, 0
            if page.asset_count:
                html, saved = await self._save_assets(page, section_dir, note_name)

            markdown = self._render(html)
            target = section_dir / f"{note_name}{CONTENT_EXTENSION}"
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(f"{page.date_time}\n\n{markdown}", encoding="utf-8")
        except (OSError, ValueError) as e:
            logger.error(f"Failed to export {page.name}: {e}")
            self.stats.failed_pages += 1
            return None

        self._record(IdentifierIndexEntry(
            raw_id=page.id,
            location=target,
            is_container=False,
            cross_references=list(page.cross_references),
        ))
        self.stats.total_pages += 1
        self.stats.total_assets += saved
        logger.info(f"Saved ({saved} assets)")
        return target

    def write_manifest(self) -> Path:
        path = self.output_root / INDEX_MANIFEST_NAME
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.index.to_dict(self.output_root), f, indent=2)
        return path

    def finish(self) -> ExportStats:
        """Freeze the index, save it, and resolve every internal link."""
        self.index.freeze()
        self.write_manifest()
        logger.info("Resolving internal links...")
        self.stats.links = resolve_cross_references(self.index, self.output_root)

        logger.info("Export complete!")
        logger.info(f"Total Pages: {self.stats.total_pages}")
        logger.info(f"Total Assets: {self.stats.total_assets} ({self.stats.failed_assets} failed)")
        logger.info(f"Files saved in: {self.output_root}")
        return self.stats


def load_index(output_root: Path, manifest: Path | None = None) -> IdentifierIndex:
    """Load the identifier index saved by ``NotebookExporter.write_manifest``."""
    output_root = Path(output_root)
    path = manifest or output_root / INDEX_MANIFEST_NAME
    with open(path, encoding="utf-8") as f:
        return IdentifierIndex.from_dict(json.load(f), output_root)
