"""Resolve OneNote internal links into Obsidian wikilinks after export.

While pages are written, each internal link is serialized as a placeholder::

    [[Display Text]]<!-- onenote-link:link_0 -->

Targets are often pages that have not been visited yet, so resolution runs
once, after every page and container is in the identifier index. A link
target is found by, in order:

1. the raw id (or its percent-encoded form) appearing in the href,
2. the id with braces and suffix stripped ("{UUID}{1}" -> "UUID") appearing
   in the href, when that core is long enough to be meaningful,
3. for ``onenote:`` hrefs, the notebook path spelled out in the link
   matching an exported file or folder.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote, unquote

from .config import (
    CONTAINER_FRAGMENT_PREFIX,
    CONTENT_EXTENSION,
    FUZZY_MIN_LENGTH,
    INTERNAL_LINK_SCHEME,
    LINK_MARKER,
)
from .models import CrossReference, IdentifierIndex, IdentifierIndexEntry, is_valid_id

logger = logging.getLogger(__name__)

PLACEHOLDER_MARKER_RE = re.compile(rf"<!-- {LINK_MARKER}:.*? -->")


def placeholder(display_text: str, placeholder_id: str) -> str:
    """Serialized form of an unresolved internal link."""
    return f"[[{display_text}]]<!-- {LINK_MARKER}:{placeholder_id} -->"


def _placeholder_re(placeholder_id: str) -> re.Pattern[str]:
    # Display text may have been escaped by the converter, so match any
    # bracketed text that ends right before this link's marker.
    return re.compile(rf"\[\[(?:(?!\]\]).)*\]\]<!-- {LINK_MARKER}:{re.escape(placeholder_id)} -->")


def _encode_uri_component(value: str) -> str:
    return quote(value, safe="-_.!~*'()")


def normalize_id(raw_id: str) -> str:
    """Strip one leading brace and everything from the first closing brace.

    "{ABC-123}{1}" -> "ABC-123"
    """
    return raw_id.removeprefix("{").split("}", 1)[0]


def _longest(candidates: list[str]) -> str | None:
    if not candidates:
        return None
    return min(candidates, key=lambda k: (-len(k), k))


def match_by_id(href: str, keys: list[str]) -> str | None:
    """Steps 1 and 2: id contained in the href, then its normalized core.

    Several keys can satisfy a step; the longest wins, then the
    lexicographically smallest.
    """
    valid = [k for k in keys if is_valid_id(k)]

    exact = [k for k in valid if k in href or _encode_uri_component(k) in href]
    if exact:
        return _longest(exact)

    fuzzy = []
    for key in valid:
        core = normalize_id(key)
        if len(core) > FUZZY_MIN_LENGTH and core in href:
            fuzzy.append(key)
    return _longest(fuzzy)


def derive_link_path(href: str) -> str | None:
    """Notebook path named by an ``onenote:`` href, lowercased.

    ``onenote:Group\\Section.one#section-id={...}`` -> "group/section"
    ``onenote:Group\\Section.one#My Page&section-id=...`` -> "group/section/my page"
    """
    if not href.startswith(INTERNAL_LINK_SCHEME):
        return None
    hierarchy_part, sep, fragment_part = href.partition("#")
    if not sep:
        return None

    hierarchy = unquote(hierarchy_part[len(INTERNAL_LINK_SCHEME):].replace("\\", "/"))
    hierarchy = hierarchy.removesuffix(".one")
    fragment = unquote(fragment_part)

    if fragment.startswith(CONTAINER_FRAGMENT_PREFIX):
        target = hierarchy
    else:
        page_name = fragment.split("&", 1)[0]
        target = f"{hierarchy}/{page_name}" if hierarchy else page_name
    target = target.strip("/").lower()
    return target or None


def _relative_link_path(entry: IdentifierIndexEntry, output_root: Path) -> str:
    rel = entry.location.relative_to(output_root).as_posix()
    if entry.is_container:
        return rel
    return rel.removesuffix(CONTENT_EXTENSION)


def match_by_path(href: str, index: IdentifierIndex, output_root: Path) -> str | None:
    """Step 3: an entry whose location ends with the path the href spells out."""
    target = derive_link_path(href)
    if target is None:
        return None

    exact: list[tuple[int, str, str]] = []
    suffix: list[tuple[int, str, str]] = []
    for raw_id, entry in index.items():
        if not is_valid_id(raw_id):
            continue
        try:
            rel = entry.location.relative_to(output_root).as_posix()
        except ValueError:
            continue
        rel = rel.removesuffix(CONTENT_EXTENSION).lower()
        if rel == target:
            exact.append((len(rel), rel, raw_id))
        elif rel.endswith("/" + target):
            suffix.append((len(rel), rel, raw_id))

    candidates = exact or suffix
    if not candidates:
        return None
    return min(candidates)[2]


def find_target(ref: CrossReference, index: IdentifierIndex, output_root: Path) -> str | None:
    """Raw id of the entry ``ref`` points at, or None."""
    target_id = match_by_id(ref.href_raw, index.keys())
    if target_id is None:
        target_id = match_by_path(ref.href_raw, index, output_root)
    return target_id


@dataclass
class ResolutionStats:
    pages_scanned: int = 0
    pages_written: int = 0
    links_resolved: int = 0
    links_unresolved: int = 0
    self_links: int = 0


def resolve_page(
    owner_id: str,
    entry: IdentifierIndexEntry,
    content: str,
    index: IdentifierIndex,
    output_root: Path,
    stats: ResolutionStats | None = None,
) -> str:
    """Rewrite one page's placeholders and strip whatever markers remain."""
    stats = stats if stats is not None else ResolutionStats()

    for ref in entry.cross_references:
        target_id = find_target(ref, index, output_root)
        if target_id is None:
            stats.links_unresolved += 1
            continue
        if target_id == owner_id:
            stats.self_links += 1
            continue

        link_path = _relative_link_path(index.get(target_id), output_root)
        replacement = f"[[{link_path}|{ref.display_text}]]"
        content, count = _placeholder_re(ref.placeholder_id).subn(lambda _: replacement, content)
        if count:
            stats.links_resolved += 1
        else:
            logger.debug(f"Placeholder {ref.placeholder_id} not found in {entry.location.name}")

    return PLACEHOLDER_MARKER_RE.sub("", content)


def resolve_cross_references(index: IdentifierIndex, output_root: Path) -> ResolutionStats:
    """Rewrite every exported page's link placeholders into wikilinks.

    Freezes ``index``: every page must be registered before links are resolved.
    Pages are written back only when their text changed, so a second run over
    resolved output touches nothing.
    """
    index.freeze()
    output_root = Path(output_root)
    stats = ResolutionStats()

    for owner_id, entry in index.items():
        if entry.is_container:
            continue
        stats.pages_scanned += 1
        try:
            content = entry.location.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Cannot read {entry.location} for link resolution: {e}")
            continue

        updated = resolve_page(owner_id, entry, content, index, output_root, stats)
        if updated == content:
            continue
        try:
            entry.location.write_text(updated, encoding="utf-8")
        except OSError as e:
            logger.error(f"Cannot write resolved links to {entry.location}: {e}")
            continue
        stats.pages_written += 1

    logger.info(
        f"Resolved {stats.links_resolved} links, {stats.links_unresolved} unresolved, "
        f"{stats.self_links} self-links; rewrote {stats.pages_written}/{stats.pages_scanned} pages"
    )
    return stats
