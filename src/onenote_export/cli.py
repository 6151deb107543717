"""Command line entry point.

Usage:
    onenote-export resolve [OUTPUT_ROOT] [--index PATH]
    onenote-export fetch URL DEST [--name NAME]
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from urllib.parse import unquote, urlsplit

from . import __version__
from .config import OUTPUT_DIR
from .downloads import ResourceCoordinator
from .exporter import load_index
from .links import resolve_cross_references
from .models import ResourceDescriptor, is_cloud_url
from .session import SessionHttp

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%b %d %H:%M:%S",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _cmd_resolve(args: argparse.Namespace) -> int:
    output_root = Path(args.output_root)
    try:
        index = load_index(output_root, args.index)
    except (OSError, ValueError, KeyError) as e:
        logger.error(f"Cannot load identifier index: {e}")
        return 1
    stats = resolve_cross_references(index, output_root)
    print(f"Rewrote {stats.pages_written} of {stats.pages_scanned} pages")
    return 0


async def _fetch(url: str, dest: Path, name: str) -> bool:
    http = SessionHttp()
    try:
        coordinator = ResourceCoordinator(http)
        descriptor = ResourceDescriptor(
            id=name,
            source_url=url,
            original_name=name,
            is_cloud_hosted=is_cloud_url(url),
        )
        outcome = await coordinator.acquire(descriptor, dest)
        return outcome.succeeded
    finally:
        await http.close()


def _cmd_fetch(args: argparse.Namespace) -> int:
    name = args.name or unquote(Path(urlsplit(args.url).path).name) or "file"
    dest = Path(args.dest)
    if dest.is_dir():
        dest = dest / name
    ok = asyncio.run(_fetch(args.url, dest, name))
    if ok:
        print(f"Saved {dest}")
    return 0 if ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="onenote-export",
        description="Export OneNote notebooks to Obsidian-compatible Markdown",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    resolve = sub.add_parser("resolve", help="Resolve internal links in an exported notebook")
    resolve.add_argument(
        "output_root",
        type=Path,
        nargs="?",
        default=Path(OUTPUT_DIR),
        help=f"Exported notebook directory (default: {OUTPUT_DIR})",
    )
    resolve.add_argument(
        "--index",
        type=Path,
        default=None,
        help="Identifier index manifest (default: OUTPUT_ROOT/.onenote-index.json)",
    )
    resolve.set_defaults(func=_cmd_resolve)

    fetch = sub.add_parser("fetch", help="Download one attachment URL without a browser")
    fetch.add_argument("url", help="Attachment URL (SharePoint/OneDrive links are forced to download)")
    fetch.add_argument("dest", type=Path, help="Destination file or directory")
    fetch.add_argument("--name", default=None, help="File name to use when DEST is a directory")
    fetch.set_defaults(func=_cmd_fetch)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
