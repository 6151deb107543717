"""Attachment and media acquisition.

Attachments are fetched through an ordered cascade of strategies, each retried
on its own before the next one is tried:

1. Direct: rewrite a SharePoint/OneDrive URL to force a raw download and fetch
   it with the browser's cookies.
2. UI Click: double-click the attachment in the live page and capture either
   the download it triggers or the viewer window it opens.
3. Fallback: plain request against the original URL.

Inline images and videos need no cascade and go through ``download_resource``.
"""

import asyncio
import base64
import binascii
import functools
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qsl, urlsplit, urlunsplit

import httpx
from playwright.async_api import Error as PlaywrightError

from .config import (
    ATTACHMENT_ID_ATTRIBUTE,
    DIALOG_CLICK_TIMEOUT,
    DIALOG_SETTLE_DELAY,
    DOUBLE_CLICK_DELAY_MS,
    DOWNLOAD_RETRY_INITIAL_DELAY,
    ELEMENT_LOOKUP_TIMEOUT,
    EVENT_WAIT_TIMEOUT,
    FORCE_DOWNLOAD_PARAM,
    RACE_TIMEOUT,
)
from .models import AcquisitionOutcome, ResourceDescriptor, Strategy, is_cloud_url
from .retry import RetryPolicy, with_retry
from .session import SessionHttp

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:([A-Za-z+/.-]+);base64,(.+)$", re.DOTALL)
_DOWNLOAD_BUTTON_NAME = re.compile(r"^Download$", re.IGNORECASE)


class StrategyError(Exception):
    """One attempt of one strategy failed; worth retrying."""


class StrategyDeclined(Exception):
    """The strategy cannot apply to this resource; move on without retrying."""


class AcquisitionError(Exception):
    """Every strategy failed for one resource."""

    def __init__(self, original_name: str):
        self.original_name = original_name
        super().__init__(f"All download strategies failed for {original_name}")


class ResourceFetchError(Exception):
    """A plain resource request returned a non-success status."""


def force_download_url(url: str) -> str:
    """Append ``download=1`` to the query string unless it is already there."""
    parts = urlsplit(url)
    name, value = FORCE_DOWNLOAD_PARAM
    if (name, value) in parse_qsl(parts.query, keep_blank_values=True):
        return url
    query = f"{parts.query}&{name}={value}" if parts.query else f"{name}={value}"
    return urlunsplit(parts._replace(query=query))


def is_file_response(response: httpx.Response) -> bool:
    """A successful response that is not an HTML page (sign-in or viewer)."""
    content_type = response.headers.get("content-type", "").lower()
    return response.is_success and "text/html" not in content_type


def _write_file(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)


async def first_settled(
    waits: dict[str, Awaitable[Any]],
    timeout: float,
) -> tuple[str, Any] | None:
    """Wait for the first of ``waits`` to produce a value.

    Waits that fail (for instance their own timeout expiring) drop out of the
    race. Returns ``(name, value)`` of the winner, or None once every wait has
    failed or ``timeout`` seconds have passed. Losing waits are left running;
    the caller owns them.
    """
    futures = {name: asyncio.ensure_future(w) for name, w in waits.items()}
    pending = set(futures.values())
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while pending:
        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        _, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
        # Declaration order decides between waits that settle in the same tick
        for name, fut in futures.items():
            if fut.done() and not fut.cancelled() and fut.exception() is None:
                return name, fut.result()
    return None


async def _close_quietly(window: Any) -> None:
    try:
        await window.close()
    except PlaywrightError as e:
        logger.debug(f"Could not close window: {e}")


async def _discard(fut: asyncio.Future, close_result: bool = False) -> None:
    """Cancel a losing wait; with ``close_result``, close the window it opened."""
    if not fut.done():
        fut.cancel()
        return
    if fut.cancelled() or fut.exception() is not None:
        return
    if close_result:
        await _close_quietly(fut.result())


@dataclass(frozen=True)
class UiTimeouts:
    """Bounds (seconds) on every wait in the UI strategy."""

    element_lookup: float = ELEMENT_LOOKUP_TIMEOUT
    event_wait: float = EVENT_WAIT_TIMEOUT
    dialog_settle: float = DIALOG_SETTLE_DELAY
    dialog_click: float = DIALOG_CLICK_TIMEOUT
    race: float = RACE_TIMEOUT


class ResourceCoordinator:
    """Acquires attachments by trying each strategy in priority order.

    Args:
        http: Session-sharing HTTP client used by the network strategies.
        frame: Frame (or page) holding the tagged attachment elements. Without
            it the UI strategy always declines.
        page: Page that emits download/popup events. Defaults to ``frame.page``.
        retry_policy: Attempt budget applied to each strategy separately.
        ui_timeouts: Wait bounds for the UI strategy.
    """

    def __init__(
        self,
        http: SessionHttp,
        frame: Any | None = None,
        page: Any | None = None,
        retry_policy: RetryPolicy | None = None,
        ui_timeouts: UiTimeouts | None = None,
    ):
        self._http = http
        self._frame = frame
        self._page = page if page is not None else getattr(frame, "page", None)
        self._policy = retry_policy or RetryPolicy(initial_delay=DOWNLOAD_RETRY_INITIAL_DELAY, silent=True)
        self._timeouts = ui_timeouts or UiTimeouts()
        self._late_popup_closer: Callable[[Any], Awaitable[None]] | None = None
        self._strategies: list[tuple[Strategy, Callable[[ResourceDescriptor, Path], Awaitable[None]]]] = [
            (Strategy.DIRECT, self.try_direct),
            (Strategy.UI_INTERACTION, self.try_ui_interaction),
            (Strategy.FALLBACK, self.try_fallback),
        ]

    async def acquire(self, descriptor: ResourceDescriptor, target: Path) -> AcquisitionOutcome:
        """Write the resource to ``target``. Never raises for a failed download."""
        try:
            strategy = await self._run_cascade(descriptor, Path(target))
        except AcquisitionError as e:
            logger.error(f"      Error: {e}")
            return AcquisitionOutcome(succeeded=False)
        logger.info(f"      [Success] Downloaded via Strategy: {strategy.value}")
        return AcquisitionOutcome(succeeded=True, strategy_used=strategy, bytes_written=True)

    async def _run_cascade(self, descriptor: ResourceDescriptor, target: Path) -> Strategy:
        for kind, attempt in self._strategies:
            policy = self._policy.with_label(f"{kind.value} download of {descriptor.original_name}")
            try:
                await with_retry(functools.partial(attempt, descriptor, target), policy, retry_on=(StrategyError,))
                return kind
            except StrategyDeclined as e:
                logger.debug(f"      [Strategy: {kind.value}] skipped: {e}")
            except StrategyError as e:
                logger.debug(f"      [Strategy: {kind.value}] failed: {e}")
            except Exception as e:
                logger.debug(f"      [Strategy: {kind.value}] failed: {type(e).__name__}: {e}")
        raise AcquisitionError(descriptor.original_name)

    async def _fetch_to_file(self, url: str, target: Path) -> None:
        try:
            response = await self._http.get(url)
        except httpx.InvalidURL as e:
            raise StrategyDeclined(f"Invalid URL {url[:50]!r}: {e}") from e
        except httpx.HTTPError as e:
            raise StrategyError(f"Request failed for {url[:50]}...: {type(e).__name__}: {e}") from e
        if not is_file_response(response):
            content_type = response.headers.get("content-type", "")
            raise StrategyError(f"No file at {url[:50]}... (HTTP {response.status_code}, {content_type or 'no content-type'})")
        try:
            _write_file(target, response.content)
        except OSError as e:
            raise StrategyError(f"Could not write {target}: {e}") from e

    async def try_direct(self, descriptor: ResourceDescriptor, target: Path) -> None:
        if not descriptor.is_cloud_hosted:
            raise StrategyDeclined("not a cloud-storage URL")
        logger.info("      [Strategy: Direct] Attempting URL transformation...")
        await self._fetch_to_file(force_download_url(descriptor.source_url), target)

    async def try_fallback(self, descriptor: ResourceDescriptor, target: Path) -> None:
        if not descriptor.source_url:
            raise StrategyDeclined("no source URL")
        logger.info("      [Strategy: Fallback] Attempting direct request...")
        await self._fetch_to_file(descriptor.source_url, target)

    async def try_ui_interaction(self, descriptor: ResourceDescriptor, target: Path) -> None:
        if self._frame is None or self._page is None:
            raise StrategyDeclined("no browsing surface")
        self._disarm_late_popup_closer()

        selector = f'[{ATTACHMENT_ID_ATTRIBUTE}="{descriptor.id}"]'
        try:
            element = await self._frame.wait_for_selector(
                selector, state="attached", timeout=self._timeouts.element_lookup * 1000
            )
        except PlaywrightError:
            element = None
        if element is None:
            logger.info(f"      [Strategy: UI Click] Could not find clickable element for {descriptor.id}")
            raise StrategyDeclined(f"element {descriptor.id} not on page")

        logger.info("      [Strategy: UI Click] Triggering double click and waiting for download event...")
        event_timeout = self._timeouts.event_wait * 1000
        try:
            await element.scroll_into_view_if_needed()
        except PlaywrightError as e:
            raise StrategyError(f"Could not scroll to {descriptor.id}: {e}") from e

        target.parent.mkdir(parents=True, exist_ok=True)
        waits_expire_at = asyncio.get_running_loop().time() + self._timeouts.event_wait
        download_wait = asyncio.ensure_future(self._page.wait_for_event("download", timeout=event_timeout))
        popup_wait = asyncio.ensure_future(self._page.wait_for_event("popup", timeout=event_timeout))
        kind = None
        try:
            # Some attachment tiles ignore a single click
            await element.dblclick(force=True, delay=DOUBLE_CLICK_DELAY_MS)
            await self._confirm_download_dialog()
            settled = await first_settled({"download": download_wait, "popup": popup_wait}, self._timeouts.race)

            if settled is None:
                raise StrategyError("Neither a download nor a popup appeared")
            kind, value = settled
            if kind == "download":
                await value.save_as(str(target))
            else:
                await self._download_from_popup(value, target)
        except PlaywrightError as e:
            raise StrategyError(f"UI click failed for {descriptor.id}: {e}") from e
        finally:
            if kind != "download":
                await _discard(download_wait)
            if kind != "popup":
                if not popup_wait.done():
                    self._arm_late_popup_closer(waits_expire_at)
                await _discard(popup_wait, close_result=True)

    def _arm_late_popup_closer(self, expires_at: float) -> None:
        """Close a window the lost click opens before its popup wait would have expired."""
        self._disarm_late_popup_closer()

        async def close_late_popup(popup: Any) -> None:
            self._late_popup_closer = None
            logger.debug(f"      Closing popup that opened after the race: {popup.url[:80]}")
            await _close_quietly(popup)

        self._page.once("popup", close_late_popup)
        self._late_popup_closer = close_late_popup
        loop = asyncio.get_running_loop()
        loop.call_later(max(0.0, expires_at - loop.time()), self._disarm_late_popup_closer, close_late_popup)

    def _disarm_late_popup_closer(self, closer: Callable[[Any], Awaitable[None]] | None = None) -> None:
        if self._late_popup_closer is None:
            return
        if closer is not None and closer is not self._late_popup_closer:
            return
        self._page.remove_listener("popup", self._late_popup_closer)
        self._late_popup_closer = None

    async def _confirm_download_dialog(self) -> bool:
        """Click the 'Download' button of a confirmation modal, if one shows up."""
        await asyncio.sleep(self._timeouts.dialog_settle)
        for where, surface in (("page", self._page), ("frame", self._frame)):
            button = surface.get_by_role("button", name=_DOWNLOAD_BUTTON_NAME).first
            try:
                if await button.is_visible():
                    logger.info(f"      [Strategy: UI Click] Found confirmation dialog on {where}, clicking Download...")
                    await button.click(timeout=self._timeouts.dialog_click * 1000)
                    return True
            except PlaywrightError as e:
                logger.debug(f"      Confirmation dialog probe on {where} failed: {e}")
        return False

    async def _download_from_popup(self, popup: Any, target: Path) -> None:
        download_wait: asyncio.Future | None = None
        try:
            popup_url = popup.url
            if not is_cloud_url(popup_url):
                raise StrategyError(f"Popup opened an unexpected page: {popup_url[:80]}")

            download_wait = asyncio.ensure_future(
                popup.wait_for_event("download", timeout=self._timeouts.event_wait * 1000)
            )
            try:
                await popup.goto(force_download_url(popup_url))
            except PlaywrightError as e:
                # goto() aborts when the navigation turns into a download
                logger.debug(f"      Popup navigation ended: {e}")
            download = await download_wait
            await download.save_as(str(target))
        finally:
            if download_wait is not None:
                await _discard(download_wait)
            await _close_quietly(popup)


async def download_resource(
    http: SessionHttp,
    url: str,
    target: Path,
    retry_policy: RetryPolicy | None = None,
) -> bool:
    """Fetch an inline image or video to ``target``.

    ``data:`` URLs are decoded in place. Returns False instead of raising when
    the resource cannot be saved.
    """
    target = Path(target)
    if not url:
        return False

    if url.startswith("data:"):
        match = _DATA_URL_RE.match(url)
        if not match:
            logger.warning(f"Unsupported data URL for {target.name}")
            return False
        try:
            _write_file(target, base64.b64decode(match.group(2)))
        except (binascii.Error, OSError) as e:
            logger.error(f"Error saving embedded resource {target.name}: {e}")
            return False
        return True

    async def _fetch() -> None:
        response = await http.get(url)
        if not response.is_success:
            raise ResourceFetchError(f"Failed to download resource (HTTP {response.status_code}): {url[:100]}...")
        _write_file(target, response.content)

    policy = retry_policy or RetryPolicy(
        initial_delay=DOWNLOAD_RETRY_INITIAL_DELAY, label="Download resource", silent=True
    )
    try:
        await with_retry(_fetch, policy, retry_on=(httpx.HTTPError, ResourceFetchError, OSError))
    except (httpx.HTTPError, httpx.InvalidURL, ResourceFetchError, OSError) as e:
        logger.error(f"Error downloading resource {url[:100]}...: {e}")
        return False
    return True
