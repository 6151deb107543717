"""HTTP client that shares the browser's authenticated session."""

import logging
from typing import Any

import httpx

from .config import REQUEST_TIMEOUT

logger = logging.getLogger(__name__)


class SessionHttp:
    """Async HTTP client whose cookie jar mirrors the browser context.

    Requests made here carry the same authentication as the live browsing
    surface, so attachment URLs that need a signed-in user can be fetched
    without driving the UI. The underlying ``httpx.AsyncClient`` is created on
    first use, after the browser has finished signing in.
    """

    def __init__(
        self,
        browser_context: Any | None = None,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._browser_context = browser_context
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _load_cookies(self) -> httpx.Cookies:
        cookies = httpx.Cookies()
        if self._browser_context is None:
            return cookies
        for cookie in await self._browser_context.cookies():
            cookies.set(
                cookie["name"],
                cookie["value"],
                domain=cookie.get("domain", ""),
                path=cookie.get("path", "/"),
            )
        logger.debug(f"Loaded {len(cookies.jar)} cookies from browser context")
        return cookies

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                cookies=await self._load_cookies(),
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def get(self, url: str) -> httpx.Response:
        client = await self._get_client()
        return await client.get(url)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
