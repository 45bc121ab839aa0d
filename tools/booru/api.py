"""Donmai API client – throttled async HTTP fetcher."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx

from .config import AuthConfig, ProviderConfig
from .errors import AssetUnavailableError, ProviderProtocolError, TransientNetworkError

logger = logging.getLogger("booru.api")

USER_AGENT = "booru-crawler/0.1 (+https://github.com/booru-crawler/booru-crawler)"
CHUNK_SIZE = 1 << 16


def retry_after(resp: httpx.Response) -> float | None:
    """Seconds from a numeric ``Retry-After`` header, if any."""
    value = resp.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class BooruAPI:
    """Thin wrapper around one board's JSON API with request throttling.

    Retries are not handled here; callers decide what to do with
    :class:`TransientNetworkError`.
    """

    def __init__(
        self,
        cfg: ProviderConfig,
        auth: AuthConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cfg = cfg
        auth = auth or AuthConfig()
        self._auth = None if auth.anonymous else httpx.BasicAuth(auth.username, auth.api_key)
        self._last_request: float = 0.0
        self._lock = asyncio.Lock()
        self._client = httpx.AsyncClient(
            base_url=cfg.host,
            timeout=cfg.timeout,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            transport=transport,
        )

    # ── rate limiting ────────────────────────────────────────────
    async def _throttle(self) -> None:
        async with self._lock:
            elapsed = time.monotonic() - self._last_request
            if elapsed < self.cfg.request_delay:
                await asyncio.sleep(self.cfg.request_delay - elapsed)
            self._last_request = time.monotonic()

    # ── public API ───────────────────────────────────────────────

    async def get(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        """Issue a GET against the board.  Status codes are left to the caller."""
        await self._throttle()
        # credentials only go to the API host, never to the asset CDN
        extra: dict[str, Any] = {"auth": self._auth} if self._auth else {}
        try:
            resp = await self._client.get(path, params=params, **extra)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientNetworkError(f"GET {path} failed: {exc!r}") from exc
        except httpx.HTTPError as exc:
            raise ProviderProtocolError(f"GET {path} failed: {exc!r}") from exc
        logger.debug("GET %s -> %d", resp.url, resp.status_code)
        return resp

    async def stream_asset(self, url: str) -> AsyncIterator[bytes]:
        """Yield the body of ``url`` chunk by chunk."""
        try:
            async with self._client.stream("GET", url) as resp:
                if resp.status_code == 429 or resp.status_code >= 500:
                    raise TransientNetworkError(
                        f"{resp.status_code} for {url}", retry_after=retry_after(resp)
                    )
                if resp.is_error:
                    raise AssetUnavailableError(f"{resp.status_code} for {url}")
                async for chunk in resp.aiter_bytes(CHUNK_SIZE):
                    yield chunk
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientNetworkError(f"download of {url} failed: {exc!r}") from exc
        except httpx.HTTPError as exc:
            raise AssetUnavailableError(f"download of {url} failed: {exc!r}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> BooruAPI:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()
