"""HTTP transport: turns a URL into bytes.

Retry and backoff policy belongs to the caller. httpx errors propagate
unchanged; is_transient() tells the caller which ones deserve another try.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx

from hoard import __version__

USER_AGENT = f"hoard/{__version__}"

# Everything a fetch can raise on the network side. InvalidURL is not an
# HTTPError subclass.
FETCH_ERRORS = (httpx.HTTPError, httpx.InvalidURL)


@dataclass
class FetchStream:
    """An open response body.

    ``expected_size`` is the announced Content-Length, or None when the
    server sent none or the body is content-encoded.
    """

    url: str
    expected_size: int | None
    response: httpx.Response

    def aiter_bytes(self, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        return self.response.aiter_bytes(chunk_size)


class HttpTransport:
    """Shared ``httpx.AsyncClient`` wrapper."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 30.0) -> None:
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @asynccontextmanager
    async def stream(self, url: str) -> AsyncIterator[FetchStream]:
        """Open *url* for streaming. Raises ``httpx.HTTPStatusError`` on non-2xx."""
        async with self._client.stream("GET", url) as response:
            response.raise_for_status()
            yield FetchStream(url=url, expected_size=_content_length(response), response=response)

    async def fetch_bytes(self, url: str) -> bytes:
        resp = await self._client.get(url)
        resp.raise_for_status()
        return resp.content


def is_transient(exc: Exception) -> bool:
    """True for failures worth retrying: connection problems, timeouts, 5xx, 429."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status == 429
    if isinstance(exc, httpx.UnsupportedProtocol):
        return False
    return isinstance(exc, httpx.TransportError)


def _content_length(response: httpx.Response) -> int | None:
    # Content-Length counts encoded bytes; aiter_bytes yields decoded ones.
    if response.headers.get("Content-Encoding", "identity").lower() != "identity":
        return None
    length = response.headers.get("Content-Length")
    return int(length) if length and length.isdigit() else None
