"""
Async client for the upstream music-metadata API.

Requests are forwarded as-is (query string in, body and headers out); this
module never interprets the payload.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

logger = logging.getLogger(__name__)

# Response headers that must not be copied onto our own response.
_HOP_BY_HOP = {
    "connection",
    "content-encoding",
    "content-length",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


class UpstreamError(RuntimeError):
    """Raised when the upstream API cannot be reached."""


@dataclass
class UpstreamResponse:
    status_code: int
    content: bytes
    headers: dict[str, str]
    elapsed_ms: int


class UpstreamClient:
    """Thin wrapper over a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )

    async def fetch(
        self,
        params: Mapping[str, Any] | list[tuple[str, str]],
        headers: Mapping[str, str] | None = None,
    ) -> UpstreamResponse:
        """GET the upstream endpoint with the given query parameters."""
        start_time = time.time()
        try:
            response = await self._client.get(self.base_url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            elapsed_ms = int((time.time() - start_time) * 1000)
            logger.error("UPSTREAM_ERROR: %s after %sms: %s", self.base_url, elapsed_ms, exc)
            raise UpstreamError(str(exc) or exc.__class__.__name__) from exc

        elapsed_ms = int((time.time() - start_time) * 1000)
        logger.info(
            "UPSTREAM_RESPONSE: status=%d elapsed=%dms bytes=%d",
            response.status_code,
            elapsed_ms,
            len(response.content),
        )
        return UpstreamResponse(
            status_code=response.status_code,
            content=response.content,
            headers={
                key.lower(): value
                for key, value in response.headers.items()
                if key.lower() not in _HOP_BY_HOP
            },
            elapsed_ms=elapsed_ms,
        )

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["UpstreamClient", "UpstreamError", "UpstreamResponse"]
