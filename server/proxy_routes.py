"""
Pass-through route to the upstream music-metadata API.

Successful (HTTP 200) upstream responses are counted by the stats engine;
every attempt is written to the call log when the database is active.
Stats failures never affect the proxied response.
"""

from __future__ import annotations

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from services.stats import StatsEngine
from services.stats_storage import CallEvent
from services.upstream_client import UpstreamClient, UpstreamError

logger = logging.getLogger(__name__)


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


def _endpoint_label(request: Request) -> str:
    api_type = request.query_params.get("type")
    return f"{request.url.path}?type={api_type}" if api_type else request.url.path


async def _track(request: Request, status_code: int, elapsed_ms: int) -> None:
    engine: StatsEngine = request.app.state.stats
    if status_code == 200:
        try:
            await engine.record_call()
        except Exception:
            logger.exception("Failed to record API call")
    await engine.log_event(
        CallEvent(
            endpoint=_endpoint_label(request),
            method=request.method,
            status_code=status_code,
            response_time_ms=elapsed_ms,
            client_ip=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    )


def build_proxy_routes() -> list[Route]:
    """Return the Routes that forward to the upstream API."""

    async def api_proxy(request: Request):
        upstream: UpstreamClient = request.app.state.upstream
        try:
            result = await upstream.fetch(request.query_params.multi_items())
        except UpstreamError as exc:
            await _track(request, 502, 0)
            return JSONResponse(
                {"success": False, "message": f"Upstream API unavailable: {exc}"},
                status_code=502,
            )

        await _track(request, result.status_code, result.elapsed_ms)
        return Response(
            content=result.content,
            status_code=result.status_code,
            headers=result.headers,
        )

    return [Route("/api", api_proxy, methods=["GET"])]


__all__ = ["build_proxy_routes"]
