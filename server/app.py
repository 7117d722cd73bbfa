"""
Factory helpers for the Starlette HTTP application.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

import httpx
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from config import Settings, get_settings
from server.proxy_routes import build_proxy_routes
from server.stats_routes import build_stats_routes
from services.clock import Clock
from services.stats import create_stats_engine
from services.upstream_client import UpstreamClient

logger = logging.getLogger(__name__)


async def log_all_requests(request, call_next):
    start_time = time.time()
    request_id = id(request)
    logger.info(
        "HTTP REQUEST #%s %s %s query=%s client=%s",
        request_id,
        request.method,
        request.url.path,
        dict(request.query_params),
        request.client.host if request.client else None,
    )
    try:
        response = await call_next(request)
    except Exception:
        logger.error(
            "HTTP REQUEST #%s ERROR after %.4fs",
            request_id,
            time.time() - start_time,
            exc_info=True,
        )
        raise
    logger.info(
        "HTTP RESPONSE #%s status=%s elapsed=%.4fs",
        request_id,
        response.status_code,
        time.time() - start_time,
    )
    return response


async def apply_stats_rollover(request, call_next):
    """Roll day/week/month buckets over even when no API call arrives."""
    engine = getattr(request.app.state, "stats", None)
    if engine is not None:
        try:
            await engine.check_and_reset_scope()
        except Exception:
            logger.exception("Stats rollover check failed")
    return await call_next(request)


async def not_found_handler(request, _exc):
    logger.warning(
        "404 Not Found - method=%s path=%s query=%s",
        request.method,
        request.url.path,
        dict(request.query_params),
    )
    return Response("Not Found", status_code=404)


def create_starlette_app(
    settings: Settings | None = None,
    clock: Clock | None = None,
    upstream_transport: httpx.AsyncBaseTransport | None = None,
) -> Starlette:
    """Create and configure the Starlette application."""

    settings = settings or get_settings()
    clock = clock or Clock(settings.stats_timezone)

    @asynccontextmanager
    async def lifespan(app: Starlette):
        app.state.settings = settings
        app.state.stats = await create_stats_engine(settings, clock)
        app.state.upstream = UpstreamClient(
            settings.upstream_api_url,
            timeout=settings.upstream_timeout,
            transport=upstream_transport,
        )
        logger.info(
            "Starlette app started - stats storage: %s",
            app.state.stats.storage_type,
        )
        try:
            yield
        finally:
            logger.info("Shutdown signal received - closing upstream client and stats storage")
            await app.state.upstream.aclose()
            await app.state.stats.close()

    async def health_check(_request):
        return JSONResponse({
            "status": "healthy",
            "server": "meting-proxy",
            "version": settings.app_version,
        })

    async def root_endpoint(request):
        snapshot = request.app.state.stats.get_snapshot()
        return JSONResponse(
            {
                "server": "meting-proxy",
                "status": "running",
                "upstream": settings.upstream_api_url,
                "totalCalls": snapshot["totalCalls"],
                "todayCalls": snapshot["todayCalls"],
                "storageType": snapshot["storageType"],
                "endpoints": {
                    "/api": "Proxy to the upstream music API",
                    "/stats": "Call statistics",
                    "/stats/storage-info": "Active storage backend",
                    "/stats/backups": "Stats backups",
                    "/stats/analytics": "Call analytics (database storage only)",
                    "/health": "Health check endpoint",
                },
            }
        )

    routes = build_proxy_routes() + build_stats_routes(settings) + [
        Route("/health", health_check, methods=["GET"]),
        Route("/", root_endpoint, methods=["GET"]),
    ]

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        ),
        Middleware(BaseHTTPMiddleware, dispatch=log_all_requests),
        Middleware(BaseHTTPMiddleware, dispatch=apply_stats_rollover),
    ]

    return Starlette(
        routes=routes,
        middleware=middleware,
        exception_handlers={404: not_found_handler},
        lifespan=lifespan,
    )
