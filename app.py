"""
Process entrypoint for the Meting proxy.

Loads ``.env``, configures logging and exposes ``starlette_app`` for ASGI
servers; ``python app.py`` (or the ``meting-proxy`` script) runs uvicorn.
"""

from __future__ import annotations

import argparse
import logging
import sys

import uvicorn
from dotenv import load_dotenv

from config import get_settings
from logging_config import configure_logging
from server.app import create_starlette_app

load_dotenv()
settings = get_settings()
configure_logging(settings.log_file, settings.log_level)

logger = logging.getLogger(__name__)

starlette_app = create_starlette_app(settings)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Meting API proxy with call statistics")
    parser.add_argument("--host", default=settings.host, help="bind address (HOST)")
    parser.add_argument("--port", type=int, default=settings.port, help="listen port (PORT)")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Run the proxy under uvicorn until interrupted."""
    args = _parse_args(argv)
    logger.info(
        "Starting meting-proxy %s on %s:%s (upstream %s)",
        settings.app_version,
        args.host,
        args.port,
        settings.upstream_api_url,
    )
    logger.info("Stats at http://%s:%s/stats", args.host, args.port)

    try:
        uvicorn.run(
            starlette_app,
            host=args.host,
            port=args.port,
            log_config=None,
            timeout_graceful_shutdown=10,
        )
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        logger.info("meting-proxy stopped")
        logging.shutdown()


if __name__ == "__main__":
    try:
        main()
    except Exception:
        logger.exception("Fatal error")
        sys.exit(1)
