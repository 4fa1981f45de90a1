"""FastAPI application and command-line entry point for CamRelay.

CamRelay: MJPEG camera relay with on-demand transcoding and motion recording.

Architecture:
    - FastAPI app served by uvicorn; streaming bodies are async generators
    - External decoder processes write MJPEG to stdout, shared per feed
    - Transcoder processes for /{feed}/stream and motion recordings
    - Singleton FeedsService stored in services.container

Startup:
    create_app(config) builds the FeedsService and wires routes. The lifespan
    starts always-on capture (snapshots, motion) and stops every feed on
    shutdown.

Shutdown:
    GET /shutdown cancels the service's ShutdownToken; run() watches the
    token and tells uvicorn to exit, which runs the lifespan shutdown.

Logging Strategy:
    INFO  - Application lifecycle, listener, feed summary
    WARN  - Feeds without capture or output configured
    ERROR - Configuration errors, startup failures
"""
from __future__ import annotations

import argparse
import logging
import sys
import threading
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional, Sequence

import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .api import feeds
from .api.errors import (
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from .config_io import ConfigError, load_config
from .logging_config import configure_logging
from .metrics import start_metrics_server
from .middleware.basic_auth import BasicAuthMiddleware
from .middleware.request_id import RequestIDMiddleware
from .models.feed import ServerConfig
from .services import container
from .services.feeds_service import FeedsService
from .ui import views

logger = logging.getLogger(__name__)


# ============================================================================
# Application Lifespan Management
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start capture on startup; stop motion engines and decoders on shutdown."""
    service: FeedsService = app.state.feeds_service

    logger.info("=" * 80)
    logger.info(f"CamRelay {__version__} starting...")
    logger.info("=" * 80)

    for runtime in service.feeds.values():
        config = runtime.config
        logger.info(
            f"Feed '{config.name}': snapshot={config.snapshot_enabled}, "
            f"motion={config.motion_enabled}, stream={config.has_output_process}"
        )

    service.start_capture()
    logger.info("CamRelay ready")

    yield

    logger.info("=" * 80)
    logger.info("CamRelay shutting down...")
    logger.info("=" * 80)
    try:
        service.stop()
    except Exception as e:
        logger.error(f"Shutdown error: {e}", exc_info=True)
    logger.info("CamRelay shutdown complete")


# ============================================================================
# FastAPI Application
# ============================================================================

def create_app(config: ServerConfig, service: Optional[FeedsService] = None) -> FastAPI:
    """Build the application for ``config``.

    Args:
        config: Loaded server configuration
        service: Prebuilt FeedsService (tests inject fakes here)

    Returns:
        FastAPI app with routes, middleware and exception handlers
    """
    service = service or FeedsService(config)
    container.feeds_service = service

    app = FastAPI(
        title="CamRelay",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None
    )
    app.state.feeds_service = service

    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore
    app.add_exception_handler(Exception, general_exception_handler)

    # Last added runs first: request ID wraps authentication
    if config.auth_required:
        app.add_middleware(BasicAuthMiddleware, username=config.username, password=config.password)
    app.add_middleware(RequestIDMiddleware)

    views.configure_templates(config.template_dir)

    # Order matters: /shutdown before /{feed}, /{feed}/ before /{feed}/{action}
    app.include_router(feeds.router)
    app.include_router(views.router)
    app.include_router(feeds.fallback_router)

    return app


# ============================================================================
# Command Line
# ============================================================================

def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="camrelay",
        description="MJPEG camera relay with on-demand transcoding and motion recording"
    )
    parser.add_argument("--config", help="Config file (default: $CONFIG_PATH or ./config.yml)")
    parser.add_argument("--host", help="Override the listen address")
    parser.add_argument("--port", type=int, help="Override the listen port")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def _watch_shutdown(service: FeedsService, server: uvicorn.Server) -> None:
    service.token.wait()
    logger.info("Stopping HTTP server")
    server.should_exit = True


def run(argv: Optional[Sequence[str]] = None) -> None:
    """Console entry point: load config and serve until /shutdown or a signal."""
    args = parse_args(argv)
    configure_logging()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    host = args.host or config.host
    port = args.port or config.port

    app = create_app(config)
    service = container.feeds_service

    if config.metrics_port:
        start_metrics_server(config.metrics_port, host)

    server = uvicorn.Server(uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        access_log=False,
        timeout_graceful_shutdown=5
    ))
    threading.Thread(
        target=_watch_shutdown,
        args=(service, server),
        name="shutdown-watcher",
        daemon=True
    ).start()

    logger.info(f"Listening on http://{host}:{port}")
    server.run()


if __name__ == "__main__":
    run()
