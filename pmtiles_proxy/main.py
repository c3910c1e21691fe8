"""
FastAPI application for the PMTiles proxy.

Serves tiles and TileJSON from PMTiles archives stored in S3, following
``/{name}/{z}/{x}/{y}.{ext}`` and ``/{name}.json``.

Usage:
    python -m pmtiles_proxy -p [port] -b [bind address]

    Or run directly with uvicorn:
    uvicorn pmtiles_proxy.main:get_app --factory --host 0.0.0.0 --port 8000 --workers 4
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from pmtiles_proxy.config import ProxySettings, load_settings
from pmtiles_proxy.responses import InboundRequest, Transport, normalize_headers
from pmtiles_proxy.service import build_service
from pmtiles_proxy.source import SourceFactory

logger = logging.getLogger("pmtiles_proxy")

SERVICE_NAME = "PMTiles Proxy"
VERSION = "1.0.0"


def create_app(
    settings: Optional[ProxySettings] = None,
    source_factory: Optional[SourceFactory] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application for serving PMTiles archives.

    Args:
        settings: Validated settings; loaded from the environment when omitted.
        source_factory: Archive source factory; S3 when omitted.

    Returns:
        Configured FastAPI application instance.

    Raises:
        ValueError: If configuration is invalid.
    """
    # Configure logging for worker processes (basicConfig is idempotent)
    pid = os.getpid()
    logging.basicConfig(
        level=logging.INFO,
        format=f"%(levelname)s:\t[WORKER {pid}] %(message)s",
    )

    if settings is None:
        try:
            settings = load_settings()
        except ValueError as e:
            logger.error("Configuration error: %s", e)
            raise

    proxy_settings = settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "PMTiles proxy starting for bucket '%s'", proxy_settings["bucket"]
        )
        app.state.settings = proxy_settings
        app.state.service = build_service(proxy_settings, source_factory)
        logger.info("PMTiles proxy ready")
        try:
            yield
        finally:
            cache = app.state.service.registry.cache
            logger.info(
                "PMTiles proxy shutting down (cache hits=%d misses=%d)",
                cache.hits,
                cache.misses,
            )

    app = FastAPI(
        title=SERVICE_NAME,
        description="Serves map tiles and TileJSON from PMTiles archives in S3",
        version=VERSION,
        lifespan=lifespan,
    )

    # Uncompressed tile bodies are left to this middleware (or a CDN)
    app.add_middleware(GZipMiddleware, minimum_size=500)

    cors_origin = settings.get("cors_origin")
    if cors_origin:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[cors_origin],
            allow_credentials=False,
            allow_methods=["GET"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        return response

    @app.get("/health", summary="Health check endpoint")
    async def health_check(request: Request):
        registry = request.app.state.service.registry
        return {
            "status": "healthy",
            "service": "pmtiles-proxy",
            "archives_loaded": len(registry),
        }

    @app.get("/", summary="Server information and status")
    async def root(request: Request):
        registry = request.app.state.service.registry
        return {
            "service": SERVICE_NAME,
            "version": VERSION,
            "bucket": request.app.state.settings["bucket"],
            "archives": {
                name: registry.archive_status[name] for name in registry.archive_names
            },
            "cache": {
                "entries": len(registry.cache),
                "max_entries": registry.cache.max_entries,
                "hits": registry.cache.hits,
                "misses": registry.cache.misses,
            },
            "health_check_url": "/health",
            "tile_url_format": "/{name}/{z}/{x}/{y}.{ext}",
            "tilejson_url_format": "/{name}.json",
        }

    @app.get("/{path:path}", summary="Serve a tile or TileJSON document")
    async def serve(path: str, request: Request):
        """
        Hands the raw request path to the tile service.

        Validation and error rendering happen in the service, so every
        transport answers a given path identically.
        """
        inbound = InboundRequest(
            path=request.url.path,
            headers=normalize_headers(request.headers),
            transport=Transport.ASGI,
        )
        result = await request.app.state.service.handle(inbound)
        return Response(
            content=result.body,
            status_code=result.status_code,
            headers=result.headers,
        )

    return app


def get_app() -> FastAPI:
    """
    Uvicorn factory entry point.

    Reads configuration from environment variables (see ``load_settings``).

    Returns:
        Configured FastAPI application instance.
    """
    return create_app()
