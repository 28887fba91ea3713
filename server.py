#!/usr/bin/env python3
"""
HTTP surface for the news gateway.

    GET /api/s?id=<source>[&filter=<json rules>][&latest]
    GET /api/sources
    GET /api/health

Usage:
    python main.py serve                  # Run on HOST:PORT from config
    uvicorn server:create_app --factory   # Production with uvicorn
"""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import BackgroundTasks, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from cache import SqliteCache
from config import config, get_logger
from errors import CacheUnavailableError
from filters import parse_filter_param
from orchestrator import FetchOrchestrator
from sources import build_registry
from telemetry import init_telemetry
from upstream import create_strategy

logger = get_logger("server")


def is_latest_requested(value: Optional[str]) -> bool:
    """``latest`` is on when present with any value other than "false"."""
    return value is not None and value != "false"


def is_eligible(request: Request) -> bool:
    """Callers may force a refresh when login is disabled or they present a known API token."""
    if config.DISABLE_LOGIN:
        return True
    auth = request.headers.get("authorization") or ""
    scheme, _, token = auth.partition(" ")
    return scheme.lower() == "bearer" and token.strip() in config.API_TOKENS


async def cache_state(cache) -> str:
    """Report "disabled", "ok" or "unavailable" for the cache gateway."""
    if cache is None:
        return "disabled"
    count = getattr(cache, "count", None)
    if count is None:
        return "ok"
    try:
        await count()
    except CacheUnavailableError as e:
        logger.warning(f"Cache health check failed: {e}")
        return "unavailable"
    return "ok"


def create_app(orchestrator: Optional[FetchOrchestrator] = None) -> FastAPI:
    """Build the FastAPI app.

    When no orchestrator is given, the lifespan builds one from configuration:
    a fetch strategy, the source registry and (unless disabled) the sqlite cache.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        strategy = None
        cache = None
        if orchestrator is None:
            init_telemetry("news-gateway")
            logger.info(f"Configuration: {config.get_config_summary()}")
            strategy = create_strategy()
            if not config.DISABLE_CACHE:
                cache = SqliteCache()
                try:
                    await cache.start()
                except CacheUnavailableError as e:
                    logger.error(f"Running without cache: {e}")
                    await cache.close()
                    cache = None
            app.state.orchestrator = FetchOrchestrator(build_registry(strategy), cache=cache)
        else:
            app.state.orchestrator = orchestrator
        logger.info("News gateway HTTP server starting...")
        try:
            yield
        finally:
            logger.info("News gateway HTTP server shutting down...")
            if cache is not None:
                await cache.close()
            if strategy is not None:
                await strategy.close()

    app = FastAPI(
        title="News Gateway",
        description="Aggregated news sources with caching and filtering",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.get("/api/s")
    async def get_source(
        request: Request,
        background_tasks: BackgroundTasks,
        id: Optional[str] = Query(None),
        filter: Optional[str] = Query(None),
        latest: Optional[str] = Query(None),
    ):
        try:
            rules = parse_filter_param(filter)
            response = await request.app.state.orchestrator.serve(
                id,
                rules=rules,
                latest=is_latest_requested(latest),
                eligible=is_eligible(request),
                defer=background_tasks.add_task,
            )
            return response.to_dict()
        except Exception as e:  # noqa: BLE001
            logger.error(f"Request for source {id!r} failed: {e}")
            return JSONResponse(status_code=500, content={"message": str(e) or "Internal Server Error"})

    @app.get("/api/sources")
    async def list_sources(request: Request):
        registry = request.app.state.orchestrator.registry
        return {"sources": [d.to_dict() for d in registry.descriptors()]}

    @app.get("/api/health")
    async def health(request: Request):
        orchestrator_ = request.app.state.orchestrator
        return {
            "status": "ok",
            "sources": len(orchestrator_.registry),
            "cache": await cache_state(orchestrator_.cache),
        }

    return app


def run(host: Optional[str] = None, port: Optional[int] = None) -> None:
    uvicorn.run(create_app(), host=host or config.HOST, port=port or config.PORT, log_level="info")
