from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response

from .cache import MemoryStore, RedisStore, RenderCache
from .config import Settings, load_env_files
from .discovery import OEmbedDiscoverer, OEmbedFetcher
from .logging_config import configure_logging
from .models import (
    MISSING_URL,
    RENDER_FAILED,
    ImageOutcome,
    NotAvailableOutcome,
    RedirectOutcome,
)
from .screenshot import RenderOrchestrator
from .service import SnapshotService

log = logging.getLogger(__name__)

NO_OEMBED_MESSAGE = "No oEmbed available."
MISSING_URL_MESSAGE = "Invalid oEmbed - no url provided for type photo"


def _cors_allow_origins() -> list[str]:
    raw = os.getenv("SNAP_CORS_ORIGINS", "").strip()
    if not raw:
        return ["http://localhost:3000"]
    return [o.strip() for o in raw.split(",") if o.strip()]


def _error(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _not_available_message(outcome: NotAvailableOutcome) -> str:
    if outcome.reason == MISSING_URL:
        return MISSING_URL_MESSAGE
    if outcome.reason == RENDER_FAILED:
        return f"Render failed: {outcome.detail or 'unknown'}"
    return NO_OEMBED_MESSAGE


def _source_url(url: str, request: Request) -> str:
    # The route only captures the path; the target's own query string arrives
    # as ours.
    query = request.url.query
    return f"{url}?{query}" if query else url


def build_service(settings: Settings, client: httpx.AsyncClient, store) -> SnapshotService:
    return SnapshotService(
        discoverer=OEmbedDiscoverer(
            client, timeout_ms=settings.fetch_timeout_ms, user_agent=settings.user_agent
        ),
        fetcher=OEmbedFetcher(
            client, timeout_ms=settings.fetch_timeout_ms, user_agent=settings.user_agent
        ),
        renderer=RenderOrchestrator(settings),
        cache=RenderCache(
            store,
            min_ttl_seconds=settings.min_ttl_seconds,
            default_ttl_seconds=settings.default_ttl_seconds,
            max_ttl_seconds=settings.max_ttl_seconds,
        ),
    )


def create_app(service: SnapshotService | None = None, settings: Settings | None = None) -> FastAPI:
    if not logging.getLogger().handlers:
        configure_logging()
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "service", None) is not None:
            yield
            return
        if settings.redis_url:
            store = RedisStore.from_url(settings.redis_url)
        else:
            store = MemoryStore(max_entries=settings.memory_max_entries)
        async with httpx.AsyncClient(follow_redirects=True) as client:
            app.state.service = build_service(settings, client, store)
            log.info(
                "Snapshot service ready (store=%s, viewport=%dx%d)",
                type(store).__name__,
                settings.viewport_width,
                settings.viewport_height,
            )
            try:
                yield
            finally:
                if isinstance(store, RedisStore):
                    await store.close()

    app = FastAPI(title="oEmbed Snapshot Service", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_allow_origins(),
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, e: Exception):
        log.exception("Unhandled error on %s: %s", request.url.path, e)
        return _error("Internal error.", status_code=500)

    @app.get("/")
    def index():
        return {"message": "Hello, World!"}

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.get("/oembed/{url:path}")
    async def oembed_endpoint(url: str, request: Request):
        svc: SnapshotService = request.app.state.service
        raw = await svc.get_oembed_raw(_source_url(url, request))
        if raw is None:
            return _error(NO_OEMBED_MESSAGE)
        return Response(content=raw, media_type="application/json")

    @app.get("/png/{url:path}")
    async def png_endpoint(url: str, request: Request):
        svc: SnapshotService = request.app.state.service
        outcome = await svc.get_snapshot(_source_url(url, request))

        if isinstance(outcome, ImageOutcome):
            image = outcome.image
            cache_control = f"public, max-age={image.ttl_seconds}"
            return Response(
                content=image.data,
                media_type=image.mime,
                headers={
                    "cache-control": cache_control,
                    "x-debug-cache-control": cache_control,
                    "x-snapshot-cache": "HIT" if image.cache_hit else "MISS",
                },
            )
        if isinstance(outcome, RedirectOutcome):
            return RedirectResponse(outcome.url, status_code=302)
        return _error(_not_available_message(outcome))

    return app


load_env_files()
app = create_app()


def main() -> None:
    import uvicorn

    host = os.getenv("SNAP_HOST", "0.0.0.0")
    port = int(os.getenv("SNAP_PORT", "8000"))
    log.info("Starting snapshot service host=%s port=%s", host, port)
    uvicorn.run(app, host=host, port=port)
