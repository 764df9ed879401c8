# -*- coding: utf-8 -*-
from __future__ import annotations

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import Awaitable, Optional, TypeVar

import httpx
from fastapi import FastAPI, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response

from .errors import ClientDisconnected, ManifestInvalid, StreamResolverError
from .fetch import Sleeper
from .proxy import CORS_HEADERS, StreamingProxy
from .registry import StrategyRegistry, load_strategies
from .scraper import ScrapeOrchestrator, SourceExtractor
from .settings import Settings, load_settings
from .stores import RateLimiter, ScrapeCache

# configure logging at application level
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

T = TypeVar("T")

DISCONNECT_POLL = 0.5


def _now_ts() -> int:
    return int(time.time())


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error_response(status_code: int, message: str) -> JSONResponse:
    body = {"error": message}
    if status_code >= 500:
        body["timestamp"] = _timestamp()
    return JSONResponse(body, status_code=status_code, headers=CORS_HEADERS)


def client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def cancel_on_disconnect(request: Request, work: Awaitable[T], poll: float = DISCONNECT_POLL) -> T:
    """Run ``work`` but drop it as soon as the client goes away."""
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("Client disconnected, cancelling %s", request.url.path)
                task.cancel()
                raise ClientDisconnected("client disconnected")
    finally:
        if not task.done():
            task.cancel()


def create_app(
    settings: Optional[Settings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Sleeper = asyncio.sleep,
    cache: Optional[ScrapeCache] = None,
    limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    settings = settings or load_settings()
    app = FastAPI(title="Stream Resolver", version="2.0.0")

    registry = StrategyRegistry(load_strategies(settings.extractors_json))
    app.state.settings = settings
    app.state.cache = cache if cache is not None else ScrapeCache(default_ttl=settings.cache_ttl)
    app.state.limiter = limiter if limiter is not None else RateLimiter(
        max_requests=settings.rate_limit, window_seconds=settings.rate_window
    )
    app.state.scraper = ScrapeOrchestrator(
        app.state.cache,
        app.state.limiter,
        SourceExtractor(registry, sleep=sleep),
        site_base=settings.site_base,
        transport=transport,
        timeout=settings.upstream_timeout,
        sleep=sleep,
    )
    app.state.proxy = StreamingProxy(
        public_base=settings.proxy_public_base,
        api_key=settings.proxy_api_key,
        transport=transport,
        timeout=settings.upstream_timeout,
        sleep=sleep,
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info("HTTP %s %s", request.method, request.url.path)
        return await call_next(request)

    @app.middleware("http")
    async def cors(request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=CORS_HEADERS)
        response = await call_next(request)
        for k, v in CORS_HEADERS.items():
            response.headers.setdefault(k, v)
        return response

    @app.exception_handler(ManifestInvalid)
    async def manifest_invalid_handler(request: Request, exc: ManifestInvalid):
        return Response(
            content=exc.body,
            status_code=exc.status_code,
            headers={**CORS_HEADERS, "Content-Type": exc.content_type},
        )

    @app.exception_handler(StreamResolverError)
    async def resolver_error_handler(request: Request, exc: StreamResolverError):
        return _error_response(exc.status_code, exc.message)

    @app.get("/health")
    def health():
        return {
            "ok": True,
            "ts": _now_ts(),
            "cacheEntries": len(app.state.cache),
            "cacheTtl": settings.cache_ttl,
            "rateLimit": {"max": settings.rate_limit, "windowSeconds": settings.rate_window},
        }

    @app.get("/video-proxy")
    async def video_proxy(request: Request):
        try:
            return await app.state.proxy.handle(request)
        except StreamResolverError:
            raise
        except Exception as e:
            logger.exception("Proxy error")
            raise StreamResolverError(str(e) or "Proxy error") from e

    @app.get("/scraper")
    async def scraper(
        request: Request,
        episodeUrl: Optional[str] = Query(None),
        embedUrl: Optional[str] = Query(None),
    ):
        key = client_key(request)
        try:
            if embedUrl:
                html = await cancel_on_disconnect(request, app.state.scraper.fetch_embed(embedUrl, key))
                return HTMLResponse(
                    html,
                    headers={
                        **CORS_HEADERS,
                        "X-Frame-Options": "ALLOWALL",
                        "Content-Security-Policy": "frame-ancestors *",
                    },
                )
            bundle = await cancel_on_disconnect(request, app.state.scraper.resolve(episodeUrl, key))
            return JSONResponse(bundle.to_json(), headers=CORS_HEADERS)
        except StreamResolverError:
            raise
        except Exception as e:
            logger.exception("Scraper error")
            raise StreamResolverError(str(e) or "Scraper error") from e

    return app


APP = create_app()
