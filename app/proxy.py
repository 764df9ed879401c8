# -*- coding: utf-8 -*-
"""
Passthrough proxy for api/image/subtitle/video requests.
HLS playlists are rewritten so that every child URI comes back through here.
"""
from __future__ import annotations

import asyncio
import logging
import urllib.parse
from typing import AsyncIterator, Dict, Optional

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .errors import ManifestInvalid, ValidationError
from .fetch import DEFAULT_TIMEOUT, Disposition, Sleeper, classify_status, fetch_with_retry, make_client
from .m3u8 import M3U_HEADER, MANIFEST_CONTENT_TYPE, is_manifest, manifest_base_url, rewrite_manifest
from .settings import BROWSER_UA

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, range, accept",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Expose-Headers": "Content-Length, Content-Range, Content-Type",
}

PROXY_TYPES = ("api", "image", "subtitle", "video")

CACHE_CONTROL = {
    "api": "public, max-age=60",
    "video": "public, max-age=3600",
    "image": "public, max-age=86400",
    "subtitle": "public, max-age=86400",
}

DEBUG_HEADERS = ("content-type", "content-length", "content-range", "x-cache", "set-cookie")


def _origin(parsed: urllib.parse.ParseResult) -> str:
    return f"{parsed.scheme}://{parsed.netloc}"


def _parse_target(target: Optional[str]) -> urllib.parse.ParseResult:
    if not target:
        raise ValidationError("Missing url parameter")
    try:
        parsed = urllib.parse.urlparse(target)
    except ValueError:
        raise ValidationError("Invalid URL format")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("Invalid URL format")
    return parsed


def upstream_headers(kind: str, target: urllib.parse.ParseResult,
                     referer: Optional[str], range_header: Optional[str]) -> Dict[str, str]:
    headers = {
        "User-Agent": BROWSER_UA,
        "Accept": "application/json" if kind == "api" else "*/*",
        "Accept-Language": "en-US,en;q=0.9",
        "Sec-Fetch-Dest": "empty",
        "Sec-Fetch-Mode": "cors",
        "Sec-Fetch-Site": "cross-site",
    }
    if range_header:
        headers["Range"] = range_header

    try:
        ref = urllib.parse.urlparse(referer) if referer else None
    except ValueError:
        logger.info("Ignoring malformed referer: %s", referer[:100])
        ref = None
    if ref is not None and ref.scheme in ("http", "https") and ref.netloc:
        headers["Referer"] = referer
        headers["Origin"] = _origin(ref)
    else:
        headers["Referer"] = _origin(target)
        headers["Origin"] = _origin(target)
    return headers


def guess_content_type(kind: str, url: str, upstream: str) -> str:
    low = url.lower().split("?", 1)[0]
    if kind == "api":
        return "application/json"
    if kind == "subtitle":
        if low.endswith(".vtt"):
            return "text/vtt; charset=utf-8"
        if low.endswith((".srt", ".ass")):
            return "text/plain; charset=utf-8"
    return upstream or "application/octet-stream"


async def _relay(response: httpx.Response, client: httpx.AsyncClient) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_raw():
            yield chunk
    finally:
        await response.aclose()
        await client.aclose()


class StreamingProxy:
    def __init__(
        self,
        *,
        public_base: str = "",
        api_key: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.public_base = public_base.rstrip("/")
        self.api_key = api_key
        self._transport = transport
        self._timeout = timeout
        self._sleep = sleep

    def proxy_base(self, request: Request) -> str:
        if self.public_base:
            return self.public_base
        return str(request.url.replace(query="", fragment=""))

    async def handle(self, request: Request) -> Response:
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=CORS_HEADERS)

        params = request.query_params
        target = params.get("url")
        kind = params.get("type") or "api"
        referer = params.get("referer")
        debug = params.get("debug") == "1"

        if debug and params.get("inspect") == "1":
            return JSONResponse(
                {
                    "incomingHeaders": dict(request.headers),
                    "targetUrl": target or None,
                    "type": kind,
                    "refererParam": referer,
                },
                headers=CORS_HEADERS,
            )

        parsed = _parse_target(target)
        if kind not in PROXY_TYPES:
            raise ValidationError(f"Unsupported type: {kind}")

        logger.info("Proxying %s request for: %s", kind, target[:100])
        headers = upstream_headers(kind, parsed, referer, request.headers.get("range"))

        client = make_client(self._transport, self._timeout)
        try:
            response = await fetch_with_retry(client, target, headers=headers, stream=True, sleep=self._sleep)
        except BaseException:
            await client.aclose()
            raise

        upstream_type = response.headers.get("content-type", "")
        if kind == "video" and is_manifest(target, upstream_type):
            try:
                text = await self._read_text(response)
            finally:
                await response.aclose()
                await client.aclose()
            return self._manifest_response(request, target, referer, response, text, upstream_type)

        if kind != "video" and classify_status(response.status_code) is not Disposition.SUCCESS:
            try:
                text = await self._read_text(response)
            finally:
                await response.aclose()
                await client.aclose()
            return self._upstream_error(target, response, text, debug)

        out = dict(CORS_HEADERS)
        if kind == "video":
            if upstream_type:
                out["Content-Type"] = upstream_type
        else:
            out["Content-Type"] = guess_content_type(kind, target, upstream_type)
        out["Cache-Control"] = CACHE_CONTROL[kind]
        for name in ("content-length", "content-range", "content-encoding", "accept-ranges"):
            value = response.headers.get(name)
            if value:
                out[name.title()] = value

        return StreamingResponse(
            _relay(response, client),
            status_code=response.status_code,
            headers=out,
        )

    @staticmethod
    async def _read_text(response: httpx.Response) -> str:
        try:
            await response.aread()
        except httpx.HTTPError as e:
            logger.warning("Failed to read upstream body: %s", e)
            return ""
        return response.text

    def _manifest_response(self, request: Request, target: str, referer: Optional[str],
                           response: httpx.Response, text: str, upstream_type: str) -> Response:
        rewritten = rewrite_manifest(
            text,
            manifest_base_url(target),
            self.proxy_base(request),
            referer=referer,
            api_key=self.api_key or None,
        )
        if M3U_HEADER not in rewritten:
            logger.warning("Upstream returned no playlist (HTTP %d) for %s", response.status_code, target)
            raise ManifestInvalid(response.status_code, text, upstream_type or "text/plain")

        return Response(
            content=rewritten,
            status_code=response.status_code,
            headers={
                **CORS_HEADERS,
                "Content-Type": MANIFEST_CONTENT_TYPE,
                "Cache-Control": "public, max-age=60",
            },
        )

    @staticmethod
    def _upstream_error(target: str, response: httpx.Response, text: str, debug: bool) -> Response:
        status = response.status_code
        logger.error("Upstream error: %d %s for %s", status, response.reason_phrase, target)
        if debug:
            upstream = {h: response.headers.get(h) for h in DEBUG_HEADERS}
            return JSONResponse(
                {
                    "error": f"Upstream error: {status}",
                    "status": status,
                    "upstream": {"headers": upstream, "bodySnippet": text[:1000]},
                    "url": target,
                },
                status_code=502,
                headers=CORS_HEADERS,
            )
        return JSONResponse(
            {"error": f"Upstream error: {status}", "url": target[:50] + "..."},
            status_code=status,
            headers=CORS_HEADERS,
        )
