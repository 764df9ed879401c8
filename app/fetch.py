# -*- coding: utf-8 -*-
from __future__ import annotations

import asyncio
import enum
import logging
import urllib.parse
from typing import Awaitable, Callable, Dict, Optional

import httpx

from .errors import UpstreamUnavailable
from .settings import SCRAPER_UA

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

Sleeper = Callable[[float], Awaitable[None]]


class Disposition(enum.Enum):
    SUCCESS = "success"
    TERMINAL = "terminal"
    RETRYABLE = "retryable"


def classify_status(status: int) -> Disposition:
    """Map an upstream status to what the retry loop should do with it."""
    if 200 <= status <= 299:
        return Disposition.SUCCESS
    if status == 429 or status >= 500:
        return Disposition.RETRYABLE
    # 1xx/3xx/4xx: the caller gets the response as-is
    return Disposition.TERMINAL


def make_client(transport: Optional[httpx.AsyncBaseTransport] = None,
                timeout: float = DEFAULT_TIMEOUT,
                follow_redirects: bool = True) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=transport,
        timeout=httpx.Timeout(timeout),
        follow_redirects=follow_redirects,
    )


async def fetch_with_retry(
    client: httpx.AsyncClient,
    url: str,
    *,
    method: str = "GET",
    headers: Optional[Dict[str, str]] = None,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    stream: bool = False,
    follow_redirects: Optional[bool] = None,
    sleep: Sleeper = asyncio.sleep,
) -> httpx.Response:
    """
    Fetch ``url`` retrying 429/5xx and transport failures with exponential
    backoff (``base_delay * 2**attempt`` seconds between attempts).
    Success and terminal responses come back on the first attempt that
    produces them; only exhaustion raises ``UpstreamUnavailable``.
    """
    attempts = max(1, max_attempts)
    last_error: Optional[BaseException] = None
    last_status: Optional[int] = None

    for attempt in range(attempts):
        request = client.build_request(method, url, headers=headers)
        send_kwargs = {"stream": stream}
        if follow_redirects is not None:
            send_kwargs["follow_redirects"] = follow_redirects
        try:
            response = await client.send(request, **send_kwargs)
        except httpx.TransportError as e:
            last_error = e
            logger.warning("Fetch attempt %d/%d failed for %s: %r", attempt + 1, attempts, url, e)
        else:
            if classify_status(response.status_code) is not Disposition.RETRYABLE:
                return response
            last_status = response.status_code
            last_error = httpx.HTTPStatusError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                request=request,
                response=response,
            )
            if stream:
                await response.aclose()
            logger.warning("Fetch attempt %d/%d got HTTP %d for %s",
                           attempt + 1, attempts, response.status_code, url)

        if attempt < attempts - 1:
            await sleep(base_delay * 2 ** attempt)

    raise UpstreamUnavailable(
        f"Failed to fetch after {attempts} attempts: {last_error}",
        status=last_status,
        last_error=last_error,
    )


async def resolve_redirects(
    client: httpx.AsyncClient,
    url: str,
    max_hops: int = 5,
    sleep: Sleeper = asyncio.sleep,
) -> str:
    """Follow a short-link chain by hand; returns the last URL reached, never raises."""
    current = url
    for hop in range(max_hops):
        try:
            response = await fetch_with_retry(
                client,
                current,
                method="HEAD",
                headers={"User-Agent": SCRAPER_UA},
                max_attempts=2,
                follow_redirects=False,
                sleep=sleep,
            )
        except Exception as e:
            logger.warning("Failed to resolve redirect at hop %d for %s: %s", hop + 1, current, e)
            return current

        location = response.headers.get("location")
        if not location:
            return current

        next_url = urllib.parse.urljoin(current, location)
        logger.info("Redirect hop %d: %s -> %s", hop + 1, current, next_url)
        if next_url == current:
            return current
        current = next_url

    logger.warning("Max redirect hops reached: %s", current)
    return current
