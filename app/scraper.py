# -*- coding: utf-8 -*-
from __future__ import annotations

import asyncio
import logging
import urllib.parse
from typing import List, Optional, Sequence, Tuple, Union

import httpx

from resolvers.embed import sanitize_embed_html
from resolvers.extractors import Extraction, is_bot_challenge, provider_name
from resolvers.languages import LanguageInfo, normalize_language
from resolvers.watchanimeworld import (EpisodeLocator, PlayerLink,
                                       decode_player_payload,
                                       find_player_payload,
                                       parse_episode_locator)

from .errors import (ChallengeBlocked, RateLimitExceeded, UpstreamUnavailable,
                     ValidationError)
from .fetch import DEFAULT_TIMEOUT, Sleeper, fetch_with_retry, make_client, resolve_redirects
from .models import ForwardHeaders, StreamBundle, StreamSource, SubtitleTrack
from .registry import StrategyRegistry
from .settings import DEFAULT_SITE_BASE, SCRAPER_UA
from .stores import RateLimiter, ScrapeCache

logger = logging.getLogger(__name__)

PAGE_HEADERS = {
    "User-Agent": SCRAPER_UA,
    "Accept": "text/html,application/xhtml+xml",
    "Accept-Language": "en-US,en;q=0.9",
}

ProbeOutcome = Union[Extraction, BaseException]


class SourceExtractor:
    """Turns an episode page into stream sources, one provider link at a time."""

    def __init__(self, registry: StrategyRegistry, sleep: Sleeper = asyncio.sleep):
        self.registry = registry
        self._sleep = sleep

    async def extract(
        self, client: httpx.AsyncClient, html: str, locator: EpisodeLocator
    ) -> Tuple[List[StreamSource], List[SubtitleTrack]]:
        payload = find_player_payload(html)
        if payload is None:
            logger.warning("No player payload found on %s", locator.canonical_url)
            return [], []

        links = decode_player_payload(payload)
        logger.info("Found %d servers for %s", len(links), locator.slug)

        resolved = await asyncio.gather(
            *(resolve_redirects(client, link.link, sleep=self._sleep) for link in links)
        )
        outcomes = await asyncio.gather(
            *(self._probe(client, url, locator) for url in resolved),
            return_exceptions=True,
        )

        sources: List[StreamSource] = []
        subtitles: List[SubtitleTrack] = []
        for link, url, outcome in zip(links, resolved, outcomes):
            found, subs = self._fold(link, url, outcome)
            sources.extend(found)
            subtitles.extend(subs)
        return sources, subtitles

    async def _probe(self, client: httpx.AsyncClient, url: str, locator: EpisodeLocator) -> Extraction:
        response = await fetch_with_retry(
            client,
            url,
            headers={"User-Agent": SCRAPER_UA, "Referer": locator.canonical_url},
            max_attempts=1,
            sleep=self._sleep,
        )
        html = response.text
        if is_bot_challenge(html):
            raise ChallengeBlocked(url)
        host = urllib.parse.urlparse(url).hostname or ""
        return self.registry.pick_strategy_for(host).extract(html)

    def _fold(
        self, link: PlayerLink, url: str, outcome: ProbeOutcome
    ) -> Tuple[List[StreamSource], List[SubtitleTrack]]:
        lang = normalize_language(link.language)
        provider = provider_name(url) or None

        if isinstance(outcome, ChallengeBlocked):
            logger.info("Challenge page detected for %s (%s)", lang.name, url)
            return [_deep_source(url, lang, provider)], []
        if isinstance(outcome, Exception):
            logger.warning("Failed to fetch provider for %s: %s", lang.name, outcome)
            return [_deep_source(url, lang, provider)], []
        if isinstance(outcome, BaseException):
            raise outcome

        subtitles = [SubtitleTrack(languageCode=lang.code, url=s, label=lang.name) for s in outcome.subtitles]
        if not outcome.playlists:
            return [_deep_source(url, lang, provider, is_embed=True)], subtitles
        return [
            StreamSource(
                url=playlist,
                isPlaylist=True,
                quality="HD",
                language=lang.name,
                languageCode=lang.code,
                isDub=lang.is_dub,
                providerName=provider,
            )
            for playlist in outcome.playlists
        ], subtitles


def _deep_source(url: str, lang: LanguageInfo, provider: Optional[str], is_embed: Optional[bool] = None) -> StreamSource:
    return StreamSource(
        url=url,
        isPlaylist=False,
        language=lang.name,
        languageCode=lang.code,
        isDub=lang.is_dub,
        providerName=provider,
        needsDeepResolution=True,
        isEmbed=is_embed,
    )


class ScrapeOrchestrator:
    """
    ParseLocator -> RateLimitCheck -> CacheLookup -> FetchEpisodePage
    -> ExtractSources -> CacheStore -> Respond
    """

    def __init__(
        self,
        cache: ScrapeCache,
        limiter: RateLimiter,
        extractor: SourceExtractor,
        *,
        site_base: str = DEFAULT_SITE_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.cache = cache
        self.limiter = limiter
        self.extractor = extractor
        self.site_base = site_base.rstrip("/")
        self._transport = transport
        self._timeout = timeout
        self._sleep = sleep

    @staticmethod
    def cache_key(locator: EpisodeLocator) -> str:
        return f"episode:{locator.slug}"

    def _check_rate(self, client_key: str) -> None:
        if not self.limiter.allow(client_key):
            logger.info("Rate limit exceeded for %s", client_key)
            raise RateLimitExceeded()

    async def resolve(self, episode_ref: Optional[str], client_key: str) -> StreamBundle:
        if not episode_ref:
            raise ValidationError("Missing episodeUrl or embedUrl parameter")
        locator = parse_episode_locator(episode_ref, self.site_base)
        if locator is None:
            raise ValidationError("Invalid episode URL format")

        self._check_rate(client_key)

        key = self.cache_key(locator)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("Returning cached result for %s", locator.slug)
            return cached

        logger.info("Scraping episode: %s", locator.canonical_url)
        async with make_client(self._transport, self._timeout) as client:
            html = await self._fetch_page(client, locator.canonical_url, PAGE_HEADERS)
            sources, subtitles = await self.extractor.extract(client, html, locator)

        bundle = StreamBundle(
            forwardHeaders=ForwardHeaders(referer=locator.canonical_url, user_agent=SCRAPER_UA),
            sources=sources,
            subtitles=_unique_subtitles(subtitles),
        )
        self.cache.put(key, bundle)
        return bundle

    async def fetch_embed(self, embed_url: str, client_key: str) -> str:
        try:
            parsed = urllib.parse.urlparse(embed_url or "")
        except ValueError:
            raise ValidationError("Invalid embed URL format")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError("Invalid embed URL format")

        self._check_rate(client_key)

        logger.info("Proxying embed: %s", embed_url)
        headers = {**PAGE_HEADERS, "Referer": self.site_base + "/"}
        async with make_client(self._transport, self._timeout) as client:
            html = await self._fetch_page(client, embed_url, headers)
        return sanitize_embed_html(html)

    async def _fetch_page(self, client: httpx.AsyncClient, url: str, headers: dict) -> str:
        response = await fetch_with_retry(client, url, headers=headers, sleep=self._sleep)
        if response.status_code >= 400:
            raise UpstreamUnavailable(
                f"Upstream error: {response.status_code} for {url}", status=response.status_code
            )
        return response.text


def _unique_subtitles(tracks: Sequence[SubtitleTrack]) -> List[SubtitleTrack]:
    seen = set()
    out = []
    for t in tracks:
        if t.url in seen:
            continue
        seen.add(t.url)
        out.append(t)
    return out
