# -*- coding: utf-8 -*-
"""
watchanimeworld.py
Site-specific pieces for watchanimeworld episode pages:
- episode locator parsing (`<series>-<season>x<episode>` slugs or full /episode/ URLs),
- the base64 JSON server list embedded in the player iframe.
"""
from __future__ import annotations

import base64
import binascii
import json
import re
import urllib.parse
from dataclasses import dataclass
from typing import List, Optional

from app.errors import PayloadDecodeError
from app.settings import DEFAULT_SITE_BASE

EPISODE_PATH_RE = re.compile(r"/episode/([^/]+)/?$")
SLUG_RE = re.compile(r"^(.+?)-(\d+)x(\d+)$")
PLAYER_IFRAME_RE = re.compile(
    r'iframe[^>]+data-src="([^"]*/api/player1\.php\?data=([^"&]+)[^"]*)"',
    re.IGNORECASE,
)


@dataclass(frozen=True)
class EpisodeLocator:
    slug: str
    series_slug: str
    season: int
    episode: int
    canonical_url: str


@dataclass(frozen=True)
class PlayerLink:
    language: str
    link: str


def parse_episode_locator(value: str, site_base: str = DEFAULT_SITE_BASE) -> Optional[EpisodeLocator]:
    """Returns None for anything that is not a valid episode reference."""
    value = (value or "").strip()
    if not value:
        return None

    if value.lower().startswith(("http://", "https://")):
        try:
            path = urllib.parse.urlparse(value).path
        except ValueError:
            return None
        m = EPISODE_PATH_RE.search(path)
        if not m:
            return None
        slug = urllib.parse.unquote(m.group(1))
        canonical = value
    else:
        slug = value
        canonical = f"{site_base.rstrip('/')}/episode/{slug}/"

    m = SLUG_RE.match(slug)
    if not m:
        return None
    series_slug, season_s, episode_s = m.groups()
    season, episode = int(season_s), int(episode_s)
    if season < 1 or episode < 1:
        return None
    return EpisodeLocator(slug, series_slug, season, episode, canonical)


def find_player_payload(html: str) -> Optional[str]:
    m = PLAYER_IFRAME_RE.search(html or "")
    if not m:
        return None
    return urllib.parse.unquote(m.group(2))


def decode_player_payload(data: str) -> List[PlayerLink]:
    """base64 -> JSON list of {language, link}; entries without a link are dropped."""
    raw = data.strip()
    raw += "=" * (-len(raw) % 4)
    try:
        decoded = base64.b64decode(raw, altchars=b"-_" if ("-" in raw or "_" in raw) else None)
        servers = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise PayloadDecodeError(f"Failed to decode player payload: {e}")

    if not isinstance(servers, list):
        raise PayloadDecodeError("Player payload is not a list")

    links: List[PlayerLink] = []
    for server in servers:
        if not isinstance(server, dict):
            continue
        link = str(server.get("link") or "").strip()
        if not link:
            continue
        links.append(PlayerLink(language=str(server.get("language") or "Unknown"), link=link))
    return links
