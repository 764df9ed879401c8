# -*- coding: utf-8 -*-
"""
extractors.py
Provider page extraction strategies. A strategy looks at a fetched provider
page and returns the direct playlist/subtitle URLs it can see; patterns are
plain data so new providers can be declared in extractors.json.
"""
from __future__ import annotations

import re
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol, Sequence, Tuple, runtime_checkable

CHALLENGE_SIGNATURES: Tuple[str, ...] = ("challenge-platform", "Just a moment", "cf-chl-opt")

PLAYLIST_PATTERN = r"""(https?://[^\s"'<>]+\.m3u8[^\s"'<>]*)"""
SUBTITLE_PATTERN = r"""(https?://[^\s"'<>]+\.vtt[^\s"'<>]*)"""
DEFAULT_LIMIT = 2


def is_bot_challenge(html: str) -> bool:
    return any(sig in (html or "") for sig in CHALLENGE_SIGNATURES)


def provider_name(url: str) -> str:
    """Second-level label of the host: https://www.streamhg.com/e/x -> 'streamhg'."""
    try:
        host = urllib.parse.urlparse(url).hostname or ""
    except ValueError:
        return ""
    parts = host.split(".")
    if len(parts) >= 2:
        return parts[-2]
    return host


def _find_all(pattern: re.Pattern, text: str) -> List[str]:
    return [m.group(1) if pattern.groups else m.group(0) for m in pattern.finditer(text)]


def _dedupe(items: Sequence[str]) -> List[str]:
    seen = set()
    out = []
    for it in items:
        if it not in seen:
            seen.add(it)
            out.append(it)
    return out


@dataclass
class Extraction:
    playlists: List[str] = field(default_factory=list)
    subtitles: List[str] = field(default_factory=list)


@runtime_checkable
class ExtractionStrategy(Protocol):
    name: str

    def matches(self, host: str) -> bool:
        ...

    def extract(self, html: str) -> Extraction:
        ...


@dataclass
class PatternStrategy:
    name: str
    hosts: Tuple[str, ...] = ()
    playlist_pattern: re.Pattern = field(default_factory=lambda: re.compile(PLAYLIST_PATTERN, re.IGNORECASE))
    subtitle_pattern: re.Pattern = field(default_factory=lambda: re.compile(SUBTITLE_PATTERN, re.IGNORECASE))
    limit: int = DEFAULT_LIMIT

    def matches(self, host: str) -> bool:
        if not self.hosts:
            return True
        host = (host or "").lower()
        return any(h in host for h in self.hosts)

    def extract(self, html: str) -> Extraction:
        html = html or ""
        playlists = _dedupe(_find_all(self.playlist_pattern, html))[: self.limit]
        subtitles = _dedupe(_find_all(self.subtitle_pattern, html))
        return Extraction(playlists=playlists, subtitles=subtitles)

    @classmethod
    def from_config(cls, name: str, conf: Dict[str, Any]) -> "PatternStrategy":
        hosts = conf.get("hosts") or conf.get("domain") or ()
        if isinstance(hosts, str):
            hosts = (hosts,)
        hosts = tuple(str(h).strip().lower() for h in hosts if str(h).strip())
        if not hosts:
            raise ValueError("no hosts declared")
        kwargs: Dict[str, Any] = {"name": name, "hosts": hosts}
        if conf.get("playlist_pattern"):
            kwargs["playlist_pattern"] = re.compile(conf["playlist_pattern"], re.IGNORECASE)
        if conf.get("subtitle_pattern"):
            kwargs["subtitle_pattern"] = re.compile(conf["subtitle_pattern"], re.IGNORECASE)
        if conf.get("limit"):
            kwargs["limit"] = int(conf["limit"])
        return cls(**kwargs)


GENERIC = PatternStrategy(name="generic")
