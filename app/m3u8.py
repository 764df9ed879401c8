# -*- coding: utf-8 -*-
from __future__ import annotations

import re
import urllib.parse
from dataclasses import dataclass
from typing import List, Optional

M3U_HEADER = "#EXTM3U"
URI_ATTR_RE = re.compile(r'URI="([^"]+)"')

MANIFEST_CONTENT_TYPE = "application/vnd.apple.mpegurl"


def _enc(u: str) -> str:
    return urllib.parse.quote(u, safe="")


@dataclass(frozen=True)
class ManifestRewriteContext:
    base_url: str
    proxy_base: str
    referer_query: str = ""
    api_key_query: str = ""

    @classmethod
    def build(cls, base_url: str, proxy_base: str,
              referer: Optional[str] = None, api_key: Optional[str] = None) -> "ManifestRewriteContext":
        return cls(
            base_url=base_url,
            proxy_base=proxy_base.rstrip("/"),
            referer_query=f"&referer={_enc(referer)}" if referer else "",
            api_key_query=f"&apikey={_enc(api_key)}" if api_key else "",
        )

    def proxy_url(self, uri: str) -> str:
        try:
            absolute = urllib.parse.urljoin(self.base_url, uri)
        except ValueError:
            absolute = uri
        return f"{self.proxy_base}?url={_enc(absolute)}&type=video{self.referer_query}{self.api_key_query}"


def is_manifest(url: str, content_type: str = "") -> bool:
    ct = (content_type or "").lower()
    return ".m3u8" in url.lower() or "mpegurl" in ct or "m3u8" in ct


def manifest_base_url(target_url: str) -> str:
    """Directory of the playlist URL, used to resolve relative entries."""
    path_part = target_url.split("?", 1)[0].split("#", 1)[0]
    return path_part[: path_part.rfind("/") + 1]


def _split_ending(line: str):
    body = line.rstrip("\r\n")
    return body, line[len(body):]


def rewrite_manifest(
    text: str,
    base_url: str,
    proxy_base: str,
    referer: Optional[str] = None,
    api_key: Optional[str] = None,
) -> str:
    """
    Point every URI of an HLS playlist back at the proxy.

    Tag and comment lines are left byte-identical unless they carry a
    ``URI="..."`` attribute, in which case only the quoted value changes.
    Segment/variant lines are replaced by their proxied absolute URL.
    Line order and line endings are kept.
    """
    ctx = ManifestRewriteContext.build(base_url, proxy_base, referer, api_key)
    out: List[str] = []
    for line in text.splitlines(keepends=True):
        body, ending = _split_ending(line)
        stripped = body.strip()
        if not stripped:
            out.append(line)
            continue
        if 'URI="' in stripped:
            body = URI_ATTR_RE.sub(lambda m: f'URI="{ctx.proxy_url(m.group(1))}"', body)
            out.append(body + ending)
            continue
        if stripped.startswith("#"):
            out.append(line)
            continue
        out.append(ctx.proxy_url(stripped) + ending)
    return "".join(out)
