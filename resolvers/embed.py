# -*- coding: utf-8 -*-
"""
embed.py
Cleans a provider embed page so it can be framed by the player UI:
drops ad/anti-adblock scripts, neutralises popup and top-level redirect
calls, and injects a small guard script.
Dipendenze: beautifulsoup4
"""
from __future__ import annotations

import re

from bs4 import BeautifulSoup, Comment

AD_SRC_MARKERS = ("ads", "adservice", "doubleclick", "googlesyndication", "analytics", "tracking")
AD_INLINE_RE = re.compile(r"adblock|adsbygoogle", re.IGNORECASE)
NAVIGATION_RES = [
    (re.compile(r"window\s*\.\s*open\s*\(", re.IGNORECASE), "void("),
    (re.compile(r"(window|document|top)\s*\.\s*location\s*=(?!=)", re.IGNORECASE), "void 0;var __blocked_location="),
]

GUARD_SCRIPT = """
(function() {
  try {
    window.open = function() { return null; };
    try {
      Object.defineProperty(window, 'top', { get: function() { return window; }, configurable: false });
      Object.defineProperty(window, 'parent', { get: function() { return window; }, configurable: false });
    } catch (e) {}
    ['assign', 'replace'].forEach(function(method) {
      var original = window.location[method];
      if (typeof original !== 'function') return;
      try {
        window.location[method] = function(url) {
          if (typeof url === 'string' && (url.indexOf('ads') !== -1 || url.indexOf('popup') !== -1)) return;
          original.call(window.location, url);
        };
      } catch (e) {}
    });
  } catch (e) {}
})();
"""


def _is_ad_script(tag) -> bool:
    src = (tag.get("src") or "").lower()
    if src:
        return any(marker in src for marker in AD_SRC_MARKERS)
    return bool(AD_INLINE_RE.search(tag.string or ""))


def sanitize_embed_html(html: str) -> str:
    soup = BeautifulSoup(html or "", "html.parser")

    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        if "adblock" in comment.lower():
            comment.extract()

    for script in soup.find_all("script"):
        if _is_ad_script(script):
            script.decompose()
            continue
        code = script.string
        if not code:
            continue
        for pattern, repl in NAVIGATION_RES:
            code = pattern.sub(repl, code)
        script.string = code

    guard = soup.new_tag("script")
    guard.string = GUARD_SCRIPT
    if soup.head is not None:
        soup.head.append(guard)
    elif soup.body is not None:
        soup.body.insert(0, guard)
    else:
        soup.insert(0, guard)
    return str(soup)
