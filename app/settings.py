# -*- coding: utf-8 -*-
"""
settings.py
Shared configuration for the scraper and the streaming proxy:
1) environment variables,
2) fallback to CONFIG_DIR/settings.json (written by hand or by deploy tooling),
3) defaults.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_SITE_BASE = "https://watchanimeworld.in"
BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SCRAPER_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


@dataclass(frozen=True)
class Settings:
    cache_ttl: int = 600
    rate_limit: int = 30
    rate_window: int = 60
    site_base: str = DEFAULT_SITE_BASE
    proxy_public_base: str = ""
    proxy_api_key: str = ""
    extractors_json: str = ""
    upstream_timeout: float = 30.0


def _read_json(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError):
        logger.exception("Error reading settings from %s", path)
        return {}
    return data if isinstance(data, dict) else {}


def _pick(env_keys, file_data: Dict[str, Any], file_key: str) -> Optional[str]:
    for key in env_keys:
        val = (os.environ.get(key) or "").strip()
        if val:
            return val
    val = file_data.get(file_key)
    if val is None or val == "":
        return None
    return str(val).strip()


def _as_number(raw: Optional[str], default, cast, name: str):
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning("Invalid value %r for %s, using %s", raw, name, default)
        return default
    if value <= 0:
        logger.warning("Non-positive value %r for %s, using %s", raw, name, default)
        return default
    return value


def load_settings(config_dir: Optional[str] = None) -> Settings:
    config_dir = config_dir or os.environ.get("CONFIG_DIR", "/app/config")
    data = _read_json(os.path.join(config_dir, "settings.json"))

    site_base = _pick(["SCRAPER_SITE_BASE"], data, "site_base") or DEFAULT_SITE_BASE
    if not site_base.startswith(("http://", "https://")):
        site_base = "https://" + site_base

    return Settings(
        cache_ttl=_as_number(_pick(["SCRAPER_CACHE_TTL", "WATCHAW_CACHE_TTL"], data, "cache_ttl"),
                             600, int, "cache_ttl"),
        rate_limit=_as_number(_pick(["SCRAPER_RATE_LIMIT", "WATCHAW_RATE_LIMIT"], data, "rate_limit"),
                              30, int, "rate_limit"),
        rate_window=_as_number(_pick(["SCRAPER_RATE_WINDOW"], data, "rate_window"),
                               60, int, "rate_window"),
        site_base=site_base.rstrip("/"),
        proxy_public_base=(_pick(["PROXY_PUBLIC_BASE"], data, "proxy_public_base") or "").rstrip("/"),
        proxy_api_key=_pick(["PROXY_API_KEY"], data, "proxy_api_key") or "",
        extractors_json=(_pick(["EXTRACTORS_JSON"], data, "extractors_json")
                         or os.path.join(config_dir, "extractors.json")),
        upstream_timeout=_as_number(_pick(["UPSTREAM_TIMEOUT"], data, "upstream_timeout"),
                                    30.0, float, "upstream_timeout"),
    )
