# -*- coding: utf-8 -*-
"""
Process-wide stores shared by every request: the scrape result cache and the
per-client rate limiter. Both are plain objects built by ``create_app`` and
guarded by their own lock.
"""
from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    key: str
    value: V
    expires_at: float


class ScrapeCache(Generic[V]):
    def __init__(
        self,
        default_ttl: float = 600,
        sweep_probability: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ):
        self.default_ttl = default_ttl
        self.sweep_probability = sweep_probability
        self._clock = clock
        self._rng = rng
        self._entries: Dict[str, CacheEntry[V]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[V]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
        if entry is None or now >= entry.expires_at:
            return None
        return entry.value

    def put(self, key: str, value: V, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        entry = CacheEntry(key=key, value=value, expires_at=self._clock() + ttl)
        with self._lock:
            self._entries[key] = entry
        if self._rng() < self.sweep_probability:
            removed = self.sweep()
            if removed:
                logger.debug("Cache sweep removed %d expired entries", removed)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now >= e.expires_at]
            for k in expired:
                del self._entries[k]
        return len(expired)


@dataclass
class RateWindow:
    client_key: str
    count: int
    window_reset_at: float


class RateLimiter:
    """Fixed-window counter per client key."""

    def __init__(
        self,
        max_requests: int = 30,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, RateWindow] = {}
        self._lock = threading.Lock()

    def allow(self, client_key: str) -> bool:
        now = self._clock()
        with self._lock:
            window = self._windows.get(client_key)
            if window is None or now > window.window_reset_at:
                if window is None and len(self._windows) > 1024:
                    self._drop_expired(now)
                window = RateWindow(client_key, 0, now + self.window_seconds)
                self._windows[client_key] = window
            if window.count >= self.max_requests:
                return False
            window.count += 1
            return True

    def _drop_expired(self, now: float) -> None:
        stale = [k for k, w in self._windows.items() if now > w.window_reset_at]
        for k in stale:
            del self._windows[k]
