"""
TarkHub Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
FetchCache

Rate-limited, cached HTTP GET for upstream feeds (GitHub releases, the mod
catalog). One instance is created at process start and shared by every
caller; it owns both the TTL map and the throttle:
- at most 2 outbound calls in flight
- at least 500 ms between the starts of two outbound calls
- retry with backoff on 429 and transient failures, none on 401/403
"""

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

import requests

from ..utils.index import log_message
from ..utils.results import ErrorKind

MAX_RETRY_AFTER_SECONDS = 300


class CacheDuration(Enum):
    """TTL classes in seconds."""
    SHORT = 15 * 60
    LONG = 2 * 60 * 60


@dataclass
class CacheEntry:
    key: str
    content: str
    expires_at: float


class FetchCache:
    """Cached, throttled, retrying GET shared by all upstream clients."""

    def __init__(self, session: Optional[requests.Session] = None,
                 max_concurrent: int = 2,
                 min_interval: float = 0.5,
                 timeout: float = 30,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.session = session if session is not None else requests.Session()
        self.min_interval = min_interval
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep

        self._entries: Dict[str, CacheEntry] = {}
        self._entries_lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._throttle_lock = threading.Lock()
        self._last_start: Optional[float] = None
        self._last_errors: Dict[str, ErrorKind] = {}

    # --- Cache ---
    def _sweep_expired(self) -> None:
        now = self._clock()
        with self._entries_lock:
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            log_message(f"[FETCH] Dropped {len(expired)} expired cache entries", "DEBUG")

    def _lookup(self, url: str) -> Optional[str]:
        self._sweep_expired()
        with self._entries_lock:
            entry = self._entries.get(url)
        if entry is None:
            return None
        return entry.content

    def _store(self, url: str, content: str, duration: CacheDuration) -> None:
        with self._entries_lock:
            self._entries[url] = CacheEntry(
                key=url,
                content=content,
                expires_at=self._clock() + duration.value,
            )

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()

    def cached_urls(self) -> List[str]:
        self._sweep_expired()
        with self._entries_lock:
            return sorted(self._entries)

    def last_error(self, url: str) -> Optional[ErrorKind]:
        """Failure kind of the most recent uncached fetch of ``url``, if it failed."""
        return self._last_errors.get(url)

    # --- Throttle ---
    def _throttle(self) -> None:
        """Reserve the next start slot, then sleep until it comes round."""
        with self._throttle_lock:
            now = self._clock()
            start_at = now
            if self._last_start is not None:
                start_at = max(now, self._last_start + self.min_interval)
            self._last_start = start_at
        wait = start_at - now
        if wait > 0:
            self._sleep(wait)

    def _request(self, url: str, headers: Optional[Dict[str, str]]):
        with self._slots:
            self._throttle()
            return self.session.get(url, headers=headers, timeout=self.timeout)

    @staticmethod
    def _retry_after(response) -> Optional[float]:
        value = response.headers.get("Retry-After") if response.headers else None
        if not value:
            return None
        value = value.strip()
        if value.isdigit():
            return min(float(value), MAX_RETRY_AFTER_SECONDS)
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        delta = (when - datetime.now(timezone.utc)).total_seconds()
        return min(max(delta, 0.0), MAX_RETRY_AFTER_SECONDS)

    # --- Fetch ---
    def fetch(self, url: str, max_retries: int = 3,
              duration: CacheDuration = CacheDuration.SHORT,
              headers: Optional[Dict[str, str]] = None,
              credentials_hint: Optional[str] = None) -> Optional[str]:
        """
        GET ``url`` through the cache.

        Args:
            url: Request URL, also the cache key
            max_retries: Attempts for retryable failures
            duration: TTL class for a successful response
            headers: Request headers (auth, user agent)
            credentials_hint: Logged on 401/403, for unauthenticated clients

        Returns:
            str: response body, or None when the upstream could not be read
        """
        cached = self._lookup(url)
        if cached is not None:
            log_message(f"[FETCH] Cache hit for: {url}", "DEBUG")
            return cached

        max_retries = max(1, max_retries)
        for attempt in range(1, max_retries + 1):
            try:
                response = self._request(url, headers)
            except requests.RequestException as e:
                log_message(f"[FETCH] Error fetching {url} (attempt {attempt}): {e}", "ERROR")
                self._last_errors[url] = ErrorKind.TRANSIENT_NETWORK
                if attempt == max_retries:
                    return None
                self._sleep(1.0 * attempt)
                continue

            status = response.status_code
            if 200 <= status < 300:
                content = response.text
                self._store(url, content, duration)
                self._last_errors.pop(url, None)
                log_message(f"[FETCH] Cached response for: {url}", "DEBUG")
                return content

            if status == 429:
                log_message(f"[FETCH] Rate limit hit for {url}, attempt {attempt}", "WARNING")
                self._last_errors[url] = ErrorKind.RATE_LIMITED
                if attempt == max_retries:
                    log_message(f"[FETCH] Rate limit exceeded for {url} after {attempt} attempts", "ERROR")
                    return None
                delay = self._retry_after(response)
                if delay is not None:
                    log_message(f"[FETCH] Retry-After header found: {delay:.0f}s")
                else:
                    delay = float(2 ** attempt)
                self._sleep(delay)
                continue

            if status in (401, 403):
                log_message(f"[FETCH] Access denied for {url}. Status: {status}", "WARNING")
                self._last_errors[url] = ErrorKind.AUTH_DENIED
                if credentials_hint:
                    log_message(f"[FETCH] {credentials_hint}", "WARNING")
                return None

            log_message(f"[FETCH] HTTP {status} for {url}", "ERROR")
            self._last_errors[url] = ErrorKind.TRANSIENT_NETWORK
            if attempt == max_retries:
                return None
            self._sleep(1.0 * attempt)

        return None


_shared_cache: Optional[FetchCache] = None
_shared_cache_lock = threading.Lock()


def get_fetch_cache(max_concurrent: int = 2, min_interval: float = 0.5,
                    timeout: float = 30) -> FetchCache:
    """
    Process-wide FetchCache.

    The first caller's limits are used; later callers get the same instance
    so the concurrency limit and the throttle cover every upstream call.
    """
    global _shared_cache
    with _shared_cache_lock:
        if _shared_cache is None:
            _shared_cache = FetchCache(
                max_concurrent=max_concurrent,
                min_interval=min_interval,
                timeout=timeout,
            )
            log_message("[FETCH] Shared fetch cache created", "DEBUG")
        return _shared_cache
