"""
Two-tier request cache with deduplication and stale-while-revalidate.

Memory is the fast tier. An optional SessionStore persists entries so a
restarted process can pick up where the last one left off. fetch_with_cache()
coordinates concurrent callers: identical in-flight requests share one future,
stale hits are served immediately and refreshed in the background.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from dashdata.storage import SessionStore

logger = logging.getLogger(__name__)

STORAGE_PREFIX = "cache:"
DEFAULT_TTL = 300.0  # seconds
STALE_FRACTION = 0.8


class RequestCancelled(Exception):
    """Raised to everyone waiting on a request that was cancelled."""

    def __init__(self, key: str = "") -> None:
        super().__init__(f"Request cancelled: {key}" if key else "Request cancelled")
        self.key = key


class CancelToken:
    """
    Cancellation signal handed to every fetcher.

    Fetchers should either race their I/O against wait() or call
    raise_if_cancelled() between steps.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelled()

    async def wait(self) -> None:
        await self._event.wait()


Fetcher = Callable[[CancelToken], Awaitable[Any]]


@dataclass
class CacheEntry:
    """A cached value with its hard expiry and revalidation deadline."""

    value: Any
    expires_at: float
    stale_at: float

    def to_dict(self) -> dict:
        return {"value": self.value, "expiresAt": self.expires_at, "staleAt": self.stale_at}

    @classmethod
    def from_dict(cls, raw: dict) -> "CacheEntry":
        return cls(
            value=raw["value"],
            expires_at=float(raw["expiresAt"]),
            stale_at=float(raw["staleAt"]),
        )


@dataclass
class CachedValue:
    value: Any
    is_stale: bool


@dataclass
class InFlightRequest:
    """A pending fetch shared by every caller asking for the same key."""

    future: asyncio.Future
    token: CancelToken
    task: Optional[asyncio.Task] = None

    def cancel(self, key: str) -> None:
        self.token.cancel()
        if self.task is not None:
            self.task.cancel()
        if not self.future.done():
            self.future.set_exception(RequestCancelled(key))


def _consume_exception(future: asyncio.Future) -> None:
    # Nobody may await a cancelled request; keep asyncio from logging it.
    if not future.cancelled():
        future.exception()


def _resolve(future: asyncio.Future, value: Any) -> None:
    if not future.done():
        future.set_result(value)


def _reject(future: asyncio.Future, exc: BaseException) -> None:
    if not future.done():
        future.set_exception(exc)


class RequestCache:
    """
    Request cache shared by everything that talks to the dashboard API.

    - get_with_meta(): cached value plus staleness, or None.
    - set(): stores a value in memory and in the session store.
    - fetch_with_cache(): returns a future for the value, fetching only when
      the cache cannot answer and no identical request is already running.
    - abort_all() / clear(): drop in-flight requests / cached entries.

    Entries are stale after ttl * stale_fraction and gone after ttl.
    Expired entries are evicted lazily when read.
    """

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        stale_fraction: float = STALE_FRACTION,
        default_ttl: float = DEFAULT_TTL,
    ) -> None:
        if not 0 < stale_fraction <= 1:
            raise ValueError(f"stale_fraction must be in (0, 1], got {stale_fraction}")
        self._store = store
        self._stale_fraction = stale_fraction
        self._default_ttl = default_ttl
        self._memory: dict[str, CacheEntry] = {}
        self._in_flight: dict[str, InFlightRequest] = {}
        self._revalidating: dict[str, asyncio.Task] = {}
        self._clock = time.time  # overridable for testing

    # ------------------------------------------------------------------
    # Lookup and storage
    # ------------------------------------------------------------------

    def get_with_meta(self, key: str) -> Optional[CachedValue]:
        """Return the cached value and whether it is stale, or None if absent."""
        entry = self._memory.get(key)
        if entry is None:
            entry = self._read_persisted(key)
            if entry is not None:
                self._memory[key] = entry
        if entry is None:
            return None

        now = self._clock()
        if now > entry.expires_at:
            self._memory.pop(key, None)
            self._remove_persisted(key)
            return None
        return CachedValue(value=entry.value, is_stale=now > entry.stale_at)

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store a value in both tiers. Session store failures are logged only."""
        if ttl is None:
            ttl = self._default_ttl
        now = self._clock()
        entry = CacheEntry(
            value=value,
            expires_at=now + ttl,
            stale_at=now + ttl * self._stale_fraction,
        )
        self._memory[key] = entry

        if self._store is None:
            return
        try:
            self._store.set(STORAGE_PREFIX + key, json.dumps(entry.to_dict()))
        except Exception as exc:
            logger.warning("Session store write failed for %s: %s", key, exc)

    def _read_persisted(self, key: str) -> Optional[CacheEntry]:
        if self._store is None:
            return None
        try:
            raw = self._store.get(STORAGE_PREFIX + key)
            if raw is None:
                return None
            return CacheEntry.from_dict(json.loads(raw))
        except Exception as exc:
            logger.warning("Session store read failed for %s: %s", key, exc)
            return None

    def _remove_persisted(self, key: str) -> None:
        if self._store is None:
            return
        try:
            self._store.remove(STORAGE_PREFIX + key)
        except Exception as exc:
            logger.warning("Session store remove failed for %s: %s", key, exc)

    # ------------------------------------------------------------------
    # Request coordination
    # ------------------------------------------------------------------

    def fetch_with_cache(
        self,
        key: str,
        fetcher: Fetcher,
        ttl: Optional[float] = None,
        force_refresh: bool = False,
    ) -> asyncio.Future:
        """
        Return a future for the value under `key`.

        Must be called from a running event loop. Concurrent callers of the
        same key get the same future object. A forced refresh cancels the
        running request (its waiters see RequestCancelled) and starts a new
        one. Callers that may themselves be cancelled should await the
        result through asyncio.shield() so other waiters are unaffected.
        """
        loop = asyncio.get_running_loop()
        if ttl is None:
            ttl = self._default_ttl

        if not force_refresh:
            cached = self.get_with_meta(key)
            if cached is not None:
                if cached.is_stale:
                    self._revalidate(key, fetcher, ttl)
                done = loop.create_future()
                done.set_result(cached.value)
                return done

        existing = self._in_flight.get(key)
        if existing is not None:
            if not force_refresh:
                return existing.future
            logger.debug("Cancelling in-flight request for %s", key)
            existing.cancel(key)
            del self._in_flight[key]

        request = InFlightRequest(future=loop.create_future(), token=CancelToken())
        request.future.add_done_callback(_consume_exception)
        self._in_flight[key] = request
        request.task = loop.create_task(self._run(key, fetcher, ttl, request))
        return request.future

    async def _run(
        self, key: str, fetcher: Fetcher, ttl: float, request: InFlightRequest
    ) -> None:
        try:
            value = await fetcher(request.token)
            request.token.raise_if_cancelled()
        except asyncio.CancelledError:
            self._release(key, request)
            _reject(request.future, RequestCancelled(key))
            raise
        except Exception as exc:
            self._release(key, request)
            if isinstance(exc, RequestCancelled):
                logger.debug("Request cancelled: %s", key)
            _reject(request.future, exc)
            return

        self.set(key, value, ttl)
        self._release(key, request)
        _resolve(request.future, value)

    def _release(self, key: str, request: InFlightRequest) -> None:
        # A forced refresh may already have replaced this entry.
        if self._in_flight.get(key) is request:
            del self._in_flight[key]

    def _revalidate(self, key: str, fetcher: Fetcher, ttl: float) -> None:
        if key in self._revalidating:
            return
        task = asyncio.get_running_loop().create_task(
            self._background_fetch(key, fetcher, ttl)
        )
        self._revalidating[key] = task
        task.add_done_callback(functools.partial(self._revalidation_done, key))

    def _revalidation_done(self, key: str, task: asyncio.Task) -> None:
        if self._revalidating.get(key) is task:
            del self._revalidating[key]

    async def _background_fetch(self, key: str, fetcher: Fetcher, ttl: float) -> None:
        try:
            value = await fetcher(CancelToken())
        except RequestCancelled:
            logger.debug("Background revalidation cancelled: %s", key)
            return
        except Exception as exc:
            logger.warning("Background revalidation failed for %s: %s", key, exc)
            return
        self.set(key, value, ttl)

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def abort_all(self) -> None:
        """Cancel every in-flight request and forget them."""
        count = len(self._in_flight)
        for key, request in list(self._in_flight.items()):
            request.cancel(key)
        self._in_flight.clear()
        logger.debug("Aborted %d in-flight requests", count)

    def clear(self, prefix: Optional[str] = None) -> None:
        """Remove cached entries from both tiers, optionally only those under `prefix`."""
        prefix = prefix or ""
        for key in [k for k in self._memory if k.startswith(prefix)]:
            del self._memory[key]

        if self._store is None:
            return
        storage_prefix = STORAGE_PREFIX + prefix
        try:
            for storage_key in self._store.keys():
                if storage_key.startswith(storage_prefix):
                    self._store.remove(storage_key)
        except Exception as exc:
            logger.warning("Session store clear failed: %s", exc)

    async def aclose(self) -> None:
        """Cancel in-flight requests and background revalidations."""
        tasks = [r.task for r in self._in_flight.values() if r.task is not None]
        tasks.extend(self._revalidating.values())
        self.abort_all()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


# ----------------------------------------------------------------------
# Cache keys
# ----------------------------------------------------------------------


def make_cache_key(parts: Mapping[str, Any]) -> str:
    """
    Build a stable key from named parameters.

    Names are sorted, so two mappings with the same items always produce the
    same key regardless of insertion order.
    """
    return "|".join(
        f"{name}:{json.dumps(parts[name], separators=(',', ':'), ensure_ascii=False)}"
        for name in sorted(parts)
    )


def _without_none(parts: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in parts.items() if v is not None}


def build_kpi_cache_key(
    metric: str,
    start: str,
    end: str,
    grain: Optional[str] = None,
    comparison_mode: Optional[str] = None,
    audience: Optional[list[str]] = None,
    device: Optional[list[str]] = None,
    channel: Optional[list[str]] = None,
) -> str:
    """Cache key for a GA4 KPI request."""
    return make_cache_key(
        _without_none(
            {
                "dataset": "ga4",
                "type": "kpi",
                "metric": metric,
                "start": start,
                "end": end,
                "grain": grain,
                "comparisonMode": comparison_mode,
                "audience": audience,
                "device": device,
                "channel": channel,
            }
        )
    )


def build_insights_cache_key(
    metric_id: str,
    start: str,
    end: str,
    audience: Optional[list[str]] = None,
    device: Optional[list[str]] = None,
    channel: Optional[list[str]] = None,
) -> str:
    """Cache key for an AI insights request."""
    return make_cache_key(
        _without_none(
            {
                "dataset": "ga4",
                "type": "insights",
                "metricId": metric_id,
                "start": start,
                "end": end,
                "audience": audience,
                "device": device,
                "channel": channel,
            }
        )
    )
