from __future__ import annotations

import asyncio
import functools
import hashlib
import logging
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol
from urllib.parse import urlparse, urlunparse

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from .errors import CacheUnavailable, RenderError, RenderFailure
from .models import CachedImage

log = logging.getLogger(__name__)

KEY_PREFIX = "png-"


def normalize_url(url: str) -> str:
    p = urlparse(url.strip())
    netloc = p.netloc
    if "@" in netloc:
        userinfo, _, host = netloc.rpartition("@")
        netloc = f"{userinfo}@{host.lower()}"
    else:
        netloc = netloc.lower()
    return urlunparse(p._replace(scheme=p.scheme.lower(), netloc=netloc, fragment=""))


def cache_key(source_url: str) -> str:
    digest = hashlib.sha256(normalize_url(source_url).encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}{digest}"


class KeyValueStore(Protocol):
    async def get(self, key: str) -> bytes | None:
        ...

    async def put(self, key: str, data: bytes, ttl_seconds: int) -> None:
        ...

    async def expires_in(self, key: str) -> int | None:
        ...


@dataclass(frozen=True)
class CacheEntry:
    key: str
    data: bytes
    expires_at: float


class MemoryStore:
    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        *,
        max_entries: int = 1024,
        sweep_interval_s: float = 60.0,
    ):
        self._entries: dict[str, CacheEntry] = {}
        self._clock = clock
        self.max_entries = max(1, max_entries)
        self._sweep_interval_s = sweep_interval_s
        self._last_sweep = clock()

    def _live(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            self._entries.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> bytes | None:
        entry = self._live(key)
        return entry.data if entry else None

    async def put(self, key: str, data: bytes, ttl_seconds: int) -> None:
        now = self._clock()
        full = len(self._entries) >= self.max_entries and key not in self._entries
        if full or now - self._last_sweep >= self._sweep_interval_s:
            self.evict_expired()
            self._last_sweep = now
        while len(self._entries) >= self.max_entries and key not in self._entries:
            # still full of live entries: drop whichever would expire first
            soonest = min(self._entries.values(), key=lambda e: e.expires_at)
            del self._entries[soonest.key]
        self._entries[key] = CacheEntry(key=key, data=data, expires_at=now + ttl_seconds)

    async def expires_in(self, key: str) -> int | None:
        entry = self._live(key)
        if entry is None:
            return None
        return max(0, math.ceil(entry.expires_at - self._clock()))

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now >= e.expires_at]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisStore:
    def __init__(self, redis: aioredis.Redis, prefix: str = "oembed-snap:"):
        self.redis = redis
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "oembed-snap:") -> "RedisStore":
        return cls(aioredis.from_url(url), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> bytes | None:
        try:
            return await self.redis.get(self._key(key))
        except RedisError as e:
            raise CacheUnavailable(str(e)) from e

    async def put(self, key: str, data: bytes, ttl_seconds: int) -> None:
        try:
            await self.redis.set(self._key(key), data, ex=int(ttl_seconds))
        except RedisError as e:
            raise CacheUnavailable(str(e)) from e

    async def expires_in(self, key: str) -> int | None:
        try:
            ttl = await self.redis.ttl(self._key(key))
        except RedisError as e:
            raise CacheUnavailable(str(e)) from e
        # -2: no such key, -1: no expiry
        return ttl if ttl >= 0 else None

    async def close(self) -> None:
        await self.redis.aclose()


RenderFn = Callable[[], Awaitable[bytes]]


class RenderCache:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        min_ttl_seconds: int = 60,
        default_ttl_seconds: int = 14400,
        max_ttl_seconds: int = 2592000,
    ):
        self._store = store
        self.min_ttl_seconds = min_ttl_seconds
        self.default_ttl_seconds = default_ttl_seconds
        self.max_ttl_seconds = max_ttl_seconds
        self._inflight: dict[str, asyncio.Task[CachedImage]] = {}

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def effective_ttl(self, ttl_hint: int | None) -> int:
        ttl = self.default_ttl_seconds if ttl_hint is None else ttl_hint
        # the floor wins over a misconfigured ceiling
        return max(min(ttl, self.max_ttl_seconds), self.min_ttl_seconds)

    async def get(self, key: str) -> bytes | None:
        return await self._store.get(key)

    async def put(self, key: str, data: bytes, ttl_seconds: int | None) -> int:
        ttl = self.effective_ttl(ttl_seconds)
        await self._store.put(key, data, ttl)
        return ttl

    async def get_or_render(self, key: str, ttl_hint: int | None, render: RenderFn) -> CachedImage:
        """Return the cached image for ``key``, rendering it on a miss.

        Concurrent misses on the same key wait on one shared render. A failed
        render raises :class:`RenderError` to every waiter and stores nothing,
        so the next call renders again.
        """
        hit = await self._lookup(key)
        if hit is not None:
            return hit

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._render_and_store(key, ttl_hint, render))
            self._inflight[key] = task
            task.add_done_callback(functools.partial(self._forget, key))
        else:
            log.debug("Joining in-flight render for %s", key)
        # A waiter going away must not cancel the render the others are waiting on.
        return await asyncio.shield(task)

    async def _lookup(self, key: str) -> CachedImage | None:
        try:
            data = await self._store.get(key)
            if data is None:
                log.debug("Cache miss for %s", key)
                return None
            remaining = await self._store.expires_in(key)
        except CacheUnavailable as e:
            log.warning("Cache lookup for %s failed, treating as miss: %s", key, e)
            return None
        log.debug("Cache hit for %s", key)
        ttl = remaining if remaining is not None else self.min_ttl_seconds
        return CachedImage(data=data, ttl_seconds=ttl, cache_hit=True)

    async def _render_and_store(self, key: str, ttl_hint: int | None, render: RenderFn) -> CachedImage:
        # Another worker may have filled the key while we were looking it up.
        hit = await self._lookup(key)
        if hit is not None:
            return hit

        data = await render()
        if not data:
            raise RenderError(RenderFailure.CAPTURE_FAILED, "render produced no image data")

        ttl = self.effective_ttl(ttl_hint)
        try:
            await self._store.put(key, data, ttl)
        except CacheUnavailable as e:
            log.warning("Could not cache %s: %s", key, e)
        return CachedImage(data=data, ttl_seconds=ttl, cache_hit=False)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # marks the exception retrieved
            task.exception()
