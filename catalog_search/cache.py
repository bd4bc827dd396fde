"""Result caching: Redis with an in-memory fallback, plus canonical request keys."""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Type, TypeVar

import redis
from pydantic import BaseModel, ValidationError

from .config import Settings, settings
from .errors import CacheUnavailable
from .models import FacetOptions, SearchRequest, SuggestRequest

logger = logging.getLogger(__name__)

SEARCH_PREFIX = "search:"
SUGGEST_PREFIX = "suggest:"
AUTOCOMPLETE_PREFIX = "autocomplete:"

# Only used for analytics; never part of a cache key.
ANALYTICS_FIELDS = {"user_id", "session_id"}
LIST_FIELDS = ("category", "brand", "tags")

M = TypeVar("M", bound=BaseModel)


class CacheBackend(Protocol):
    def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    def set(self, key: str, value: Dict[str, Any], ttl: int) -> None: ...


@dataclass
class RedisCache:
    client: redis.Redis

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            data = self.client.get(key)
        except redis.RedisError as exc:
            raise CacheUnavailable(f"Redis get failed: {exc}") from exc
        if not data:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Dropping undecodable cache entry %s", key)
            return None

    def set(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        try:
            self.client.setex(key, ttl, json.dumps(value))
        except redis.RedisError as exc:
            raise CacheUnavailable(f"Redis set failed: {exc}") from exc


class InMemoryCache:
    def __init__(self, clock=time.monotonic) -> None:
        self._store: Dict[str, tuple[float, Dict[str, Any]]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self._store.get(key)
            if not value:
                return None
            expires_at, payload = value
            if expires_at <= self._clock():
                self._store.pop(key, None)
                return None
            return payload

    def set(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        with self._lock:
            self._store[key] = (self._clock() + ttl, value)

    def __len__(self) -> int:
        return len(self._store)


_cache: CacheBackend | None = None


def get_cache(config: Settings = settings) -> CacheBackend:
    global _cache
    if _cache is not None:
        return _cache
    try:
        client = redis.Redis(host=config.redis_host, port=config.redis_port, decode_responses=False)
        client.ping()
        logger.info("Using Redis cache at %s:%s", config.redis_host, config.redis_port)
        _cache = RedisCache(client)
    except redis.RedisError:
        logger.warning("Redis not available, using in-memory cache")
        _cache = InMemoryCache()
    return _cache


def _digest(payload: Dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def canonical_request(request: SearchRequest) -> Dict[str, Any]:
    """Request as plain JSON with defaults filled, id lists sorted and analytics fields dropped."""
    payload = request.model_dump(mode="json", exclude=ANALYTICS_FIELDS)
    for name in LIST_FIELDS:
        payload[name] = sorted(set(payload.get(name) or []))
    if payload.get("facets") and payload.get("facet_options") is None:
        payload["facet_options"] = FacetOptions().model_dump(mode="json")
    return payload


def make_cache_key(request: SearchRequest, *, variant: Optional[str] = None) -> str:
    """``variant`` separates responses of different shape for the same request (e.g. facets only)."""
    payload = canonical_request(request)
    if variant:
        payload["variant"] = variant
    return SEARCH_PREFIX + _digest(payload)


def make_suggest_key(request: SuggestRequest) -> str:
    payload = request.model_dump(mode="json", exclude=ANALYTICS_FIELDS)
    payload["q"] = payload["q"].strip().lower()
    payload["types"] = sorted(set(payload["types"]))
    return SUGGEST_PREFIX + _digest(payload)


def make_autocomplete_key(text: str, size: int, category: Optional[str] = None) -> str:
    return AUTOCOMPLETE_PREFIX + _digest({"q": text.strip().lower(), "size": size, "category": category})


async def cache_lookup(cache: Optional[CacheBackend], key: str) -> Optional[Dict[str, Any]]:
    """Fetch off the event loop; an unreachable cache counts as a miss."""
    if cache is None:
        return None
    try:
        return await asyncio.to_thread(cache.get, key)
    except CacheUnavailable as exc:
        logger.warning("cache_lookup skipped: %s", exc.reason)
        return None


async def cache_store(cache: Optional[CacheBackend], key: str, value: Dict[str, Any], ttl: int) -> None:
    if cache is None:
        return
    try:
        await asyncio.to_thread(cache.set, key, value, ttl)
    except CacheUnavailable as exc:
        logger.warning("cache_store skipped: %s", exc.reason)


async def cached_model(cache: Optional[CacheBackend], key: str, model: Type[M]) -> Optional[M]:
    """Cached entry parsed as ``model``; entries that no longer fit the schema count as a miss."""
    payload = await cache_lookup(cache, key)
    if payload is None:
        return None
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Ignoring stale cache entry %s: %s", key, exc.error_count())
        return None
