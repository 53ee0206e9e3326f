from __future__ import annotations

import json
from functools import lru_cache
from typing import Any

import redis

from story_heat.settings import get_settings

HOT_CLUSTERS_PREFIX = "hot_clusters"


@lru_cache(maxsize=1)
def get_redis_client() -> redis.Redis | None:
    settings = get_settings()
    if not settings.redis_url:
        return None
    return redis.Redis.from_url(settings.redis_url)


def clear_redis_client_cache() -> None:
    get_redis_client.cache_clear()


def cache_get_json(r: redis.Redis, key: str) -> Any | None:
    try:
        raw = r.get(key)
    except redis.RedisError:
        return None
    if not raw:
        return None
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode("utf-8")
    if not isinstance(raw, str):
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def cache_set_json(r: redis.Redis, key: str, value: Any, *, ttl_seconds: int) -> None:
    try:
        raw = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        r.setex(key, ttl_seconds, raw)
    except (TypeError, redis.RedisError):
        return


def cache_delete_prefix(r: redis.Redis, prefix: str) -> int:
    """Drop every key under ``prefix``; returns how many went."""
    deleted = 0
    try:
        for key in r.scan_iter(match=f"{prefix}:*", count=100):
            deleted += int(r.delete(key))
    except redis.RedisError:
        return deleted
    return deleted


def cache_key_hot_clusters(*, category: str | None, since_hours: float, limit: int) -> str:
    return f"{HOT_CLUSTERS_PREFIX}:{(category or 'ALL').upper()}:{since_hours:g}:{limit}"


def cache_key_trending_entities(*, hours: float, limit: int) -> str:
    return f"trending_entities:{hours:g}:{limit}"
