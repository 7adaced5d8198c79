"""
Per-link Configuration Cache

Rules, schedules, variants and masking settings are read on every click but
written rarely, so they are cached in Redis under a short TTL and deleted
whenever the link's configuration changes.

The cache is optional (disabled without REDIS_URL) and never authoritative:
a Redis fault degrades to a database read.
"""

import json
import logging
from typing import Optional

import redis.asyncio as redis

from zhort.core.outcome import fail_open
from zhort.core.setting import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "zhort"

_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """Shared Redis client, created lazily from REDIS_URL (None when unset)."""
    global _client
    if _client is None and settings.REDIS_URL:
        _client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=1,
            socket_connect_timeout=1,
        )
        logger.info("Redis configuration cache enabled")
    return _client


async def close_redis_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


class LinkConfigCache:
    """JSON documents keyed by link id with a short TTL."""

    def __init__(self, client: Optional[redis.Redis] = None, ttl_seconds: Optional[int] = None):
        self.client = client
        self.ttl_seconds = ttl_seconds or settings.CONFIG_CACHE_TTL_SECONDS

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def _key(self, link_id: int) -> str:
        return f"{KEY_PREFIX}:linkcfg:{link_id}"

    async def get(self, link_id: int) -> Optional[dict]:
        if not self.enabled:
            return None

        async def _read():
            raw = await self.client.get(self._key(link_id))
            return json.loads(raw) if raw else None

        checked = await fail_open("config_cache", _read, default=None)
        return checked.value

    async def set(self, link_id: int, document: dict) -> None:
        if not self.enabled:
            return

        await fail_open(
            "config_cache",
            lambda: self.client.setex(self._key(link_id), self.ttl_seconds, json.dumps(document)),
            default=None,
        )

    async def invalidate(self, link_id: int) -> None:
        if not self.enabled:
            return

        await fail_open(
            "config_cache",
            lambda: self.client.delete(self._key(link_id)),
            default=None,
        )
