"""
Pipeline Resource Manager

This module manages the process-wide collaborators of the resolution
pipeline. They are initialized once per application instance on startup
and shared across requests.

Design:
- Singleton pattern: one HTTP client, one side-effect queue, one Redis
  client per application instance
- Initialized on application startup, released on shutdown
- Each instance keeps its own queue and background loop (enables
  horizontal scaling; the database stays the only shared state)
- Shutdown drains queued side effects before the HTTP client is closed
"""

import asyncio
import logging
from typing import Optional

import httpx

from zhort.core.setting import settings
from zhort.db.session import async_session_maker
from zhort.services.background_tasks import SideEffectQueue, blocklist_refresh_loop
from zhort.services.click_recorder import GeoLocator
from zhort.services.config_cache import LinkConfigCache, close_redis_client, get_redis_client
from zhort.services.domain_safety import PhishingChecker
from zhort.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

_http_client: Optional[httpx.AsyncClient] = None
_side_effects: Optional[SideEffectQueue] = None
_blocklist_task: Optional[asyncio.Task] = None


def get_http_client() -> httpx.AsyncClient:
    """Shared outbound HTTP client (created lazily if startup has not run)."""
    global _http_client
    if _http_client is None:
        _http_client = httpx.AsyncClient(follow_redirects=False)
    return _http_client


def get_side_effects() -> Optional[SideEffectQueue]:
    """
    The running side-effect queue.

    Returns None before startup; resolution then skips click recording
    and webhooks instead of failing.
    """
    return _side_effects


def get_config_cache() -> LinkConfigCache:
    return LinkConfigCache(get_redis_client())


def get_geo_locator() -> GeoLocator:
    return GeoLocator(get_http_client())


def get_phishing_checker() -> PhishingChecker:
    return PhishingChecker(get_http_client())


def get_webhook_dispatcher() -> WebhookDispatcher:
    return WebhookDispatcher(async_session_maker, get_http_client())


async def initialize_pipeline(start_blocklist_refresh: bool = True) -> None:
    """Create the HTTP client, start the side-effect workers and the blocklist loop."""
    global _side_effects, _blocklist_task

    if _side_effects is not None:
        logger.warning("Pipeline already initialized")
        return

    client = get_http_client()

    _side_effects = SideEffectQueue()
    _side_effects.start()

    if start_blocklist_refresh:
        _blocklist_task = asyncio.create_task(blocklist_refresh_loop(client), name="blocklist-refresh")

    logger.info(
        f"Pipeline initialized: "
        f"cache={'redis' if settings.REDIS_URL else 'disabled'}, "
        f"phishing_lookup={'enabled' if settings.SAFE_BROWSING_API_KEY else 'disabled'}"
    )


async def shutdown_pipeline() -> None:
    """Drain side effects, stop background loops and close clients."""
    global _http_client, _side_effects, _blocklist_task

    if _blocklist_task is not None:
        _blocklist_task.cancel()
        await asyncio.gather(_blocklist_task, return_exceptions=True)
        _blocklist_task = None

    if _side_effects is not None:
        logger.info("Draining side-effect queue")
        await _side_effects.shutdown()
        _side_effects = None

    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None

    await close_redis_client()
