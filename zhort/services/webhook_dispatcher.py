"""
Webhook Dispatcher

Signed fan-out of pipeline events to owner-registered endpoints.

Delivery:
- Payload is compact JSON {"event", "timestamp", "data"}
- X-Zhort-Signature carries the hex HMAC-SHA256 of the exact body bytes,
  keyed with the endpoint's secret
- All endpoints for one event are posted concurrently, bounded by a
  semaphore, each capped end to end by the dispatcher timeout
- Non-2xx responses and network errors are logged and dropped: no retry,
  no backoff, no dead-lettering
- last_triggered_at is updated for successful deliveries only
"""

import asyncio
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from zhort.core.clock import to_iso_z
from zhort.core.exceptions import InvalidRuleError, InvalidURLError
from zhort.core.security import generate_webhook_secret
from zhort.core.setting import settings
from zhort.core.validators import is_valid_url
from zhort.db.models import Webhook

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS = frozenset({"link.created", "link.clicked", "link.expired", "paste.created"})
TEST_EVENT = "webhook.test"
USER_AGENT = "Zhort-Webhooks/1.0"


def build_payload(event: str, data: Dict[str, Any], timestamp: Optional[datetime] = None) -> str:
    """Serialize the delivery body. The signature is computed over exactly these bytes."""
    body = {
        "event": event,
        "timestamp": to_iso_z(timestamp or datetime.utcnow()),
        "data": data,
    }
    return json.dumps(body, separators=(",", ":"), default=str)


def sign_payload(payload: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(payload: str, signature: str, secret: str) -> bool:
    """Constant-time comparison of the provided signature against a recomputed one."""
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(expected.encode("utf-8"), (signature or "").encode("utf-8"))


@dataclass(frozen=True)
class DeliveryResult:
    webhook_id: int
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


class WebhookDispatcher:
    """
    Event fan-out.

    Owns its own session per dispatch (it runs on the side-effect queue,
    after the request session is gone) and its own timeout and
    concurrency bound; callers get no cancellation handle.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        client: httpx.AsyncClient,
        max_concurrency: Optional[int] = None,
        timeout: Optional[float] = None
    ):
        self.session_factory = session_factory
        self.client = client
        self.max_concurrency = max_concurrency or settings.WEBHOOK_MAX_CONCURRENCY
        self.timeout = timeout or settings.WEBHOOK_TIMEOUT_SECONDS

    async def _subscribers(self, session: AsyncSession, owner_id: int, event: str) -> List[Webhook]:
        result = await session.execute(
            select(Webhook)
            .where(Webhook.owner_id == owner_id, Webhook.is_active == True)  # noqa: E712
            .order_by(Webhook.id)
        )
        return [hook for hook in result.scalars().all() if event in (hook.events or [])]

    async def deliver(self, webhook_id: int, url: str, secret: str, event: str, payload: str) -> DeliveryResult:
        headers = {
            "Content-Type": "application/json",
            "X-Zhort-Signature": sign_payload(payload, secret),
            "X-Zhort-Event": event,
            "User-Agent": USER_AGENT,
        }
        try:
            # httpx timeouts are per phase; wait_for caps the whole delivery
            response = await asyncio.wait_for(
                self.client.post(url, content=payload, headers=headers, timeout=self.timeout),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Webhook {webhook_id} timed out after {self.timeout}s")
            return DeliveryResult(webhook_id=webhook_id, success=False, error="timeout")
        except httpx.HTTPError as e:
            logger.error(f"Webhook {webhook_id} delivery error: {e!r}")
            return DeliveryResult(webhook_id=webhook_id, success=False, error=repr(e))

        if not response.is_success:
            logger.error(f"Webhook {webhook_id} failed: {response.status_code} {response.reason_phrase}")
            return DeliveryResult(webhook_id=webhook_id, success=False, status_code=response.status_code)

        return DeliveryResult(webhook_id=webhook_id, success=True, status_code=response.status_code)

    async def _fan_out(self, hooks: Sequence[Webhook], event: str, payload: str) -> List[DeliveryResult]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(hook: Webhook) -> DeliveryResult:
            async with semaphore:
                return await self.deliver(hook.id, hook.url, hook.secret, event, payload)

        return list(await asyncio.gather(*(bounded(hook) for hook in hooks)))

    async def dispatch(self, owner_id: int, event: str, data: Dict[str, Any]) -> List[DeliveryResult]:
        """
        Deliver `event` to every active subscriber of `owner_id`.

        Returns:
            One DeliveryResult per subscribed endpoint
        """
        async with self.session_factory() as session:
            hooks = await self._subscribers(session, owner_id, event)
            if not hooks:
                return []

            payload = build_payload(event, data)
            results = await self._fan_out(hooks, event, payload)

            delivered = [r.webhook_id for r in results if r.success]
            if delivered:
                await session.execute(
                    update(Webhook)
                    .where(Webhook.id.in_(delivered))
                    .values(last_triggered_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

        logger.info(f"Dispatched {event} for owner {owner_id}: {len(delivered)}/{len(results)} delivered")
        return results


class WebhookService:
    """Owner-scoped webhook CRUD."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_webhooks(self, owner_id: int) -> List[Webhook]:
        result = await self.session.execute(
            select(Webhook).where(Webhook.owner_id == owner_id).order_by(Webhook.id)
        )
        return list(result.scalars().all())

    async def get_webhook(self, owner_id: int, webhook_id: int) -> Optional[Webhook]:
        webhook = await self.session.get(Webhook, webhook_id)
        if webhook is None or webhook.owner_id != owner_id:
            return None
        return webhook

    async def create_webhook(self, owner_id: int, url: str, events: Sequence[str]) -> Webhook:
        """
        Register an endpoint with a freshly generated secret.

        Raises:
            InvalidURLError: If the endpoint URL is not http(s)
            InvalidRuleError: If no events or unknown events are given
        """
        if not is_valid_url(url):
            raise InvalidURLError(url, reason="Invalid webhook URL")

        unique_events = list(dict.fromkeys(events))
        unknown = [e for e in unique_events if e not in WEBHOOK_EVENTS]
        if not unique_events or unknown:
            raise InvalidRuleError(f"Webhook events must be a non-empty subset of {sorted(WEBHOOK_EVENTS)}")

        webhook = Webhook(
            owner_id=owner_id,
            url=url,
            secret=generate_webhook_secret(),
            events=unique_events,
            is_active=True,
        )
        self.session.add(webhook)
        await self.session.commit()
        await self.session.refresh(webhook)
        return webhook

    async def delete_webhook(self, owner_id: int, webhook_id: int) -> bool:
        webhook = await self.get_webhook(owner_id, webhook_id)
        if webhook is None:
            return False
        await self.session.delete(webhook)
        await self.session.commit()
        return True

    async def send_test(self, webhook: Webhook, dispatcher: WebhookDispatcher) -> DeliveryResult:
        """Deliver a signed webhook.test event to one endpoint, bypassing subscriptions."""
        payload = build_payload(
            TEST_EVENT,
            {"message": "This is a test webhook from Zhort", "webhookId": webhook.id},
        )
        return await dispatcher.deliver(webhook.id, webhook.url, webhook.secret, TEST_EVENT, payload)
