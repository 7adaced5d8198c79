"""
Link Resolution Service

The single entry point for a short-link hit: resolve(code, context).

Per-click flow:
1. Look up the link (NotFound)
2. AccessController: archived / expired / password / quota / IP whitelist (Denied)
3. Load the per-link configuration (cache, then database)
4. ScheduleEvaluator, SmartRedirectResolver, VariantSelector
5. MaskingDecider turns the chosen target into a presentation instruction
6. Atomic hit increment, then click recording and the link.clicked webhook
   are queued as side effects that never block or fail the redirect

Precedence of the target URL, highest first:
    SCHEDULE_FALLBACK > SMART_REDIRECT > AB_VARIANT > DEFAULT

VariantSelector only runs when no smart-redirect rule matched, so a
variant's click counter only counts clicks the variant actually served.
An expired link still redirects to a schedule fallback when one is
configured, after the password, quota and whitelist checks pass;
otherwise it is reported as Expired.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from zhort.core.exceptions import (
    AccessDeniedError,
    DenialReason,
    LinkExpiredError,
    LinkInactiveError,
    ShortCodeNotFoundError,
)
from zhort.core.validators import sanitize_short_code
from zhort.db.models import ShortLink
from zhort.db.session import async_session_maker
from zhort.services.access_control import AccessController
from zhort.services.background_tasks import (
    SideEffectQueue,
    dispatch_webhooks_background,
    record_click_background,
)
from zhort.services.click_recorder import GeoLocator
from zhort.services.config_cache import LinkConfigCache
from zhort.services.link_config import LinkConfig, LinkConfigLoader
from zhort.services.link_service import LinkService
from zhort.services.masking import PresentationInstruction, decide
from zhort.services.rate_limiter import RateLimiter
from zhort.services.request_context import RequestContext
from zhort.services.schedule_evaluator import evaluate_schedules
from zhort.services.smart_redirects import SmartRedirectResolver, match_rules
from zhort.services.variant_selector import VariantSelector
from zhort.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


class ResolutionSource(str, Enum):
    """Which stage produced the target URL, highest precedence first."""
    SCHEDULE_FALLBACK = "schedule_fallback"
    SMART_REDIRECT = "smart_redirect"
    AB_VARIANT = "ab_variant"
    DEFAULT = "default"


@dataclass(frozen=True)
class ResolutionDecision:
    link_id: int
    short_code: str
    target_url: str
    source: ResolutionSource


@dataclass(frozen=True)
class ResolutionResult:
    decision: ResolutionDecision
    presentation: PresentationInstruction


def link_event_data(link: ShortLink, context: Optional[RequestContext] = None) -> Dict[str, Any]:
    """Webhook `data` object for link.* events."""
    data: Dict[str, Any] = {
        "linkId": link.id,
        "shortCode": link.short_code,
        "longUrl": link.long_url,
    }
    if context is not None:
        data.update({
            "ipAddress": context.ip,
            "userAgent": context.user_agent,
            "referer": context.referer,
        })
    return data


class LinkResolver:
    """
    Runs the decision chain for one hit.

    Args:
        session: Request-scoped database session
        cache: Per-link configuration cache (disabled when None)
        side_effects: Queue for click recording and webhooks (skipped when None)
        geo_locator: IP geo lookup used by click recording
        webhook_dispatcher: Fan-out for link.clicked / link.expired
        rng: Random source shared by A/B rules and variant selection
        local_clock: Server local time for time-of-day rules
        session_factory: Sessions for queued click recording
    """

    def __init__(
        self,
        session: AsyncSession,
        cache: Optional[LinkConfigCache] = None,
        side_effects: Optional[SideEffectQueue] = None,
        geo_locator: Optional[GeoLocator] = None,
        webhook_dispatcher: Optional[WebhookDispatcher] = None,
        rng: Optional[random.Random] = None,
        local_clock: Callable[[], datetime] = datetime.now,
        session_factory: async_sessionmaker = async_session_maker
    ):
        self.session = session
        self.side_effects = side_effects
        self.geo_locator = geo_locator
        self.webhook_dispatcher = webhook_dispatcher
        self.local_clock = local_clock
        self.session_factory = session_factory

        rng = rng or random.Random()
        self.links = LinkService(session)
        self.access = AccessController(session, rate_limiter=RateLimiter(session))
        self.config_loader = LinkConfigLoader(session, cache)
        self.smart_redirects = SmartRedirectResolver(session, rng=rng)
        self.variants = VariantSelector(session, rng=rng, cache=cache)

    async def resolve(
        self,
        code: str,
        context: RequestContext,
        now: Optional[datetime] = None,
        record: bool = True
    ) -> ResolutionResult:
        """
        Resolve a short code for one visitor.

        Args:
            code: Short code from the request path
            context: Visitor facts
            now: Evaluation instant in UTC (defaults to now)
            record: When False, nothing is counted or emitted (preview lookups)

        Raises:
            ShortCodeNotFoundError: Unknown code, or inactive with no fallback
            LinkExpiredError: Past expiry with no schedule fallback
            AccessDeniedError: An admission check refused the request
        """
        now = now or datetime.utcnow()

        short_code = sanitize_short_code(code)
        if not short_code:
            raise ShortCodeNotFoundError(code)

        link = await self.links.get_by_code(short_code)
        if link is None:
            raise ShortCodeNotFoundError(short_code)

        access = await self.access.authorize(link, context.ip, password=context.password, now=now)

        if not access.allowed and access.reason is DenialReason.EXPIRED:
            config = await self.config_loader.load(link.id)
            if record:
                self._emit(link, "link.expired", link_event_data(link))
            fallback = next((s.fallback_url for s in config.schedules if s.fallback_url), None)
            if fallback is None:
                raise LinkExpiredError(short_code)
            access = await self.access.authorize(
                link, context.ip, password=context.password, now=now, allow_expired=True
            )
            if not access.allowed:
                raise AccessDeniedError(access.reason)
            decision = ResolutionDecision(link.id, short_code, fallback, ResolutionSource.SCHEDULE_FALLBACK)
            return await self._finish(link, decision, config, context, record)

        if not access.allowed:
            raise AccessDeniedError(access.reason)

        config = await self.config_loader.load(link.id)
        decision = await self._decide(link, config, context, now, record)
        return await self._finish(link, decision, config, context, record)

    async def _decide(
        self,
        link: ShortLink,
        config: LinkConfig,
        context: RequestContext,
        now: datetime,
        record: bool
    ) -> ResolutionDecision:
        schedule = evaluate_schedules(config.schedules, now)
        if not schedule.is_active:
            if schedule.fallback_url is None:
                raise LinkInactiveError(link.short_code)
            return ResolutionDecision(
                link.id, link.short_code, schedule.fallback_url, ResolutionSource.SCHEDULE_FALLBACK
            )

        facts = self.smart_redirects.facts(
            context.user_agent, context.country, local_now=self.local_clock(), device=context.device
        )
        rule = match_rules(config.rules, facts)
        if rule is not None:
            return ResolutionDecision(link.id, link.short_code, rule.target_url, ResolutionSource.SMART_REDIRECT)

        variant_url = await self.variants.choose(config.variants, count_click=record)
        if variant_url is not None:
            return ResolutionDecision(link.id, link.short_code, variant_url, ResolutionSource.AB_VARIANT)

        return ResolutionDecision(link.id, link.short_code, link.long_url, ResolutionSource.DEFAULT)

    async def _finish(
        self,
        link: ShortLink,
        decision: ResolutionDecision,
        config: LinkConfig,
        context: RequestContext,
        record: bool
    ) -> ResolutionResult:
        presentation = decide(config.masking, decision.target_url)

        if record:
            await self.links.increment_hits(link.id)
            await self.session.commit()
            self._record_click(link, context)
            self._emit(link, "link.clicked", link_event_data(link, context))

        logger.debug(f"Resolved {decision.short_code} -> {decision.target_url} ({decision.source.value})")
        return ResolutionResult(decision=decision, presentation=presentation)

    def _record_click(self, link: ShortLink, context: RequestContext) -> None:
        if self.side_effects is None:
            return
        self.side_effects.submit(
            f"click:{link.id}",
            lambda: record_click_background(
                link.id,
                context.ip,
                context.user_agent,
                context.referer,
                geo_locator=self.geo_locator,
                session_factory=self.session_factory,
            ),
        )

    def _emit(self, link: ShortLink, event: str, data: Dict[str, Any]) -> None:
        if self.side_effects is None or self.webhook_dispatcher is None or link.owner_id is None:
            return
        dispatcher, owner_id = self.webhook_dispatcher, link.owner_id
        self.side_effects.submit(
            f"{event}:{link.id}",
            lambda: dispatch_webhooks_background(dispatcher, owner_id, event, data),
        )
