"""End-to-end tests of the resolution pipeline."""

import asyncio
import random
from datetime import datetime, timedelta

import httpx
import pytest
from sqlalchemy import select

from zhort.core.exceptions import (
    AccessDeniedError,
    DenialReason,
    LinkExpiredError,
    LinkInactiveError,
    ShortCodeNotFoundError,
)
from zhort.core.security import hash_password
from zhort.db.models import ClickEvent, IPWhitelistEntry, LinkVariant, Webhook
from zhort.services.background_tasks import SideEffectQueue
from zhort.services.link_settings import LinkSettingsService
from zhort.services.masking import PresentationMode
from zhort.services.request_context import RequestContext
from zhort.services.resolution_service import LinkResolver, ResolutionSource
from zhort.services.smart_redirects import SmartRedirectRuleService
from zhort.services.variant_selector import VariantSelector
from zhort.services.webhook_dispatcher import WebhookDispatcher


NOW = datetime(2025, 11, 7, 12, 0, 0)
IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
VISITOR = RequestContext(ip="203.0.113.9", user_agent=IPHONE_UA, country="DE")


def resolver(session, session_factory, **kwargs) -> LinkResolver:
    kwargs.setdefault("rng", random.Random(42))
    kwargs.setdefault("local_clock", lambda: NOW)
    return LinkResolver(session, session_factory=session_factory, **kwargs)


@pytest.mark.asyncio
async def test_default_destination(session, session_factory, make_link):
    link = await make_link()

    result = await resolver(session, session_factory).resolve(link.short_code, VISITOR, now=NOW)

    assert result.decision.target_url == link.long_url
    assert result.decision.source is ResolutionSource.DEFAULT
    assert result.presentation.mode is PresentationMode.REDIRECT

    await session.refresh(link)
    assert link.hits == 1


@pytest.mark.asyncio
async def test_unknown_and_malformed_codes(session, session_factory):
    with pytest.raises(ShortCodeNotFoundError):
        await resolver(session, session_factory).resolve("nope42", VISITOR, now=NOW)
    with pytest.raises(ShortCodeNotFoundError):
        await resolver(session, session_factory).resolve("bad code!", VISITOR, now=NOW)


@pytest.mark.asyncio
async def test_rule_beats_variant(session, session_factory, make_link):
    link = await make_link()
    await SmartRedirectRuleService(session).create_rule(link.id, "device", "mobile", "https://m.example.com/")
    variant = await VariantSelector(session).create_variant(link.id, "https://example.com/variant", 100)

    result = await resolver(session, session_factory).resolve(link.short_code, VISITOR, now=NOW)

    assert result.decision.source is ResolutionSource.SMART_REDIRECT
    assert result.decision.target_url == "https://m.example.com/"
    # The variant never served this click, so it is not counted
    await session.refresh(variant)
    assert variant.clicks == 0


@pytest.mark.asyncio
async def test_variant_when_no_rule_matches(session, session_factory, make_link):
    link = await make_link()
    await SmartRedirectRuleService(session).create_rule(link.id, "geo", "FR", "https://fr.example.com/")
    variant = await VariantSelector(session).create_variant(link.id, "https://example.com/variant", 100)

    result = await resolver(session, session_factory).resolve(link.short_code, VISITOR, now=NOW)

    assert result.decision.source is ResolutionSource.AB_VARIANT
    assert result.decision.target_url == "https://example.com/variant"
    await session.refresh(variant)
    assert variant.clicks == 1


@pytest.mark.asyncio
async def test_schedule_fallback_beats_everything(session, session_factory, make_link):
    link = await make_link()
    await LinkSettingsService(session).create_schedule(
        link.id, active_until=NOW - timedelta(days=1), fallback_url="https://example.com/ended"
    )
    await SmartRedirectRuleService(session).create_rule(link.id, "device", "mobile", "https://m.example.com/")

    result = await resolver(session, session_factory).resolve(link.short_code, VISITOR, now=NOW)

    assert result.decision.source is ResolutionSource.SCHEDULE_FALLBACK
    assert result.decision.target_url == "https://example.com/ended"


@pytest.mark.asyncio
async def test_inactive_without_fallback(session, session_factory, make_link):
    link = await make_link()
    await LinkSettingsService(session).create_schedule(link.id, active_from=NOW + timedelta(days=1))

    with pytest.raises(LinkInactiveError):
        await resolver(session, session_factory).resolve(link.short_code, VISITOR, now=NOW)


@pytest.mark.asyncio
async def test_expired_link(session, session_factory, make_link):
    link = await make_link(expires_at=NOW - timedelta(seconds=1))

    with pytest.raises(LinkExpiredError):
        await resolver(session, session_factory).resolve(link.short_code, VISITOR, now=NOW)

    await session.refresh(link)
    assert link.hits == 0


@pytest.mark.asyncio
async def test_expired_link_with_fallback(session, session_factory, make_link):
    link = await make_link(expires_at=NOW - timedelta(seconds=1))
    await LinkSettingsService(session).create_schedule(
        link.id, active_until=NOW - timedelta(days=1), fallback_url="https://example.com/ended"
    )

    result = await resolver(session, session_factory).resolve(link.short_code, VISITOR, now=NOW)
    assert result.decision.source is ResolutionSource.SCHEDULE_FALLBACK


@pytest.mark.asyncio
async def test_expired_fallback_still_requires_password(session, session_factory, make_link):
    link = await make_link(password_hash=hash_password("hunter2"), expires_at=NOW - timedelta(hours=1))
    await LinkSettingsService(session).create_schedule(
        link.id, active_until=NOW - timedelta(days=1), fallback_url="https://example.com/fallback"
    )
    pipeline = resolver(session, session_factory)

    with pytest.raises(AccessDeniedError) as exc_info:
        await pipeline.resolve(link.short_code, VISITOR, now=NOW)
    assert exc_info.value.reason is DenialReason.PASSWORD_REQUIRED

    unlocked = RequestContext(ip=VISITOR.ip, user_agent=IPHONE_UA, password="hunter2")
    result = await pipeline.resolve(link.short_code, unlocked, now=NOW)
    assert result.decision.target_url == "https://example.com/fallback"


@pytest.mark.asyncio
async def test_expired_fallback_respects_whitelist_and_quota(session, session_factory, make_link, make_team):
    team = await make_team(usage_quota=5, usage_reset_date=NOW + timedelta(days=10))
    link = await make_link(owner_id=7, team_id=team.id, expires_at=NOW - timedelta(hours=1))
    await LinkSettingsService(session).create_schedule(
        link.id, active_until=NOW - timedelta(days=1), fallback_url="https://example.com/fallback"
    )
    session.add(IPWhitelistEntry(ip_address="10.0.0.0/8", user_id=7))
    await session.commit()
    pipeline = resolver(session, session_factory)

    with pytest.raises(AccessDeniedError) as exc_info:
        await pipeline.resolve(link.short_code, VISITOR, now=NOW)
    assert exc_info.value.reason is DenialReason.IP_NOT_ALLOWED

    office = RequestContext(ip="10.1.2.3", user_agent=IPHONE_UA)
    result = await pipeline.resolve(link.short_code, office, now=NOW)
    assert result.decision.source is ResolutionSource.SCHEDULE_FALLBACK

    await session.refresh(team)
    assert team.current_usage == 2


@pytest.mark.asyncio
async def test_denials_carry_reason(session, session_factory, make_link, make_team):
    team = await make_team(usage_quota=1, usage_reset_date=NOW + timedelta(days=10))
    link = await make_link(team_id=team.id)
    pipeline = resolver(session, session_factory)

    await pipeline.resolve(link.short_code, VISITOR, now=NOW)
    with pytest.raises(AccessDeniedError) as exc_info:
        await pipeline.resolve(link.short_code, VISITOR, now=NOW)
    assert exc_info.value.reason is DenialReason.QUOTA_EXCEEDED


@pytest.mark.asyncio
async def test_masking_presentation(session, session_factory, make_link):
    link = await make_link()
    await LinkSettingsService(session).put_masking(link.id, enable_splash=True, splash_duration_ms=500)

    result = await resolver(session, session_factory).resolve(link.short_code, VISITOR, now=NOW)

    assert result.presentation.mode is PresentationMode.SPLASH
    assert result.presentation.splash_duration_ms == 500


@pytest.mark.asyncio
async def test_preview_records_nothing(session, session_factory, make_link):
    link = await make_link()
    variant = await VariantSelector(session).create_variant(link.id, "https://example.com/variant", 100)

    result = await resolver(session, session_factory).resolve(link.short_code, VISITOR, now=NOW, record=False)

    assert result.decision.target_url == "https://example.com/variant"
    await session.refresh(link)
    await session.refresh(variant)
    assert link.hits == 0
    assert variant.clicks == 0


@pytest.mark.asyncio
async def test_side_effects_record_click_and_webhook(session, session_factory, make_link):
    link = await make_link(owner_id=9)
    session.add(Webhook(owner_id=9, url="https://hooks.example.com/", secret="s", events=["link.clicked"]))
    await session.commit()

    delivered = []

    def handler(request: httpx.Request) -> httpx.Response:
        delivered.append(request.headers["X-Zhort-Event"])
        return httpx.Response(200)

    queue = SideEffectQueue(maxsize=10, workers=1)
    queue.start()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        pipeline = resolver(
            session,
            session_factory,
            side_effects=queue,
            webhook_dispatcher=WebhookDispatcher(session_factory, client),
        )
        await pipeline.resolve(link.short_code, VISITOR, now=NOW)
        await queue.shutdown(timeout=5)

    assert delivered == ["link.clicked"]
    result = await session.execute(select(ClickEvent).where(ClickEvent.link_id == link.id))
    click = result.scalar_one()
    assert click.ip_address == "203.0.113.9"
    assert click.device_type == "mobile"
