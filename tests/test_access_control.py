"""Tests for admission checks: CIDR matching, quotas, whitelists and passwords."""

from datetime import datetime, timedelta

import pytest

from zhort.core.exceptions import DenialReason
from zhort.core.security import hash_password
from zhort.db.models import IPWhitelistEntry, Team
from zhort.services.access_control import AccessController, QuotaService, matches_ip_range


NOW = datetime(2025, 11, 7, 12, 0, 0)


class TestMatchesIPRange:
    """Exact and IPv4 CIDR whitelist matching."""

    def test_cidr_match(self):
        assert matches_ip_range("192.168.1.42", "192.168.1.0/24")

    def test_cidr_miss(self):
        assert not matches_ip_range("192.168.2.1", "192.168.1.0/24")

    def test_exact_match(self):
        assert matches_ip_range("10.0.0.5", "10.0.0.5")
        assert not matches_ip_range("10.0.0.6", "10.0.0.5")

    def test_prefix_edges(self):
        assert matches_ip_range("8.8.8.8", "0.0.0.0/0")
        assert matches_ip_range("10.0.0.5", "10.0.0.5/32")
        assert not matches_ip_range("10.0.0.4", "10.0.0.5/32")

    def test_malformed_ranges_never_match(self):
        assert not matches_ip_range("10.0.0.5", "10.0.0.0/33")
        assert not matches_ip_range("10.0.0.5", "10.0.0.0/abc")
        assert not matches_ip_range("10.0.0.5", "not-an-ip/24")
        assert not matches_ip_range("::1", "10.0.0.0/8")


@pytest.mark.asyncio
async def test_quota_full_is_denied(session, make_team):
    team = await make_team(usage_quota=100, current_usage=100, usage_reset_date=NOW + timedelta(days=3))

    status = await QuotaService(session).check_and_consume(team.id, now=NOW)

    assert not status.allowed
    assert status.current == 100


@pytest.mark.asyncio
async def test_quota_resets_after_reset_date(session, make_team):
    team = await make_team(usage_quota=100, current_usage=100, usage_reset_date=NOW - timedelta(seconds=1))

    status = await QuotaService(session).check_and_consume(team.id, now=NOW)

    assert status.allowed
    assert status.current == 0
    await session.refresh(team)
    assert team.current_usage == 1
    assert team.usage_reset_date > NOW


@pytest.mark.asyncio
async def test_quota_consumes_one_unit(session, make_team):
    team = await make_team(usage_quota=2)
    quota = QuotaService(session)

    assert (await quota.check_and_consume(team.id, now=NOW)).allowed
    assert (await quota.check_and_consume(team.id, now=NOW)).allowed
    assert not (await quota.check_and_consume(team.id, now=NOW)).allowed

    await session.refresh(team)
    assert team.current_usage == 2


@pytest.mark.asyncio
async def test_archived_link_denied(session, make_link):
    link = await make_link(is_archived=True)
    decision = await AccessController(session).authorize(link, "203.0.113.9", now=NOW)
    assert decision.reason is DenialReason.ARCHIVED


@pytest.mark.asyncio
async def test_expired_link_denied(session, make_link):
    link = await make_link(expires_at=NOW - timedelta(minutes=1))
    decision = await AccessController(session).authorize(link, "203.0.113.9", now=NOW)
    assert decision.reason is DenialReason.EXPIRED


@pytest.mark.asyncio
async def test_waived_expiry_keeps_other_checks(session, make_link):
    link = await make_link(password_hash=hash_password("hunter2"), expires_at=NOW - timedelta(minutes=1))
    controller = AccessController(session)

    missing = await controller.authorize(link, "203.0.113.9", now=NOW, allow_expired=True)
    assert missing.reason is DenialReason.PASSWORD_REQUIRED

    right = await controller.authorize(link, "203.0.113.9", password="hunter2", now=NOW, allow_expired=True)
    assert right.allowed


@pytest.mark.asyncio
async def test_password_checks(session, make_link):
    link = await make_link(password_hash=hash_password("hunter2"))
    controller = AccessController(session)

    missing = await controller.authorize(link, "203.0.113.9", now=NOW)
    assert missing.reason is DenialReason.PASSWORD_REQUIRED

    wrong = await controller.authorize(link, "203.0.113.9", password="nope", now=NOW)
    assert wrong.reason is DenialReason.INVALID_PASSWORD

    right = await controller.authorize(link, "203.0.113.9", password="hunter2", now=NOW)
    assert right.allowed


@pytest.mark.asyncio
async def test_password_attempts_are_rate_limited(session, make_link):
    link = await make_link(password_hash=hash_password("hunter2"))
    controller = AccessController(session)

    for _ in range(5):
        await controller.authorize(link, "203.0.113.9", password="nope", now=NOW)

    # Even the right password is refused once attempts are exhausted
    decision = await controller.authorize(link, "203.0.113.9", password="hunter2", now=NOW)
    assert decision.reason is DenialReason.RATE_LIMITED

    other_ip = await controller.authorize(link, "198.51.100.1", password="hunter2", now=NOW)
    assert other_ip.allowed


@pytest.mark.asyncio
async def test_team_quota_denies_click(session, make_link, make_team):
    team = await make_team(usage_quota=1, usage_reset_date=NOW + timedelta(days=1))
    link = await make_link(team_id=team.id)
    controller = AccessController(session)

    assert (await controller.authorize(link, "203.0.113.9", now=NOW)).allowed
    decision = await controller.authorize(link, "203.0.113.9", now=NOW)
    assert decision.reason is DenialReason.QUOTA_EXCEEDED


@pytest.mark.asyncio
async def test_whitelist_restricts_ips(session, make_link):
    link = await make_link(owner_id=42)
    session.add(IPWhitelistEntry(ip_address="192.168.1.0/24", user_id=42))
    await session.commit()
    controller = AccessController(session)

    assert (await controller.authorize(link, "192.168.1.42", now=NOW)).allowed
    decision = await controller.authorize(link, "192.168.2.1", now=NOW)
    assert decision.reason is DenialReason.IP_NOT_ALLOWED


@pytest.mark.asyncio
async def test_inactive_whitelist_entries_are_ignored(session, make_link):
    link = await make_link(owner_id=42)
    session.add(IPWhitelistEntry(ip_address="192.168.1.0/24", user_id=42, is_active=False))
    await session.commit()

    assert (await AccessController(session).authorize(link, "8.8.8.8", now=NOW)).allowed


@pytest.mark.asyncio
async def test_team_whitelist_applies_to_team_links(session, make_link, make_team):
    team = await make_team()
    link = await make_link(owner_id=1, team_id=team.id)
    session.add(IPWhitelistEntry(ip_address="10.1.2.3", team_id=team.id))
    await session.commit()
    controller = AccessController(session)

    assert (await controller.authorize(link, "10.1.2.3", now=NOW)).allowed
    assert not (await controller.authorize(link, "10.1.2.4", now=NOW)).allowed
