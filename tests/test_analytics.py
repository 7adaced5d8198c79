"""Tests for per-link click analytics."""

from datetime import datetime, timedelta

import pytest

from zhort.core.exceptions import ShortCodeNotFoundError
from zhort.db.models import ClickEvent
from zhort.services.analytics_service import LinkAnalyticsService, growth_rate, referrer_domain


NOW = datetime(2025, 11, 7, 12, 0, 0)


def test_referrer_domain():
    assert referrer_domain(None) == "direct"
    assert referrer_domain("") == "direct"
    assert referrer_domain("https://www.google.com/search?q=x") == "google.com"
    assert referrer_domain("https://t.co/abc") == "t.co"
    assert referrer_domain("not a url") == "unknown"


def test_growth_rate():
    assert growth_rate(0, 0) == 0.0
    assert growth_rate(5, 0) == 100.0
    assert growth_rate(15, 10) == 50.0
    assert growth_rate(1, 3) == -66.67


@pytest.mark.asyncio
async def test_unknown_link(session):
    with pytest.raises(ShortCodeNotFoundError):
        await LinkAnalyticsService(session).get_analytics(404, now=NOW)


@pytest.mark.asyncio
async def test_empty_link(session, make_link):
    link = await make_link(created_at=NOW - timedelta(days=2))
    analytics = await LinkAnalyticsService(session).get_analytics(link.id, now=NOW)

    assert analytics.total_clicks == 0
    assert analytics.peak_hour is None
    assert analytics.growth_rate_7d == 0.0
    assert analytics.recent_clicks == []


@pytest.mark.asyncio
async def test_breakdowns(session, make_link):
    link = await make_link(created_at=NOW - timedelta(days=9, hours=1))
    clicks = [
        # Friday 10:xx, this week
        ClickEvent(link_id=link.id, ip_address="1.1.1.1", device_type="mobile", browser="Safari", os="iOS",
                   country="US", city="Boston", referer="https://www.google.com/", clicked_at=NOW - timedelta(hours=2)),
        ClickEvent(link_id=link.id, ip_address="1.1.1.1", device_type="mobile", browser="Safari", os="iOS",
                   country="US", city="Boston", referer=None, clicked_at=NOW - timedelta(hours=1, minutes=30)),
        ClickEvent(link_id=link.id, ip_address="2.2.2.2", device_type="desktop", browser="Chrome", os="Windows",
                   country=None, city=None, referer="https://t.co/x", clicked_at=NOW - timedelta(days=1, hours=3)),
        # Previous week
        ClickEvent(link_id=link.id, ip_address="3.3.3.3", device_type="desktop", browser="Firefox", os="Linux",
                   country="DE", city="Berlin", referer=None, clicked_at=NOW - timedelta(days=9)),
    ]
    session.add_all(clicks)
    await session.commit()

    analytics = await LinkAnalyticsService(session).get_analytics(link.id, now=NOW)

    assert analytics.total_clicks == 4
    assert analytics.unique_ips == 3
    assert analytics.device_breakdown == {"mobile": 2, "desktop": 2}
    assert analytics.country_breakdown == {"US": 2, "unknown": 1, "DE": 1}
    assert analytics.city_breakdown == {"Boston": 2, "Berlin": 1}
    assert analytics.referrer_breakdown == {"direct": 2, "google.com": 1, "t.co": 1}
    assert analytics.hourly_breakdown[10] == 2
    assert analytics.peak_hour == 10
    assert analytics.peak_hour_clicks == 2
    assert analytics.weekday_breakdown["Friday"] == 2
    assert analytics.monthly_breakdown == {"2025-10": 1, "2025-11": 3}
    assert analytics.clicks_per_day["2025-11-07"] == 2
    # 3 clicks in the last 7 days against 1 in the 7 before
    assert analytics.growth_rate_7d == 200.0
    # Link is 10 calendar days old
    assert analytics.avg_clicks_per_day == 0.4
    assert [c.clicked_at for c in analytics.recent_clicks][0] == NOW - timedelta(hours=1, minutes=30)
