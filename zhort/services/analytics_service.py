"""
Link Analytics Service

Read-side aggregation over ClickEvent rows. Not part of the write path.

Design Decisions:
- Totals (clicks, unique IPs) are computed in SQL
- Breakdowns are folded in Python over one projection query so the same
  code works on SQLite and PostgreSQL without dialect date functions
- All buckets use UTC timestamps as stored
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from zhort.core.exceptions import ShortCodeNotFoundError
from zhort.db.models import ClickEvent, ShortLink

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
DIRECT = "direct"
UNKNOWN = "unknown"


def referrer_domain(referer: Optional[str]) -> str:
    if not referer:
        return DIRECT
    try:
        host = urlparse(referer).hostname
    except ValueError:
        return UNKNOWN
    if not host:
        return UNKNOWN
    return host[4:] if host.startswith("www.") else host


def growth_rate(recent: int, previous: int) -> float:
    """Percent change of the last 7 days over the 7 days before."""
    if previous == 0:
        return 100.0 if recent > 0 else 0.0
    return round((recent - previous) / previous * 100, 2)


def _peak(counter: Counter) -> Tuple[Optional[object], int]:
    if not counter:
        return None, 0
    # most_common keeps first-inserted order among equal counts
    return counter.most_common(1)[0]


@dataclass
class LinkAnalytics:
    total_clicks: int = 0
    unique_ips: int = 0
    device_breakdown: Dict[str, int] = field(default_factory=dict)
    country_breakdown: Dict[str, int] = field(default_factory=dict)
    browser_breakdown: Dict[str, int] = field(default_factory=dict)
    os_breakdown: Dict[str, int] = field(default_factory=dict)
    referrer_breakdown: Dict[str, int] = field(default_factory=dict)
    city_breakdown: Dict[str, int] = field(default_factory=dict)
    hourly_breakdown: Dict[int, int] = field(default_factory=dict)
    weekday_breakdown: Dict[str, int] = field(default_factory=dict)
    monthly_breakdown: Dict[str, int] = field(default_factory=dict)
    avg_clicks_per_day: float = 0.0
    peak_hour: Optional[int] = None
    peak_hour_clicks: int = 0
    peak_weekday: Optional[str] = None
    peak_weekday_clicks: int = 0
    growth_rate_7d: float = 0.0
    clicks_per_day: Dict[str, int] = field(default_factory=dict)
    recent_clicks: List[ClickEvent] = field(default_factory=list)


class LinkAnalyticsService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_analytics(self, link_id: int, now: Optional[datetime] = None) -> LinkAnalytics:
        """
        Aggregate every click of a link.

        Raises:
            ShortCodeNotFoundError: If the link does not exist
        """
        now = now or datetime.utcnow()

        link = await self.session.get(ShortLink, link_id)
        if link is None:
            raise ShortCodeNotFoundError(str(link_id))

        totals = await self.session.execute(
            select(func.count(ClickEvent.id), func.count(distinct(ClickEvent.ip_address)))
            .where(ClickEvent.link_id == link_id)
        )
        total_clicks, unique_ips = totals.one()

        rows = await self.session.execute(
            select(
                ClickEvent.device_type,
                ClickEvent.country,
                ClickEvent.city,
                ClickEvent.browser,
                ClickEvent.os,
                ClickEvent.referer,
                ClickEvent.clicked_at,
            )
            .where(ClickEvent.link_id == link_id)
            .order_by(ClickEvent.clicked_at)
        )

        devices, countries, cities = Counter(), Counter(), Counter()
        browsers, systems, referrers = Counter(), Counter(), Counter()
        hours, weekdays, months, days = Counter(), Counter(), Counter(), Counter()
        recent_week = previous_week = 0

        week_ago = now - timedelta(days=7)
        two_weeks_ago = now - timedelta(days=14)

        for device_type, country, city, browser, os_name, referer, clicked_at in rows.all():
            devices[device_type or UNKNOWN] += 1
            countries[country or UNKNOWN] += 1
            if city:
                cities[city] += 1
            browsers[browser or UNKNOWN] += 1
            systems[os_name or UNKNOWN] += 1
            referrers[referrer_domain(referer)] += 1
            hours[clicked_at.hour] += 1
            weekdays[WEEKDAYS[clicked_at.weekday()]] += 1
            months[clicked_at.strftime("%Y-%m")] += 1
            days[clicked_at.strftime("%Y-%m-%d")] += 1

            if clicked_at >= week_ago:
                recent_week += 1
            elif clicked_at >= two_weeks_ago:
                previous_week += 1

        age_days = max(1, (now - link.created_at).days + 1)
        peak_hour, peak_hour_clicks = _peak(hours)
        peak_weekday, peak_weekday_clicks = _peak(weekdays)

        recent = await self.session.execute(
            select(ClickEvent)
            .where(ClickEvent.link_id == link_id)
            .order_by(ClickEvent.clicked_at.desc(), ClickEvent.id.desc())
            .limit(10)
        )

        return LinkAnalytics(
            total_clicks=total_clicks,
            unique_ips=unique_ips,
            device_breakdown=dict(devices),
            country_breakdown=dict(countries),
            browser_breakdown=dict(browsers),
            os_breakdown=dict(systems),
            referrer_breakdown=dict(referrers),
            city_breakdown=dict(cities.most_common(20)),
            hourly_breakdown=dict(sorted(hours.items())),
            weekday_breakdown={day: weekdays[day] for day in WEEKDAYS if weekdays[day]},
            monthly_breakdown=dict(sorted(months.items())),
            avg_clicks_per_day=round(total_clicks / age_days, 2),
            peak_hour=peak_hour,
            peak_hour_clicks=peak_hour_clicks,
            peak_weekday=peak_weekday,
            peak_weekday_clicks=peak_weekday_clicks,
            growth_rate_7d=growth_rate(recent_week, previous_week),
            clicks_per_day=dict(sorted(days.items())),
            recent_clicks=list(recent.scalars().all()),
        )
