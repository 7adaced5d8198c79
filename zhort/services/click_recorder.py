"""
Click Recorder

Turns one short-link hit into an immutable ClickEvent row.

Steps:
- Structural User-Agent parsing (device type, browser, OS)
- IP to (country, city) through an external geo lookup
- Single INSERT into link_clicks

The geo lookup fails open: a timeout, HTTP error or malformed answer
stores nulls instead of failing the record. Runs on the side-effect
queue, never on the redirect path.
"""

import ipaddress
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from zhort.core.outcome import fail_open
from zhort.core.setting import settings
from zhort.db.models import ClickEvent
from zhort.services.request_context import parse_user_agent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeoLocation:
    country: Optional[str] = None
    city: Optional[str] = None


UNKNOWN_LOCATION = GeoLocation()


def is_public_ip(ip: Optional[str]) -> bool:
    try:
        return ipaddress.ip_address(ip).is_global
    except (TypeError, ValueError):
        return False


class GeoLocator:
    """ip-api.com style lookup: GET url with `{ip}` placeholder, JSON answer."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        url_template: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        self.client = client
        self.url_template = url_template or settings.GEO_LOOKUP_URL
        self.timeout = timeout or settings.GEO_LOOKUP_TIMEOUT_SECONDS

    async def _fetch(self, ip: str) -> GeoLocation:
        response = await self.client.get(self.url_template.format(ip=ip), timeout=self.timeout)
        response.raise_for_status()
        data = response.json()
        return GeoLocation(
            country=(data.get("countryCode") or data.get("country") or None),
            city=data.get("city") or None,
        )

    async def locate(self, ip: Optional[str]) -> GeoLocation:
        if not is_public_ip(ip):
            return UNKNOWN_LOCATION

        checked = await fail_open("geo_lookup", lambda: self._fetch(ip), default=UNKNOWN_LOCATION)
        return checked.value


class ClickRecorder:
    def __init__(self, session: AsyncSession, geo_locator: Optional[GeoLocator] = None):
        self.session = session
        self.geo_locator = geo_locator

    async def record(
        self,
        link_id: int,
        ip: Optional[str],
        user_agent: Optional[str],
        referer: Optional[str]
    ) -> ClickEvent:
        """
        Persist one click.

        Args:
            link_id: Resolved link
            ip: Visitor IP
            user_agent: Raw User-Agent header
            referer: Raw Referer header

        Returns:
            The inserted ClickEvent
        """
        device = parse_user_agent(user_agent)
        location = await self.geo_locator.locate(ip) if self.geo_locator else UNKNOWN_LOCATION

        click = ClickEvent(
            link_id=link_id,
            ip_address=ip[:45] if ip else None,
            user_agent=user_agent[:500] if user_agent else None,
            referer=referer or None,
            device_type=device.device_type,
            browser=device.browser,
            os=device.os,
            country=location.country[:100] if location.country else None,
            city=location.city[:100] if location.city else None,
        )
        self.session.add(click)
        await self.session.commit()
        await self.session.refresh(click)
        return click
