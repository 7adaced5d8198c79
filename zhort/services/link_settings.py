"""
Link Settings Service

Owner-facing configuration of schedules, masking and IP whitelists.

Every write that changes what the resolver reads for a link deletes the
link's cached configuration, so a change is visible on the next click.
"""

import ipaddress
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from zhort.core.clock import as_naive_utc
from zhort.core.exceptions import InvalidRuleError, InvalidURLError
from zhort.core.validators import is_valid_url
from zhort.db.models import IPWhitelistEntry, LinkMasking, LinkSchedule, ShortLink
from zhort.services.config_cache import LinkConfigCache

logger = logging.getLogger(__name__)

MAX_SPLASH_DURATION_MS = 30000
SCHEDULE_FIELDS = ("active_from", "active_until", "timezone", "fallback_url", "is_active")


def _validate_window(active_from: Optional[datetime], active_until: Optional[datetime]) -> None:
    if active_from and active_until and as_naive_utc(active_from) >= as_naive_utc(active_until):
        raise InvalidRuleError("active_from must be before active_until")


def _validate_ip_entry(ip_address: str) -> None:
    try:
        if "/" in ip_address:
            ipaddress.IPv4Network(ip_address, strict=False)
        else:
            ipaddress.ip_address(ip_address)
    except ValueError:
        raise InvalidRuleError(f"Invalid IP address or IPv4 CIDR: {ip_address!r}")


class LinkSettingsService:
    def __init__(self, session: AsyncSession, cache: Optional[LinkConfigCache] = None):
        self.session = session
        self.cache = cache or LinkConfigCache()

    # Schedules

    async def list_schedules(self, link_id: int) -> List[LinkSchedule]:
        result = await self.session.execute(
            select(LinkSchedule).where(LinkSchedule.link_id == link_id).order_by(LinkSchedule.id)
        )
        return list(result.scalars().all())

    async def create_schedule(
        self,
        link_id: int,
        active_from: Optional[datetime] = None,
        active_until: Optional[datetime] = None,
        timezone: str = "UTC",
        fallback_url: Optional[str] = None,
        is_active: bool = True
    ) -> LinkSchedule:
        """
        Raises:
            InvalidRuleError: If the window is empty
            InvalidURLError: If the fallback URL is invalid
        """
        _validate_window(active_from, active_until)
        if fallback_url and not is_valid_url(fallback_url):
            raise InvalidURLError(fallback_url, reason="Invalid fallback URL")

        schedule = LinkSchedule(
            link_id=link_id,
            active_from=as_naive_utc(active_from) if active_from else None,
            active_until=as_naive_utc(active_until) if active_until else None,
            timezone=timezone or "UTC",
            fallback_url=fallback_url,
            is_active=is_active,
        )
        self.session.add(schedule)
        await self.session.commit()
        await self.session.refresh(schedule)
        await self.cache.invalidate(link_id)
        return schedule

    async def update_schedule(self, link_id: int, schedule_id: int, changes: Dict[str, Any]) -> Optional[LinkSchedule]:
        """Apply a partial update; returns None when the schedule is not the link's."""
        schedule = await self.session.get(LinkSchedule, schedule_id)
        if schedule is None or schedule.link_id != link_id:
            return None

        for name, value in changes.items():
            if name not in SCHEDULE_FIELDS:
                continue
            if name in ("active_from", "active_until") and value is not None:
                value = as_naive_utc(value)
            setattr(schedule, name, value)

        _validate_window(schedule.active_from, schedule.active_until)
        if schedule.fallback_url and not is_valid_url(schedule.fallback_url):
            raise InvalidURLError(schedule.fallback_url, reason="Invalid fallback URL")

        await self.session.commit()
        await self.session.refresh(schedule)
        await self.cache.invalidate(link_id)
        return schedule

    async def delete_schedule(self, link_id: int, schedule_id: int) -> bool:
        schedule = await self.session.get(LinkSchedule, schedule_id)
        if schedule is None or schedule.link_id != link_id:
            return False
        await self.session.delete(schedule)
        await self.session.commit()
        await self.cache.invalidate(link_id)
        return True

    # Masking

    async def get_masking(self, link_id: int) -> Optional[LinkMasking]:
        result = await self.session.execute(select(LinkMasking).where(LinkMasking.link_id == link_id))
        return result.scalar_one_or_none()

    async def put_masking(
        self,
        link_id: int,
        enable_frame: bool = False,
        enable_splash: bool = False,
        splash_duration_ms: int = 3000,
        splash_html: Optional[str] = None
    ) -> LinkMasking:
        """Create or replace the link's masking config."""
        if not 0 <= splash_duration_ms <= MAX_SPLASH_DURATION_MS:
            raise InvalidRuleError(f"splash_duration_ms must be between 0 and {MAX_SPLASH_DURATION_MS}")

        masking = await self.get_masking(link_id)
        if masking is None:
            masking = LinkMasking(link_id=link_id)
            self.session.add(masking)

        masking.enable_frame = enable_frame
        masking.enable_splash = enable_splash
        masking.splash_duration_ms = splash_duration_ms
        masking.splash_html = splash_html

        await self.session.commit()
        await self.session.refresh(masking)
        await self.cache.invalidate(link_id)
        return masking

    # IP whitelist

    async def list_whitelist(self, team_id: Optional[int], user_id: Optional[int]) -> List[IPWhitelistEntry]:
        scopes = []
        if team_id is not None:
            scopes.append(IPWhitelistEntry.team_id == team_id)
        if user_id is not None:
            scopes.append(IPWhitelistEntry.user_id == user_id)
        if not scopes:
            return []

        result = await self.session.execute(
            select(IPWhitelistEntry).where(or_(*scopes)).order_by(IPWhitelistEntry.id)
        )
        return list(result.scalars().all())

    async def add_whitelist_entry(
        self,
        ip_address: str,
        team_id: Optional[int] = None,
        user_id: Optional[int] = None,
        description: Optional[str] = None
    ) -> IPWhitelistEntry:
        """
        Raises:
            InvalidRuleError: If the address is malformed or the entry has no scope
        """
        ip_address = (ip_address or "").strip()
        _validate_ip_entry(ip_address)
        if team_id is None and user_id is None:
            raise InvalidRuleError("A whitelist entry needs a team or a user")

        entry = IPWhitelistEntry(
            ip_address=ip_address,
            team_id=team_id,
            user_id=user_id,
            description=description,
            is_active=True,
        )
        self.session.add(entry)
        await self.session.commit()
        await self.session.refresh(entry)
        logger.info(f"Whitelisted {ip_address} for team={team_id} user={user_id}")
        return entry

    async def delete_whitelist_entry(self, entry_id: int, team_id: Optional[int], user_id: Optional[int]) -> bool:
        entry = await self.session.get(IPWhitelistEntry, entry_id)
        if entry is None:
            return False
        in_scope = (team_id is not None and entry.team_id == team_id) or (
            user_id is not None and entry.user_id == user_id
        )
        if not in_scope:
            return False
        await self.session.delete(entry)
        await self.session.commit()
        return True

    # Ownership

    async def get_owned_link(self, link_id: int, owner_id: int) -> Optional[ShortLink]:
        link = await self.session.get(ShortLink, link_id)
        if link is None or link.owner_id != owner_id:
            return None
        return link
