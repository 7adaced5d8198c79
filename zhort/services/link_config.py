"""
Link Configuration Snapshots

Read-only, serializable views of a link's per-click configuration. The
resolver loads one LinkConfig per hit, from the cache when possible and
from the database otherwise, and evaluates every policy against it.
"""

import logging
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from zhort.db.models import LinkMasking, LinkSchedule, LinkVariant, SmartRedirectRule
from zhort.services.config_cache import LinkConfigCache

logger = logging.getLogger(__name__)


class _Snapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)


class ScheduleConfig(_Snapshot):
    id: int
    active_from: Optional[datetime] = None
    active_until: Optional[datetime] = None
    timezone: str = "UTC"
    fallback_url: Optional[str] = None


class VariantConfig(_Snapshot):
    id: int
    variant_url: str
    traffic_percentage: int


class RuleConfig(_Snapshot):
    id: int
    rule_type: str
    condition: str
    target_url: str
    priority: int


class MaskingConfig(_Snapshot):
    enable_frame: bool = False
    enable_splash: bool = False
    splash_duration_ms: int = 3000
    splash_html: Optional[str] = None


class LinkConfig(_Snapshot):
    schedules: List[ScheduleConfig] = []
    variants: List[VariantConfig] = []
    rules: List[RuleConfig] = []
    masking: MaskingConfig = MaskingConfig()


async def load_active_schedules(session: AsyncSession, link_id: int) -> List[ScheduleConfig]:
    result = await session.execute(
        select(LinkSchedule)
        .where(LinkSchedule.link_id == link_id, LinkSchedule.is_active == True)  # noqa: E712
        .order_by(LinkSchedule.id)
    )
    return [ScheduleConfig.model_validate(row) for row in result.scalars().all()]


async def load_candidate_variants(session: AsyncSession, link_id: int) -> List[VariantConfig]:
    """Non-winner variants ordered by traffic percentage ascending."""
    result = await session.execute(
        select(LinkVariant)
        .where(LinkVariant.link_id == link_id, LinkVariant.is_winner == False)  # noqa: E712
        .order_by(LinkVariant.traffic_percentage, LinkVariant.id)
    )
    return [VariantConfig.model_validate(row) for row in result.scalars().all()]


async def load_rules(session: AsyncSession, link_id: int) -> List[RuleConfig]:
    """Rules ordered by priority, ties broken by insertion order."""
    result = await session.execute(
        select(SmartRedirectRule)
        .where(SmartRedirectRule.link_id == link_id)
        .order_by(SmartRedirectRule.priority, SmartRedirectRule.id)
    )
    return [RuleConfig.model_validate(row) for row in result.scalars().all()]


async def load_masking(session: AsyncSession, link_id: int) -> MaskingConfig:
    result = await session.execute(select(LinkMasking).where(LinkMasking.link_id == link_id))
    masking = result.scalar_one_or_none()
    return MaskingConfig.model_validate(masking) if masking else MaskingConfig()


class LinkConfigLoader:
    """Cache-aside loader for LinkConfig."""

    def __init__(self, session: AsyncSession, cache: Optional[LinkConfigCache] = None):
        self.session = session
        self.cache = cache or LinkConfigCache()

    async def load(self, link_id: int) -> LinkConfig:
        cached = await self.cache.get(link_id)
        if cached is not None:
            try:
                return LinkConfig.model_validate(cached)
            except ValueError as e:
                logger.warning(f"Discarding unreadable cached config for link {link_id}: {e}")

        config = LinkConfig(
            schedules=await load_active_schedules(self.session, link_id),
            variants=await load_candidate_variants(self.session, link_id),
            rules=await load_rules(self.session, link_id),
            masking=await load_masking(self.session, link_id),
        )
        await self.cache.set(link_id, config.model_dump(mode="json"))
        return config

    async def invalidate(self, link_id: int) -> None:
        await self.cache.invalidate(link_id)
