"""
A/B Variant Selector

Weighted-random choice between alternate destinations of a link.

Selection:
- Candidates are the non-winner variants, ordered by traffic percentage ascending
- No candidates, or a zero total percentage, means "use the stored destination"
- One uniform draw in [0, 100) is compared against the cumulative share
  (percentage / total) * 100 of each candidate, so percentages need not
  sum to exactly 100

The chosen variant's click counter is incremented with an atomic UPDATE.
Conversions are tracked separately, outside the redirect path.
"""

import logging
import random
from typing import List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from zhort.core.exceptions import InvalidRuleError, InvalidURLError
from zhort.core.validators import is_valid_url
from zhort.db.models import LinkVariant
from zhort.services.config_cache import LinkConfigCache
from zhort.services.link_config import VariantConfig, load_candidate_variants

logger = logging.getLogger(__name__)


def pick_variant(variants: Sequence[VariantConfig], draw: float) -> Optional[VariantConfig]:
    """
    Pick the first variant whose cumulative share reaches `draw`.

    Args:
        variants: Candidates in traffic-percentage order
        draw: Uniform value in [0, 100)

    Returns:
        The chosen variant, or None when there is nothing to choose from
    """
    total = sum(v.traffic_percentage for v in variants)
    if not variants or total <= 0:
        return None

    cumulative = 0.0
    for variant in variants:
        cumulative += (variant.traffic_percentage / total) * 100
        if draw <= cumulative:
            return variant

    # Float rounding can leave the cumulative sum a hair under 100
    return variants[-1]


def conversion_rate(variant: LinkVariant) -> float:
    return variant.conversions / variant.clicks if variant.clicks > 0 else 0.0


class VariantSelector:
    """
    Variant selection and bookkeeping.

    Click and conversion counters are best-effort analytics; they are
    incremented atomically in SQL so concurrent clicks do not overwrite
    each other.
    """

    def __init__(
        self,
        session: AsyncSession,
        rng: Optional[random.Random] = None,
        cache: Optional[LinkConfigCache] = None
    ):
        self.session = session
        self.rng = rng or random.Random()
        self.cache = cache or LinkConfigCache()

    async def choose(self, variants: Sequence[VariantConfig], count_click: bool = True) -> Optional[str]:
        """Select among preloaded candidates and count the click."""
        variant = pick_variant(variants, self.rng.random() * 100)
        if variant is None:
            return None
        if not count_click:
            return variant.variant_url

        await self.session.execute(
            update(LinkVariant)
            .where(LinkVariant.id == variant.id)
            .values(clicks=LinkVariant.clicks + 1)
            .execution_options(synchronize_session=False)
        )
        return variant.variant_url

    async def select(self, link_id: int) -> Optional[str]:
        """Select a variant URL for the link, or None to use the stored destination."""
        return await self.choose(await load_candidate_variants(self.session, link_id))

    async def track_conversion(self, variant_id: int) -> bool:
        """
        Count one conversion for a variant.

        Returns:
            False if the variant does not exist
        """
        result = await self.session.execute(
            update(LinkVariant)
            .where(LinkVariant.id == variant_id)
            .values(conversions=LinkVariant.conversions + 1)
            .returning(LinkVariant.conversions)
            .execution_options(synchronize_session=False)
        )
        found = result.scalar_one_or_none() is not None
        await self.session.commit()
        return found

    async def list_variants(self, link_id: int) -> List[LinkVariant]:
        result = await self.session.execute(
            select(LinkVariant).where(LinkVariant.link_id == link_id).order_by(LinkVariant.id)
        )
        return list(result.scalars().all())

    async def create_variant(self, link_id: int, variant_url: str, traffic_percentage: int) -> LinkVariant:
        """Create a variant; the percentage is clamped to 0..100."""
        if not is_valid_url(variant_url):
            raise InvalidURLError(variant_url, reason="Invalid variant URL")

        variant = LinkVariant(
            link_id=link_id,
            variant_url=variant_url,
            traffic_percentage=max(0, min(100, traffic_percentage)),
            clicks=0,
            conversions=0,
            is_winner=False,
        )
        self.session.add(variant)
        await self.session.commit()
        await self.session.refresh(variant)
        await self.cache.invalidate(link_id)
        return variant

    async def delete_variant(self, link_id: int, variant_id: int) -> bool:
        variant = await self.session.get(LinkVariant, variant_id)
        if variant is None or variant.link_id != link_id:
            return False
        await self.session.delete(variant)
        await self.session.commit()
        await self.cache.invalidate(link_id)
        return True

    async def set_winner(self, link_id: int, variant_id: Optional[int] = None) -> Optional[LinkVariant]:
        """
        Mark one variant as the winner, clearing the flag on all others first.

        Without variant_id the variant with the highest conversions/clicks
        ratio wins. Variants are scanned in id order and the first-seen
        maximum is kept, so ties go to the oldest variant.

        Returns:
            The winning variant, or None when the link has no variants

        Raises:
            InvalidRuleError: If variant_id does not belong to the link
        """
        variants = await self.list_variants(link_id)
        if not variants:
            return None

        if variant_id is not None:
            winner = next((v for v in variants if v.id == variant_id), None)
            if winner is None:
                raise InvalidRuleError(f"Variant {variant_id} does not belong to link {link_id}")
        else:
            winner = variants[0]
            for variant in variants[1:]:
                if conversion_rate(variant) > conversion_rate(winner):
                    winner = variant

        await self.session.execute(
            update(LinkVariant)
            .where(LinkVariant.link_id == link_id)
            .values(is_winner=False)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            update(LinkVariant)
            .where(LinkVariant.id == winner.id)
            .values(is_winner=True)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        await self.session.refresh(winner)
        await self.cache.invalidate(link_id)

        logger.info(f"Variant {winner.id} set as winner for link {link_id}")
        return winner
