"""Tests for weighted A/B variant selection and winner bookkeeping."""

import random

import pytest
from sqlalchemy import select

from zhort.core.exceptions import InvalidRuleError, InvalidURLError
from zhort.db.models import LinkVariant
from zhort.services.link_config import VariantConfig, load_candidate_variants
from zhort.services.variant_selector import VariantSelector, pick_variant


def variant(id, pct, url=None) -> VariantConfig:
    return VariantConfig(id=id, variant_url=url or f"https://example.com/v{id}", traffic_percentage=pct)


class TestPickVariant:
    def test_no_variants(self):
        assert pick_variant([], 50.0) is None

    def test_zero_total(self):
        assert pick_variant([variant(1, 0), variant(2, 0)], 10.0) is None

    def test_cumulative_boundaries(self):
        candidates = [variant(1, 30), variant(2, 70)]
        assert pick_variant(candidates, 0.0).id == 1
        assert pick_variant(candidates, 30.0).id == 1
        assert pick_variant(candidates, 30.0001).id == 2
        assert pick_variant(candidates, 99.999).id == 2

    def test_percentages_are_normalized(self):
        # 1:3 ratio regardless of the absolute values
        candidates = [variant(1, 10), variant(2, 30)]
        assert pick_variant(candidates, 24.9).id == 1
        assert pick_variant(candidates, 25.1).id == 2

    def test_distribution_follows_weights(self):
        rng = random.Random(1234)
        candidates = [variant(1, 30), variant(2, 70)]
        draws = 10_000

        counts = {1: 0, 2: 0}
        for _ in range(draws):
            counts[pick_variant(candidates, rng.random() * 100).id] += 1

        assert abs(counts[1] / draws - 0.30) < 0.02
        assert abs(counts[2] / draws - 0.70) < 0.02


@pytest.mark.asyncio
async def test_select_counts_the_click(session, make_link):
    link = await make_link()
    selector = VariantSelector(session, rng=random.Random(7))
    created = await selector.create_variant(link.id, "https://example.com/only", 100)

    assert await selector.select(link.id) == "https://example.com/only"
    await session.commit()

    await session.refresh(created)
    assert created.clicks == 1


@pytest.mark.asyncio
async def test_preview_choice_does_not_count(session, make_link):
    link = await make_link()
    selector = VariantSelector(session)
    created = await selector.create_variant(link.id, "https://example.com/only", 100)

    candidates = await load_candidate_variants(session, link.id)
    assert await selector.choose(candidates, count_click=False) == "https://example.com/only"
    await session.commit()

    await session.refresh(created)
    assert created.clicks == 0


@pytest.mark.asyncio
async def test_candidates_exclude_winner(session, make_link):
    link = await make_link()
    selector = VariantSelector(session)
    first = await selector.create_variant(link.id, "https://example.com/a", 50)
    await selector.create_variant(link.id, "https://example.com/b", 20)

    await selector.set_winner(link.id, first.id)
    candidates = await load_candidate_variants(session, link.id)

    assert [c.variant_url for c in candidates] == ["https://example.com/b"]


@pytest.mark.asyncio
async def test_candidates_ordered_by_percentage(session, make_link):
    link = await make_link()
    selector = VariantSelector(session)
    await selector.create_variant(link.id, "https://example.com/big", 80)
    await selector.create_variant(link.id, "https://example.com/small", 20)

    candidates = await load_candidate_variants(session, link.id)
    assert [c.traffic_percentage for c in candidates] == [20, 80]


@pytest.mark.asyncio
async def test_auto_winner_tie_goes_to_oldest(session, make_link):
    link = await make_link()
    selector = VariantSelector(session)
    a = await selector.create_variant(link.id, "https://example.com/a", 50)
    b = await selector.create_variant(link.id, "https://example.com/b", 50)
    c = await selector.create_variant(link.id, "https://example.com/c", 50)

    for v, clicks, conversions in ((a, 10, 2), (b, 5, 1), (c, 10, 1)):
        v.clicks, v.conversions = clicks, conversions
    await session.commit()

    winner = await selector.set_winner(link.id)
    assert winner.id == a.id

    result = await session.execute(select(LinkVariant.id).where(LinkVariant.is_winner == True))  # noqa: E712
    assert result.scalars().all() == [a.id]


@pytest.mark.asyncio
async def test_manual_winner_replaces_previous(session, make_link):
    link = await make_link()
    selector = VariantSelector(session)
    a = await selector.create_variant(link.id, "https://example.com/a", 50)
    b = await selector.create_variant(link.id, "https://example.com/b", 50)

    await selector.set_winner(link.id, a.id)
    await selector.set_winner(link.id, b.id)

    result = await session.execute(select(LinkVariant.id).where(LinkVariant.is_winner == True))  # noqa: E712
    assert result.scalars().all() == [b.id]


@pytest.mark.asyncio
async def test_foreign_variant_cannot_win(session, make_link):
    link = await make_link()
    other = await make_link(short_code="other1")
    selector = VariantSelector(session)
    await selector.create_variant(link.id, "https://example.com/a", 50)
    foreign = await selector.create_variant(other.id, "https://example.com/x", 50)

    with pytest.raises(InvalidRuleError):
        await selector.set_winner(link.id, foreign.id)


@pytest.mark.asyncio
async def test_track_conversion(session, make_link):
    link = await make_link()
    selector = VariantSelector(session)
    v = await selector.create_variant(link.id, "https://example.com/a", 50)

    assert await selector.track_conversion(v.id)
    assert not await selector.track_conversion(9999)

    await session.refresh(v)
    assert v.conversions == 1


@pytest.mark.asyncio
async def test_create_variant_validation(session, make_link):
    link = await make_link()
    selector = VariantSelector(session)

    with pytest.raises(InvalidURLError):
        await selector.create_variant(link.id, "javascript:alert(1)", 50)

    clamped = await selector.create_variant(link.id, "https://example.com/a", 150)
    assert clamped.traffic_percentage == 100
