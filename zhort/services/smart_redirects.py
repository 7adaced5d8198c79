"""
Smart Redirect Resolver

Priority-ordered rule matching per click. Rules are evaluated from the
lowest priority value upwards (ties in insertion order) and the first
match wins.

Rule types and conditions:
- device:  mobile | tablet | desktop (derived device class),
           ios | android (token contained in the derived OS, case-insensitive)
- geo:     ISO country code, case-insensitive
- time:    weekday (Mon-Fri) | weekend (Sat/Sun) | HH-HH business hours
           (start inclusive, end exclusive, server local time)
- ab_test: A | B, each evaluation draws a fresh 50/50 coin

Conditions are parsed into typed objects when a rule is written, so an
invalid condition is rejected at configuration time rather than silently
never matching.
"""

import logging
import random
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Sequence, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from zhort.core.exceptions import InvalidRuleError, InvalidURLError
from zhort.core.validators import is_valid_url
from zhort.db.models import SmartRedirectRule
from zhort.services.config_cache import LinkConfigCache
from zhort.services.link_config import RuleConfig, load_rules
from zhort.services.request_context import DeviceInfo, parse_user_agent

logger = logging.getLogger(__name__)


class RuleType(str, Enum):
    DEVICE = "device"
    GEO = "geo"
    TIME = "time"
    AB_TEST = "ab_test"


@dataclass(frozen=True)
class VisitorFacts:
    """Inputs every condition may inspect."""
    device: DeviceInfo
    country: Optional[str]
    local_now: datetime
    coin: Callable[[], float]


@dataclass(frozen=True)
class DeviceCondition:
    device: str

    CLASSES = ("mobile", "tablet", "desktop")
    OS_TOKENS = ("ios", "android")

    def matches(self, facts: VisitorFacts) -> bool:
        if self.device in self.CLASSES:
            return facts.device.device_type == self.device
        return self.device in facts.device.os.lower()


@dataclass(frozen=True)
class GeoCondition:
    country: str

    def matches(self, facts: VisitorFacts) -> bool:
        return bool(facts.country) and facts.country.upper() == self.country


@dataclass(frozen=True)
class TimeCondition:
    kind: str  # weekday | weekend | hours
    start_hour: int = 0
    end_hour: int = 24

    def matches(self, facts: VisitorFacts) -> bool:
        day = facts.local_now.weekday()  # Monday == 0
        if self.kind == "weekday":
            return day <= 4
        if self.kind == "weekend":
            return day >= 5
        return self.start_hour <= facts.local_now.hour < self.end_hour


@dataclass(frozen=True)
class ABCondition:
    bucket: str  # A | B

    def matches(self, facts: VisitorFacts) -> bool:
        if self.bucket == "A":
            return facts.coin() < 0.5
        return facts.coin() >= 0.5


RuleCondition = Union[DeviceCondition, GeoCondition, TimeCondition, ABCondition]

_HOURS = re.compile(r"^(\d{1,2})-(\d{1,2})$")


def parse_condition(rule_type: str, condition: str) -> RuleCondition:
    """
    Parse and validate a rule condition.

    Raises:
        InvalidRuleError: For unknown rule types or malformed conditions
    """
    try:
        kind = RuleType(rule_type)
    except ValueError:
        raise InvalidRuleError(f"Unknown rule type: {rule_type!r}")

    value = (condition or "").strip()

    if kind is RuleType.DEVICE:
        device = value.lower()
        if device not in DeviceCondition.CLASSES + DeviceCondition.OS_TOKENS:
            raise InvalidRuleError(f"Invalid device condition: {condition!r}")
        return DeviceCondition(device=device)

    if kind is RuleType.GEO:
        if not re.fullmatch(r"[A-Za-z]{2}", value):
            raise InvalidRuleError(f"Geo condition must be an ISO country code: {condition!r}")
        return GeoCondition(country=value.upper())

    if kind is RuleType.TIME:
        if value in ("weekday", "weekend"):
            return TimeCondition(kind=value)
        match = _HOURS.match(value)
        if not match:
            raise InvalidRuleError(f"Invalid time condition: {condition!r}")
        start, end = int(match.group(1)), int(match.group(2))
        if not (0 <= start <= 23 and 0 < end <= 24 and start < end):
            raise InvalidRuleError(f"Invalid business hours: {condition!r}")
        return TimeCondition(kind="hours", start_hour=start, end_hour=end)

    if value not in ("A", "B"):
        raise InvalidRuleError(f"A/B condition must be 'A' or 'B': {condition!r}")
    return ABCondition(bucket=value)


def match_rules(rules: Sequence[RuleConfig], facts: VisitorFacts) -> Optional[RuleConfig]:
    """
    Return the first matching rule in priority order.

    Rules whose stored condition no longer parses are skipped.
    """
    for rule in rules:
        try:
            condition = parse_condition(rule.rule_type, rule.condition)
        except InvalidRuleError:
            continue
        if condition.matches(facts):
            return rule
    return None


class SmartRedirectResolver:
    def __init__(self, session: AsyncSession, rng: Optional[random.Random] = None):
        self.session = session
        self.rng = rng or random.Random()

    def facts(
        self,
        user_agent: Optional[str],
        country: Optional[str],
        local_now: Optional[datetime] = None,
        device: Optional[DeviceInfo] = None
    ) -> VisitorFacts:
        return VisitorFacts(
            device=device or parse_user_agent(user_agent),
            country=country,
            local_now=local_now or datetime.now(),
            coin=self.rng.random,
        )

    async def resolve(
        self,
        link_id: int,
        user_agent: Optional[str],
        country: Optional[str],
        local_now: Optional[datetime] = None
    ) -> Optional[str]:
        """Target URL of the first matching rule, or None."""
        rules = await load_rules(self.session, link_id)
        if not rules:
            return None
        matched = match_rules(rules, self.facts(user_agent, country, local_now))
        return matched.target_url if matched else None


class SmartRedirectRuleService:
    """Owner-facing CRUD for smart-redirect rules; every write invalidates the cached config."""

    def __init__(self, session: AsyncSession, cache: Optional[LinkConfigCache] = None):
        self.session = session
        self.cache = cache or LinkConfigCache()

    async def list_rules(self, link_id: int) -> List[SmartRedirectRule]:
        result = await self.session.execute(
            select(SmartRedirectRule)
            .where(SmartRedirectRule.link_id == link_id)
            .order_by(SmartRedirectRule.priority, SmartRedirectRule.id)
        )
        return list(result.scalars().all())

    async def create_rule(
        self,
        link_id: int,
        rule_type: str,
        condition: str,
        target_url: str,
        priority: int = 0
    ) -> SmartRedirectRule:
        """
        Validate and store a rule.

        Raises:
            InvalidRuleError: If the condition does not parse for the rule type
            InvalidURLError: If the target URL is not a valid http(s) URL
        """
        parsed = parse_condition(rule_type, condition)
        if not is_valid_url(target_url):
            raise InvalidURLError(target_url, reason="Invalid rule target URL")

        rule = SmartRedirectRule(
            link_id=link_id,
            rule_type=rule_type,
            condition=_canonical_condition(parsed),
            target_url=target_url,
            priority=priority,
        )
        self.session.add(rule)
        await self.session.commit()
        await self.session.refresh(rule)
        await self.cache.invalidate(link_id)

        logger.info(f"Created {rule_type} rule {rule.id} for link {link_id}")
        return rule

    async def delete_rule(self, link_id: int, rule_id: int) -> bool:
        rule = await self.session.get(SmartRedirectRule, rule_id)
        if rule is None or rule.link_id != link_id:
            return False
        await self.session.delete(rule)
        await self.session.commit()
        await self.cache.invalidate(link_id)
        return True

    async def reorder(self, link_id: int, rule_ids: Sequence[int]) -> List[SmartRedirectRule]:
        """
        Assign priorities 0..n-1 following the given id order.

        Raises:
            InvalidRuleError: If the ids are not exactly the link's rules
        """
        rules = {rule.id: rule for rule in await self.list_rules(link_id)}
        if sorted(rule_ids) != sorted(rules):
            raise InvalidRuleError("Reorder must list every rule of the link exactly once")

        for priority, rule_id in enumerate(rule_ids):
            rules[rule_id].priority = priority
        await self.session.commit()
        await self.cache.invalidate(link_id)
        return [rules[rule_id] for rule_id in rule_ids]


def _canonical_condition(condition: RuleCondition) -> str:
    if isinstance(condition, DeviceCondition):
        return condition.device
    if isinstance(condition, GeoCondition):
        return condition.country
    if isinstance(condition, TimeCondition):
        if condition.kind == "hours":
            return f"{condition.start_hour:02d}-{condition.end_hour:02d}"
        return condition.kind
    return condition.bucket
