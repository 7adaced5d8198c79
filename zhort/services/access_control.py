"""
Access Control Service

Admission checks evaluated on every click, in order:
1. Link is neither archived nor expired
2. Password-protected links require a correct password (attempts rate limited)
3. Links owned by a quota-bound team consume one unit of the team quota
4. When the team or owner has an IP whitelist, the caller's IP must match it

Quota accounting uses conditional UPDATE ... RETURNING statements so two
concurrent clicks can never both take the last unit.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from ipaddress import AddressValueError, IPv4Address
from typing import List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from zhort.core.exceptions import AccessDeniedError, DenialReason
from zhort.core.security import verify_password
from zhort.core.setting import settings
from zhort.db.models import IPWhitelistEntry, ShortLink, Team, TeamMember
from zhort.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


def matches_ip_range(ip: str, ip_range: str) -> bool:
    """
    Check if IP matches an exact address or an IPv4 CIDR range.

    Example:
        matches_ip_range("192.168.1.42", "192.168.1.0/24") -> True
        matches_ip_range("192.168.2.1", "192.168.1.0/24") -> False
    """
    if ip == ip_range:
        return True

    if '/' not in ip_range:
        return False

    network, _, prefix_text = ip_range.partition('/')
    try:
        prefix = int(prefix_text)
        ip_num = int(IPv4Address(ip))
        network_num = int(IPv4Address(network))
    except (ValueError, AddressValueError):
        return False

    if not 0 <= prefix <= 32:
        return False

    mask = (0xFFFFFFFF << (32 - prefix)) & 0xFFFFFFFF
    return (ip_num & mask) == (network_num & mask)


@dataclass(frozen=True)
class QuotaStatus:
    allowed: bool
    current: int
    quota: Optional[int]
    reset_date: Optional[datetime]


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: Optional[DenialReason] = None


ALLOWED = AccessDecision(allowed=True)

# Team roles by capability
TEAM_LINK_ROLES = frozenset({"owner", "admin", "member"})
TEAM_ADMIN_ROLES = frozenset({"owner", "admin"})
TEAM_ROLES = frozenset({"owner", "admin", "member", "viewer"})


async def get_team_role(session: AsyncSession, team_id: int, user_id: Optional[int]) -> Optional[str]:
    if user_id is None:
        return None
    result = await session.execute(
        select(TeamMember.role).where(TeamMember.team_id == team_id, TeamMember.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def require_team_role(
    session: AsyncSession,
    team_id: int,
    user_id: Optional[int],
    roles: frozenset = TEAM_LINK_ROLES
) -> str:
    """
    Raise AccessDeniedError(NOT_TEAM_MEMBER) unless user_id holds one of `roles` in the team.

    Owner ids arrive from the upstream auth layer; team ids arrive from the
    request body, so every team-scoped write goes through here.
    """
    role = await get_team_role(session, team_id, user_id)
    if role not in roles:
        logger.info(f"User {user_id} lacks {sorted(roles)} in team {team_id} (role={role})")
        raise AccessDeniedError(DenialReason.NOT_TEAM_MEMBER, f"Not allowed to act for team {team_id}")
    return role


class QuotaService:
    """Team usage quota with a lazily rolled reset date."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def increment_usage(self, team_id: int, amount: int = 1) -> Optional[int]:
        """Atomically add `amount` to a team's usage and return the new value."""
        result = await self.session.execute(
            update(Team)
            .where(Team.id == team_id)
            .values(current_usage=Team.current_usage + amount)
            .returning(Team.current_usage)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    async def check_and_consume(self, team_id: int, now: Optional[datetime] = None) -> QuotaStatus:
        """
        Check the team quota and, when allowed, count this request against it.

        If the reset date has passed, usage is reset to 0 (and the reset date
        moved one period ahead) in the same transaction before consuming.

        Returns:
            QuotaStatus where `current` is the usage before this request
        """
        now = now or datetime.utcnow()

        try:
            result = await self.session.execute(
                select(Team.usage_quota, Team.usage_reset_date).where(Team.id == team_id)
            )
            team = result.one_or_none()
            if team is None:
                return QuotaStatus(allowed=False, current=0, quota=None, reset_date=None)

            quota, reset_date = team

            if quota is None:
                new_usage = await self.increment_usage(team_id)
                await self.session.commit()
                return QuotaStatus(allowed=True, current=(new_usage or 1) - 1, quota=None, reset_date=reset_date)

            if reset_date is not None and reset_date < now:
                next_reset = now + timedelta(days=settings.QUOTA_RESET_DAYS)
                reset = await self.session.execute(
                    update(Team)
                    .where(Team.id == team_id, Team.usage_reset_date < now)
                    .values(current_usage=0, usage_reset_date=next_reset)
                    .returning(Team.id)
                    .execution_options(synchronize_session=False)
                )
                if reset.scalar_one_or_none() is not None:
                    logger.info(f"Quota period rolled over for team {team_id}")
                reset_date = next_reset

            consumed = await self.session.execute(
                update(Team)
                .where(Team.id == team_id, Team.current_usage < Team.usage_quota)
                .values(current_usage=Team.current_usage + 1)
                .returning(Team.current_usage)
                .execution_options(synchronize_session=False)
            )
            new_usage = consumed.scalar_one_or_none()
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        if new_usage is None:
            logger.info(f"Quota exceeded for team {team_id} (quota={quota})")
            return QuotaStatus(allowed=False, current=quota, quota=quota, reset_date=reset_date)

        return QuotaStatus(allowed=True, current=new_usage - 1, quota=quota, reset_date=reset_date)


class AccessController:
    """Runs the admission checks for one click on one link."""

    def __init__(self, session: AsyncSession, rate_limiter: Optional[RateLimiter] = None):
        self.session = session
        self.quota_service = QuotaService(session)
        self.rate_limiter = rate_limiter or RateLimiter(session)

    async def get_whitelist(self, team_id: Optional[int], user_id: Optional[int]) -> List[IPWhitelistEntry]:
        """Active whitelist entries scoped to the team or the user."""
        scopes = []
        if team_id is not None:
            scopes.append(IPWhitelistEntry.team_id == team_id)
        if user_id is not None:
            scopes.append(IPWhitelistEntry.user_id == user_id)
        if not scopes:
            return []

        result = await self.session.execute(
            select(IPWhitelistEntry).where(
                IPWhitelistEntry.is_active == True,  # noqa: E712
                or_(*scopes),
            )
        )
        return list(result.scalars().all())

    async def is_ip_whitelisted(self, ip: str, team_id: Optional[int], user_id: Optional[int]) -> bool:
        """An empty whitelist allows every IP."""
        entries = await self.get_whitelist(team_id, user_id)
        if not entries:
            return True
        return any(matches_ip_range(ip, entry.ip_address) for entry in entries)

    async def authorize(
        self,
        link: ShortLink,
        ip: str,
        password: Optional[str] = None,
        now: Optional[datetime] = None,
        allow_expired: bool = False
    ) -> AccessDecision:
        """
        Decide whether the caller may resolve `link`.

        Args:
            link: The link being resolved
            ip: Caller IP address
            password: Password supplied by the caller, if any
            now: Evaluation instant (defaults to current UTC time)
            allow_expired: Skip only the expiry check (the link is being served
                through a schedule fallback); every other check still runs

        Returns:
            AccessDecision with the first failing check's reason
        """
        now = now or datetime.utcnow()

        if link.is_archived:
            return AccessDecision(allowed=False, reason=DenialReason.ARCHIVED)

        if not allow_expired and link.expires_at is not None and now > link.expires_at:
            return AccessDecision(allowed=False, reason=DenialReason.EXPIRED)

        if link.password_hash:
            if not password:
                return AccessDecision(allowed=False, reason=DenialReason.PASSWORD_REQUIRED)

            attempt = await self.rate_limiter.check(f"{link.id}:{ip}", "access_protected_link", now=now)
            if not attempt.allowed:
                return AccessDecision(allowed=False, reason=DenialReason.RATE_LIMITED)

            if not await asyncio.to_thread(verify_password, password, link.password_hash):
                return AccessDecision(allowed=False, reason=DenialReason.INVALID_PASSWORD)

        if link.team_id is not None:
            status = await self.quota_service.check_and_consume(link.team_id, now=now)
            if not status.allowed:
                return AccessDecision(allowed=False, reason=DenialReason.QUOTA_EXCEEDED)

        if not await self.is_ip_whitelisted(ip, link.team_id, link.owner_id):
            logger.info(f"IP {ip} not whitelisted for link {link.id}")
            return AccessDecision(allowed=False, reason=DenialReason.IP_NOT_ALLOWED)

        return ALLOWED
