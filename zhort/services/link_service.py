"""
Link Service

This service handles the lifecycle of short links:
- Creating links (validation, creation rate limits, domain safety, password, expiry)
- Generating unique short codes
- Looking links up by code
- Soft archival

Design Decisions:
- Random base62 codes drawn from `secrets`, retried on collision; custom
  aliases go through the same sanitizer as incoming codes
- Creation is rate limited per IP for anonymous callers and per owner for
  authenticated ones
- Domain safety is evaluated once, at creation time, never per click
- Links are soft-archived, never hard-deleted while analytics reference them
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from zhort.core.exceptions import (
    AccessDeniedError,
    BlockedDomainError,
    DatabaseError,
    DenialReason,
    InvalidURLError,
    ShortCodeConflictError,
)
from zhort.core.security import EXPIRATION_PRESETS, calculate_expiration, hash_password
from zhort.core.setting import settings
from zhort.core.validators import is_valid_url, sanitize_short_code
from zhort.db.models import ShortLink
from zhort.services.access_control import TEAM_LINK_ROLES, require_team_role
from zhort.services.domain_safety import DomainSafetyChecker
from zhort.services.rate_limiter import RateLimiter, RateLimitResult

logger = logging.getLogger(__name__)

BASE62_CHARS = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
MAX_CODE_ATTEMPTS = 5


def generate_short_code(length: Optional[int] = None) -> str:
    """Random base62 code of the configured length."""
    length = length or settings.SHORT_CODE_LENGTH
    return "".join(secrets.choice(BASE62_CHARS) for _ in range(length))


@dataclass(frozen=True)
class CreatedLink:
    link: ShortLink
    rate_limit: RateLimitResult


class LinkService:
    """
    Core business logic for short links.

    Separated from API layer for testability and maintainability.
    """

    def __init__(
        self,
        session: AsyncSession,
        rate_limiter: Optional[RateLimiter] = None,
        safety_checker: Optional[DomainSafetyChecker] = None
    ):
        self.session = session
        self.rate_limiter = rate_limiter or RateLimiter(session)
        self.safety_checker = safety_checker or DomainSafetyChecker(session)

    async def get_by_code(self, short_code: str) -> Optional[ShortLink]:
        statement = select(ShortLink).where(ShortLink.short_code == short_code)
        result = await self.session.execute(statement)
        return result.scalar_one_or_none()

    async def _code_taken(self, short_code: str) -> bool:
        result = await self.session.execute(
            select(ShortLink.id).where(ShortLink.short_code == short_code).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def _allocate_code(self, custom_code: Optional[str]) -> str:
        if custom_code:
            code = sanitize_short_code(custom_code)
            if not code:
                raise InvalidURLError(custom_code, reason="Invalid custom short code")
            if await self._code_taken(code):
                raise ShortCodeConflictError(code)
            return code

        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_short_code()
            if not await self._code_taken(code):
                return code
        raise DatabaseError("Could not allocate a unique short code")

    async def create_link(
        self,
        long_url: str,
        client_ip: str,
        owner_id: Optional[int] = None,
        team_id: Optional[int] = None,
        custom_code: Optional[str] = None,
        password: Optional[str] = None,
        expires_in: Optional[str] = None,
        is_public: bool = True
    ) -> CreatedLink:
        """
        Create a short link.

        Args:
            long_url: Destination URL
            client_ip: Caller IP (rate limit key for anonymous callers)
            owner_id: Authenticated owner, if any
            team_id: Quota-bound team the link belongs to, if any
            custom_code: Requested alias
            password: Plain-text password protecting the link
            expires_in: Expiry preset: 1h, 24h, 7d, 30d or never

        Returns:
            CreatedLink with the stored link and the caller's rate limit budget

        Raises:
            InvalidURLError: If the URL, alias or expiry preset is invalid
            AccessDeniedError: If the creation rate limit is exhausted, or the
                owner may not create links for team_id
            BlockedDomainError: If the destination is blocklisted or phishing
            ShortCodeConflictError: If the alias is taken
            DatabaseError: If the insert fails
        """
        if not is_valid_url(long_url):
            raise InvalidURLError(
                long_url,
                reason="Invalid URL format. URL must use http:// or https:// and have a valid domain"
            )
        if expires_in is not None and expires_in not in EXPIRATION_PRESETS:
            raise InvalidURLError(long_url, reason=f"Unknown expiry preset '{expires_in}'")
        if team_id is not None:
            await require_team_role(self.session, team_id, owner_id, TEAM_LINK_ROLES)

        if owner_id is None:
            rate_limit = await self.rate_limiter.check(client_ip, "create_link_anonymous")
        else:
            rate_limit = await self.rate_limiter.check(str(owner_id), "create_link_authenticated")
        if not rate_limit.allowed:
            raise AccessDeniedError(
                DenialReason.RATE_LIMITED,
                detail="Too many links created, try again later",
                headers=rate_limit.headers(),
            )

        if await self.safety_checker.is_blocked(long_url):
            raise BlockedDomainError(long_url)

        short_code = await self._allocate_code(custom_code)
        password_hash = await asyncio.to_thread(hash_password, password) if password else None

        link = ShortLink(
            short_code=short_code,
            long_url=long_url,
            owner_id=owner_id,
            team_id=team_id,
            is_public=is_public,
            password_hash=password_hash,
            expires_at=calculate_expiration(expires_in),
            hits=0,
            is_archived=False,
        )

        try:
            self.session.add(link)
            await self.session.commit()
            await self.session.refresh(link)
        except IntegrityError as e:
            await self.session.rollback()
            if custom_code:
                raise ShortCodeConflictError(short_code)
            raise DatabaseError("Failed to create short link: database constraint violation", original_error=e)

        logger.info(f"Created link {link.id} ({short_code}) owner={owner_id}")
        return CreatedLink(link=link, rate_limit=rate_limit)

    async def increment_hits(self, link_id: int) -> Optional[int]:
        """Atomically count one successful resolution and return the new total."""
        result = await self.session.execute(
            update(ShortLink)
            .where(ShortLink.id == link_id)
            .values(hits=ShortLink.hits + 1)
            .returning(ShortLink.hits)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    async def archive(self, link_id: int, owner_id: int) -> Optional[ShortLink]:
        """Soft-archive a link owned by `owner_id`; None when not found or not owned."""
        link = await self.session.get(ShortLink, link_id)
        if link is None or link.owner_id != owner_id:
            return None
        link.is_archived = True
        await self.session.commit()
        await self.session.refresh(link)
        logger.info(f"Archived link {link_id}")
        return link
