"""
Rate Limiter Service

Sliding-window request counter keyed by (identifier, action), persisted in
the rate_limits table so every application instance shares the same view.

Algorithm per check:
1. Delete window records older than now - window for this key
2. Sum the counts of the surviving records
3. If the sum reached the action's maximum, deny; reset is the oldest
   surviving record's start plus the window
4. Otherwise insert a record of count 1 and allow

Failure semantics:
- Unknown action names raise UnknownRateLimitActionError (programming error)
- Store failures fail open: the request is allowed and the result is marked degraded
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from zhort.core.clock import to_iso_z
from zhort.core.exceptions import UnknownRateLimitActionError
from zhort.core.outcome import fail_open
from zhort.core.rate_limit import RATE_LIMIT_ACTIONS, RateLimitConfig
from zhort.db.models import RateWindowRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    degraded: bool = False

    def headers(self) -> Dict[str, str]:
        """Response headers describing the caller's budget."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": to_iso_z(self.reset_at),
        }


class RateLimiter:
    """
    Database-backed sliding window rate limiter.

    Counts are best-effort: two concurrent checks for the same key may both
    read the same sum before either inserts, allowing a small overshoot.
    """

    def __init__(self, session: AsyncSession, actions: Optional[Dict[str, RateLimitConfig]] = None):
        """
        Initialize the rate limiter.

        Args:
            session: Database session for window records
            actions: Action table (defaults to RATE_LIMIT_ACTIONS)
        """
        self.session = session
        self.actions = actions if actions is not None else RATE_LIMIT_ACTIONS

    async def check(
        self,
        identifier: str,
        action: str,
        now: Optional[datetime] = None
    ) -> RateLimitResult:
        """
        Check and record one request for (identifier, action).

        Args:
            identifier: IP address, owner id, or "<link id>:<ip>" for password attempts
            action: Key into the action table
            now: Evaluation instant (defaults to current UTC time)

        Returns:
            RateLimitResult; allowed with degraded=True when the store is unavailable

        Raises:
            UnknownRateLimitActionError: If action is not configured
        """
        config = self.actions.get(action)
        if config is None:
            raise UnknownRateLimitActionError(action)

        now = now or datetime.utcnow()
        window = timedelta(milliseconds=config.window_ms)

        checked = await fail_open(
            "rate_limiter",
            lambda: self._check_window(identifier, action, config, now),
            default=RateLimitResult(
                allowed=True,
                limit=config.max_requests,
                remaining=config.max_requests,
                reset_at=now + window,
                degraded=True,
            ),
        )
        return checked.value

    async def _check_window(
        self,
        identifier: str,
        action: str,
        config: RateLimitConfig,
        now: datetime
    ) -> RateLimitResult:
        window = timedelta(milliseconds=config.window_ms)
        window_start = now - window

        try:
            await self.session.execute(
                delete(RateWindowRecord).where(
                    RateWindowRecord.identifier == identifier,
                    RateWindowRecord.action == action,
                    RateWindowRecord.window_start < window_start,
                )
            )

            result = await self.session.execute(
                select(RateWindowRecord.count.label("request_count"), RateWindowRecord.window_start).where(
                    RateWindowRecord.identifier == identifier,
                    RateWindowRecord.action == action,
                    RateWindowRecord.window_start >= window_start,
                )
            )
            records = result.all()
            current_count = sum(row.request_count for row in records)

            if current_count >= config.max_requests:
                await self.session.commit()
                oldest = min((row.window_start for row in records), default=now)
                logger.info(f"Rate limit exceeded: action={action} identifier={identifier}")
                return RateLimitResult(
                    allowed=False,
                    limit=config.max_requests,
                    remaining=0,
                    reset_at=oldest + window,
                )

            self.session.add(RateWindowRecord(
                identifier=identifier,
                action=action,
                count=1,
                window_start=now,
            ))
            await self.session.commit()

            return RateLimitResult(
                allowed=True,
                limit=config.max_requests,
                remaining=config.max_requests - current_count - 1,
                reset_at=now + window,
            )
        except Exception:
            await self.session.rollback()
            raise
