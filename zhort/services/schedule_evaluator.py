"""
Schedule Evaluator

Time-window activation for links.

Rules:
- No active schedule: the link is always active
- A schedule admits `now` when now >= active_from (if set) and
  now <= active_until (if set); both bounds are optional and independent
- With several active schedules the link is active if any of them admits now
- When inactive, the first schedule carrying a fallback URL provides it

Comparisons use absolute UTC instants. The schedule's timezone is only for
display, which avoids daylight-saving ambiguity.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from zhort.core.clock import as_naive_utc
from zhort.services.link_config import ScheduleConfig, load_active_schedules


@dataclass(frozen=True)
class ScheduleStatus:
    is_active: bool
    fallback_url: Optional[str] = None


ALWAYS_ACTIVE = ScheduleStatus(is_active=True)


def window_admits(schedule: ScheduleConfig, now: datetime) -> bool:
    if schedule.active_from is not None and now < as_naive_utc(schedule.active_from):
        return False
    if schedule.active_until is not None and now > as_naive_utc(schedule.active_until):
        return False
    return True


def evaluate_schedules(schedules: Sequence[ScheduleConfig], now: datetime) -> ScheduleStatus:
    """Pure evaluation over already-loaded active schedules."""
    if not schedules:
        return ALWAYS_ACTIVE

    now = as_naive_utc(now)
    if any(window_admits(schedule, now) for schedule in schedules):
        return ALWAYS_ACTIVE

    fallback = next((s.fallback_url for s in schedules if s.fallback_url), None)
    return ScheduleStatus(is_active=False, fallback_url=fallback)


class ScheduleEvaluator:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def evaluate(self, link_id: int, now: Optional[datetime] = None) -> ScheduleStatus:
        schedules = await load_active_schedules(self.session, link_id)
        return evaluate_schedules(schedules, now or datetime.utcnow())
