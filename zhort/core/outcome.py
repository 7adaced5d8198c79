"""
Degraded-aware Check Results

Every check that fails open (rate limiter store, blocklist table, phishing
lookup, geo lookup, configuration cache) returns a Checked value produced
by fail_open(). Callers read `.value` and may inspect `.degraded`; none of
them re-implement try/except-and-allow.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Checked(Generic[T]):
    """Result of a check that may have fallen back to its fail-open default."""
    value: T
    degraded: bool = False
    error: Optional[str] = None


async def fail_open(
    component: str,
    call: Callable[[], Awaitable[T]],
    default: T,
) -> Checked[T]:
    """
    Run `call` and fall back to `default` on any internal fault.

    Args:
        component: Name used in the log line (e.g. "rate_limiter")
        call: Zero-argument coroutine factory performing the check
        default: Value reported when the check cannot be completed

    Returns:
        Checked wrapping either the real result or the default with degraded=True
    """
    try:
        return Checked(value=await call())
    except Exception as e:
        logger.warning(f"{component} degraded, failing open: {e}", exc_info=True)
        return Checked(value=default, degraded=True, error=str(e))
