"""
Domain Safety Service

Decides whether a destination URL may be shortened. Evaluated when a link
is created or its destination changes, never on the per-click path.

Checks, in order:
1. Local blocklist: exact hostname, then every parent suffix
   (sub.evil.com -> evil.com), answered by a single IN query
2. Remote phishing lookup (Google Safe Browsing), only when the local
   table is populated

Both checks fail open: an infrastructure fault is logged and treated as
"not blocked" so it can never block legitimate links.

The local table is replaced wholesale (not diffed) from a hosts-format
list whenever it is older than BLOCKLIST_REFRESH_HOURS.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

import httpx
from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from zhort.core.outcome import fail_open
from zhort.core.setting import settings
from zhort.core.validators import extract_hostname
from zhort.db.models import BlockedDomain

logger = logging.getLogger(__name__)


def parse_hosts_file(text: str) -> List[str]:
    """
    Parse a hosts-format blocklist ("0.0.0.0 domain.com" per line).

    Comments, blank lines and localhost entries are skipped; duplicates are
    removed while keeping first-seen order.
    """
    seen = set()
    domains = []
    for line in text.splitlines():
        trimmed = line.strip()
        if not trimmed or trimmed.startswith('#'):
            continue

        parts = trimmed.split()
        if len(parts) < 2:
            continue

        domain = parts[1].lower()
        if domain and domain != 'localhost' and domain not in seen:
            seen.add(domain)
            domains.append(domain)
    return domains


def candidate_domains(hostname: str) -> List[str]:
    """
    Return the hostname followed by each parent suffix with at least two labels.

    Example:
        candidate_domains("a.b.evil.com") -> ["a.b.evil.com", "b.evil.com", "evil.com"]
    """
    parts = hostname.lower().split('.')
    candidates = [hostname.lower()]
    for i in range(1, len(parts) - 1):
        candidates.append('.'.join(parts[i:]))
    return candidates


@dataclass(frozen=True)
class BlocklistStats:
    total: int
    last_update: Optional[datetime]
    age_hours: int


class BlocklistService:
    """Store operations on the blocked_domains table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def lookup(self, hostname: str) -> Tuple[bool, bool]:
        """
        Match a hostname against the table.

        Returns:
            (blocked, initialized) where initialized means the table has rows
        """
        try:
            statement = (
                select(BlockedDomain.domain)
                .where(BlockedDomain.domain.in_(candidate_domains(hostname)))
                .limit(1)
            )
            result = await self.session.execute(statement)
            if result.scalar_one_or_none() is not None:
                return True, True

            any_row = await self.session.execute(select(BlockedDomain.id).limit(1))
            return False, any_row.scalar_one_or_none() is not None
        except Exception:
            await self.session.rollback()
            raise

    async def replace_all(self, domains: Iterable[str], batch_size: int = None) -> int:
        """
        Replace the whole table with `domains` in batches.

        Returns:
            Number of rows inserted
        """
        batch_size = batch_size or settings.BLOCKLIST_BATCH_SIZE
        domains = list(dict.fromkeys(d.lower() for d in domains))
        now = datetime.utcnow()

        try:
            await self.session.execute(delete(BlockedDomain))

            added = 0
            for i in range(0, len(domains), batch_size):
                batch = domains[i:i + batch_size]
                await self.session.execute(
                    insert(BlockedDomain),
                    [{"domain": domain, "last_updated": now} for domain in batch]
                )
                added += len(batch)

                if added % 10000 == 0:
                    logger.info(f"Inserted {added}/{len(domains)} blocked domains...")

            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Blocklist replaced: {added} domains")
        return added

    async def refresh(self, client: httpx.AsyncClient, source_url: str = None) -> int:
        """Download the hosts-format list and replace the table with it."""
        source_url = source_url or settings.BLOCKLIST_URL
        logger.info(f"Fetching blocklist from {source_url}")

        response = await client.get(source_url)
        response.raise_for_status()

        domains = parse_hosts_file(response.text)
        logger.info(f"Parsed {len(domains)} domains from blocklist")
        return await self.replace_all(domains)

    async def get_stats(self, now: Optional[datetime] = None) -> BlocklistStats:
        now = now or datetime.utcnow()
        result = await self.session.execute(
            select(func.count(BlockedDomain.id), func.max(BlockedDomain.last_updated))
        )
        total, last_update = result.one()
        age_hours = int((now - last_update).total_seconds() // 3600) if last_update else 0
        return BlocklistStats(total=total or 0, last_update=last_update, age_hours=age_hours)

    async def refresh_if_stale(
        self,
        client: httpx.AsyncClient,
        max_age: timedelta = None,
        now: Optional[datetime] = None
    ) -> bool:
        """
        Refresh the table when it is empty or older than max_age.

        Returns:
            True if a refresh was performed
        """
        max_age = max_age or timedelta(hours=settings.BLOCKLIST_REFRESH_HOURS)
        now = now or datetime.utcnow()

        stats = await self.get_stats(now)
        if stats.last_update is not None and now - stats.last_update <= max_age:
            logger.info(f"Blocklist is up-to-date ({stats.age_hours}h old)")
            return False

        logger.info("Blocklist is outdated or empty, updating...")
        await self.refresh(client)
        return True


class PhishingChecker:
    """Google Safe Browsing v4 lookup."""

    THREAT_TYPES = ["MALWARE", "SOCIAL_ENGINEERING", "UNWANTED_SOFTWARE"]

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None
    ):
        self.client = client
        self.api_key = api_key if api_key is not None else settings.SAFE_BROWSING_API_KEY
        self.endpoint = endpoint or settings.SAFE_BROWSING_URL

    async def is_phishing(self, url: str) -> bool:
        """
        Ask Safe Browsing whether `url` is a known threat.

        Raises:
            httpx.HTTPError: On transport failure or non-2xx response
        """
        if not self.api_key:
            logger.warning("Safe Browsing API key is missing. Phishing check skipped.")
            return False

        response = await self.client.post(
            self.endpoint,
            params={"key": self.api_key},
            json={
                "client": {"clientId": "zhort-app", "clientVersion": "1.0.0"},
                "threatInfo": {
                    "threatTypes": self.THREAT_TYPES,
                    "platformTypes": ["ANY_PLATFORM"],
                    "threatEntryTypes": ["URL"],
                    "threatEntries": [{"url": url}],
                },
            },
            timeout=settings.PHISHING_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return bool(response.json().get("matches"))


class DomainSafetyChecker:
    """
    Combined blocklist and phishing check for destination URLs.

    Every fault degrades to "not blocked".
    """

    def __init__(self, session: AsyncSession, phishing_checker: Optional[PhishingChecker] = None):
        """
        Args:
            session: Database session for the local blocklist
            phishing_checker: Remote lookup; skipped entirely when None
        """
        self.blocklist = BlocklistService(session)
        self.phishing_checker = phishing_checker

    async def is_blocked(self, url: str) -> bool:
        hostname = extract_hostname(url)
        if not hostname:
            return False

        local = await fail_open(
            "blocklist",
            lambda: self.blocklist.lookup(hostname),
            default=(False, False),
        )
        blocked, initialized = local.value
        if blocked:
            logger.info(f"Blocked domain rejected: {hostname}")
            return True

        if not initialized or self.phishing_checker is None:
            return False

        remote = await fail_open(
            "phishing_lookup",
            lambda: self.phishing_checker.is_phishing(url),
            default=False,
        )
        if remote.value:
            logger.info(f"Phishing URL rejected: {hostname}")
        return remote.value
