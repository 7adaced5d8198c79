"""
Database Models for the Link Resolution Pipeline

This module defines the SQLModel database schemas for:
- ShortLink: Short code to destination mapping plus admission settings
- Team / TeamMember / IPWhitelistEntry: Quota, membership and IP whitelist state
- RateWindowRecord: Sliding-window request counters
- BlockedDomain: Local copy of the domain blocklist
- LinkSchedule / LinkVariant / SmartRedirectRule / LinkMasking: Per-link configuration
- ClickEvent: Immutable click facts for analytics
- Webhook: Owner-registered event subscribers

Design Decisions:
- Pipeline services hold no state; everything authoritative lives here
- Indexes on the lookup keys of the hot path (short_code, link_id, identifier/action)
- ClickEvent rows are append-only and never updated
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlmodel import Column, Field, SQLModel


class ShortLink(SQLModel, table=True):
    """
    Main table storing short link mappings.

    Fields:
    - short_code: Unique short code (base62 or custom alias)
    - long_url: Stored destination
    - owner_id / team_id: Owning user and optional quota-bound team
    - password_hash: bcrypt hash for protected links
    - expires_at: Optional expiry instant (UTC)
    - hits: Successful resolutions (atomic increment)
    - is_archived: Soft archival; links are never hard-deleted while analytics reference them
    """
    __tablename__ = "short_links"

    id: Optional[int] = Field(default=None, primary_key=True)
    short_code: str = Field(
        sa_column=Column(String(20), nullable=False, unique=True, index=True),
        max_length=20
    )
    long_url: str = Field(sa_column=Column(Text, nullable=False))
    owner_id: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True, index=True))
    team_id: Optional[int] = Field(
        default=None,
        sa_column=Column(Integer, ForeignKey("teams.id"), nullable=True, index=True)
    )
    is_public: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    password_hash: Optional[str] = Field(default=None, sa_column=Column(String(100), nullable=True))
    expires_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    hits: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    is_archived: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, index=True)
    )


class Team(SQLModel, table=True):
    """
    Team with an optional usage quota.

    current_usage is only ever changed through atomic UPDATE statements;
    usage_reset_date is checked lazily on the first quota check after it passes.
    """
    __tablename__ = "teams"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(sa_column=Column(String(100), nullable=False))
    usage_quota: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    current_usage: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    usage_reset_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))


class TeamMember(SQLModel, table=True):
    """A user's role in a team: owner, admin, member or viewer."""
    __tablename__ = "team_members"
    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_team_members_team_user"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    team_id: int = Field(
        sa_column=Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    user_id: int = Field(sa_column=Column(Integer, nullable=False, index=True))
    role: str = Field(default="member", sa_column=Column(String(20), nullable=False, default="member"))
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False)
    )


class IPWhitelistEntry(SQLModel, table=True):
    """Exact IP or IPv4 CIDR allowed to resolve links of a team or user."""
    __tablename__ = "ip_whitelist"

    id: Optional[int] = Field(default=None, primary_key=True)
    ip_address: str = Field(sa_column=Column(String(50), nullable=False))
    team_id: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True, index=True))
    user_id: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True, index=True))
    description: Optional[str] = Field(default=None, sa_column=Column(String(200), nullable=True))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False)
    )


class RateWindowRecord(SQLModel, table=True):
    """
    One request burst for (identifier, action).

    Several records may coexist for the same key; counts are summed
    across all records younger than the action's window.
    """
    __tablename__ = "rate_limits"
    __table_args__ = (
        Index("ix_rate_limits_key_window", "identifier", "action", "window_start"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    identifier: str = Field(sa_column=Column(String(255), nullable=False))
    action: str = Field(sa_column=Column(String(50), nullable=False))
    count: int = Field(default=1, sa_column=Column(Integer, nullable=False, default=1))
    window_start: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False)
    )


class BlockedDomain(SQLModel, table=True):
    """Normalized hostname from the blocklist, replaced wholesale on refresh."""
    __tablename__ = "blocked_domains"

    id: Optional[int] = Field(default=None, primary_key=True)
    domain: str = Field(sa_column=Column(String(255), nullable=False, unique=True, index=True))
    last_updated: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, index=True)
    )


class LinkSchedule(SQLModel, table=True):
    """
    Activation window for a link.

    timezone is kept for display only; comparisons use absolute UTC instants.
    """
    __tablename__ = "link_schedules"

    id: Optional[int] = Field(default=None, primary_key=True)
    link_id: int = Field(
        sa_column=Column(Integer, ForeignKey("short_links.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    active_from: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    active_until: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    timezone: str = Field(default="UTC", sa_column=Column(String(50), nullable=False, default="UTC"))
    fallback_url: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False)
    )


class LinkVariant(SQLModel, table=True):
    """Alternate destination in an A/B test. At most one winner per link."""
    __tablename__ = "link_variants"

    id: Optional[int] = Field(default=None, primary_key=True)
    link_id: int = Field(
        sa_column=Column(Integer, ForeignKey("short_links.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    variant_url: str = Field(sa_column=Column(Text, nullable=False))
    traffic_percentage: int = Field(default=50, sa_column=Column(Integer, nullable=False, default=50))
    clicks: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    conversions: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    is_winner: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False)
    )


class SmartRedirectRule(SQLModel, table=True):
    """
    Priority-ordered condition/target pair.

    Lower priority evaluates first; ties fall back to insertion order (id).
    """
    __tablename__ = "smart_redirects"
    __table_args__ = (
        Index("ix_smart_redirects_link_priority", "link_id", "priority"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    link_id: int = Field(
        sa_column=Column(Integer, ForeignKey("short_links.id", ondelete="CASCADE"), nullable=False)
    )
    rule_type: str = Field(sa_column=Column(String(20), nullable=False))
    condition: str = Field(sa_column=Column(String(50), nullable=False))
    target_url: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False)
    )


class LinkMasking(SQLModel, table=True):
    """Presentation settings (frame / splash) for a link."""
    __tablename__ = "link_masking"

    id: Optional[int] = Field(default=None, primary_key=True)
    link_id: int = Field(
        sa_column=Column(Integer, ForeignKey("short_links.id", ondelete="CASCADE"), nullable=False, unique=True)
    )
    enable_frame: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    enable_splash: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    splash_duration_ms: int = Field(default=3000, sa_column=Column(Integer, nullable=False, default=3000))
    splash_html: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))


class ClickEvent(SQLModel, table=True):
    """
    Immutable click fact.

    Never updated after insert; aggregated read-side by LinkAnalyticsService.
    """
    __tablename__ = "link_clicks"

    id: Optional[int] = Field(default=None, primary_key=True)
    link_id: int = Field(
        sa_column=Column(Integer, ForeignKey("short_links.id"), nullable=False, index=True)
    )
    ip_address: Optional[str] = Field(default=None, sa_column=Column(String(45), nullable=True))  # IPv6 max length
    user_agent: Optional[str] = Field(default=None, sa_column=Column(String(500), nullable=True))
    referer: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    device_type: str = Field(default="unknown", sa_column=Column(String(20), nullable=False, default="unknown"))
    browser: str = Field(default="unknown", sa_column=Column(String(50), nullable=False, default="unknown"))
    os: str = Field(default="unknown", sa_column=Column(String(50), nullable=False, default="unknown"))
    country: Optional[str] = Field(default=None, sa_column=Column(String(100), nullable=True))
    city: Optional[str] = Field(default=None, sa_column=Column(String(100), nullable=True))
    clicked_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, index=True)
    )


class Webhook(SQLModel, table=True):
    """Subscriber endpoint for pipeline events, signed with a per-endpoint secret."""
    __tablename__ = "webhooks"

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(sa_column=Column(Integer, nullable=False, index=True))
    url: str = Field(sa_column=Column(Text, nullable=False))
    secret: str = Field(sa_column=Column(String(128), nullable=False))
    events: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    last_triggered_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False)
    )
