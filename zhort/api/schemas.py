"""
API Request and Response Schemas

This module defines all Pydantic models for API requests and responses.
Separated from endpoints to keep concerns separated and enable reuse.

Design Principles:
- Request models: Define input validation
- Response models: Define output structure
- ORM rows are serialized through from_attributes models
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl


class _FromORM(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# Links

class ShortenRequest(BaseModel):
    """Request model for URL shortening endpoint."""
    url: HttpUrl = Field(..., description="The long URL to shorten")
    custom_code: Optional[str] = Field(default=None, max_length=20, description="Requested alias")
    password: Optional[str] = Field(default=None, min_length=1, max_length=128)
    expires_in: Optional[Literal["1h", "24h", "7d", "30d", "never"]] = Field(default=None)
    team_id: Optional[int] = None
    is_public: bool = True


class ShortenResponse(BaseModel):
    """Response model for URL shortening endpoint."""
    id: int
    short_code: str = Field(..., description="The generated short code")
    short_url: str = Field(..., description="The complete short URL")
    original_url: str = Field(..., description="The original long URL")
    expires_at: Optional[datetime] = None
    password_protected: bool = False


class LinkResponse(_FromORM):
    id: int
    short_code: str
    long_url: str
    owner_id: Optional[int] = None
    team_id: Optional[int] = None
    is_public: bool
    expires_at: Optional[datetime] = None
    hits: int
    is_archived: bool
    created_at: datetime


class MaskConfigResponse(BaseModel):
    """Presentation instruction for the mask page."""
    target_url: str
    mode: str
    enable_frame: bool
    enable_splash: bool
    splash_html: str = ""
    splash_duration_ms: int = 3000


# Smart redirects

class RuleCreate(BaseModel):
    rule_type: Literal["device", "geo", "time", "ab_test"]
    condition: str = Field(..., min_length=1, max_length=50)
    target_url: str
    priority: int = Field(default=0, ge=0)


class RuleResponse(_FromORM):
    id: int
    link_id: int
    rule_type: str
    condition: str
    target_url: str
    priority: int


class RuleReorder(BaseModel):
    rule_ids: List[int]


# Schedules

class ScheduleCreate(BaseModel):
    active_from: Optional[datetime] = None
    active_until: Optional[datetime] = None
    timezone: str = "UTC"
    fallback_url: Optional[str] = None
    is_active: bool = True


class ScheduleUpdate(BaseModel):
    active_from: Optional[datetime] = None
    active_until: Optional[datetime] = None
    timezone: Optional[str] = None
    fallback_url: Optional[str] = None
    is_active: Optional[bool] = None


class ScheduleResponse(_FromORM):
    id: int
    link_id: int
    active_from: Optional[datetime] = None
    active_until: Optional[datetime] = None
    timezone: str
    fallback_url: Optional[str] = None
    is_active: bool


# Variants

class VariantCreate(BaseModel):
    variant_url: str
    traffic_percentage: int = 50


class VariantResponse(_FromORM):
    id: int
    link_id: int
    variant_url: str
    traffic_percentage: int
    clicks: int
    conversions: int
    is_winner: bool


class WinnerRequest(BaseModel):
    variant_id: Optional[int] = Field(default=None, description="Omit to pick the best conversion rate")


# Masking

class MaskingUpdate(BaseModel):
    enable_frame: bool = False
    enable_splash: bool = False
    splash_duration_ms: int = 3000
    splash_html: Optional[str] = None


class MaskingResponse(_FromORM):
    link_id: int
    enable_frame: bool
    enable_splash: bool
    splash_duration_ms: int
    splash_html: Optional[str] = None


# Webhooks

class WebhookCreate(BaseModel):
    url: str
    events: List[str] = Field(..., min_length=1)


class WebhookResponse(_FromORM):
    id: int
    url: str
    events: List[str]
    is_active: bool
    last_triggered_at: Optional[datetime] = None
    created_at: datetime


class WebhookCreatedResponse(WebhookResponse):
    """Only returned on creation; the secret is not shown again."""
    secret: str


class WebhookTestResponse(BaseModel):
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


# IP whitelist

class WhitelistCreate(BaseModel):
    ip_address: str = Field(..., max_length=50)
    team_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=200)


class WhitelistResponse(_FromORM):
    id: int
    ip_address: str
    team_id: Optional[int] = None
    user_id: Optional[int] = None
    description: Optional[str] = None
    is_active: bool
    created_at: datetime


# Analytics

class ClickResponse(_FromORM):
    id: int
    ip_address: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    device_type: str
    browser: str
    os: str
    referer: Optional[str] = None
    clicked_at: datetime


class AnalyticsResponse(_FromORM):
    total_clicks: int
    unique_ips: int
    device_breakdown: Dict[str, int]
    country_breakdown: Dict[str, int]
    browser_breakdown: Dict[str, int]
    os_breakdown: Dict[str, int]
    referrer_breakdown: Dict[str, int]
    city_breakdown: Dict[str, int]
    hourly_breakdown: Dict[int, int]
    weekday_breakdown: Dict[str, int]
    monthly_breakdown: Dict[str, int]
    avg_clicks_per_day: float
    peak_hour: Optional[int] = None
    peak_hour_clicks: int
    peak_weekday: Optional[str] = None
    peak_weekday_clicks: int
    growth_rate_7d: float
    clicks_per_day: Dict[str, int]
    recent_clicks: List[ClickResponse]


# Admin

class BlocklistStatsResponse(BaseModel):
    total_domains: int
    last_update: Optional[datetime] = None
    age_hours: int


class BlocklistRefreshResponse(BaseModel):
    success: bool
    domains: int
