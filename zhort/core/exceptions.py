"""
Custom Exceptions

This module defines custom exceptions for the link resolution pipeline.

Failure taxonomy:
- Denied (AccessDeniedError): user-visible, terminates resolution with a reason code
- NotFound / Expired: terminal, link absent or past expiry with no fallback
- Degraded: never raised, see zhort.core.outcome.Checked
- SideEffectFailed: logged by background workers, never surfaced
"""

from enum import Enum
from typing import Dict, Optional


class ZhortException(Exception):
    """Base exception for the link service."""
    pass


class DenialReason(str, Enum):
    """Reason codes carried by AccessDeniedError."""
    RATE_LIMITED = "rate_limited"
    PASSWORD_REQUIRED = "password_required"
    INVALID_PASSWORD = "invalid_password"
    QUOTA_EXCEEDED = "quota_exceeded"
    IP_NOT_ALLOWED = "ip_not_allowed"
    ARCHIVED = "archived"
    EXPIRED = "expired"
    NOT_TEAM_MEMBER = "not_team_member"


class InvalidURLError(ZhortException):
    """Raised when URL validation fails."""

    def __init__(self, url: str, reason: str = "Invalid URL format"):
        self.url = url
        self.reason = reason
        super().__init__(f"{reason}: {url}")


class BlockedDomainError(InvalidURLError):
    """Raised when a destination is on the blocklist or flagged as phishing."""

    def __init__(self, url: str):
        super().__init__(url, reason="Destination domain is blocked")


class ShortCodeNotFoundError(ZhortException):
    """Raised when a short code is not found in the database."""

    def __init__(self, short_code: str):
        self.short_code = short_code
        super().__init__(f"Short code '{short_code}' not found")


class LinkExpiredError(ZhortException):
    """Raised when a link is past its expiry and has no fallback."""

    def __init__(self, short_code: str):
        self.short_code = short_code
        super().__init__(f"Short code '{short_code}' has expired")


class AccessDeniedError(ZhortException):
    """Raised when an admission check refuses the request."""

    def __init__(self, reason: DenialReason, detail: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        self.reason = reason
        self.detail = detail
        self.headers = headers or {}
        super().__init__(detail or reason.value)


class InvalidRuleError(ZhortException):
    """Raised when link configuration fails write-time validation."""
    pass


class UnknownRateLimitActionError(ZhortException):
    """Raised for an action missing from the rate limit table. Never fails open."""

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Unknown rate limit action: {action}")


class DatabaseError(ZhortException):
    """Raised when database operations fail."""

    def __init__(self, message: str, original_error: Exception = None):
        self.original_error = original_error
        super().__init__(f"Database error: {message}")


class ShortCodeConflictError(ZhortException):
    """Raised when a custom short code is already taken."""

    def __init__(self, short_code: str):
        self.short_code = short_code
        super().__init__(f"Short code '{short_code}' is already in use")


class LinkInactiveError(ShortCodeNotFoundError):
    """Raised when a link is outside every schedule window and has no fallback."""

    def __init__(self, short_code: str):
        self.short_code = short_code
        ZhortException.__init__(self, f"Short code '{short_code}' is not active")
