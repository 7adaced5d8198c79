"""
Shared API Dependencies

Request parsing and error translation used by every router:
- Client IP and country extraction (proxy aware)
- Owner identity from the upstream auth layer (X-Owner-Id header)
- Mapping of domain exceptions to HTTP responses
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from zhort.core.exceptions import (
    AccessDeniedError,
    DatabaseError,
    DenialReason,
    InvalidRuleError,
    InvalidURLError,
    LinkExpiredError,
    ShortCodeConflictError,
    ShortCodeNotFoundError,
    ZhortException,
)
from zhort.core.pipeline_manager import (
    get_config_cache,
    get_geo_locator,
    get_side_effects,
    get_webhook_dispatcher,
)
from zhort.db.models import ShortLink
from zhort.db.session import get_session
from zhort.services.link_settings import LinkSettingsService
from zhort.services.request_context import RequestContext
from zhort.services.resolution_service import LinkResolver


def get_client_ip(request: Request) -> str:
    """
    Extract client IP address from request.

    Handles proxies and load balancers by checking X-Forwarded-For header.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # X-Forwarded-For can contain multiple IPs, take the first one
        return forwarded_for.split(",")[0].strip()

    return request.client.host if request.client else "unknown"


def get_country(request: Request) -> Optional[str]:
    """ISO country code supplied by the edge (Cloudflare or a proxy), if any."""
    country = request.headers.get("CF-IPCountry")
    if country and country != "XX":
        return country[:2].upper()

    country = request.headers.get("X-Country-Code")
    if country:
        return country[:2].upper()

    return None


def build_request_context(request: Request, password: Optional[str] = None) -> RequestContext:
    return RequestContext(
        ip=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        referer=request.headers.get("Referer"),
        country=get_country(request),
        password=password or request.headers.get("X-Link-Password"),
    )


async def get_optional_owner_id(x_owner_id: Optional[int] = Header(default=None)) -> Optional[int]:
    return x_owner_id


async def require_owner_id(x_owner_id: Optional[int] = Header(default=None)) -> int:
    if x_owner_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return x_owner_id


async def get_link_resolver(session: AsyncSession = Depends(get_session)) -> LinkResolver:
    return LinkResolver(
        session,
        cache=get_config_cache(),
        side_effects=get_side_effects(),
        geo_locator=get_geo_locator(),
        webhook_dispatcher=get_webhook_dispatcher(),
    )


async def get_owned_link(
    link_id: int,
    owner_id: int = Depends(require_owner_id),
    session: AsyncSession = Depends(get_session)
) -> ShortLink:
    """Path dependency: the link must exist and belong to the caller."""
    link = await LinkSettingsService(session).get_owned_link(link_id, owner_id)
    if link is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Link not found")
    return link


def to_http_exception(error: ZhortException) -> HTTPException:
    """Translate a domain exception into the matching HTTP error."""
    if isinstance(error, AccessDeniedError):
        if error.reason is DenialReason.RATE_LIMITED:
            code = status.HTTP_429_TOO_MANY_REQUESTS
        elif error.reason is DenialReason.PASSWORD_REQUIRED:
            code = status.HTTP_401_UNAUTHORIZED
        else:
            code = status.HTTP_403_FORBIDDEN
        return HTTPException(
            status_code=code,
            detail={"error": error.reason.value, "message": str(error)},
            headers=error.headers or None,
        )

    if isinstance(error, (InvalidURLError, InvalidRuleError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, ShortCodeConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, ShortCodeNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, LinkExpiredError):
        return HTTPException(status_code=status.HTTP_410_GONE, detail=str(error))
    if isinstance(error, DatabaseError):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))

    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
