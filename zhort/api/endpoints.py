"""
FastAPI Endpoints for the Link Resolution Pipeline

This module defines the public endpoints with minimal logic.
Endpoints only handle:
- Request validation (Pydantic models)
- Rate limiting
- Error handling and HTTP responses
- Delegating to service layer

Design Principles:
- Thin endpoints: Only validation and HTTP translation
- Service layer: All business logic
- The redirect route is a catch-all and must be registered last
"""

import html
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from zhort.api.dependencies import (
    build_request_context,
    get_client_ip,
    get_link_resolver,
    get_owned_link,
    get_optional_owner_id,
    to_http_exception,
)
from zhort.api.schemas import AnalyticsResponse, MaskConfigResponse, ShortenRequest, ShortenResponse
from zhort.core.exceptions import ZhortException
from zhort.core.pipeline_manager import get_phishing_checker, get_side_effects, get_webhook_dispatcher
from zhort.core.rate_limit import ENDPOINT_LIMITS, limiter
from zhort.core.setting import settings
from zhort.core.validators import sanitize_short_code
from zhort.db.models import ShortLink
from zhort.db.session import get_session
from zhort.services.analytics_service import LinkAnalyticsService
from zhort.services.background_tasks import dispatch_webhooks_background
from zhort.services.domain_safety import DomainSafetyChecker
from zhort.services.link_service import LinkService
from zhort.services.masking import PresentationInstruction, PresentationMode
from zhort.services.resolution_service import LinkResolver, link_event_data

logger = logging.getLogger(__name__)

router = APIRouter()


def js_string(value: str) -> str:
    """JSON string literal that is safe to inline in a <script> block."""
    return json.dumps(value).replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")


def render_presentation(presentation: PresentationInstruction) -> Response:
    """Turn a presentation instruction into the HTTP response sent to the visitor."""
    if presentation.mode is PresentationMode.REDIRECT:
        return RedirectResponse(url=presentation.target_url, status_code=status.HTTP_302_FOUND)

    target = html.escape(presentation.target_url, quote=True)
    frame = (
        f'<iframe src="{target}" style="border:0;width:100%;height:100vh" '
        f'sandbox="allow-scripts allow-same-origin allow-forms allow-popups"></iframe>'
    )

    if presentation.mode is PresentationMode.FRAME:
        body = frame
    else:
        then = (
            f'document.body.innerHTML = {js_string(frame)};'
            if presentation.framed
            else f"window.location.replace({js_string(presentation.target_url)});"
        )
        body = (
            f'<div id="splash">{presentation.splash_html or ""}</div>'
            f'<script>setTimeout(function () {{ {then} }}, {int(presentation.splash_duration_ms or 0)});</script>'
        )

    page = (
        '<!DOCTYPE html><html><head><meta charset="utf-8">'
        '<meta name="viewport" content="width=device-width, initial-scale=1">'
        '<meta name="robots" content="noindex">'
        f'</head><body style="margin:0">{body}</body></html>'
    )
    return HTMLResponse(content=page)


@router.post(
    "/shorten",
    response_model=ShortenResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a short URL",
    description="Takes a long URL and returns a shortened version with a unique code"
)
async def create_short_url(
    request: Request,
    response: Response,
    body: ShortenRequest,
    owner_id: Optional[int] = Depends(get_optional_owner_id),
    session: AsyncSession = Depends(get_session)
) -> ShortenResponse:
    """
    Create a new short URL from a long URL.

    Returns:
        ShortenResponse with short_code, short_url, and original_url
    """
    link_service = LinkService(session, safety_checker=DomainSafetyChecker(session, get_phishing_checker()))

    try:
        created = await link_service.create_link(
            str(body.url),
            client_ip=get_client_ip(request),
            owner_id=owner_id,
            team_id=body.team_id,
            custom_code=body.custom_code,
            password=body.password,
            expires_in=body.expires_in,
            is_public=body.is_public,
        )
    except ZhortException as e:
        raise to_http_exception(e)

    link = created.link
    response.headers.update(created.rate_limit.headers())

    side_effects = get_side_effects()
    if side_effects is not None and owner_id is not None:
        dispatcher, data = get_webhook_dispatcher(), link_event_data(link)
        side_effects.submit(
            f"link.created:{link.id}",
            lambda: dispatch_webhooks_background(dispatcher, owner_id, "link.created", data),
        )

    return ShortenResponse(
        id=link.id,
        short_code=link.short_code,
        short_url=f"{settings.BASE_URL}/{link.short_code}",
        original_url=link.long_url,
        expires_at=link.expires_at,
        password_protected=link.password_hash is not None,
    )


@router.get(
    "/api/mask-config/{short_code}",
    response_model=MaskConfigResponse,
    summary="Presentation instruction for a masked link"
)
@limiter.limit(ENDPOINT_LIMITS["mask_config"])
async def get_mask_config(
    short_code: str,
    request: Request,
    password: Optional[str] = Query(default=None),
    resolver: LinkResolver = Depends(get_link_resolver)
) -> MaskConfigResponse:
    """Resolve without counting a hit and describe how to present the target."""
    try:
        result = await resolver.resolve(short_code, build_request_context(request, password), record=False)
    except ZhortException as e:
        raise to_http_exception(e)

    presentation = result.presentation
    return MaskConfigResponse(
        target_url=presentation.target_url,
        mode=presentation.mode.value,
        enable_frame=presentation.framed,
        enable_splash=presentation.mode is PresentationMode.SPLASH,
        splash_html=presentation.splash_html or "",
        splash_duration_ms=presentation.splash_duration_ms or 3000,
    )


@router.get(
    "/api/analytics/{link_id}",
    response_model=AnalyticsResponse,
    summary="Click analytics for a link"
)
@limiter.limit(ENDPOINT_LIMITS["analytics"])
async def get_link_analytics(
    request: Request,
    link: ShortLink = Depends(get_owned_link),
    session: AsyncSession = Depends(get_session)
) -> AnalyticsResponse:
    try:
        analytics = await LinkAnalyticsService(session).get_analytics(link.id)
    except ZhortException as e:
        raise to_http_exception(e)
    return AnalyticsResponse.model_validate(analytics)


@router.get(
    "/{short_code}",
    status_code=status.HTTP_302_FOUND,
    summary="Redirect to the resolved URL",
    description="Runs the resolution pipeline for a short code and redirects, frames or shows a splash page"
)
async def redirect_to_url(
    short_code: str,
    request: Request,
    password: Optional[str] = Query(default=None),
    resolver: LinkResolver = Depends(get_link_resolver)
) -> Response:
    """
    Resolve a short code for the calling visitor.

    Raises:
        HTTPException 400: If short code format is invalid
        HTTPException 401: If the link needs a password
        HTTPException 403: If access is denied
        HTTPException 404: If short code not found
        HTTPException 410: If the link has expired
        HTTPException 429: If password attempts are rate limited
    """
    if not sanitize_short_code(short_code):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid short code format: '{short_code}'. Short codes must contain only alphanumeric characters."
        )

    try:
        result = await resolver.resolve(short_code, build_request_context(request, password))
    except ZhortException as e:
        raise to_http_exception(e)

    return render_presentation(result.presentation)
