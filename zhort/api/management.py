"""
Link Management Endpoints

Owner-scoped configuration of the resolution pipeline. The caller's
identity arrives in the X-Owner-Id header, set by the upstream auth
layer; every /api/links/{link_id} route checks the link belongs to it.

Routes:
- Links: archive
- Smart redirects: create, list, delete, reorder
- Schedules: create, list, update, delete
- Variants: create, list, delete, set winner, track conversion
- Masking: get, put
- Webhooks: create, list, delete, test delivery
- IP whitelist: add, list, delete
- Admin: blocklist stats and forced refresh
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from zhort.api.dependencies import get_owned_link, require_owner_id, to_http_exception
from zhort.api.schemas import (
    BlocklistRefreshResponse,
    BlocklistStatsResponse,
    LinkResponse,
    MaskingResponse,
    MaskingUpdate,
    RuleCreate,
    RuleReorder,
    RuleResponse,
    ScheduleCreate,
    ScheduleResponse,
    ScheduleUpdate,
    VariantCreate,
    VariantResponse,
    WebhookCreate,
    WebhookCreatedResponse,
    WebhookResponse,
    WebhookTestResponse,
    WhitelistCreate,
    WhitelistResponse,
    WinnerRequest,
)
from zhort.core.exceptions import ZhortException
from zhort.core.pipeline_manager import get_config_cache, get_http_client, get_webhook_dispatcher
from zhort.db.models import ShortLink
from zhort.db.session import get_session
from zhort.services.access_control import TEAM_ADMIN_ROLES, TEAM_ROLES, require_team_role
from zhort.services.domain_safety import BlocklistService
from zhort.services.link_service import LinkService
from zhort.services.link_settings import LinkSettingsService
from zhort.services.smart_redirects import SmartRedirectRuleService
from zhort.services.variant_selector import VariantSelector
from zhort.services.webhook_dispatcher import WebhookService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def _not_found(what: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{what} not found")


# Links

@router.post("/links/{link_id}/archive", response_model=LinkResponse)
async def archive_link(
    link: ShortLink = Depends(get_owned_link),
    session: AsyncSession = Depends(get_session)
):
    archived = await LinkService(session).archive(link.id, link.owner_id)
    return archived


# Smart redirects

@router.get("/links/{link_id}/redirects", response_model=List[RuleResponse])
async def list_rules(link: ShortLink = Depends(get_owned_link), session: AsyncSession = Depends(get_session)):
    return await SmartRedirectRuleService(session).list_rules(link.id)


@router.post("/links/{link_id}/redirects", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(
    body: RuleCreate,
    link: ShortLink = Depends(get_owned_link),
    session: AsyncSession = Depends(get_session)
):
    service = SmartRedirectRuleService(session, cache=get_config_cache())
    try:
        return await service.create_rule(link.id, body.rule_type, body.condition, body.target_url, body.priority)
    except ZhortException as e:
        raise to_http_exception(e)


@router.delete("/links/{link_id}/redirects/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(
    rule_id: int,
    link: ShortLink = Depends(get_owned_link),
    session: AsyncSession = Depends(get_session)
):
    if not await SmartRedirectRuleService(session, cache=get_config_cache()).delete_rule(link.id, rule_id):
        raise _not_found("Rule")


@router.put("/links/{link_id}/redirects/reorder", response_model=List[RuleResponse])
async def reorder_rules(
    body: RuleReorder,
    link: ShortLink = Depends(get_owned_link),
    session: AsyncSession = Depends(get_session)
):
    service = SmartRedirectRuleService(session, cache=get_config_cache())
    try:
        return await service.reorder(link.id, body.rule_ids)
    except ZhortException as e:
        raise to_http_exception(e)


# Schedules

@router.get("/links/{link_id}/schedules", response_model=List[ScheduleResponse])
async def list_schedules(link: ShortLink = Depends(get_owned_link), session: AsyncSession = Depends(get_session)):
    return await LinkSettingsService(session).list_schedules(link.id)


@router.post("/links/{link_id}/schedules", response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED)
async def create_schedule(
    body: ScheduleCreate,
    link: ShortLink = Depends(get_owned_link),
    session: AsyncSession = Depends(get_session)
):
    service = LinkSettingsService(session, cache=get_config_cache())
    try:
        return await service.create_schedule(link.id, **body.model_dump())
    except ZhortException as e:
        raise to_http_exception(e)


@router.patch("/links/{link_id}/schedules/{schedule_id}", response_model=ScheduleResponse)
async def update_schedule(
    schedule_id: int,
    body: ScheduleUpdate,
    link: ShortLink = Depends(get_owned_link),
    session: AsyncSession = Depends(get_session)
):
    service = LinkSettingsService(session, cache=get_config_cache())
    try:
        schedule = await service.update_schedule(link.id, schedule_id, body.model_dump(exclude_unset=True))
    except ZhortException as e:
        raise to_http_exception(e)
    if schedule is None:
        raise _not_found("Schedule")
    return schedule


@router.delete("/links/{link_id}/schedules/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_schedule(
    schedule_id: int,
    link: ShortLink = Depends(get_owned_link),
    session: AsyncSession = Depends(get_session)
):
    if not await LinkSettingsService(session, cache=get_config_cache()).delete_schedule(link.id, schedule_id):
        raise _not_found("Schedule")


# Variants

@router.get("/links/{link_id}/variants", response_model=List[VariantResponse])
async def list_variants(link: ShortLink = Depends(get_owned_link), session: AsyncSession = Depends(get_session)):
    return await VariantSelector(session).list_variants(link.id)


@router.post("/links/{link_id}/variants", response_model=VariantResponse, status_code=status.HTTP_201_CREATED)
async def create_variant(
    body: VariantCreate,
    link: ShortLink = Depends(get_owned_link),
    session: AsyncSession = Depends(get_session)
):
    service = VariantSelector(session, cache=get_config_cache())
    try:
        return await service.create_variant(link.id, body.variant_url, body.traffic_percentage)
    except ZhortException as e:
        raise to_http_exception(e)


@router.delete("/links/{link_id}/variants/{variant_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_variant(
    variant_id: int,
    link: ShortLink = Depends(get_owned_link),
    session: AsyncSession = Depends(get_session)
):
    if not await VariantSelector(session, cache=get_config_cache()).delete_variant(link.id, variant_id):
        raise _not_found("Variant")


@router.post("/links/{link_id}/variants/winner", response_model=VariantResponse)
async def set_winner(
    body: WinnerRequest,
    link: ShortLink = Depends(get_owned_link),
    session: AsyncSession = Depends(get_session)
):
    service = VariantSelector(session, cache=get_config_cache())
    try:
        winner = await service.set_winner(link.id, body.variant_id)
    except ZhortException as e:
        raise to_http_exception(e)
    if winner is None:
        raise _not_found("Variant")
    return winner


@router.post("/variants/{variant_id}/conversions", status_code=status.HTTP_204_NO_CONTENT)
async def track_conversion(variant_id: int, session: AsyncSession = Depends(get_session)):
    """Externally triggered conversion event; not part of the redirect path."""
    if not await VariantSelector(session).track_conversion(variant_id):
        raise _not_found("Variant")


# Masking

@router.get("/links/{link_id}/masking", response_model=MaskingResponse)
async def get_masking(link: ShortLink = Depends(get_owned_link), session: AsyncSession = Depends(get_session)):
    masking = await LinkSettingsService(session).get_masking(link.id)
    if masking is None:
        return MaskingResponse(link_id=link.id, enable_frame=False, enable_splash=False, splash_duration_ms=3000)
    return masking


@router.put("/links/{link_id}/masking", response_model=MaskingResponse)
async def put_masking(
    body: MaskingUpdate,
    link: ShortLink = Depends(get_owned_link),
    session: AsyncSession = Depends(get_session)
):
    service = LinkSettingsService(session, cache=get_config_cache())
    try:
        return await service.put_masking(link.id, **body.model_dump())
    except ZhortException as e:
        raise to_http_exception(e)


# Webhooks

@router.get("/webhooks", response_model=List[WebhookResponse])
async def list_webhooks(owner_id: int = Depends(require_owner_id), session: AsyncSession = Depends(get_session)):
    return await WebhookService(session).list_webhooks(owner_id)


@router.post("/webhooks", response_model=WebhookCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_webhook(
    body: WebhookCreate,
    owner_id: int = Depends(require_owner_id),
    session: AsyncSession = Depends(get_session)
):
    try:
        return await WebhookService(session).create_webhook(owner_id, body.url, body.events)
    except ZhortException as e:
        raise to_http_exception(e)


@router.delete("/webhooks/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_webhook(
    webhook_id: int,
    owner_id: int = Depends(require_owner_id),
    session: AsyncSession = Depends(get_session)
):
    if not await WebhookService(session).delete_webhook(owner_id, webhook_id):
        raise _not_found("Webhook")


@router.post("/webhooks/{webhook_id}/test", response_model=WebhookTestResponse)
async def test_webhook(
    webhook_id: int,
    owner_id: int = Depends(require_owner_id),
    session: AsyncSession = Depends(get_session)
):
    service = WebhookService(session)
    webhook = await service.get_webhook(owner_id, webhook_id)
    if webhook is None:
        raise _not_found("Webhook")

    result = await service.send_test(webhook, get_webhook_dispatcher())
    return WebhookTestResponse(success=result.success, status_code=result.status_code, error=result.error)


# IP whitelist

async def _check_team(session: AsyncSession, team_id: Optional[int], owner_id: int, roles: frozenset) -> None:
    if team_id is None:
        return
    try:
        await require_team_role(session, team_id, owner_id, roles)
    except ZhortException as e:
        raise to_http_exception(e)


@router.get("/whitelist", response_model=List[WhitelistResponse])
async def list_whitelist(
    team_id: Optional[int] = None,
    owner_id: int = Depends(require_owner_id),
    session: AsyncSession = Depends(get_session)
):
    await _check_team(session, team_id, owner_id, TEAM_ROLES)
    return await LinkSettingsService(session).list_whitelist(team_id, owner_id)


@router.post("/whitelist", response_model=WhitelistResponse, status_code=status.HTTP_201_CREATED)
async def add_whitelist_entry(
    body: WhitelistCreate,
    owner_id: int = Depends(require_owner_id),
    session: AsyncSession = Depends(get_session)
):
    await _check_team(session, body.team_id, owner_id, TEAM_ADMIN_ROLES)
    # Team-scoped entries carry no user id so they apply to every member
    user_id = None if body.team_id is not None else owner_id
    try:
        return await LinkSettingsService(session).add_whitelist_entry(
            body.ip_address, team_id=body.team_id, user_id=user_id, description=body.description
        )
    except ZhortException as e:
        raise to_http_exception(e)


@router.delete("/whitelist/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_whitelist_entry(
    entry_id: int,
    team_id: Optional[int] = None,
    owner_id: int = Depends(require_owner_id),
    session: AsyncSession = Depends(get_session)
):
    await _check_team(session, team_id, owner_id, TEAM_ADMIN_ROLES)
    if not await LinkSettingsService(session).delete_whitelist_entry(entry_id, team_id, owner_id):
        raise _not_found("Whitelist entry")


# Admin

@router.get("/admin/blocklist", response_model=BlocklistStatsResponse)
async def blocklist_stats(owner_id: int = Depends(require_owner_id), session: AsyncSession = Depends(get_session)):
    stats = await BlocklistService(session).get_stats()
    return BlocklistStatsResponse(total_domains=stats.total, last_update=stats.last_update, age_hours=stats.age_hours)


@router.post("/admin/blocklist", response_model=BlocklistRefreshResponse)
async def refresh_blocklist(owner_id: int = Depends(require_owner_id), session: AsyncSession = Depends(get_session)):
    try:
        added = await BlocklistService(session).refresh(get_http_client())
    except Exception as e:
        logger.error(f"Forced blocklist refresh failed: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to update blocklist")
    return BlocklistRefreshResponse(success=True, domains=added)
