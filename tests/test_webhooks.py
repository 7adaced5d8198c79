"""Tests for webhook signing, delivery and subscription management."""

import asyncio
import json
import time
from datetime import datetime

import httpx
import pytest

from zhort.core.exceptions import InvalidRuleError, InvalidURLError
from zhort.db.models import Webhook
from zhort.services.webhook_dispatcher import (
    USER_AGENT,
    WebhookDispatcher,
    WebhookService,
    build_payload,
    sign_payload,
    verify_signature,
)


SECRET = "whsec_test"
PAYLOAD = '{"event":"link.clicked","timestamp":"2025-11-07T12:00:00.000Z","data":{"linkId":1,"shortCode":"abc123"}}'
# printf '%s' "$PAYLOAD" | openssl dgst -sha256 -hmac whsec_test
SIGNATURE = "e2cb2afe2afa2eff6bc50adfc0ca0f0abff07bc16489cc8bc5671425c6219ba3"


class TestSigning:
    def test_payload_is_compact_and_ordered(self):
        payload = build_payload(
            "link.clicked",
            {"linkId": 1, "shortCode": "abc123"},
            timestamp=datetime(2025, 11, 7, 12, 0, 0),
        )
        assert payload == PAYLOAD

    def test_known_signature(self):
        assert sign_payload(PAYLOAD, SECRET) == SIGNATURE

    def test_verify_accepts_valid_signature(self):
        assert verify_signature(PAYLOAD, SIGNATURE, SECRET)

    def test_single_byte_change_fails(self):
        tampered = PAYLOAD.replace('"linkId":1', '"linkId":2')
        assert not verify_signature(tampered, SIGNATURE, SECRET)
        assert not verify_signature(PAYLOAD, SIGNATURE, SECRET + "x")
        assert not verify_signature(PAYLOAD, SIGNATURE[:-1] + "0", SECRET)

    def test_missing_signature_fails(self):
        assert not verify_signature(PAYLOAD, None, SECRET)


async def add_hook(session, url, events, owner_id=1, is_active=True) -> Webhook:
    hook = Webhook(owner_id=owner_id, url=url, secret=SECRET, events=events, is_active=is_active)
    session.add(hook)
    await session.commit()
    await session.refresh(hook)
    return hook


@pytest.mark.asyncio
async def test_dispatch_signs_and_tracks_success(session, session_factory):
    ok = await add_hook(session, "https://hooks.example.com/ok", ["link.clicked"])
    failing = await add_hook(session, "https://hooks.example.com/fail", ["link.clicked", "link.created"])
    await add_hook(session, "https://hooks.example.com/other-event", ["link.created"])
    await add_hook(session, "https://hooks.example.com/disabled", ["link.clicked"], is_active=False)
    await add_hook(session, "https://hooks.example.com/other-owner", ["link.clicked"], owner_id=2)

    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = request.content.decode("utf-8")
        received.append(request.url.path)
        assert request.headers["X-Zhort-Event"] == "link.clicked"
        assert request.headers["User-Agent"] == USER_AGENT
        assert verify_signature(body, request.headers["X-Zhort-Signature"], SECRET)
        assert json.loads(body)["data"] == {"linkId": 7}
        return httpx.Response(500 if request.url.path == "/fail" else 200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        results = await WebhookDispatcher(session_factory, client).dispatch(1, "link.clicked", {"linkId": 7})

    assert sorted(received) == ["/fail", "/ok"]
    assert {r.webhook_id: r.success for r in results} == {ok.id: True, failing.id: False}

    await session.refresh(ok)
    await session.refresh(failing)
    assert ok.last_triggered_at is not None
    assert failing.last_triggered_at is None


@pytest.mark.asyncio
async def test_network_error_is_reported_not_raised(session, session_factory):
    hook = await add_hook(session, "https://hooks.example.com/down", ["link.expired"])

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        results = await WebhookDispatcher(session_factory, client).dispatch(1, "link.expired", {})

    assert len(results) == 1
    assert not results[0].success
    assert "ConnectError" in results[0].error

    await session.refresh(hook)
    assert hook.last_triggered_at is None


@pytest.mark.asyncio
async def test_fan_out_respects_concurrency_cap(session, session_factory):
    for n in range(6):
        await add_hook(session, f"https://hooks.example.com/h{n}", ["link.clicked"])

    in_flight = 0
    peak = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.02)
        in_flight -= 1
        return httpx.Response(204)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        dispatcher = WebhookDispatcher(session_factory, client, max_concurrency=2)
        results = await dispatcher.dispatch(1, "link.clicked", {})

    assert len(results) == 6
    assert all(r.success for r in results)
    assert peak == 2


@pytest.mark.asyncio
async def test_hung_endpoint_does_not_hold_up_others(session, session_factory):
    fast = await add_hook(session, "https://hooks.example.com/fast", ["link.clicked"])
    hung = await add_hook(session, "https://hooks.example.com/hung", ["link.clicked"])
    also_fast = await add_hook(session, "https://hooks.example.com/also-fast", ["link.clicked"])

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/hung":
            await asyncio.sleep(10)
        return httpx.Response(200)

    started = time.monotonic()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        dispatcher = WebhookDispatcher(session_factory, client, timeout=0.2)
        results = await dispatcher.dispatch(1, "link.clicked", {})
    elapsed = time.monotonic() - started

    assert elapsed < 2
    outcome = {r.webhook_id: r for r in results}
    assert outcome[hung.id].error == "timeout"
    assert outcome[fast.id].success
    assert outcome[also_fast.id].success

    for hook in (fast, hung, also_fast):
        await session.refresh(hook)
    assert fast.last_triggered_at is not None
    assert also_fast.last_triggered_at is not None
    assert hung.last_triggered_at is None


@pytest.mark.asyncio
async def test_no_subscribers(session_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("nothing should be sent")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        assert await WebhookDispatcher(session_factory, client).dispatch(1, "link.created", {}) == []


@pytest.mark.asyncio
async def test_webhook_service(session, session_factory):
    service = WebhookService(session)

    with pytest.raises(InvalidURLError):
        await service.create_webhook(1, "not-a-url", ["link.created"])
    with pytest.raises(InvalidRuleError):
        await service.create_webhook(1, "https://hooks.example.com/", ["link.deleted"])
    with pytest.raises(InvalidRuleError):
        await service.create_webhook(1, "https://hooks.example.com/", [])

    hook = await service.create_webhook(1, "https://hooks.example.com/", ["link.created", "link.created"])
    assert hook.events == ["link.created"]
    assert len(hook.secret) == 64

    assert await service.get_webhook(2, hook.id) is None
    assert [h.id for h in await service.list_webhooks(1)] == [hook.id]

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["X-Zhort-Event"] == "webhook.test"
        assert verify_signature(request.content.decode(), request.headers["X-Zhort-Signature"], hook.secret)
        return httpx.Response(204)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await service.send_test(hook, WebhookDispatcher(session_factory, client))
    assert result.success
    assert result.status_code == 204

    assert not await service.delete_webhook(2, hook.id)
    assert await service.delete_webhook(1, hook.id)
