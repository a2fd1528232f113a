from __future__ import annotations

import hashlib
import hmac

import pytest

from app.errors import UnauthorizedError, ValidationError
from app.services.webhooks import WebhookProcessor, parse_webhook_payload, validate_signature

SECRET = "whsec-test"
TS = 1_772_366_400


def _sign(data_id: str, request_id: str = "req-1", ts: int = TS, secret: str = SECRET) -> str:
    manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
    digest = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return f"ts={ts},v1={digest}"


def test_parse_v1_body():
    event = parse_webhook_payload({"type": "payment", "action": "payment.updated", "data": {"id": 123}})

    assert event.resource_id == "123"
    assert event.type == "payment"
    assert event.action == "payment.updated"


def test_parse_v0_resource_body():
    event = parse_webhook_payload({"topic": "merchant_order", "resource": "https://api.example/v1/payments/987"})

    assert event.resource_id == "987"
    assert event.type == "payment"
    assert event.api_version == "v0"


def test_parse_query_fallback():
    event = parse_webhook_payload(None, {"data.id": "55", "type": "preapproval"})

    assert event.resource_id == "55"
    assert event.type == "subscription"


def test_parse_rejects_empty_payload():
    assert parse_webhook_payload({"type": "payment"}) is None
    assert parse_webhook_payload(["not", "a", "dict"]) is None


def test_signature_accepts_valid_header():
    validate_signature(SECRET, _sign("123"), "req-1", "123", now=TS + 10)


def test_signature_accepts_millisecond_timestamp():
    ts_ms = TS * 1000
    validate_signature(SECRET, _sign("123", ts=ts_ms), "req-1", "123", now=TS + 10)


@pytest.mark.parametrize(
    "header, request_id",
    [
        (None, "req-1"),
        ("ts=1,v1=abc", None),
        ("garbage", "req-1"),
        ("ts=abc,v1=deadbeef", "req-1"),
    ],
)
def test_signature_rejects_malformed_headers(header, request_id):
    with pytest.raises(UnauthorizedError):
        validate_signature(SECRET, header, request_id, "123", now=TS)


def test_signature_rejects_tampered_id():
    with pytest.raises(UnauthorizedError) as excinfo:
        validate_signature(SECRET, _sign("123"), "req-1", "124", now=TS)

    assert excinfo.value.code == "WEBHOOK_SIGNATURE_INVALID"


def test_signature_rejects_stale_timestamp():
    with pytest.raises(UnauthorizedError) as excinfo:
        validate_signature(SECRET, _sign("123"), "req-1", "123", max_age_seconds=900, now=TS + 901)

    assert excinfo.value.code == "WEBHOOK_SIGNATURE_EXPIRED"


async def test_processor_activates_approved_payment(coordinator, gateway, make_payment):
    await make_payment()
    gateway.approve("pay-1")
    processor = WebhookProcessor(coordinator)

    outcome = await processor.process({"type": "payment", "data": {"id": "pay-1"}})

    assert outcome.status_code == 200
    assert outcome.body == {"received": True, "handled": True, "outcome": "activated", "ready": True}


async def test_processor_ignores_claimed_status(coordinator, gateway, make_payment, payment_repo):
    await make_payment()
    processor = WebhookProcessor(coordinator)

    outcome = await processor.process({"type": "payment", "data": {"id": "pay-1", "status": "approved"}})

    assert outcome.body["ready"] is False
    assert (await payment_repo.get_payment("pay-1")).status == "pending"


async def test_processor_rejects_unparseable_payload(coordinator):
    with pytest.raises(ValidationError):
        await WebhookProcessor(coordinator).process({"hello": "world"})


async def test_processor_checks_signature_when_secret_configured(coordinator, make_payment):
    await make_payment()
    processor = WebhookProcessor(coordinator, webhook_secret=SECRET)

    with pytest.raises(UnauthorizedError):
        await processor.process(
            {"type": "payment", "data": {"id": "pay-1"}},
            headers={"x-signature": "ts=1,v1=bad", "x-request-id": "req-1"},
        )


async def test_processor_acknowledges_unknown_payment(coordinator):
    outcome = await WebhookProcessor(coordinator).process({"type": "payment", "data": {"id": "ghost"}})

    assert outcome.status_code == 200
    assert outcome.body["handled"] is False


async def test_processor_acknowledges_other_topics(coordinator, gateway):
    outcome = await WebhookProcessor(coordinator).process({"type": "subscription_preapproval", "data": {"id": "1"}})

    assert outcome.status_code == 200
    assert outcome.body["handled"] is False
    assert gateway.fetch_calls == []


async def test_processor_asks_for_retry_when_gateway_down(coordinator, gateway, make_payment):
    await make_payment()
    gateway.fail = True

    outcome = await WebhookProcessor(coordinator).process({"type": "payment", "data": {"id": "pay-1"}})

    assert outcome.status_code == 503
    assert outcome.body["retry"] is True


async def test_late_webhook_after_poll_is_noop(coordinator, gateway, make_payment, subscription_repo):
    await make_payment()
    gateway.approve("pay-1")
    polled = await coordinator.activate("pay-1")

    outcome = await WebhookProcessor(coordinator).process({"type": "payment", "data": {"id": "pay-1"}})

    assert polled.outcome == "activated"
    assert outcome.body["outcome"] == "already_active"
    assert len(await subscription_repo.list_for_owner("user-a")) == 1
