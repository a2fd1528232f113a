from __future__ import annotations

from aiohttp import test_utils
import pytest

from app.errors import StoreError
from app.repositories.payment_repository import PaymentRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.web import build_dependencies, create_app

ALICE = {"X-Authenticated-User": "user-a", "X-Authenticated-Email": "alice@example.com"}
BOB = {"X-Authenticated-User": "user-b", "X-Authenticated-Email": "bob@example.com"}


@pytest.fixture()
async def client(settings, db, gateway, notifier):
    deps, _ = build_dependencies(settings, db, gateway, notifier)
    async with test_utils.TestClient(test_utils.TestServer(create_app(deps))) as test_client:
        yield test_client


async def _create(client, headers=None, **body):
    body.setdefault("planKind", "monthly")
    resp = await client.post("/api/payments/pix", json=body, headers=headers or {})
    return resp, await resp.json()


async def test_create_guest_payment(client, gateway):
    resp, data = await _create(client, contactEmail="Guest@Example.com")

    assert resp.status == 200
    assert data["paymentId"] == "1001"
    assert data["status"] == "pending"
    assert data["guest"] is True
    assert data["qrCodeText"] == "00020126pix"
    assert data["amount"] == 29.90
    assert gateway.created[0]["email"] == "guest@example.com"


async def test_create_owned_payment_uses_identity_email(client, gateway):
    resp, data = await _create(client, headers=ALICE, userId="user-a")

    assert resp.status == 200
    assert data["guest"] is False
    assert gateway.created[0]["email"] == "alice@example.com"
    assert gateway.created[0]["reference"] == "user-a"


@pytest.mark.parametrize(
    "headers, body, status, code",
    [
        ({}, {"planKind": "weekly", "contactEmail": "g@example.com"}, 400, "INVALID_PLAN"),
        ({}, {"planKind": "monthly", "contactEmail": "not-an-email"}, 400, "INVALID_CONTACT"),
        ({}, {"planKind": "monthly", "userId": "user-a", "contactEmail": "g@example.com"}, 401, "UNAUTHORIZED"),
        (BOB, {"planKind": "monthly", "userId": "user-a"}, 403, "IDENTITY_MISMATCH"),
    ],
)
async def test_create_rejections(client, headers, body, status, code):
    resp = await client.post("/api/payments/pix", json=body, headers=headers)

    assert resp.status == status
    assert (await resp.json())["code"] == code


async def test_create_rejects_non_json(client):
    resp = await client.post("/api/payments/pix", data="plan=monthly")

    assert resp.status == 400
    assert (await resp.json())["code"] == "INVALID_JSON"


async def test_create_reports_gateway_failure(client, gateway):
    gateway.fail = True

    resp, data = await _create(client, contactEmail="g@example.com")

    assert resp.status == 502
    assert data["code"] == "GATEWAY_ERROR"


async def test_verify_requires_payment_id(client):
    resp = await client.get("/api/payments/verify-activation", headers=ALICE)

    assert resp.status == 400
    assert (await resp.json())["code"] == "PAYMENT_ID_REQUIRED"


async def test_verify_unknown_payment(client):
    resp = await client.get("/api/payments/verify-activation?paymentId=nope", headers=ALICE)

    assert resp.status == 404


async def test_verify_flow_for_owner(client, gateway):
    _, created = await _create(client, headers=ALICE)
    payment_id = created["paymentId"]

    pending = await client.get(f"/api/payments/verify-activation?paymentId={payment_id}", headers=ALICE)
    assert pending.status == 200
    assert (await pending.json())["ready"] is False

    forbidden = await client.get(f"/api/payments/verify-activation?paymentId={payment_id}", headers=BOB)
    assert forbidden.status == 403
    assert (await forbidden.json())["code"] == "PAYMENT_FORBIDDEN"

    anonymous = await client.get(f"/api/payments/verify-activation?paymentId={payment_id}")
    assert anonymous.status == 401

    gateway.approve(payment_id)
    ready = await client.get(f"/api/payments/verify-activation?paymentId={payment_id}", headers=ALICE)
    data = await ready.json()
    assert data["ready"] is True
    assert data["debug"]["planTier"] == "pro"


async def test_verify_wait_flags_still_processing(client, settings):
    settings.poll_interval_seconds = 0.01
    settings.poll_timeout_seconds = 0.03
    _, created = await _create(client, headers=ALICE)

    resp = await client.get(
        f"/api/payments/verify-activation?paymentId={created['paymentId']}&wait=1",
        headers=ALICE,
    )

    data = await resp.json()
    assert resp.status == 200
    assert data["ready"] is False
    assert data["stillProcessing"] is True


async def test_status_snapshot(client):
    _, created = await _create(client, contactEmail="g@example.com")

    resp = await client.get(f"/api/payments/status?paymentId={created['paymentId']}")

    data = await resp.json()
    assert resp.status == 200
    assert data["status"] == "pending"
    assert data["guest"] is True
    assert data["paidAt"] is None


async def test_request_id_is_echoed(client):
    resp = await client.get("/api/payments/status?paymentId=nope", headers={"X-Request-Id": "trace-42"})

    assert resp.status == 404
    assert resp.headers["X-Request-Id"] == "trace-42"


async def test_webhook_rejects_garbage(client):
    resp = await client.post("/api/webhooks/gateway", data="not json")

    assert resp.status == 400
    assert (await resp.json())["code"] == "WEBHOOK_PAYLOAD_INVALID"


async def test_webhook_probe(client):
    resp = await client.get("/api/webhooks/gateway")

    assert resp.status == 200


async def test_webhook_then_verify(client, gateway):
    _, created = await _create(client, headers=ALICE)
    payment_id = created["paymentId"]
    gateway.approve(payment_id)

    hook = await client.post("/api/webhooks/gateway", json={"type": "payment", "data": {"id": payment_id}})
    assert hook.status == 200
    assert (await hook.json())["outcome"] == "activated"

    verify = await client.get(f"/api/payments/verify-activation?paymentId={payment_id}", headers=ALICE)
    data = await verify.json()
    assert data["ready"] is True
    assert data["debug"]["outcome"] == "already_active"


async def test_webhook_query_string_variant(client, gateway):
    _, created = await _create(client, headers=ALICE)
    gateway.approve(created["paymentId"])

    resp = await client.post(f"/api/webhooks/gateway?data.id={created['paymentId']}&type=payment")

    assert resp.status == 200
    assert (await resp.json())["handled"] is True


async def test_webhook_gateway_down_asks_for_redelivery(client, gateway):
    _, created = await _create(client, headers=ALICE)
    gateway.fail = True

    resp = await client.post("/api/webhooks/gateway", json={"type": "payment", "data": {"id": created["paymentId"]}})

    assert resp.status == 503


async def test_link_guest_requires_identity(client):
    assert (await client.post("/api/payments/link-guest")).status == 401
    assert (await client.get("/api/payments/link-guest")).status == 401


async def test_guest_checkout_then_link(client, gateway):
    _, created = await _create(client, contactEmail="alice@example.com")
    payment_id = created["paymentId"]
    gateway.approve(payment_id)
    await client.post("/api/webhooks/gateway", json={"type": "payment", "data": {"id": payment_id}})

    pending = await (await client.get("/api/payments/link-guest", headers=ALICE)).json()
    assert pending["hasPendingPayments"] is True

    linked = await client.post("/api/payments/link-guest", headers=ALICE)
    data = await linked.json()
    assert linked.status == 200
    assert data["linked"] is True
    assert data["items"][0]["paymentId"] == payment_id

    again = await (await client.post("/api/payments/link-guest", headers=ALICE)).json()
    assert again["linked"] is False

    # a linked payment is private to its new owner
    verify = await client.get(f"/api/payments/verify-activation?paymentId={payment_id}", headers=BOB)
    assert verify.status == 403


async def test_link_guest_ignores_other_emails(client, gateway):
    _, created = await _create(client, contactEmail="someone@example.com")
    gateway.approve(created["paymentId"])
    await client.post("/api/webhooks/gateway", json={"type": "payment", "data": {"id": created["paymentId"]}})

    data = await (await client.post("/api/payments/link-guest", headers=ALICE)).json()

    assert data["linked"] is False


async def test_cancel_subscription(client, gateway):
    missing = await client.post("/api/subscriptions/cancel", headers=ALICE)
    assert missing.status == 404
    assert (await missing.json())["code"] == "SUBSCRIPTION_NOT_FOUND"

    _, created = await _create(client, headers=ALICE)
    gateway.approve(created["paymentId"])
    await client.get(f"/api/payments/verify-activation?paymentId={created['paymentId']}", headers=ALICE)

    resp = await client.post("/api/subscriptions/cancel", headers=ALICE)
    data = await resp.json()
    assert resp.status == 200
    assert data["subscription"]["status"] == "canceled"


async def test_cancel_requires_identity(client):
    assert (await client.post("/api/subscriptions/cancel")).status == 401


async def test_webhook_store_failure_is_retried_by_gateway(client, gateway, db, monkeypatch):
    _, created = await _create(client, headers=ALICE)
    payment_id = created["paymentId"]
    gateway.approve(payment_id)

    async def broken_mark_paid(self, *args, **kwargs):
        raise StoreError("database is locked")

    monkeypatch.setattr(PaymentRepository, "mark_paid", broken_mark_paid)
    failed = await client.post("/api/webhooks/gateway", json={"type": "payment", "data": {"id": payment_id}})
    assert failed.status == 500
    assert (await failed.json())["code"] == "STORE_ERROR"

    monkeypatch.undo()
    redelivered = await client.post("/api/webhooks/gateway", json={"type": "payment", "data": {"id": payment_id}})
    assert redelivered.status == 200
    assert (await redelivered.json())["ready"] is True
    assert len(await SubscriptionRepository(db).list_for_owner("user-a")) == 1


async def test_subscription_status_endpoint(client, gateway):
    assert (await client.get("/api/subscriptions/status")).status == 401

    _, created = await _create(client, headers=ALICE)
    gateway.approve(created["paymentId"])
    await client.get(f"/api/payments/verify-activation?paymentId={created['paymentId']}", headers=ALICE)

    resp = await client.get("/api/subscriptions/status", headers=ALICE)
    data = await resp.json()
    assert resp.status == 200
    assert data["planTier"] == "pro"
    assert data["subscription"]["sourcePaymentId"] == created["paymentId"]
    assert data["payments"][0]["paymentId"] == created["paymentId"]


async def test_status_reads_stored_state_without_gateway(client, gateway):
    _, created = await _create(client, headers=ALICE)
    payment_id = created["paymentId"]
    gateway.approve(payment_id)

    before = await (await client.get(f"/api/payments/status?paymentId={payment_id}", headers=ALICE)).json()
    assert (before["status"], before["outcome"], before["ready"]) == ("pending", "awaiting_payment", False)
    assert gateway.fetch_calls == []

    await client.get(f"/api/payments/verify-activation?paymentId={payment_id}", headers=ALICE)
    after = await (await client.get(f"/api/payments/status?paymentId={payment_id}", headers=ALICE)).json()
    assert (after["status"], after["outcome"], after["ready"]) == ("paid", "already_active", True)

    forbidden = await client.get(f"/api/payments/status?paymentId={payment_id}", headers=BOB)
    assert forbidden.status == 403
