"""Gateway push notifications.

The payload only tells us *which* payment changed. Its claimed status is never
used: the coordinator re-fetches the authoritative status from the gateway.
"""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import logging
import time
from typing import Any, Mapping

from app.errors import NotFoundError, UnauthorizedError, ValidationError
from app.services.activation import ActivationCoordinator

logger = logging.getLogger(__name__)

_TOPIC_TYPES = {
    "payment": "payment",
    "merchant_order": "payment",
    "authorized_payment": "payment",
    "subscription": "subscription",
    "preapproval": "subscription",
}


@dataclass
class WebhookEvent:
    resource_id: str
    type: str
    action: str
    api_version: str


@dataclass
class WebhookOutcome:
    status_code: int
    body: dict[str, Any]


def _id_from_resource(resource: str) -> str:
    return resource.rstrip("/").rsplit("/", maxsplit=1)[-1]


def parse_webhook_payload(body: Any, query: Mapping[str, str] | None = None) -> WebhookEvent | None:
    query = query or {}
    if isinstance(body, dict):
        data = body.get("data")
        if isinstance(data, dict) and data.get("id"):
            return WebhookEvent(
                resource_id=str(data["id"]),
                type=str(body.get("type") or "payment"),
                action=str(body.get("action") or "created"),
                api_version=str(body.get("api_version") or "v1"),
            )
        resource = body.get("resource")
        if isinstance(resource, str) and resource.strip():
            topic = str(body.get("topic") or "payment")
            return WebhookEvent(
                resource_id=_id_from_resource(resource.strip()),
                type=_TOPIC_TYPES.get(topic, topic),
                action="updated",
                api_version="v0",
            )
    query_id = query.get("data.id") or query.get("id")
    if query_id:
        topic = query.get("type") or query.get("topic") or "payment"
        return WebhookEvent(
            resource_id=str(query_id),
            type=_TOPIC_TYPES.get(topic, topic),
            action="updated",
            api_version="query",
        )
    return None


def validate_signature(
    secret: str,
    x_signature: str | None,
    x_request_id: str | None,
    data_id: str,
    max_age_seconds: int = 900,
    now: float | None = None,
) -> None:
    if not x_signature:
        raise UnauthorizedError("Missing x-signature header", code="WEBHOOK_SIGNATURE_MISSING")
    if not x_request_id:
        raise UnauthorizedError("Missing x-request-id header", code="WEBHOOK_SIGNATURE_MISSING")
    parts: dict[str, str] = {}
    for part in x_signature.split(","):
        key, _, value = part.strip().partition("=")
        parts[key] = value
    ts = parts.get("ts")
    received_hash = parts.get("v1")
    if not ts or not received_hash:
        raise UnauthorizedError("Invalid x-signature format", code="WEBHOOK_SIGNATURE_INVALID")
    try:
        timestamp = int(ts)
    except ValueError as exc:
        raise UnauthorizedError("Invalid x-signature timestamp", code="WEBHOOK_SIGNATURE_INVALID") from exc
    # gateways have sent both seconds and milliseconds here
    if timestamp > 10**12:
        timestamp //= 1000
    current = int(now if now is not None else time.time())
    if current - timestamp > max_age_seconds:
        raise UnauthorizedError("Webhook signature expired", code="WEBHOOK_SIGNATURE_EXPIRED")
    manifest = f"id:{data_id};request-id:{x_request_id};ts:{ts};"
    expected = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, received_hash):
        raise UnauthorizedError("Webhook signature mismatch", code="WEBHOOK_SIGNATURE_INVALID")


class WebhookProcessor:
    def __init__(
        self,
        coordinator: ActivationCoordinator,
        webhook_secret: str = "",
        max_age_seconds: int = 900,
    ):
        self.coordinator = coordinator
        self.webhook_secret = webhook_secret
        self.max_age_seconds = max_age_seconds

    async def process(
        self,
        body: Any,
        query: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> WebhookOutcome:
        headers = headers or {}
        event = parse_webhook_payload(body, query)
        if event is None:
            raise ValidationError("Invalid webhook payload", code="WEBHOOK_PAYLOAD_INVALID")

        if self.webhook_secret:
            validate_signature(
                self.webhook_secret,
                headers.get("x-signature"),
                headers.get("x-request-id"),
                event.resource_id,
                self.max_age_seconds,
            )

        if event.type != "payment":
            logger.info("Webhook ignored: type=%s id=%s", event.type, event.resource_id)
            return WebhookOutcome(200, {"received": True, "handled": False})

        try:
            result = await self.coordinator.activate(event.resource_id)
        except NotFoundError:
            logger.warning("Webhook for unknown payment: payment_id=%s", event.resource_id)
            return WebhookOutcome(200, {"received": True, "handled": False})

        logger.info(
            "Webhook processed: payment_id=%s action=%s outcome=%s ready=%s",
            event.resource_id,
            event.action,
            result.outcome,
            result.ready,
        )
        if result.outcome == "gateway_unavailable":
            return WebhookOutcome(503, {"received": True, "handled": False, "retry": True})
        return WebhookOutcome(
            200,
            {"received": True, "handled": True, "outcome": result.outcome, "ready": result.ready},
        )
