from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
import time
from typing import Any

from app.models.activation import VerificationResult
from app.models.identity import Identity
from app.services.activation import ActivationCoordinator
from app.services.payments import ensure_payment_access

logger = logging.getLogger(__name__)


class PollingVerifier:
    def __init__(self, coordinator: ActivationCoordinator):
        self.coordinator = coordinator

    async def verify(self, payment_id: str, identity: Identity | None) -> VerificationResult:
        started = time.monotonic()
        payment = await self.coordinator.load_payment(payment_id)
        ensure_payment_access(payment, identity)

        activation = await self.coordinator.activate(payment_id)
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Activation verified in %sms: payment_id=%s approved=%s entitlement=%s subscription=%s ready=%s",
            duration_ms,
            payment_id,
            activation.payment_approved,
            activation.entitlement_active,
            activation.subscription_created,
            activation.ready,
        )
        return VerificationResult(
            activation=activation,
            duration_ms=duration_ms,
            checked_at=datetime.now(timezone.utc).isoformat(),
        )


def verification_payload(result: VerificationResult) -> dict[str, Any]:
    activation = result.activation
    entitlement = activation.entitlement
    subscription = activation.subscription
    return {
        "paymentApproved": activation.payment_approved,
        "profileActivated": activation.entitlement_active,
        "subscriptionCreated": activation.subscription_created,
        "ready": activation.ready,
        "awaitingLink": activation.awaiting_link,
        "stillProcessing": result.still_processing,
        "debug": {
            "paymentStatus": activation.payment.status if activation.payment else None,
            "gatewayStatus": activation.gateway_status,
            "outcome": activation.outcome,
            "planTier": entitlement.plan_tier if entitlement else "none",
            "subscriptionStatus": entitlement.subscription_status if entitlement else "none",
            "subscriptionId": subscription.subscription_id if subscription else None,
            "durationMs": result.duration_ms,
            "timestamp": result.checked_at,
        },
    }


async def wait_for_activation(
    verifier: PollingVerifier,
    payment_id: str,
    identity: Identity | None,
    interval_seconds: float = 3.0,
    timeout_seconds: float = 180.0,
) -> VerificationResult:
    """Polls until ready; on timeout returns the last result flagged ``still_processing``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_seconds
    while True:
        result = await verifier.verify(payment_id, identity)
        if result.ready:
            return result
        if loop.time() + interval_seconds > deadline:
            result.still_processing = True
            return result
        await asyncio.sleep(interval_seconds)
