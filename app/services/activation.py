"""Idempotent activation of a PIX payment into a subscription and a pro entitlement.

Both the webhook path and the polling path call :meth:`ActivationCoordinator.activate`.
Each step is a single conditional write whose post-condition is re-checked, so
callers may race, repeat or interleave and still converge on one ``paid``
transition, one subscription per payment and a ``pro/active`` entitlement.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Callable
from uuid import uuid4

from app.errors import GatewayError, NotFoundError
from app.models.activation import ActivationResult
from app.models.payment import PLAN_PERIOD_DAYS, PaymentRecord
from app.repositories.entitlement_repository import EntitlementRepository
from app.repositories.payment_repository import PaymentRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.services.alerts import AdminNotifier
from app.services.gateway import PaymentGateway

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_payment_date(plan_kind: str, start: datetime) -> datetime | None:
    days = PLAN_PERIOD_DAYS.get(plan_kind)
    if days is None:
        return None
    return start + timedelta(days=days)


def external_subscription_id(payment_id: str) -> str:
    return f"pix_{payment_id}"


class ActivationCoordinator:
    def __init__(
        self,
        payment_repo: PaymentRepository,
        subscription_repo: SubscriptionRepository,
        entitlement_repo: EntitlementRepository,
        gateway: PaymentGateway,
        notifier: AdminNotifier | None = None,
        clock: Clock = _utcnow,
    ):
        self.payment_repo = payment_repo
        self.subscription_repo = subscription_repo
        self.entitlement_repo = entitlement_repo
        self.gateway = gateway
        self.notifier = notifier
        self.clock = clock

    async def load_payment(self, payment_id: str) -> PaymentRecord:
        payment = await self.payment_repo.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found", code="PAYMENT_NOT_FOUND", details={"paymentId": payment_id})
        return payment

    async def activate(self, payment_id: str) -> ActivationResult:
        payment = await self.load_payment(payment_id)
        gateway_status: str | None = None

        if payment.status == "expired":
            return await self._read_result(payment.payment_id, "expired", gateway_status)

        if not payment.is_paid:
            try:
                gateway_payment = await self.gateway.fetch_payment_status(payment.payment_id)
            except GatewayError as exc:
                logger.warning(
                    "Gateway status unavailable, retry later: payment_id=%s error=%s",
                    payment.payment_id,
                    exc,
                )
                return await self._read_result(payment.payment_id, "gateway_unavailable", None)
            gateway_status = gateway_payment.status
            if gateway_status != "approved":
                logger.info(
                    "Payment not approved yet: payment_id=%s gateway_status=%s",
                    payment.payment_id,
                    gateway_status,
                )
                return await self._read_result(payment.payment_id, "awaiting_payment", gateway_status)

            now = self.clock()
            won = await self.payment_repo.mark_paid(
                payment.payment_id,
                gateway_payment.approved_at or now,
                now,
            )
            if won:
                logger.info("Payment marked paid: payment_id=%s", payment.payment_id)
            payment = await self.load_payment(payment.payment_id)
            if not payment.is_paid:
                # expired concurrently by the sweeper; expiry is terminal
                return await self._read_result(payment.payment_id, "expired", gateway_status)

        if payment.owner_id is None:
            return await self._read_result(payment.payment_id, "awaiting_link", gateway_status)

        outcome = await self._ensure_subscription(payment)
        active = await self.subscription_repo.get_active_for_owner(payment.owner_id)
        if active is not None:
            await self.entitlement_repo.grant_pro(payment.owner_id, active.external_id, self.clock())
        return await self._read_result(payment.payment_id, outcome, gateway_status)

    async def complete_paid(self, payment_id: str) -> ActivationResult:
        """Steps from subscription creation onward for a payment already known to be paid."""
        payment = await self.load_payment(payment_id)
        if not payment.is_paid:
            return await self._read_result(payment_id, "awaiting_payment", None)
        return await self.activate(payment_id)

    async def snapshot(self, payment_id: str) -> ActivationResult:
        payment = await self.load_payment(payment_id)
        return await self._read_result(payment.payment_id, _snapshot_outcome(payment), None)

    async def _ensure_subscription(self, payment: PaymentRecord) -> str:
        existing = await self.subscription_repo.get_by_source_payment(payment.payment_id)
        if existing is not None:
            return "already_active"

        now = self.clock()
        start = payment.paid_at or now
        created = await self.subscription_repo.create_authorized(
            subscription_id=f"sub_{uuid4().hex}",
            owner_id=payment.owner_id,
            source_payment_id=payment.payment_id,
            start_date=start,
            next_payment_date=next_payment_date(payment.plan_kind, start),
            external_id=external_subscription_id(payment.payment_id),
            amount=payment.amount,
            now=now,
        )
        if created:
            logger.info(
                "Subscription created: payment_id=%s owner_id=%s plan=%s",
                payment.payment_id,
                payment.owner_id,
                payment.plan_kind,
            )
            return "activated"

        if await self.subscription_repo.get_by_source_payment(payment.payment_id) is not None:
            return "already_active"

        logger.warning(
            "Owner already holds an authorized subscription, payment left unapplied: payment_id=%s owner_id=%s",
            payment.payment_id,
            payment.owner_id,
        )
        first_refusal = await self.payment_repo.mark_refusal_notified(payment.payment_id, now)
        if self.notifier and first_refusal:
            await self.notifier.notify(
                "Paid PIX payment not applied: owner already has an active subscription.\n"
                f"Payment: {payment.payment_id}\nOwner: {payment.owner_id}"
            )
        return "owner_has_subscription"

    async def _read_result(self, payment_id: str, outcome: str, gateway_status: str | None) -> ActivationResult:
        payment = await self.load_payment(payment_id)
        subscription = None
        entitlement = None
        if payment.owner_id is not None:
            subscription = await self.subscription_repo.get_active_for_owner(payment.owner_id)
            entitlement = await self.entitlement_repo.get_by_owner(payment.owner_id)
        return ActivationResult(
            payment_id=payment.payment_id,
            payment_approved=payment.is_paid and payment.paid_at is not None,
            entitlement_active=entitlement is not None and entitlement.is_active,
            subscription_created=subscription is not None,
            outcome=outcome,
            gateway_status=gateway_status,
            payment=payment,
            subscription=subscription,
            entitlement=entitlement,
        )


def _snapshot_outcome(payment: PaymentRecord) -> str:
    if payment.status == "expired":
        return "expired"
    if not payment.is_paid:
        return "awaiting_payment"
    if payment.owner_id is None:
        return "awaiting_link"
    return "already_active"
