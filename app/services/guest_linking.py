from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Callable

from app.errors import UnauthorizedError
from app.models.activation import LinkResult
from app.models.identity import Identity
from app.repositories.payment_repository import PaymentRepository, format_timestamp
from app.repositories.subscription_repository import SubscriptionRepository
from app.services.activation import ActivationCoordinator
from app.services.payments import normalize_email

logger = logging.getLogger(__name__)


class GuestLinkingResolver:
    """Promotes the newest paid guest payment for an email to the identity that now owns the email.

    Only one payment is promoted per call so historical guest payments never
    stack into several concurrent subscriptions.
    """

    def __init__(
        self,
        payment_repo: PaymentRepository,
        subscription_repo: SubscriptionRepository,
        coordinator: ActivationCoordinator,
        clock: Callable[[], datetime] | None = None,
    ):
        self.payment_repo = payment_repo
        self.subscription_repo = subscription_repo
        self.coordinator = coordinator
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def link_guest_payments(self, identity: Identity, contact_email: str | None) -> LinkResult:
        email = normalize_email(contact_email)
        if not email:
            raise UnauthorizedError("Authenticated email is required", code="EMAIL_REQUIRED")

        existing = await self.subscription_repo.get_active_for_owner(identity.user_id)
        if existing is not None:
            logger.info(
                "Guest link skipped, subscription already active: owner_id=%s subscription_id=%s",
                identity.user_id,
                existing.subscription_id,
            )
            return LinkResult(linked=False, message="User already has an active subscription")

        payment = await self.payment_repo.latest_guest_payment(email)
        if payment is None:
            logger.info("No guest payments to link: owner_id=%s", identity.user_id)
            return LinkResult(linked=False, message="No pending payments found for this email")

        bound = await self.payment_repo.bind_owner(payment.payment_id, identity.user_id, self.clock())
        if not bound:
            current = await self.payment_repo.get_payment(payment.payment_id)
            if current is None or current.owner_id != identity.user_id:
                logger.warning(
                    "Guest payment claimed concurrently: payment_id=%s owner_id=%s",
                    payment.payment_id,
                    identity.user_id,
                )
                return LinkResult(linked=False, message="Payment was already linked")
        else:
            logger.info("Guest payment bound: payment_id=%s owner_id=%s", payment.payment_id, identity.user_id)

        result = await self.coordinator.complete_paid(payment.payment_id)
        if not result.ready:
            logger.warning(
                "Guest payment bound but activation incomplete: payment_id=%s outcome=%s",
                payment.payment_id,
                result.outcome,
            )
            return LinkResult(linked=False, message="Payment linked, activation still processing")

        subscription = result.subscription
        if subscription is None or subscription.source_payment_id != payment.payment_id:
            # the owner got a subscription from another payment meanwhile
            logger.warning(
                "Guest payment bound but not applied: payment_id=%s outcome=%s",
                payment.payment_id,
                result.outcome,
            )
            return LinkResult(linked=False, message="User already has an active subscription")

        return LinkResult(
            linked=True,
            message="Payment successfully linked to your account",
            items=[
                {
                    "type": "pix",
                    "paymentId": payment.payment_id,
                    "amount": payment.amount,
                    "planKind": payment.plan_kind,
                    "nextPaymentDate": format_timestamp(subscription.next_payment_date),
                }
            ],
        )

    async def pending_guest_payments(self, contact_email: str | None) -> list[dict[str, Any]]:
        email = normalize_email(contact_email)
        if not email:
            return []
        payments = await self.payment_repo.list_guest_payments(email)
        return [
            {
                "paymentId": payment.payment_id,
                "amount": payment.amount,
                "planKind": payment.plan_kind,
                "paidAt": format_timestamp(payment.paid_at),
            }
            for payment in payments
        ]
