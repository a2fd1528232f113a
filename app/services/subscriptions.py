from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Callable

from app.errors import NotFoundError
from app.models.subscription import SubscriptionRecord
from app.repositories.entitlement_repository import EntitlementRepository
from app.repositories.payment_repository import PaymentRepository, format_timestamp
from app.repositories.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)


class SubscriptionService:
    def __init__(
        self,
        subscription_repo: SubscriptionRepository,
        entitlement_repo: EntitlementRepository,
        payment_repo: PaymentRepository,
        clock: Callable[[], datetime] | None = None,
    ):
        self.subscription_repo = subscription_repo
        self.entitlement_repo = entitlement_repo
        self.payment_repo = payment_repo
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def cancel(self, owner_id: str) -> dict[str, Any]:
        subscription = await self.subscription_repo.get_active_for_owner(owner_id)
        if subscription is None:
            raise NotFoundError("No active subscription found", code="SUBSCRIPTION_NOT_FOUND")
        now = self.clock()
        canceled = await self.subscription_repo.cancel(subscription.subscription_id, now)
        if canceled:
            logger.info(
                "Subscription canceled: subscription_id=%s owner_id=%s",
                subscription.subscription_id,
                owner_id,
            )
        if await self.subscription_repo.get_active_for_owner(owner_id) is None:
            await self.entitlement_repo.revoke_pro(owner_id, now)
        return {
            "subscriptionId": subscription.subscription_id,
            "status": "canceled",
            "accessUntil": format_timestamp(subscription.next_payment_date),
        }

    async def status(self, owner_id: str) -> dict[str, Any]:
        """Plan tier, the authorized subscription and recent history for one owner."""
        entitlement = await self.entitlement_repo.get_by_owner(owner_id)
        active = await self.subscription_repo.get_active_for_owner(owner_id)
        subscriptions = await self.subscription_repo.list_for_owner(owner_id)
        payments = await self.payment_repo.list_for_owner(owner_id)
        return {
            "planTier": entitlement.plan_tier if entitlement else "free",
            "subscriptionStatus": entitlement.subscription_status if entitlement else "inactive",
            "active": entitlement is not None and entitlement.is_active,
            "subscription": _subscription_payload(active) if active else None,
            "subscriptions": [_subscription_payload(subscription) for subscription in subscriptions],
            "payments": [
                {
                    "paymentId": payment.payment_id,
                    "status": payment.status,
                    "planKind": payment.plan_kind,
                    "amount": payment.amount,
                    "currency": payment.currency,
                    "paidAt": format_timestamp(payment.paid_at),
                    "createdAt": format_timestamp(payment.created_at),
                }
                for payment in payments
            ],
        }


def _subscription_payload(subscription: SubscriptionRecord) -> dict[str, Any]:
    return {
        "subscriptionId": subscription.subscription_id,
        "status": subscription.status,
        "sourcePaymentId": subscription.source_payment_id,
        "amount": subscription.amount,
        "startDate": format_timestamp(subscription.start_date),
        "nextPaymentDate": format_timestamp(subscription.next_payment_date),
        "canceledAt": format_timestamp(subscription.canceled_at),
    }
