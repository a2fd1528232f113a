from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from app.models.payment import PaymentRecord
from app.models.subscription import Entitlement, SubscriptionRecord

ActivationOutcome = Literal[
    "activated",
    "already_active",
    "awaiting_payment",
    "awaiting_link",
    "gateway_unavailable",
    "owner_has_subscription",
    "expired",
]


@dataclass
class ActivationResult:
    payment_id: str
    payment_approved: bool
    entitlement_active: bool
    subscription_created: bool
    outcome: str
    gateway_status: str | None = None
    payment: PaymentRecord | None = None
    subscription: SubscriptionRecord | None = None
    entitlement: Entitlement | None = None

    @property
    def ready(self) -> bool:
        return self.payment_approved and self.entitlement_active and self.subscription_created

    @property
    def awaiting_link(self) -> bool:
        return self.payment is not None and self.payment.is_guest and self.payment_approved


@dataclass
class VerificationResult:
    activation: ActivationResult
    duration_ms: int
    checked_at: str
    still_processing: bool = False

    @property
    def ready(self) -> bool:
        return self.activation.ready


@dataclass
class LinkResult:
    linked: bool
    message: str
    items: list[dict[str, Any]] = field(default_factory=list)
