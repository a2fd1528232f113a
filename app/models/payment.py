from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

PlanKind = Literal["monthly", "annual", "bundle"]
PaymentStatus = Literal["pending", "paid", "linked", "expired"]
GatewayStatus = Literal["pending", "approved", "rejected", "expired"]

PLAN_KINDS: tuple[str, ...] = ("monthly", "annual", "bundle")
PAID_STATUSES = frozenset({"paid", "linked"})

# Days until the next payment is due; bundles do not renew.
PLAN_PERIOD_DAYS: dict[str, int | None] = {
    "monthly": 30,
    "annual": 365,
    "bundle": None,
}


@dataclass
class PaymentRecord:
    payment_id: str
    owner_id: str | None
    contact_email: str
    amount: float
    currency: str
    plan_kind: str
    status: str
    paid_at: datetime | None
    linked_at: datetime | None
    qr_code: str | None
    qr_code_text: str | None
    expires_at: datetime | None
    attempts: int
    last_error: str | None
    created_at: datetime | None
    updated_at: datetime | None

    @property
    def is_guest(self) -> bool:
        return self.owner_id is None

    @property
    def is_paid(self) -> bool:
        return self.status in PAID_STATUSES


@dataclass
class GatewayPayment:
    payment_id: str
    status: str
    approved_at: datetime | None = None
    raw_status: str | None = None
    status_detail: str | None = None


@dataclass
class GatewayPixPayment:
    payment_id: str
    status: str
    qr_code: str | None
    qr_code_text: str | None
    expires_at: datetime | None


@dataclass
class PixPaymentIntent:
    payment_id: str
    status: str
    amount: float
    currency: str
    plan_kind: str
    qr_code: str | None
    qr_code_text: str | None
    expires_at: datetime | None
    owner_id: str | None
