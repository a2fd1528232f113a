from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

PlanTier = Literal["free", "pro", "admin"]
EntitlementStatus = Literal["inactive", "active", "paused", "canceled"]
SubscriptionStatus = Literal["pending", "authorized", "paused", "canceled"]

PREMIUM_TIERS = frozenset({"pro", "admin"})


@dataclass
class SubscriptionRecord:
    subscription_id: str
    owner_id: str
    status: str
    start_date: datetime
    next_payment_date: datetime | None
    source_payment_id: str
    external_id: str | None
    amount: float | None
    created_at: datetime | None
    canceled_at: datetime | None


@dataclass
class Entitlement:
    owner_id: str
    plan_tier: str
    subscription_status: str
    external_subscription_id: str | None
    updated_at: datetime | None

    @property
    def is_active(self) -> bool:
        return self.plan_tier in PREMIUM_TIERS and self.subscription_status == "active"
