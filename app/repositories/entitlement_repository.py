from __future__ import annotations

from datetime import datetime

from app.db import Database
from app.models.subscription import Entitlement
from app.repositories.payment_repository import format_timestamp, parse_timestamp


class EntitlementRepository:
    def __init__(self, db: Database):
        self._db = db

    async def get_by_owner(self, owner_id: str) -> Entitlement | None:
        row = await self._db.fetchone(
            """
            SELECT owner_id, plan_tier, subscription_status, external_subscription_id, updated_at
            FROM entitlements
            WHERE owner_id = ?
            """,
            owner_id,
        )
        if not row:
            return None
        return Entitlement(
            owner_id=row[0],
            plan_tier=row[1],
            subscription_status=row[2],
            external_subscription_id=row[3],
            updated_at=parse_timestamp(row[4]),
        )

    async def grant_pro(self, owner_id: str, external_subscription_id: str | None, now: datetime) -> None:
        # admin is assigned by hand and must survive activations
        await self._db.execute(
            """
            INSERT INTO entitlements (
                owner_id,
                plan_tier,
                subscription_status,
                external_subscription_id,
                updated_at
            )
            VALUES (?, 'pro', 'active', ?, ?)
            ON CONFLICT(owner_id) DO UPDATE SET
                plan_tier = CASE WHEN entitlements.plan_tier = 'admin' THEN 'admin' ELSE 'pro' END,
                subscription_status = 'active',
                external_subscription_id = excluded.external_subscription_id,
                updated_at = excluded.updated_at
            """,
            owner_id,
            external_subscription_id,
            format_timestamp(now),
        )

    async def revoke_pro(self, owner_id: str, now: datetime) -> None:
        await self._db.execute(
            """
            UPDATE entitlements
            SET plan_tier = CASE WHEN plan_tier = 'admin' THEN 'admin' ELSE 'free' END,
                subscription_status = 'canceled',
                updated_at = ?
            WHERE owner_id = ?
            """,
            format_timestamp(now),
            owner_id,
        )
