from __future__ import annotations

from datetime import datetime

from app.db import Database
from app.models.subscription import SubscriptionRecord
from app.repositories.payment_repository import format_timestamp, parse_timestamp

_SUBSCRIPTION_COLUMNS = """
    subscription_id,
    owner_id,
    status,
    start_date,
    next_payment_date,
    source_payment_id,
    external_id,
    amount,
    created_at,
    canceled_at
"""


def _row_to_record(row: tuple) -> SubscriptionRecord:
    return SubscriptionRecord(
        subscription_id=row[0],
        owner_id=row[1],
        status=row[2],
        start_date=parse_timestamp(row[3]),
        next_payment_date=parse_timestamp(row[4]),
        source_payment_id=row[5],
        external_id=row[6],
        amount=row[7],
        created_at=parse_timestamp(row[8]),
        canceled_at=parse_timestamp(row[9]),
    )


class SubscriptionRepository:
    def __init__(self, db: Database):
        self._db = db

    async def create_authorized(
        self,
        subscription_id: str,
        owner_id: str,
        source_payment_id: str,
        start_date: datetime,
        next_payment_date: datetime | None,
        external_id: str | None,
        amount: float | None,
        now: datetime,
    ) -> bool:
        """Inserts unless this payment already has a subscription or the owner holds an authorized one."""
        rowcount = await self._db.execute_with_rowcount(
            """
            INSERT OR IGNORE INTO subscriptions (
                subscription_id,
                owner_id,
                status,
                start_date,
                next_payment_date,
                source_payment_id,
                external_id,
                amount,
                created_at
            )
            VALUES (?, ?, 'authorized', ?, ?, ?, ?, ?, ?)
            """,
            subscription_id,
            owner_id,
            format_timestamp(start_date),
            format_timestamp(next_payment_date),
            source_payment_id,
            external_id,
            amount,
            format_timestamp(now),
        )
        return rowcount == 1

    async def get_by_source_payment(self, payment_id: str) -> SubscriptionRecord | None:
        row = await self._db.fetchone(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE source_payment_id = ?",
            payment_id,
        )
        if not row:
            return None
        return _row_to_record(row)

    async def get_active_for_owner(self, owner_id: str) -> SubscriptionRecord | None:
        row = await self._db.fetchone(
            f"""
            SELECT {_SUBSCRIPTION_COLUMNS}
            FROM subscriptions
            WHERE owner_id = ? AND status = 'authorized'
            """,
            owner_id,
        )
        if not row:
            return None
        return _row_to_record(row)

    async def list_for_owner(self, owner_id: str) -> list[SubscriptionRecord]:
        rows = await self._db.fetchall(
            f"""
            SELECT {_SUBSCRIPTION_COLUMNS}
            FROM subscriptions
            WHERE owner_id = ?
            ORDER BY created_at DESC
            """,
            owner_id,
        )
        return [_row_to_record(row) for row in rows]

    async def cancel(self, subscription_id: str, now: datetime) -> bool:
        rowcount = await self._db.execute_with_rowcount(
            """
            UPDATE subscriptions
            SET status = 'canceled', canceled_at = ?
            WHERE subscription_id = ? AND status = 'authorized'
            """,
            format_timestamp(now),
            subscription_id,
        )
        return rowcount == 1
