from __future__ import annotations

from datetime import datetime, timezone

from app.db import Database
from app.models.payment import PaymentRecord

_PAYMENT_COLUMNS = """
    payment_id,
    owner_id,
    contact_email,
    amount,
    currency,
    plan_kind,
    status,
    paid_at,
    linked_at,
    qr_code,
    qr_code_text,
    expires_at,
    attempts,
    last_error,
    created_at,
    updated_at
"""


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _row_to_record(row: tuple) -> PaymentRecord:
    return PaymentRecord(
        payment_id=row[0],
        owner_id=row[1],
        contact_email=row[2],
        amount=row[3],
        currency=row[4],
        plan_kind=row[5],
        status=row[6],
        paid_at=parse_timestamp(row[7]),
        linked_at=parse_timestamp(row[8]),
        qr_code=row[9],
        qr_code_text=row[10],
        expires_at=parse_timestamp(row[11]),
        attempts=row[12] or 0,
        last_error=row[13],
        created_at=parse_timestamp(row[14]),
        updated_at=parse_timestamp(row[15]),
    )


class PaymentRepository:
    def __init__(self, db: Database):
        self._db = db

    async def create_payment(
        self,
        payment_id: str,
        owner_id: str | None,
        contact_email: str,
        amount: float,
        currency: str,
        plan_kind: str,
        qr_code: str | None,
        qr_code_text: str | None,
        expires_at: datetime | None,
        now: datetime,
    ) -> bool:
        rowcount = await self._db.execute_with_rowcount(
            """
            INSERT OR IGNORE INTO payments (
                payment_id,
                owner_id,
                contact_email,
                amount,
                currency,
                plan_kind,
                status,
                qr_code,
                qr_code_text,
                expires_at,
                attempts,
                created_at,
                updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?, 0, ?, ?)
            """,
            payment_id,
            owner_id,
            contact_email,
            amount,
            currency,
            plan_kind,
            qr_code,
            qr_code_text,
            format_timestamp(expires_at),
            format_timestamp(now),
            format_timestamp(now),
        )
        return rowcount == 1

    async def get_payment(self, payment_id: str) -> PaymentRecord | None:
        row = await self._db.fetchone(
            f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE payment_id = ?",
            payment_id,
        )
        if not row:
            return None
        return _row_to_record(row)

    async def mark_paid(self, payment_id: str, paid_at: datetime, now: datetime) -> bool:
        """First-writer-wins transition; True only for the caller that moved it out of pending."""
        rowcount = await self._db.execute_with_rowcount(
            """
            UPDATE payments
            SET status = 'paid', paid_at = ?, updated_at = ?
            WHERE payment_id = ? AND status = 'pending'
            """,
            format_timestamp(paid_at),
            format_timestamp(now),
            payment_id,
        )
        return rowcount == 1

    async def mark_expired(self, payment_id: str, now: datetime) -> bool:
        rowcount = await self._db.execute_with_rowcount(
            """
            UPDATE payments
            SET status = 'expired', updated_at = ?
            WHERE payment_id = ? AND status = 'pending'
            """,
            format_timestamp(now),
            payment_id,
        )
        return rowcount == 1

    async def bind_owner(self, payment_id: str, owner_id: str, now: datetime) -> bool:
        """Binds a paid guest payment to an identity; never rebinds an owned one."""
        rowcount = await self._db.execute_with_rowcount(
            """
            UPDATE payments
            SET owner_id = ?, linked_at = ?, status = 'linked', updated_at = ?
            WHERE payment_id = ? AND owner_id IS NULL AND status = 'paid'
            """,
            owner_id,
            format_timestamp(now),
            format_timestamp(now),
            payment_id,
        )
        return rowcount == 1

    async def mark_refusal_notified(self, payment_id: str, now: datetime) -> bool:
        """True only for the first caller; later refusals of the same payment stay silent."""
        rowcount = await self._db.execute_with_rowcount(
            """
            UPDATE payments
            SET refusal_notified_at = ?
            WHERE payment_id = ? AND refusal_notified_at IS NULL
            """,
            format_timestamp(now),
            payment_id,
        )
        return rowcount == 1

    async def list_for_owner(self, owner_id: str, limit: int = 10) -> list[PaymentRecord]:
        rows = await self._db.fetchall(
            f"""
            SELECT {_PAYMENT_COLUMNS}
            FROM payments
            WHERE owner_id = ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            owner_id,
            limit,
        )
        return [_row_to_record(row) for row in rows]

    async def record_attempt_failure(self, payment_id: str, last_error: str | None, now: datetime) -> None:
        await self._db.execute(
            """
            UPDATE payments
            SET attempts = attempts + 1,
                last_error = ?,
                updated_at = ?
            WHERE payment_id = ?
            """,
            last_error,
            format_timestamp(now),
            payment_id,
        )

    async def clear_attempts(self, payment_id: str) -> None:
        await self._db.execute(
            "UPDATE payments SET attempts = 0, last_error = NULL WHERE payment_id = ? AND attempts > 0",
            payment_id,
        )

    async def latest_guest_payment(self, contact_email: str) -> PaymentRecord | None:
        row = await self._db.fetchone(
            f"""
            SELECT {_PAYMENT_COLUMNS}
            FROM payments
            WHERE owner_id IS NULL AND contact_email = ? AND status = 'paid'
            ORDER BY paid_at DESC
            LIMIT 1
            """,
            contact_email,
        )
        if not row:
            return None
        return _row_to_record(row)

    async def list_guest_payments(self, contact_email: str) -> list[PaymentRecord]:
        rows = await self._db.fetchall(
            f"""
            SELECT {_PAYMENT_COLUMNS}
            FROM payments
            WHERE owner_id IS NULL AND contact_email = ? AND status = 'paid'
            ORDER BY paid_at DESC
            """,
            contact_email,
        )
        return [_row_to_record(row) for row in rows]

    async def list_unreconciled(self) -> list[PaymentRecord]:
        """Pending payments and owned paid payments that have no subscription yet."""
        rows = await self._db.fetchall(
            f"""
            SELECT {_PAYMENT_COLUMNS}
            FROM payments p
            WHERE p.status = 'pending'
               OR (
                    p.status IN ('paid', 'linked')
                AND p.owner_id IS NOT NULL
                AND NOT EXISTS (
                    SELECT 1 FROM subscriptions s WHERE s.source_payment_id = p.payment_id
                )
                AND NOT EXISTS (
                    SELECT 1 FROM subscriptions s
                    WHERE s.owner_id = p.owner_id AND s.status = 'authorized'
                )
               )
            ORDER BY p.updated_at ASC
            """
        )
        return [_row_to_record(row) for row in rows]
