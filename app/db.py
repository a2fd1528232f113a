from __future__ import annotations

import logging
from typing import Any, Iterable

import aiosqlite

from app.errors import StoreError

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS payments (
        payment_id TEXT PRIMARY KEY,
        owner_id TEXT,
        contact_email TEXT NOT NULL,
        amount REAL NOT NULL,
        currency TEXT NOT NULL,
        plan_kind TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        paid_at TEXT,
        linked_at TEXT,
        qr_code TEXT,
        qr_code_text TEXT,
        expires_at TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        refusal_notified_at TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_payments_guest ON payments (contact_email, status) WHERE owner_id IS NULL",
    "CREATE INDEX IF NOT EXISTS idx_payments_status ON payments (status, updated_at)",
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        subscription_id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        status TEXT NOT NULL,
        start_date TEXT NOT NULL,
        next_payment_date TEXT,
        source_payment_id TEXT NOT NULL UNIQUE,
        external_id TEXT,
        amount REAL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        canceled_at TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_subscriptions_one_authorized
    ON subscriptions (owner_id) WHERE status = 'authorized'
    """,
    """
    CREATE TABLE IF NOT EXISTS entitlements (
        owner_id TEXT PRIMARY KEY,
        plan_tier TEXT NOT NULL DEFAULT 'free',
        subscription_status TEXT NOT NULL DEFAULT 'inactive',
        external_subscription_id TEXT,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
)


class Database:
    def __init__(self, path: str, timeout: float = 5.0):
        self.path = path
        self.timeout = timeout
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        try:
            self._conn = await aiosqlite.connect(self.path, timeout=self.timeout)
            await self._conn.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA:
                await self._conn.execute(statement)
            await self._conn.commit()
        except aiosqlite.Error as exc:
            raise StoreError(f"Unable to open database: {exc}") from exc
        logger.info("Database ready: path=%s", self.path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError("Database is not connected")
        return self._conn

    async def execute(self, query: str, *params: Any) -> None:
        await self.execute_with_rowcount(query, *params)

    async def execute_with_rowcount(self, query: str, *params: Any) -> int:
        try:
            cursor = await self.conn.execute(query, params)
            rowcount = cursor.rowcount
            await cursor.close()
            await self.conn.commit()
        except aiosqlite.Error as exc:
            logger.error("Database write failed: error=%s", exc)
            raise StoreError(f"Database write failed: {exc}") from exc
        return rowcount

    async def fetchone(self, query: str, *params: Any) -> tuple[Any, ...] | None:
        try:
            async with self.conn.execute(query, params) as cursor:
                return await cursor.fetchone()
        except aiosqlite.Error as exc:
            logger.error("Database read failed: error=%s", exc)
            raise StoreError(f"Database read failed: {exc}") from exc

    async def fetchall(self, query: str, *params: Any) -> Iterable[tuple[Any, ...]]:
        try:
            async with self.conn.execute(query, params) as cursor:
                return await cursor.fetchall()
        except aiosqlite.Error as exc:
            logger.error("Database read failed: error=%s", exc)
            raise StoreError(f"Database read failed: {exc}") from exc
