from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.config import Settings
from app.db import Database
from app.errors import GatewayError
from app.models.payment import GatewayPayment, GatewayPixPayment
from app.repositories.entitlement_repository import EntitlementRepository
from app.repositories.payment_repository import PaymentRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.services.activation import ActivationCoordinator
from app.services.alerts import AdminNotifier

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeGateway:
    def __init__(self):
        self.statuses: dict[str, str] = {}
        self.approved_at: dict[str, datetime] = {}
        self.fail = False
        self.fetch_calls: list[str] = []
        self.created: list[dict] = []
        self._next_id = 1000

    def approve(self, payment_id: str, at: datetime | None = None) -> None:
        self.statuses[payment_id] = "approved"
        self.approved_at[payment_id] = at or NOW

    async def fetch_payment_status(self, payment_id: str) -> GatewayPayment:
        self.fetch_calls.append(payment_id)
        # yield so concurrent callers interleave around the gateway call
        await asyncio.sleep(0)
        if self.fail:
            raise GatewayError("gateway timeout")
        status = self.statuses.get(payment_id, "pending")
        return GatewayPayment(
            payment_id=payment_id,
            status=status,
            approved_at=self.approved_at.get(payment_id),
            raw_status=status,
        )

    async def create_payment(self, amount, contact_email, reference, description, expires_in_minutes):
        if self.fail:
            raise GatewayError("gateway timeout")
        self._next_id += 1
        payment_id = str(self._next_id)
        self.created.append(
            {"paymentId": payment_id, "amount": amount, "email": contact_email, "reference": reference}
        )
        self.statuses[payment_id] = "pending"
        return GatewayPixPayment(
            payment_id=payment_id,
            status="pending",
            qr_code="base64-qr",
            qr_code_text="00020126pix",
            expires_at=NOW + timedelta(minutes=expires_in_minutes),
        )


class RecordingNotifier(AdminNotifier):
    def __init__(self):
        super().__init__()
        self.messages: list[str] = []

    async def notify(self, message: str) -> None:
        self.messages.append(message)


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        database_path=str(tmp_path / "test.sqlite3"),
        webhook_secret="",
        telegram_token="",
        _env_file=None,
    )


@pytest.fixture()
async def db(settings):
    database = Database(settings.database_path)
    await database.connect()
    yield database
    await database.close()


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def clock() -> Clock:
    return Clock()


@pytest.fixture()
def payment_repo(db) -> PaymentRepository:
    return PaymentRepository(db)


@pytest.fixture()
def subscription_repo(db) -> SubscriptionRepository:
    return SubscriptionRepository(db)


@pytest.fixture()
def entitlement_repo(db) -> EntitlementRepository:
    return EntitlementRepository(db)


@pytest.fixture()
def coordinator(payment_repo, subscription_repo, entitlement_repo, gateway, notifier, clock) -> ActivationCoordinator:
    return ActivationCoordinator(
        payment_repo,
        subscription_repo,
        entitlement_repo,
        gateway,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture()
def make_payment(payment_repo, clock):
    async def _make(
        payment_id: str = "pay-1",
        owner_id: str | None = "user-a",
        contact_email: str = "x@example.com",
        plan_kind: str = "monthly",
        amount: float = 29.90,
        expires_at: datetime | None = None,
    ):
        await payment_repo.create_payment(
            payment_id=payment_id,
            owner_id=owner_id,
            contact_email=contact_email,
            amount=amount,
            currency="BRL",
            plan_kind=plan_kind,
            qr_code=None,
            qr_code_text=None,
            expires_at=expires_at or clock() + timedelta(minutes=30),
            now=clock(),
        )
        return await payment_repo.get_payment(payment_id)

    return _make
