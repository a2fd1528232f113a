from __future__ import annotations

from datetime import datetime, timezone
import logging
import re
from typing import Any, Callable

from app.config import Settings
from app.errors import ForbiddenError, UnauthorizedError, ValidationError
from app.models.identity import Identity
from app.models.payment import PLAN_KINDS, PaymentRecord, PixPaymentIntent
from app.repositories.payment_repository import PaymentRepository, format_timestamp
from app.services.activation import ActivationCoordinator
from app.services.gateway import PaymentGateway

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def validate_email(value: str | None) -> str:
    email = normalize_email(value)
    if not email or len(email) > 254 or not _EMAIL_RE.match(email):
        raise ValidationError("Invalid contact email", code="INVALID_CONTACT")
    return email


def ensure_payment_access(payment: PaymentRecord, identity: Identity | None) -> None:
    """Owned payments are private to their owner; guest payments are readable by id holders."""
    if payment.owner_id is None:
        return
    if identity is None:
        raise UnauthorizedError("Authentication required")
    if identity.user_id != payment.owner_id:
        logger.warning(
            "Payment access denied: payment_id=%s requester=%s",
            payment.payment_id,
            identity.user_id,
        )
        raise ForbiddenError("Payment belongs to another account", code="PAYMENT_FORBIDDEN")


class PaymentService:
    def __init__(
        self,
        settings: Settings,
        payment_repo: PaymentRepository,
        gateway: PaymentGateway,
        coordinator: ActivationCoordinator,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings
        self.payment_repo = payment_repo
        self.gateway = gateway
        self.coordinator = coordinator
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def create_pix_payment(
        self,
        plan_kind: str | None,
        contact_email: str | None,
        owner_id: str | None,
        identity: Identity | None,
    ) -> PixPaymentIntent:
        if plan_kind not in PLAN_KINDS or plan_kind not in self.settings.plan_amounts:
            raise ValidationError("Invalid plan", code="INVALID_PLAN", details={"planKind": plan_kind})
        if owner_id and identity is None:
            raise UnauthorizedError("Authentication required to pay for an account")
        if owner_id and identity and owner_id != identity.user_id:
            raise ForbiddenError("Identity mismatch", code="IDENTITY_MISMATCH")
        final_owner = identity.user_id if identity else None
        email = validate_email(contact_email or (identity.email if identity else None))

        amount = self.settings.plan_amounts[plan_kind]
        gateway_payment = await self.gateway.create_payment(
            amount=amount,
            contact_email=email,
            reference=final_owner,
            description=self.settings.plan_descriptions.get(plan_kind, plan_kind),
            expires_in_minutes=self.settings.payment_expiration_minutes,
        )
        await self.payment_repo.create_payment(
            payment_id=gateway_payment.payment_id,
            owner_id=final_owner,
            contact_email=email,
            amount=amount,
            currency=self.settings.payment_currency,
            plan_kind=plan_kind,
            qr_code=gateway_payment.qr_code,
            qr_code_text=gateway_payment.qr_code_text,
            expires_at=gateway_payment.expires_at,
            now=self.clock(),
        )
        logger.info(
            "PIX payment created: payment_id=%s plan=%s guest=%s",
            gateway_payment.payment_id,
            plan_kind,
            final_owner is None,
        )
        return PixPaymentIntent(
            payment_id=gateway_payment.payment_id,
            status="pending",
            amount=amount,
            currency=self.settings.payment_currency,
            plan_kind=plan_kind,
            qr_code=gateway_payment.qr_code,
            qr_code_text=gateway_payment.qr_code_text,
            expires_at=gateway_payment.expires_at,
            owner_id=final_owner,
        )

    async def payment_status(self, payment_id: str, identity: Identity | None) -> dict[str, Any]:
        """Stored state only; never calls the gateway."""
        payment = await self.coordinator.load_payment(payment_id)
        ensure_payment_access(payment, identity)
        snapshot = await self.coordinator.snapshot(payment_id)
        payment = snapshot.payment
        return {
            "paymentId": payment.payment_id,
            "status": payment.status,
            "planKind": payment.plan_kind,
            "amount": payment.amount,
            "currency": payment.currency,
            "guest": payment.is_guest,
            "paidAt": format_timestamp(payment.paid_at),
            "linkedAt": format_timestamp(payment.linked_at),
            "expiresAt": format_timestamp(payment.expires_at),
            "outcome": snapshot.outcome,
            "ready": snapshot.ready,
        }
