from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import logging

from app.config import Settings
from app.errors import GatewayError
from app.models.payment import PaymentRecord
from app.repositories.payment_repository import PaymentRepository
from app.services.activation import ActivationCoordinator
from app.services.alerts import AdminNotifier

logger = logging.getLogger(__name__)


def _backoff_delay_seconds(attempts: int, base_delay: int, max_delay: int) -> int:
    delay = base_delay * (2**max(attempts - 1, 0))
    return min(delay, max_delay)


async def payment_retry_loop(
    settings: Settings,
    payment_repo: PaymentRepository,
    coordinator: ActivationCoordinator,
    notifier: AdminNotifier,
) -> None:
    while True:
        try:
            await reconcile_pending(
                payment_repo=payment_repo,
                coordinator=coordinator,
                notifier=notifier,
                max_attempts=settings.reconcile_max_attempts,
                base_delay=settings.reconcile_base_delay,
                max_delay=settings.reconcile_max_delay,
            )
        except Exception:
            logger.exception("Payment reconciliation loop failed")
        await asyncio.sleep(settings.reconcile_interval_seconds)


async def reconcile_pending(
    payment_repo: PaymentRepository,
    coordinator: ActivationCoordinator,
    notifier: AdminNotifier,
    max_attempts: int,
    base_delay: int,
    max_delay: int,
) -> None:
    now = coordinator.clock()
    payments = await payment_repo.list_unreconciled()
    for payment in payments:
        if payment.attempts >= max_attempts:
            continue
        if payment.attempts and payment.updated_at:
            delay = _backoff_delay_seconds(payment.attempts, base_delay, max_delay)
            if now - payment.updated_at < timedelta(seconds=delay):
                continue
        try:
            if payment.status == "pending" and _is_past_expiry(payment, now):
                await _expire_if_dead(payment, coordinator, payment_repo, now)
                continue
            result = await coordinator.activate(payment.payment_id)
            if result.outcome == "gateway_unavailable":
                await _record_failure(payment, "Gateway unavailable", payment_repo, notifier, max_attempts, now)
            elif result.ready:
                await payment_repo.clear_attempts(payment.payment_id)
        except Exception as exc:
            logger.exception("Reconciliation failed: payment_id=%s", payment.payment_id)
            await _record_failure(payment, str(exc), payment_repo, notifier, max_attempts, now)


def _is_past_expiry(payment: PaymentRecord, now: datetime) -> bool:
    return payment.expires_at is not None and payment.expires_at < now


async def _expire_if_dead(
    payment: PaymentRecord,
    coordinator: ActivationCoordinator,
    payment_repo: PaymentRepository,
    now: datetime,
) -> None:
    try:
        gateway_payment = await coordinator.gateway.fetch_payment_status(payment.payment_id)
    except GatewayError:
        logger.warning("Expiry check deferred, gateway unavailable: payment_id=%s", payment.payment_id)
        return
    if gateway_payment.status == "approved":
        await coordinator.activate(payment.payment_id)
        return
    if gateway_payment.status in {"rejected", "expired"}:
        if await payment_repo.mark_expired(payment.payment_id, now):
            logger.info(
                "Payment expired: payment_id=%s gateway_status=%s",
                payment.payment_id,
                gateway_payment.status,
            )


async def _record_failure(
    payment: PaymentRecord,
    error: str,
    payment_repo: PaymentRepository,
    notifier: AdminNotifier,
    max_attempts: int,
    now: datetime,
) -> None:
    await payment_repo.record_attempt_failure(payment.payment_id, error, now)
    if payment.attempts + 1 >= max_attempts:
        await notifier.notify(
            "Payment reconciliation gave up after the maximum number of attempts.\n"
            f"Payment: {payment.payment_id}\n"
            f"Error: {error}"
        )
