from __future__ import annotations

from aiohttp import web

from app.config import Settings
from app.db import Database
from app.handlers import linking, payments, subscriptions, webhook
from app.repositories.entitlement_repository import EntitlementRepository
from app.repositories.payment_repository import PaymentRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.services.activation import ActivationCoordinator
from app.services.alerts import AdminNotifier
from app.services.context import (
    DEPENDENCIES,
    Dependencies,
    error_middleware,
    identity_middleware,
    request_context_middleware,
)
from app.services.gateway import PaymentGateway
from app.services.guest_linking import GuestLinkingResolver
from app.services.payments import PaymentService
from app.services.subscriptions import SubscriptionService
from app.services.verification import PollingVerifier
from app.services.webhooks import WebhookProcessor


def build_dependencies(
    settings: Settings,
    db: Database,
    gateway: PaymentGateway,
    notifier: AdminNotifier,
) -> tuple[Dependencies, ActivationCoordinator]:
    payment_repo = PaymentRepository(db)
    subscription_repo = SubscriptionRepository(db)
    entitlement_repo = EntitlementRepository(db)
    coordinator = ActivationCoordinator(
        payment_repo,
        subscription_repo,
        entitlement_repo,
        gateway,
        notifier=notifier,
    )
    deps = Dependencies(
        settings=settings,
        payment_service=PaymentService(settings, payment_repo, gateway, coordinator),
        verifier=PollingVerifier(coordinator),
        webhook_processor=WebhookProcessor(
            coordinator,
            webhook_secret=settings.webhook_secret,
            max_age_seconds=settings.webhook_max_age_seconds,
        ),
        guest_linking=GuestLinkingResolver(payment_repo, subscription_repo, coordinator),
        subscription_service=SubscriptionService(subscription_repo, entitlement_repo, payment_repo),
    )
    return deps, coordinator


def create_app(deps: Dependencies) -> web.Application:
    app = web.Application(
        middlewares=[request_context_middleware, error_middleware, identity_middleware],
    )
    app[DEPENDENCIES] = deps
    app.add_routes(payments.routes)
    app.add_routes(webhook.routes)
    app.add_routes(linking.routes)
    app.add_routes(subscriptions.routes)
    return app
