from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Awaitable, Callable
from uuid import uuid4

from aiohttp import web

from app.config import Settings
from app.errors import ReconciliationError, UnauthorizedError
from app.models.identity import Identity
from app.services.guest_linking import GuestLinkingResolver
from app.services.log_context import get_request_context, reset_request_context, set_request_context
from app.services.payments import PaymentService
from app.services.subscriptions import SubscriptionService
from app.services.verification import PollingVerifier
from app.services.webhooks import WebhookProcessor

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@dataclass
class Dependencies:
    settings: Settings
    payment_service: PaymentService
    verifier: PollingVerifier
    webhook_processor: WebhookProcessor
    guest_linking: GuestLinkingResolver
    subscription_service: SubscriptionService


DEPENDENCIES = web.AppKey("dependencies", Dependencies)


def dependencies(request: web.Request) -> Dependencies:
    return request.app[DEPENDENCIES]


def current_identity(request: web.Request) -> Identity | None:
    return request.get("identity")


def require_identity(request: web.Request) -> Identity:
    identity = current_identity(request)
    if identity is None:
        raise UnauthorizedError("Authentication required")
    return identity


def error_response(
    status_code: int,
    *,
    error: str,
    code: str,
    details: dict | None = None,
) -> web.Response:
    payload: dict = {"error": error, "code": code}
    if details:
        payload["details"] = details
    return web.json_response(payload, status=status_code)


@web.middleware
async def request_context_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    request_id = request.headers.get("X-Request-Id") or uuid4().hex
    token = set_request_context({"request_id": request_id, "path": request.path})
    try:
        response = await handler(request)
    finally:
        reset_request_context(token)
    response.headers["X-Request-Id"] = request_id
    return response


@web.middleware
async def identity_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    settings = dependencies(request).settings
    user_id = (request.headers.get(settings.identity_header) or "").strip()
    if user_id:
        email = (request.headers.get(settings.identity_email_header) or "").strip() or None
        request["identity"] = Identity(user_id=user_id, email=email)
    token = set_request_context({**get_request_context(), "identity": user_id or "anonymous"})
    try:
        return await handler(request)
    finally:
        reset_request_context(token)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ReconciliationError as exc:
        if exc.status_code >= 500:
            logger.error("Request failed: path=%s code=%s error=%s", request.path, exc.code, exc.message)
        else:
            logger.info("Request rejected: path=%s code=%s", request.path, exc.code)
        return error_response(exc.status_code, error=exc.message, code=exc.code, details=exc.details)
    except Exception:
        logger.exception("Unhandled error: path=%s", request.path)
        return error_response(500, error="Internal server error", code="INTERNAL_ERROR")
