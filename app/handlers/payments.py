from __future__ import annotations

from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from app.errors import ValidationError
from app.repositories.payment_repository import format_timestamp
from app.services.context import current_identity, dependencies
from app.services.verification import verification_payload, wait_for_activation

routes = web.RouteTableDef()


class CreatePixPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_kind: str | None = Field(default=None, alias="planKind")
    contact_email: str | None = Field(default=None, alias="contactEmail")
    owner_id: str | None = Field(default=None, alias="userId")


async def read_json(request: web.Request) -> dict:
    try:
        body = await request.json()
    except ValueError as exc:
        raise ValidationError("Request body must be JSON", code="INVALID_JSON") from exc
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object", code="INVALID_JSON")
    return body


def _payment_id_param(request: web.Request) -> str:
    payment_id = (request.query.get("paymentId") or "").strip()
    if not payment_id:
        raise ValidationError("Payment ID is required", code="PAYMENT_ID_REQUIRED")
    return payment_id


@routes.post("/api/payments/pix")
async def create_pix_payment(request: web.Request) -> web.Response:
    try:
        payload = CreatePixPaymentRequest.model_validate(await read_json(request))
    except PydanticValidationError as exc:
        raise ValidationError("Invalid request body", code="INVALID_BODY") from exc
    intent = await dependencies(request).payment_service.create_pix_payment(
        plan_kind=payload.plan_kind,
        contact_email=payload.contact_email,
        owner_id=payload.owner_id,
        identity=current_identity(request),
    )
    return web.json_response(
        {
            "paymentId": intent.payment_id,
            "status": intent.status,
            "qrCode": intent.qr_code,
            "qrCodeText": intent.qr_code_text,
            "expiresAt": format_timestamp(intent.expires_at),
            "amount": intent.amount,
            "currency": intent.currency,
            "planKind": intent.plan_kind,
            "guest": intent.owner_id is None,
        }
    )


@routes.get("/api/payments/status")
async def payment_status(request: web.Request) -> web.Response:
    payment_id = _payment_id_param(request)
    snapshot = await dependencies(request).payment_service.payment_status(
        payment_id,
        current_identity(request),
    )
    return web.json_response(snapshot)


@routes.get("/api/payments/verify-activation")
async def verify_activation(request: web.Request) -> web.Response:
    payment_id = _payment_id_param(request)
    deps = dependencies(request)
    identity = current_identity(request)
    if request.query.get("wait") in {"1", "true"}:
        result = await wait_for_activation(
            deps.verifier,
            payment_id,
            identity,
            interval_seconds=deps.settings.poll_interval_seconds,
            timeout_seconds=deps.settings.poll_timeout_seconds,
        )
    else:
        result = await deps.verifier.verify(payment_id, identity)
    return web.json_response(verification_payload(result))
