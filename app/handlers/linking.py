from __future__ import annotations

from aiohttp import web

from app.services.context import dependencies, require_identity

routes = web.RouteTableDef()


@routes.post("/api/payments/link-guest")
async def link_guest_payments(request: web.Request) -> web.Response:
    identity = require_identity(request)
    result = await dependencies(request).guest_linking.link_guest_payments(identity, identity.email)
    return web.json_response({"linked": result.linked, "message": result.message, "items": result.items})


@routes.get("/api/payments/link-guest")
async def pending_guest_payments(request: web.Request) -> web.Response:
    identity = require_identity(request)
    payments = await dependencies(request).guest_linking.pending_guest_payments(identity.email)
    return web.json_response({"hasPendingPayments": bool(payments), "pixPayments": payments})
