from __future__ import annotations

from aiohttp import web

from app.services.context import dependencies, require_identity

routes = web.RouteTableDef()


@routes.post("/api/subscriptions/cancel")
async def cancel_subscription(request: web.Request) -> web.Response:
    identity = require_identity(request)
    result = await dependencies(request).subscription_service.cancel(identity.user_id)
    return web.json_response({"success": True, "subscription": result})


@routes.get("/api/subscriptions/status")
async def subscription_status(request: web.Request) -> web.Response:
    identity = require_identity(request)
    return web.json_response(await dependencies(request).subscription_service.status(identity.user_id))
