from __future__ import annotations

import logging

from aiohttp import web

from app.services.context import dependencies

routes = web.RouteTableDef()
logger = logging.getLogger(__name__)


@routes.get("/api/webhooks/gateway")
async def webhook_probe(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "methods": ["POST"]})


@routes.post("/api/webhooks/gateway")
async def gateway_webhook(request: web.Request) -> web.Response:
    body = None
    if request.can_read_body:
        try:
            body = await request.json()
        except ValueError:
            logger.warning("Webhook body is not JSON")
    outcome = await dependencies(request).webhook_processor.process(
        body,
        query=request.query,
        headers=request.headers,
    )
    return web.json_response(outcome.body, status=outcome.status_code)
