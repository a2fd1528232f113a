from __future__ import annotations

import asyncio
from contextlib import suppress
import logging

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiohttp import web

from app.config import Settings
from app.db import Database
from app.services.alerts import AdminNotifier
from app.services.gateway import GatewayClient
from app.services.log_context import RequestContextFilter
from app.services.payment_retry import payment_retry_loop
from app.web import build_dependencies, create_app

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s [%(request_id)s]: %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(RequestContextFilter())


async def main() -> None:
    settings = Settings()
    if settings.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    db = Database(settings.database_path, timeout=settings.database_timeout_seconds)
    await db.connect()

    bot = None
    if settings.telegram_token:
        bot = Bot(
            token=settings.telegram_token,
            default=DefaultBotProperties(parse_mode="HTML"),
        )
    notifier = AdminNotifier(bot, settings.telegram_admin_ids)

    gateway = GatewayClient(
        settings.gateway_base_url,
        settings.gateway_access_token,
        timeout_seconds=settings.gateway_timeout_seconds,
        retries=settings.gateway_retries,
    )
    deps, coordinator = build_dependencies(settings, db, gateway, notifier)
    app = create_app(deps)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, settings.http_host, settings.http_port)
    await site.start()
    logging.info("Listening on %s:%s", settings.http_host, settings.http_port)

    retry_task = asyncio.create_task(
        payment_retry_loop(settings, coordinator.payment_repo, coordinator, notifier)
    )
    try:
        await asyncio.Event().wait()
    finally:
        retry_task.cancel()
        with suppress(asyncio.CancelledError):
            await retry_task
        await runner.cleanup()
        await gateway.close()
        await notifier.close()
        await db.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logging.info("Service stopped")
