from __future__ import annotations

import logging

from app.services.alerts import AdminNotifier
from app.services.log_context import RequestContextFilter, reset_request_context, set_request_context


class FakeBot:
    def __init__(self):
        self.sent: list[tuple[int, str]] = []

    async def send_message(self, chat_id: int, text: str) -> None:
        self.sent.append((chat_id, text))


async def test_notifier_sends_to_every_admin():
    bot = FakeBot()
    notifier = AdminNotifier(bot, [10, 20])

    await notifier.notify("sweeper gave up")

    assert bot.sent == [(10, "sweeper gave up"), (20, "sweeper gave up")]


async def test_notifier_without_bot_only_logs(caplog):
    with caplog.at_level(logging.WARNING):
        await AdminNotifier().notify("refused activation")

    assert "refused activation" in caplog.text


def test_request_id_filter():
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
    token = set_request_context({"request_id": "abc"})
    try:
        RequestContextFilter().filter(record)
    finally:
        reset_request_context(token)

    assert record.request_id == "abc"

    RequestContextFilter().filter(record)
    assert record.request_id == "-"
