from __future__ import annotations

import logging
from contextvars import ContextVar, Token

RequestContext = dict[str, str]

_request_context: ContextVar[RequestContext] = ContextVar("request_context", default={})


def set_request_context(context: RequestContext) -> Token:
    return _request_context.set(context)


def reset_request_context(token: Token) -> None:
    _request_context.reset(token)


def get_request_context() -> RequestContext:
    return _request_context.get()


def describe_request_context() -> str:
    context = get_request_context()
    return f"context={context}" if context else "context=none"


class RequestContextFilter(logging.Filter):
    """Exposes the current request id on log records as ``request_id``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_context().get("request_id", "-")
        return True
