"""
Correlation ID middleware for request tracing.

Each inbound request (webhook or admin API) gets an id taken from
X-Correlation-ID or freshly generated. The id lives on request.state and in a
ContextVar so the dispatcher and system events pick it up; background update
jobs re-bind it with bind_correlation_id().
"""

import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

HEADER_CORRELATION_ID = "X-Correlation-ID"
MAX_INCOMING_LENGTH = 128

_correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def get_correlation_id(request: Request | None = None) -> str | None:
    """Prefer request.state, fall back to the contextvar. None if neither set."""
    if request is not None:
        cid = getattr(request.state, "correlation_id", None)
        if cid:
            return cid
    return _correlation_id_var.get()


@contextmanager
def bind_correlation_id(correlation_id: str | None) -> Iterator[str]:
    """Bind an id for the duration of a background job."""
    cid = correlation_id or new_correlation_id()
    token = _correlation_id_var.set(cid)
    try:
        yield cid
    finally:
        _correlation_id_var.reset(token)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        incoming = (request.headers.get(HEADER_CORRELATION_ID) or "").strip()
        cid = incoming if 0 < len(incoming) <= MAX_INCOMING_LENGTH else new_correlation_id()
        request.state.correlation_id = cid
        with bind_correlation_id(cid):
            response = await call_next(request)
        response.headers[HEADER_CORRELATION_ID] = cid
        return response
