"""Request correlation and step timing for logs.

A request id is stored in a ContextVar so it follows the request across
awaits. ``RequestIdFilter`` stamps it on every log record.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import AsyncIterator, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

REQUEST_ID_HEADER = "X-Request-Id"

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")

logger = logging.getLogger(__name__)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set the request id for the current context, generating one if needed."""
    request_id = request_id or str(uuid.uuid4())
    request_id_ctx.set(request_id)
    return request_id


def get_request_id() -> str:
    """Get the current request id."""
    return request_id_ctx.get()


class RequestIdFilter(logging.Filter):
    """Attach ``request_id`` to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Assign a request id and echo it in the response headers."""

    async def dispatch(self, request: Request, call_next):
        request_id = set_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response


def configure_logging(level: int = logging.INFO) -> None:
    """Configure root logging with the request id in every line."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RequestIdFilter) for f in handler.filters):
            handler.addFilter(RequestIdFilter())


@asynccontextmanager
async def timed(step: str, **extra) -> AsyncIterator[None]:
    """Log the start, end and duration of a pipeline step."""
    start_time = time.perf_counter()
    logger.info(f"STEP_START {step}", extra={"step": step, **extra})
    try:
        yield
    except Exception:
        logger.exception(f"Step failed: {step}", extra={"step": step})
        raise
    duration_ms = (time.perf_counter() - start_time) * 1000
    logger.info(
        f"STEP_END {step} ({duration_ms:.0f}ms)",
        extra={"step": step, "duration_ms": round(duration_ms, 2)},
    )
