"""Structured logging setup and request logging with credential redaction."""

import logging
import re
import time
import uuid
from typing import Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Push addresses are delivery credentials and must never reach the logs verbatim
EXPO_TOKEN_PATTERN = re.compile(r"Expo(nent)?PushToken\[[^\]]*\]")
HEX_TOKEN_PATTERN = re.compile(r"\b[0-9a-fA-F]{64}\b")
BEARER_PATTERN = re.compile(r"Bearer\s+[A-Za-z0-9\-_.=]+")
EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")


def redact_secrets(text: str) -> str:
    """Redact push addresses, bearer tokens and email addresses from text."""
    text = EXPO_TOKEN_PATTERN.sub("[REDACTED_PUSH_TOKEN]", text)
    text = HEX_TOKEN_PATTERN.sub("[REDACTED_PUSH_TOKEN]", text)
    text = BEARER_PATTERN.sub("Bearer [REDACTED]", text)
    text = EMAIL_PATTERN.sub("[REDACTED_EMAIL]", text)
    return text


def setup_logging(debug: bool = False) -> None:
    """Configure structlog for JSON output."""
    log_level = logging.DEBUG if debug else logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Also configure standard library logging
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        level=log_level,
    )


class LoggingMiddleware(BaseHTTPMiddleware):
    """Log each request with a short request id bound to the structlog context."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())[:8]
        start_time = time.time()

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        logger = structlog.get_logger()

        path = redact_secrets(str(request.url.path))
        await logger.ainfo(
            "request_started",
            method=request.method,
            path=path,
            client=request.client.host if request.client else "unknown",
        )

        response = await call_next(request)

        await logger.ainfo(
            "request_completed",
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )

        response.headers["X-Request-ID"] = request_id
        return response
