"""Global error handling middleware."""

import logging
import traceback

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from starlette.middleware.base import BaseHTTPMiddleware

from pushlink.middleware.logging import redact_secrets

logger = logging.getLogger(__name__)

STORAGE_RETRY_AFTER_SECONDS = 5

# Connection-level database failures: the registry is down, not the request wrong
STORAGE_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Turn escaped exceptions into safe JSON responses with redacted logs."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except STORAGE_UNAVAILABLE_ERRORS as exc:
            # Statement parameters can carry push addresses
            logger.error(
                "Token store unavailable on %s %s: %s",
                request.method,
                redact_secrets(request.url.path),
                redact_secrets(str(exc)),
            )
            return JSONResponse(
                status_code=503,
                content={"detail": "Device registry temporarily unavailable. Please retry."},
                headers={"Retry-After": str(STORAGE_RETRY_AFTER_SECONDS)},
            )
        except Exception as exc:
            logger.error(
                "Unhandled exception on %s %s: %s\n%s",
                request.method,
                redact_secrets(request.url.path),
                redact_secrets(str(exc)),
                redact_secrets(traceback.format_exc()),
            )
            return JSONResponse(
                status_code=500,
                content={
                    "detail": "An internal error occurred. Please try again later.",
                    "error_type": type(exc).__name__,
                },
            )
