"""HTTP middleware: request correlation and the error envelope.

Every failure leaves the API as ``{"error", "kind", "message"}``. ``kind`` is
the stable ErrorKind value clients branch on; the HTTP status is derived from
it through ``STATUS_BY_KIND``.
"""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from intent_exchange.domain.enums import ErrorKind
from intent_exchange.domain.exceptions import MarketplaceError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.CONFLICT: 409,
    ErrorKind.STALE_STATE: 409,
    ErrorKind.DUPLICATE_ESCROW: 409,
    ErrorKind.NOT_FUNDED: 409,
    ErrorKind.PRECONDITION_FAILED: 422,
    ErrorKind.INVALID_TRANSITION: 422,
    ErrorKind.GATEWAY_DECLINED: 502,
    ErrorKind.GATEWAY_UNAVAILABLE: 503,
    ErrorKind.INCONSISTENT: 500,
}


def error_response(exc: MarketplaceError) -> JSONResponse:
    """Render a domain error as the JSON envelope with its mapped status."""
    status_code = STATUS_BY_KIND.get(exc.kind, 400)
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "kind": exc.kind.value, "message": exc.message},
    )


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Bind a request id (client-supplied or generated) to every log line."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        started = time.perf_counter()
        response = await call_next(request)
        logger.debug(
            "request.completed",
            status=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Turn escaped exceptions into the error envelope."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except MarketplaceError as exc:
            response = error_response(exc)
            if response.status_code >= 500:
                logger.error("api.domain_error", kind=exc.kind, code=exc.code, error=exc.message)
            else:
                logger.info("api.rejected", kind=exc.kind, code=exc.code, error=exc.message)
            return response
        except Exception:
            logger.exception("api.unhandled_error")
            return JSONResponse(
                status_code=500,
                content={
                    "error": "INTERNAL_ERROR",
                    "kind": None,
                    "message": "An unexpected error occurred",
                },
            )


def setup_middleware(app: FastAPI, cors_origins: Sequence[str] = ("*",)) -> None:
    """Install CORS, error handling and request ids.

    Starlette runs the most recently added middleware first, so request ids
    are bound before the error handler logs anything.
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIDMiddleware)
