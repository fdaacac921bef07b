"""
HTTP middleware and exception handlers.

Each request runs under a correlation id (taken from ``X-Correlation-ID`` or
generated) that is echoed back on the response and stamped on every log
line, so "send alert" clicks can be matched with dispatcher and store logs.
Errors are rendered in the ``AppException.to_dict()`` shape.
"""
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from opsboard.core.logging import get_logger, set_correlation_id, get_correlation_id
from opsboard.core.exceptions import AppException

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line per request with status and duration"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        fields = {"method": request.method, "path": request.url.path}

        try:
            response = await call_next(request)
        except Exception:
            fields["duration_seconds"] = round(time.perf_counter() - started, 4)
            logger.error(f"{request.method} {request.url.path} raised", extra_data=fields, exc_info=True)
            raise

        fields["status_code"] = response.status_code
        fields["duration_seconds"] = round(time.perf_counter() - started, 4)
        log = logger.info if response.status_code < 400 else logger.warning
        log(f"{request.method} {request.url.path} -> {response.status_code}", extra_data=fields)
        return response


def _error_response(exc: AppException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={CORRELATION_HEADER: get_correlation_id()},
    )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    logger.warning(
        f"Request failed with {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        }
    )
    return _error_response(exc)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unexpected errors are logged in full; the client only gets ERR_1000"""
    logger.error(
        f"Unhandled {type(exc).__name__}",
        extra_data={"path": request.url.path, "error": str(exc)},
        exc_info=exc,
    )
    return _error_response(AppException("An unexpected error occurred"))


def setup_middleware(app: FastAPI) -> None:
    # Last added is outermost: correlation id is bound before request logging
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
