"""
Security middleware and the JSON error envelope.
"""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from reqflow_server.core.auth import SESSION_COOKIE
from reqflow_server.core.errors import Failure, FailureResponse
from reqflow_shared.schemas.common import ErrorCode

SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}
CSRF_COOKIE = "reqflow_csrf"
CSRF_HEADER = "X-CSRF-Token"

# ---------------------------------------------------------------------------
# Security Headers
# ---------------------------------------------------------------------------

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "0",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none';",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains; preload",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Attach security headers to every response."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers[header] = value
        return response


# ---------------------------------------------------------------------------
# CSRF Protection (Double-Submit Cookie)
# ---------------------------------------------------------------------------

class CSRFMiddleware(BaseHTTPMiddleware):
    """
    Double-submit cookie CSRF protection for cookie-authenticated browsers.

    Skipped for safe methods and for requests carrying an Authorization
    header (bearer credentials are not sent automatically by browsers).
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method in SAFE_METHODS:
            return await call_next(request)
        if request.headers.get("Authorization"):
            return await call_next(request)
        if SESSION_COOKIE not in request.cookies:
            return await call_next(request)

        cookie_token = request.cookies.get(CSRF_COOKIE)
        header_token = request.headers.get(CSRF_HEADER)
        if not cookie_token or not header_token or cookie_token != header_token:
            return error_response(Failure(ErrorCode.AUTHORIZATION_DENIED, "Invalid or missing CSRF token."))

        return await call_next(request)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------

def error_response(failure: Failure) -> JSONResponse:
    return JSONResponse(status_code=failure.http_status, content={"error": failure.to_dict()})


async def _failure_handler(request: Request, exc: FailureResponse) -> JSONResponse:
    return error_response(exc.failure)


async def _validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    )
    return error_response(Failure(ErrorCode.VALIDATION_FAILED, problems or "Request validation failed"))


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FailureResponse, _failure_handler)
    app.add_exception_handler(RequestValidationError, _validation_handler)
