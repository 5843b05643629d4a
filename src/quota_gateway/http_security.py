from __future__ import annotations

import asyncio
import re
import secrets as secrets_module
import uuid

import structlog

MANAGEMENT_PATH_PREFIX = "/v0/management/"

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")


def coerce_request_id(value: str | None) -> str:
    if value and _REQUEST_ID_RE.fullmatch(value):
        return value
    return uuid.uuid4().hex


def parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, token = parts[0].strip(), parts[1].strip()
    if scheme.lower() != "bearer" or not token:
        return None
    return token


def constant_time_equals(a: str, b: str) -> bool:
    return secrets_module.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def matches_any(token: str, expected: list[str]) -> bool:
    # Compare against every key so timing does not reveal which one matched.
    matched = False
    for candidate in expected:
        matched |= constant_time_equals(token, candidate)
    return matched


def _is_protected_path(path: str) -> bool:
    """Client-facing model API: native routes and forwarded provider routes."""
    return path.startswith("/v1/") or path.startswith("/v1beta")


def _is_management_path(path: str) -> bool:
    return path.startswith(MANAGEMENT_PATH_PREFIX)


def _should_set_no_store(path: str) -> bool:
    return _is_protected_path(path) or _is_management_path(path)


def install_middlewares(app, *, cfg) -> None:
    """
    Install security middleware and optional hardening based on cfg.

    Kept as a helper to keep `server.py` lean and tests isolated.
    """
    from fastapi.responses import JSONResponse
    from starlette.middleware.base import BaseHTTPMiddleware
    from starlette.requests import Request

    from .openai_compat import make_openai_error_response

    def _reject(status_code: int, message: str, type_: str, code: str, headers: dict[str, str] | None = None):
        return JSONResponse(
            status_code=status_code,
            headers=headers,
            content=make_openai_error_response(message=message, type=type_, code=code).model_dump(),
        )

    class RequestIdMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            request_id = coerce_request_id(request.headers.get("x-request-id"))
            request.state.request_id = request_id
            structlog.contextvars.bind_contextvars(request_id=request_id)
            try:
                response = await call_next(request)
            finally:
                structlog.contextvars.clear_contextvars()
            response.headers.setdefault("X-Request-Id", request_id)
            return response

    class SecurityHeadersMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            response = await call_next(request)
            response.headers.setdefault("X-Content-Type-Options", "nosniff")
            response.headers.setdefault("X-Frame-Options", "DENY")
            response.headers.setdefault("Referrer-Policy", "no-referrer")
            response.headers.setdefault("Cross-Origin-Resource-Policy", "same-site")
            if not cfg.enable_api_docs:
                response.headers.setdefault("X-Robots-Tag", "noindex, nofollow")
            if _should_set_no_store(request.url.path):
                response.headers.setdefault("Cache-Control", "no-store")
                response.headers.setdefault("Pragma", "no-cache")
            return response

    class MaxBodySizeMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            limit = int(cfg.max_request_body_bytes or 0)
            path = request.url.path
            if (
                limit > 0
                and request.method in ("POST", "PUT", "PATCH")
                and (_is_protected_path(path) or _is_management_path(path))
            ):
                content_length = request.headers.get("content-length")
                if content_length and content_length.isdigit() and int(content_length) > limit:
                    return _reject(413, "Request body too large.", "invalid_request_error", "body_too_large")
                body = await request.body()
                if len(body) > limit:
                    return _reject(413, "Request body too large.", "invalid_request_error", "body_too_large")
            return await call_next(request)

    class ConcurrencyLimitMiddleware(BaseHTTPMiddleware):
        def __init__(self, app_):
            super().__init__(app_)
            self._sem = asyncio.Semaphore(max(1, int(cfg.max_inflight_requests or 1)))

        async def dispatch(self, request: Request, call_next):
            if not _is_protected_path(request.url.path):
                return await call_next(request)
            if self._sem.locked():
                return _reject(429, "Server is busy. Try again later.", "rate_limit_error", "server_busy")
            await self._sem.acquire()
            try:
                return await call_next(request)
            finally:
                self._sem.release()

    class BearerAuthMiddleware(BaseHTTPMiddleware):
        """Gateway API keys for the model API. Open when no keys are configured."""

        async def dispatch(self, request: Request, call_next):
            expected = list(cfg.api_keys or [])
            if not expected or not _is_protected_path(request.url.path) or request.method == "OPTIONS":
                return await call_next(request)

            token = parse_bearer_token(request.headers.get("authorization")) or request.headers.get("x-api-key")
            if not token or not matches_any(token, expected):
                return _reject(
                    401,
                    "Missing or invalid authentication token.",
                    "authentication_error",
                    "invalid_api_key",
                    headers={"WWW-Authenticate": 'Bearer realm="quota-gateway"'},
                )
            return await call_next(request)

    class ManagementAuthMiddleware(BaseHTTPMiddleware):
        """Management secret for `/v0/management/*`. Open when no secret is configured."""

        async def dispatch(self, request: Request, call_next):
            expected = cfg.management_secret
            if not expected or not _is_management_path(request.url.path) or request.method == "OPTIONS":
                return await call_next(request)

            token = parse_bearer_token(request.headers.get("authorization")) or request.headers.get(
                "x-management-key"
            )
            if not token or not constant_time_equals(token, expected):
                return _reject(
                    401,
                    "Missing or invalid management secret.",
                    "authentication_error",
                    "invalid_management_secret",
                    headers={"WWW-Authenticate": 'Bearer realm="quota-gateway-management"'},
                )
            return await call_next(request)

    app.add_middleware(MaxBodySizeMiddleware)
    app.add_middleware(ConcurrencyLimitMiddleware)
    app.add_middleware(ManagementAuthMiddleware)
    app.add_middleware(BearerAuthMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    # Must be outermost to ensure `X-Request-Id` is set even when inner middleware short-circuits.
    app.add_middleware(RequestIdMiddleware)

    allowed_hosts: list[str] = list(cfg.allowed_hosts or [])
    if allowed_hosts:
        from starlette.middleware.trustedhost import TrustedHostMiddleware

        app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)

    cors_allow_origins: list[str] = list(cfg.cors_allow_origins or [])
    if cors_allow_origins:
        from fastapi.middleware.cors import CORSMiddleware

        allow_credentials = bool(cfg.cors_allow_credentials)
        if allow_credentials and "*" in cors_allow_origins:
            raise ValueError("CORS_ALLOW_ORIGINS cannot include '*' when CORS_ALLOW_CREDENTIALS=true.")
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_allow_origins,
            allow_credentials=allow_credentials,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "X-Request-Id", "X-API-Key", "X-Provider"],
            max_age=600,
        )
