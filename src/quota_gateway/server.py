from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from .config import GatewayConfig, load_config
from .errors import (
    AuthError,
    AuthFailure,
    BridgeUnavailableError,
    ConfigError,
    FallbackExhaustedError,
    GatewayError,
    QuotaExceededError,
    QuotaPolicyError,
    RequestTimeoutError,
    RoutingError,
    RoutingFailure,
    UnsupportedFeatureError,
    UpstreamUnavailableError,
)
from .gateway import Gateway, StreamReply
from .http_security import install_middlewares
from .logging import configure_logging
from .management import build_management_router
from .metrics import maybe_start_metrics, server_errors_total, server_request_latency_seconds, server_requests_total
from .openai_compat import ChatCompletionRequest, ModelList, make_openai_error_response

__version__ = "0.1.0"

_AUTH_ERRORS = {
    AuthFailure.EXPIRED: (401, "authentication_error", "credential_expired"),
    AuthFailure.REVOKED_GRANT: (401, "authentication_error", "revoked_grant"),
    AuthFailure.NETWORK_FAILURE: (502, "upstream_error", "auth_network_failure"),
}

_ROUTING_ERRORS = {
    RoutingFailure.UNKNOWN_PROVIDER: (404, "invalid_request_error", "unknown_provider"),
    RoutingFailure.NO_ELIGIBLE_ACCOUNT: (429, "rate_limit_error", "no_eligible_account"),
    RoutingFailure.NO_ACCOUNTS_REGISTERED: (503, "api_error", "no_accounts_registered"),
}

PASSTHROUGH_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


def _error_response(
    status_code: int,
    *,
    message: str,
    type: str,
    code: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    server_errors_total.labels(code=code).inc()
    return JSONResponse(
        status_code=status_code,
        content=make_openai_error_response(message=message, type=type, code=code).model_dump(),
        headers=headers,
    )


def create_app(cfg: GatewayConfig | None = None, gateway: Gateway | None = None) -> FastAPI:
    cfg = cfg or load_config()
    configure_logging(level=cfg.effective_log_level, fmt=cfg.log_format, secrets=cfg.secrets())
    gateway = gateway or Gateway(cfg)

    def _observe(path: str, status_code: int, started_at: float) -> None:
        server_requests_total.labels(path=path, status=str(status_code)).inc()
        server_request_latency_seconds.labels(path=path).observe(max(0.0, time.monotonic() - started_at))

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)
        gateway.start()
        try:
            yield
        finally:
            await gateway.aclose()

    app = FastAPI(
        title="quota-gateway",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if cfg.enable_api_docs else None,
        redoc_url="/redoc" if cfg.enable_api_docs else None,
        openapi_url="/openapi.json" if cfg.enable_api_docs else None,
    )
    app.state.gateway = gateway
    install_middlewares(app, cfg=cfg)

    @app.exception_handler(AuthError)
    async def _auth_error_handler(_request, exc: AuthError):
        status_code, type_, code = _AUTH_ERRORS[exc.reason]
        return _error_response(status_code, message=str(exc), type=type_, code=code)

    @app.exception_handler(RoutingError)
    async def _routing_error_handler(_request, exc: RoutingError):
        status_code, type_, code = _ROUTING_ERRORS[exc.reason]
        return _error_response(status_code, message=str(exc), type=type_, code=code)

    @app.exception_handler(QuotaExceededError)
    async def _quota_error_handler(_request, exc: QuotaExceededError):
        headers = {}
        if exc.retry_after_seconds is not None:
            headers["Retry-After"] = str(exc.retry_after_seconds)
        return _error_response(
            429, message=str(exc), type="rate_limit_error", code="quota_exceeded", headers=headers
        )

    @app.exception_handler(FallbackExhaustedError)
    async def _exhausted_handler(_request, exc: FallbackExhaustedError):
        reasons = "; ".join(f"candidate {f['candidate']}: {f['reason']}" for f in exc.failures)
        message = f"{exc} ({reasons})" if reasons else str(exc)
        return _error_response(502, message=message, type="upstream_error", code="all_candidates_failed")

    @app.exception_handler(BridgeUnavailableError)
    async def _bridge_error_handler(_request, exc: BridgeUnavailableError):
        return _error_response(503, message=str(exc), type="upstream_error", code="bridge_unavailable")

    @app.exception_handler(UpstreamUnavailableError)
    async def _upstream_error_handler(_request, exc: UpstreamUnavailableError):
        return _error_response(502, message=str(exc), type="upstream_error", code="upstream_unavailable")

    @app.exception_handler(RequestTimeoutError)
    async def _timeout_error_handler(_request, exc: RequestTimeoutError):
        return _error_response(
            504, message=str(exc) or "Request timed out.", type="upstream_error", code="timeout"
        )

    @app.exception_handler(ConfigError)
    async def _config_error_handler(_request, exc: ConfigError):
        return _error_response(400, message=str(exc), type="invalid_request_error", code="invalid_config")

    @app.exception_handler(UnsupportedFeatureError)
    async def _unsupported_feature_handler(_request, exc: UnsupportedFeatureError):
        return _error_response(400, message=str(exc), type="invalid_request_error", code="unsupported")

    @app.exception_handler(QuotaPolicyError)
    async def _quota_policy_handler(_request, exc: QuotaPolicyError):
        return _error_response(409, message=str(exc), type="invalid_request_error", code="scan_only_account")

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(_request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        param = ".".join(str(p) for p in first.get("loc", ()) if p != "body") or None
        server_errors_total.labels(code="invalid_request").inc()
        return JSONResponse(
            status_code=400,
            content=make_openai_error_response(
                message=first.get("msg", "Invalid request."),
                type="invalid_request_error",
                param=param,
                code="invalid_request",
            ).model_dump(),
        )

    @app.exception_handler(GatewayError)
    async def _gateway_error_handler(_request, exc: GatewayError):
        return _error_response(500, message=str(exc), type="api_error", code="internal_error")

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/version")
    async def version() -> dict[str, str]:
        return {"version": __version__}

    @app.get("/v1/models", response_model=ModelList)
    async def list_models() -> ModelList:
        return gateway.list_models()

    @app.post("/v1/chat/completions")
    async def chat_completions(req: ChatCompletionRequest, x_provider: str | None = Header(default=None)):
        started_at = time.monotonic()
        timeout = cfg.request_timeout_seconds or None
        try:
            reply = await asyncio.wait_for(gateway.chat_completions(req, x_provider), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError("Request timed out.") from e

        _observe("/v1/chat/completions", reply.status_code, started_at)
        if isinstance(reply, StreamReply):
            return StreamingResponse(reply.body, status_code=reply.status_code, media_type=reply.media_type)
        return JSONResponse(status_code=reply.status_code, content=reply.body)

    app.include_router(build_management_router(gateway, version=__version__))

    @app.api_route("/{path:path}", methods=PASSTHROUGH_METHODS, include_in_schema=False)
    async def passthrough(path: str, request: Request):
        if not cfg.passthrough_enabled:
            return _error_response(
                404,
                message=f"Unknown path /{path}.",
                type="invalid_request_error",
                code="not_found",
            )
        started_at = time.monotonic()
        forwarded = await gateway.bridge.forward(
            method=request.method,
            path=request.url.path,
            query=request.url.query,
            headers=request.headers,
            body=await request.body(),
        )
        _observe("passthrough", forwarded.status_code, started_at)
        return StreamingResponse(forwarded.body, status_code=forwarded.status_code, headers=forwarded.headers)

    return app


def main() -> None:  # pragma: no cover
    try:
        import uvicorn
    except ImportError as e:
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    cfg = load_config()
    uvicorn.run(create_app(cfg), host=cfg.host, port=cfg.port)


if __name__ == "__main__":  # pragma: no cover
    main()
