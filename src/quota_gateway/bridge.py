from __future__ import annotations

import json
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from .auth import AuthManager
from .errors import AuthError, BridgeUnavailableError, RequestTimeoutError, RoutingError, RoutingFailure
from .metrics import bridge_open_streams, bridge_requests_total
from .models import Account, Credential
from .providers import Provider
from .routing import RoutingEngine, RoutingStrategy
from .streaming import relay_stream

log = structlog.get_logger()

PROVIDER_HINT_HEADER = "x-provider"

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Never forwarded upstream: gateway auth, routing hints, and values httpx recomputes.
_RESERVED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {
    "host",
    "content-length",
    "authorization",
    "x-api-key",
    PROVIDER_HINT_HEADER,
}

HEALTH_CHECK_TIMEOUT_SECONDS = 1.0


@dataclass
class BridgeTarget:
    provider: Provider | None
    account: Account | None = None
    credential: Credential | None = None


@dataclass
class BridgeResponse:
    status_code: int
    headers: dict[str, str]
    body: Any
    target: BridgeTarget


def filter_request_headers(headers: Mapping[str, str]) -> dict[str, str]:
    connection_tokens = {t.strip().lower() for t in headers.get("connection", "").split(",") if t.strip()}
    return {
        k: v
        for k, v in headers.items()
        if k.lower() not in _RESERVED_REQUEST_HEADERS and k.lower() not in connection_tokens
    }


def filter_response_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() != "content-length"}


def _body_model(body: bytes, content_type: str | None) -> str | None:
    if not body or (content_type and "json" not in content_type.lower()):
        return None
    try:
        parsed = json.loads(body)
    except ValueError:
        return None
    model = parsed.get("model") if isinstance(parsed, dict) else None
    return model if isinstance(model, str) and model else None


class PassthroughBridge:
    """
    Forwards requests outside the native surface to the compatibility process,
    injecting the credential of a routed account.

    Account choice uses a strategy snapshot taken at `start()`/`restart()`.
    Strategy changes made afterwards only mark the bridge `restart_required`.
    """

    def __init__(
        self,
        routing: RoutingEngine,
        auth: AuthManager,
        *,
        base_url: str,
        enabled: bool = True,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 120,
        estimated_cost: int = 1,
    ):
        self.routing = routing
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.enabled = enabled
        self.estimated_cost = estimated_cost
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds, connect=5.0))
        self._snapshot: dict[str, tuple[RoutingStrategy, list[str]]] = {}
        self.restart_required = False
        self.open_streams = 0
        routing.add_strategy_listener(self._on_strategy_changed)

    async def close(self) -> None:
        await self._client.aclose()

    def _take_snapshot(self) -> None:
        self._snapshot = self.routing.snapshot()
        self.restart_required = False

    def start(self) -> None:
        self._take_snapshot()
        log.info("bridge_started", base_url=self.base_url, enabled=self.enabled)

    async def restart(self) -> None:
        """Re-read routing strategies. Open relays keep the account they started with."""
        self._take_snapshot()
        log.info("bridge_restarted", open_streams=self.open_streams)

    def _on_strategy_changed(self, provider_id: str, strategy: RoutingStrategy) -> None:
        self.restart_required = True
        log.info("bridge_restart_required", provider=provider_id, strategy=strategy.value)

    def strategy_for(self, provider_id: str) -> RoutingStrategy | None:
        snapshot = self._snapshot.get(provider_id)
        return snapshot[0] if snapshot else None

    async def health(self) -> str:
        if not self.enabled:
            return "disabled"
        try:
            resp = await self._client.get(f"{self.base_url}/health", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except httpx.HTTPError:
            return "unavailable"
        return "ok" if resp.is_success else "unavailable"

    def resolve_provider(self, path: str, headers: Mapping[str, str], body: bytes) -> Provider | None:
        hint = headers.get(PROVIDER_HINT_HEADER)
        if hint:
            return self.routing.providers.get(hint)
        by_path = self.routing.providers.resolve_path(path)
        if by_path is not None:
            return by_path
        model = _body_model(body, headers.get("content-type"))
        if model is None:
            return None
        try:
            return self.routing.resolve(model)[0]
        except RoutingError:
            return None

    async def pick(self, provider: Provider | None) -> BridgeTarget:
        if provider is None:
            return BridgeTarget(provider=None)
        strategy, order = self._snapshot.get(provider.id, (None, None))
        try:
            selection = self.routing.select(provider, self.estimated_cost, strategy=strategy, order=order)
        except RoutingError as e:
            if e.reason is RoutingFailure.NO_ACCOUNTS_REGISTERED:
                # Login flows reach the compatibility process before any account exists.
                return BridgeTarget(provider=provider)
            raise
        last_error: AuthError | None = None
        for account in selection.candidates:
            try:
                credential = await self.auth.ensure_valid(account.id)
            except AuthError as e:
                last_error = e
                continue
            return BridgeTarget(provider=provider, account=account, credential=credential)
        if last_error is None:
            raise RoutingError(
                RoutingFailure.NO_ELIGIBLE_ACCOUNT, f"No eligible account for provider {provider.id!r}."
            )
        raise last_error

    async def forward(
        self,
        *,
        method: str,
        path: str,
        query: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> BridgeResponse:
        provider = self.resolve_provider(path, headers, body)
        target = await self.pick(provider)

        out_headers = filter_request_headers(headers)
        if not any(k.lower() == "accept-encoding" for k in out_headers):
            # Bodies are relayed raw, so only encodings the client asked for.
            out_headers["accept-encoding"] = "identity"
        if target.provider is not None and target.credential is not None:
            out_headers.update(target.provider.credential_headers(target.credential.secret))

        url = f"{self.base_url}{path}" + (f"?{query}" if query else "")
        request = self._client.build_request(method, url, headers=out_headers, content=body)
        try:
            resp = await self._client.send(request, stream=True)
        except httpx.TimeoutException as e:
            bridge_requests_total.labels(status="timeout").inc()
            log.warning("bridge_timeout", path=path, error=type(e).__name__)
            raise RequestTimeoutError("Compatibility process did not respond in time.") from e
        except httpx.HTTPError as e:
            bridge_requests_total.labels(status="unavailable").inc()
            log.warning("bridge_unreachable", path=path, error=type(e).__name__)
            raise BridgeUnavailableError("Compatibility process is unreachable.") from e

        bridge_requests_total.labels(status=str(resp.status_code)).inc()
        if target.account is not None and target.credential is not None and resp.status_code in (401, 403):
            self.auth.report_rejected(target.account.id, target.credential)
        elif target.account is not None and resp.status_code == 429:
            self.routing.quota.record_rejection(target.account.id)
        log.debug(
            "bridge_forwarded",
            path=path,
            provider=provider.id if provider else None,
            account_id=target.account.id if target.account else None,
            status_code=resp.status_code,
        )
        return BridgeResponse(
            status_code=resp.status_code,
            headers=filter_response_headers(resp.headers),
            body=self._relay(resp, target),
            target=target,
        )

    def _relay(self, resp: httpx.Response, target: BridgeTarget) -> AsyncIterator[bytes]:
        self.open_streams += 1
        bridge_open_streams.inc()

        def _on_complete(tokens: int | None) -> None:
            self.open_streams -= 1
            bridge_open_streams.dec()
            if target.account is not None and resp.status_code < 400:
                self.routing.quota.record_usage(target.account.id, tokens or self.estimated_cost)

        return relay_stream(resp, on_complete=_on_complete, sse_errors=False)
