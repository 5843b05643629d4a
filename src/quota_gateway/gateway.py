from __future__ import annotations

import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime

import httpx
import structlog

from .auth import AuthManager, TokenRefresher
from .bridge import PassthroughBridge
from .config import GatewayConfig
from .crypto import CredentialCipher
from .errors import UnsupportedFeatureError
from .models import AccountSummary, utcnow
from .openai_compat import ChatCompletionRequest, ModelCard, ModelList, estimate_cost
from .providers import ProviderRegistry
from .quota import QuotaRefresher, QuotaTracker, UsageFetcher
from .routing import RoutingEngine
from .streaming import relay_stream
from .token_store import TokenStore
from .upstream import UpstreamClient, UpstreamReply, reset_hint_from_headers, usage_cost

log = structlog.get_logger()


@dataclass
class StreamReply:
    status_code: int
    media_type: str
    body: AsyncIterator[bytes]


class Gateway:
    """
    Composition root: one instance per process, shared by the native API,
    the management API and the passthrough bridge.

    HTTP clients can be injected (tests pass clients built on httpx.MockTransport).
    """

    def __init__(
        self,
        cfg: GatewayConfig,
        *,
        providers: ProviderRegistry | None = None,
        token_client: httpx.AsyncClient | None = None,
        usage_client: httpx.AsyncClient | None = None,
        upstream_client: httpx.AsyncClient | None = None,
        bridge_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.cfg = cfg
        self._clock: Callable[[], datetime] = clock or utcnow
        self.providers = providers or ProviderRegistry.load(cfg.providers_path)
        self.store = TokenStore(cfg.auth_dir, cipher=CredentialCipher(cfg.fernet_key))
        self.auth = AuthManager(
            self.store,
            self.providers,
            refresher=TokenRefresher(
                client=token_client, timeout_seconds=cfg.token_endpoint_timeout_seconds, clock=self._clock
            ),
            refresh_margin_seconds=cfg.refresh_margin_seconds,
            clock=self._clock,
        )
        self.fetcher = UsageFetcher(self.auth, client=usage_client, timeout_seconds=cfg.token_endpoint_timeout_seconds)
        self.quota = QuotaTracker(self.store, self.providers, fetcher=self.fetcher, clock=self._clock)
        self.quota_refresher = QuotaRefresher(self.quota, interval_seconds=cfg.quota_refresh_interval_seconds)
        self.routing = RoutingEngine(
            self.providers,
            self.auth,
            self.quota,
            default_strategy=cfg.routing_strategy,
            attempt_timeout_seconds=cfg.attempt_timeout_seconds,
            clock=self._clock,
        )
        self.upstream = UpstreamClient(client=upstream_client, timeout_seconds=cfg.attempt_timeout_seconds)
        self.bridge = PassthroughBridge(
            self.routing,
            self.auth,
            base_url=cfg.passthrough_base_url,
            enabled=cfg.passthrough_enabled,
            client=bridge_client,
            timeout_seconds=cfg.passthrough_timeout_seconds,
            estimated_cost=cfg.default_estimated_cost,
        )
        self.started_at = self._clock()
        self._started_monotonic = time.monotonic()
        # Bridge snapshot exists from construction so requests before start() still route.
        self.bridge.start()

    def start(self) -> None:
        self.quota_refresher.start()

    async def aclose(self) -> None:
        await self.quota_refresher.stop()
        await self.auth.close()
        await self.fetcher.close()
        await self.upstream.close()
        await self.bridge.close()

    @property
    def uptime_seconds(self) -> float:
        return round(time.monotonic() - self._started_monotonic, 3)

    @property
    def last_success_at(self) -> datetime | None:
        return self.routing.last_success_at

    def account_summaries(self, provider_id: str | None = None) -> list[AccountSummary]:
        now = self._clock()
        return [
            AccountSummary.from_account(
                a,
                auto_refresh=self.quota.auto_refresh_eligible(a),
                refresh_margin_seconds=self.cfg.refresh_margin_seconds,
                now=now,
            )
            for a in self.store.list_accounts(provider_id)
        ]

    def account_summary(self, account_id: str) -> AccountSummary | None:
        account = self.store.get(account_id)
        if account is None:
            return None
        return AccountSummary.from_account(
            account,
            auto_refresh=self.quota.auto_refresh_eligible(account),
            refresh_margin_seconds=self.cfg.refresh_margin_seconds,
            now=self._clock(),
        )

    def list_models(self) -> ModelList:
        served = {a.provider for a in self.store.list_accounts()}
        cards = [
            ModelCard(id=model, owned_by=p.id)
            for p in self.providers
            if p.id in served
            for model in p.models
        ]
        return ModelList(data=cards)

    async def chat_completions(
        self, req: ChatCompletionRequest, provider_hint: str | None = None
    ) -> UpstreamReply | StreamReply:
        provider, upstream_model = self.routing.resolve(req.model, provider_hint)
        if req.stream and not provider.supports_streaming:
            raise UnsupportedFeatureError(f"Provider {provider.id!r} does not support streaming.")
        payload = req.to_upstream_payload(upstream_model)
        cost = estimate_cost(req, minimum=self.cfg.default_estimated_cost)

        if not req.stream:
            result = await self.routing.dispatch(
                provider,
                lambda account, credential: self.upstream.chat(provider, account, credential, payload),
                estimated_cost=cost,
            )
            reply = result.value
            if reply.ok:
                self.routing.record_success(result, usage_cost(reply.body) or cost, reply.reset_hint)
            return reply

        streamed = await self.routing.dispatch(
            provider,
            lambda account, credential: self.upstream.open_stream(provider, account, credential, payload),
            estimated_cost=cost,
        )
        resp = streamed.value
        if isinstance(resp, UpstreamReply):
            return resp
        hint = reset_hint_from_headers(resp.headers, self._clock())

        def _on_complete(tokens: int | None) -> None:
            self.routing.record_success(streamed, tokens or cost, hint)

        return StreamReply(
            status_code=resp.status_code,
            media_type=resp.headers.get("content-type", "text/event-stream"),
            body=relay_stream(resp, on_complete=_on_complete),
        )
