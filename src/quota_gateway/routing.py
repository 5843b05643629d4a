from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Generic, TypeVar

import structlog

from .auth import AuthManager
from .errors import (
    AuthError,
    AuthFailure,
    ConfigError,
    FallbackExhaustedError,
    QuotaExceededError,
    RoutingError,
    RoutingFailure,
    UpstreamUnavailableError,
)
from .metrics import dispatch_attempts_total, dispatch_requests_total
from .models import Account, AccountStatus, AttemptOutcome, Credential, DispatchAttempt, utcnow
from .providers import Provider, ProviderRegistry
from .quota import QuotaTracker, ResetHint

log = structlog.get_logger()

T = TypeVar("T")

UpstreamCall = Callable[[Account, Credential], Awaitable[T]]


class RoutingStrategy(str, Enum):
    ROUND_ROBIN = "round-robin"
    PRIORITY_FALLBACK = "priority-fallback"

    @classmethod
    def parse(cls, value: str | "RoutingStrategy") -> "RoutingStrategy":
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(s.value for s in cls)
            raise ConfigError(f"Unknown routing strategy {value!r} (expected one of {allowed}).") from None


@dataclass
class RoutingPolicy:
    strategy: RoutingStrategy
    cursor: int = 0
    order: list[str] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


@dataclass
class Selection:
    provider: Provider
    candidates: list[Account]
    # Active accounts filtered out because the estimated cost would exceed their quota.
    quota_skipped: list[str] = field(default_factory=list)


@dataclass
class DispatchResult(Generic[T]):
    value: T
    account: Account
    credential: Credential
    attempt: DispatchAttempt


class RoutingEngine:
    """
    Selects and orders candidate accounts per request and runs the fallback chain.

    Routing state is one RoutingPolicy per provider, each with its own lock, so
    requests for unrelated providers never contend.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        auth: AuthManager,
        quota: QuotaTracker,
        *,
        default_strategy: str = RoutingStrategy.ROUND_ROBIN.value,
        attempt_timeout_seconds: float = 60,
        clock: Callable[[], datetime] | None = None,
    ):
        self.providers = providers
        self.auth = auth
        self.quota = quota
        self.attempt_timeout_seconds = attempt_timeout_seconds
        self._clock: Callable[[], datetime] = clock or utcnow
        strategy = RoutingStrategy.parse(default_strategy)
        self._policies = {pid: RoutingPolicy(strategy=strategy) for pid in providers.ids()}
        self._strategy_listeners: list[Callable[[str, RoutingStrategy], None]] = []
        self.last_success_at: datetime | None = None
        auth.add_account_set_listener(self.reset)

    def add_strategy_listener(self, listener: Callable[[str, RoutingStrategy], None]) -> None:
        self._strategy_listeners.append(listener)

    def _policy(self, provider_id: str) -> RoutingPolicy:
        try:
            return self._policies[provider_id]
        except KeyError:
            raise RoutingError(RoutingFailure.UNKNOWN_PROVIDER, f"Unknown provider {provider_id!r}.") from None

    def strategies(self) -> dict[str, dict[str, object]]:
        return {pid: {"strategy": s.value, "order": order} for pid, (s, order) in self.snapshot().items()}

    def snapshot(self) -> dict[str, tuple[RoutingStrategy, list[str]]]:
        out: dict[str, tuple[RoutingStrategy, list[str]]] = {}
        for pid, policy in self._policies.items():
            with policy.lock:
                out[pid] = (policy.strategy, list(policy.order))
        return out

    def set_strategy(self, provider_id: str, strategy: str, order: list[str] | None = None) -> None:
        """Validate and apply a routing strategy. Takes effect for the next native dispatch."""
        if provider_id not in self._policies:
            raise ConfigError(f"Unknown provider {provider_id!r}.")
        parsed = RoutingStrategy.parse(strategy)
        if order is not None:
            if len(set(order)) != len(order):
                raise ConfigError("Priority order lists an account more than once.")
            known = {a.id for a in self.auth.store.list_accounts(provider_id)}
            foreign = [aid for aid in order if aid not in known]
            if foreign:
                raise ConfigError(f"Priority order names accounts not registered under {provider_id!r}.")

        policy = self._policies[provider_id]
        with policy.lock:
            policy.strategy = parsed
            if order is not None:
                policy.order = list(order)
            policy.cursor = 0
        log.info("routing_strategy_changed", provider=provider_id, strategy=parsed.value)
        for listener in self._strategy_listeners:
            listener(provider_id, parsed)

    def reset(self, provider_id: str) -> None:
        """Account set changed: restart the rotation and drop order entries for removed accounts."""
        policy = self._policies.get(provider_id)
        if policy is None:
            return
        known = {a.id for a in self.auth.store.list_accounts(provider_id)}
        with policy.lock:
            policy.cursor = 0
            policy.order = [aid for aid in policy.order if aid in known]

    def resolve(self, model: str, provider_hint: str | None = None) -> tuple[Provider, str]:
        return self.providers.resolve_model(model, provider_hint)

    def select(
        self,
        provider: Provider,
        estimated_cost: int,
        *,
        strategy: RoutingStrategy | None = None,
        order: list[str] | None = None,
    ) -> Selection:
        """
        Build the ordered candidate list. Round-robin advances the provider cursor
        exactly once per call, whatever happens to the candidates afterwards.
        """
        accounts = self.auth.store.list_accounts(provider.id)
        if not accounts:
            raise RoutingError(
                RoutingFailure.NO_ACCOUNTS_REGISTERED, f"No accounts registered for provider {provider.id!r}."
            )

        eligible: list[Account] = []
        skipped: list[str] = []
        for account in accounts:
            if account.status is not AccountStatus.ACTIVE:
                continue
            if self.quota.can_serve(account, estimated_cost):
                eligible.append(account)
            else:
                skipped.append(account.id)
        if not eligible:
            raise RoutingError(
                RoutingFailure.NO_ELIGIBLE_ACCOUNT, f"No eligible account for provider {provider.id!r}."
            )

        policy = self._policy(provider.id)
        with policy.lock:
            effective = strategy or policy.strategy
            if effective is RoutingStrategy.ROUND_ROBIN:
                start = policy.cursor % len(eligible)
                policy.cursor = (start + 1) % len(eligible)
                ordered = eligible[start:] + eligible[:start]
            else:
                rank = {aid: i for i, aid in enumerate(order if order is not None else policy.order)}
                ordered = sorted(eligible, key=lambda a: (rank.get(a.id, len(rank)), a.id))
                if rank:
                    skipped.sort(key=lambda aid: rank.get(aid, len(rank)))
        return Selection(provider=provider, candidates=ordered, quota_skipped=skipped)

    async def dispatch(
        self,
        provider: Provider,
        call: UpstreamCall[T],
        *,
        estimated_cost: int = 1,
    ) -> DispatchResult[T]:
        selection = self.select(provider, estimated_cost)
        attempt = DispatchAttempt(provider_id=provider.id, candidates=[a.id for a in selection.candidates])
        for account_id in selection.quota_skipped:
            attempt.mark(account_id, AttemptOutcome.QUOTA_EXHAUSTED, "Estimated cost exceeds remaining quota.")
            dispatch_attempts_total.labels(provider=provider.id, outcome=AttemptOutcome.QUOTA_EXHAUSTED.value).inc()

        for account in selection.candidates:
            started = time.monotonic()
            outcome, detail, result = await self._attempt(account, call)
            dispatch_attempts_total.labels(provider=provider.id, outcome=outcome.value).inc()
            attempt.mark(account.id, outcome, detail)
            if result is not None:
                dispatch_requests_total.labels(provider=provider.id, resolution="succeeded").inc()
                log.info(
                    "dispatch_succeeded",
                    provider=provider.id,
                    account_id=account.id,
                    tried=len(attempt.results),
                    latency_seconds=round(time.monotonic() - started, 3),
                )
                value, credential = result
                return DispatchResult(value=value, account=account, credential=credential, attempt=attempt)
            log.warning(
                "dispatch_candidate_failed",
                provider=provider.id,
                account_id=account.id,
                outcome=outcome.value,
                detail=detail,
            )

        attempt.resolution = "exhausted"
        dispatch_requests_total.labels(provider=provider.id, resolution="exhausted").inc()
        log.warning("dispatch_exhausted", provider=provider.id, tried=len(attempt.results))
        raise FallbackExhaustedError(attempt.redacted_failures(), attempt=attempt)

    async def _attempt(
        self, account: Account, call: UpstreamCall[T]
    ) -> tuple[AttemptOutcome, str | None, tuple[T, Credential] | None]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.attempt_timeout_seconds
        try:
            credential = await asyncio.wait_for(self.auth.ensure_valid(account.id), self.attempt_timeout_seconds)
        except asyncio.TimeoutError:
            return AttemptOutcome.UPSTREAM_UNAVAILABLE, "Credential refresh timed out.", None
        except AuthError as e:
            if e.reason is AuthFailure.NETWORK_FAILURE:
                return AttemptOutcome.UPSTREAM_UNAVAILABLE, str(e), None
            return AttemptOutcome.AUTH_FAILED, str(e), None

        try:
            value = await asyncio.wait_for(call(account, credential), max(0.0, deadline - loop.time()))
        except asyncio.TimeoutError:
            return AttemptOutcome.UPSTREAM_UNAVAILABLE, "Attempt timed out.", None
        except AuthError as e:
            if e.reason is AuthFailure.NETWORK_FAILURE:
                return AttemptOutcome.UPSTREAM_UNAVAILABLE, str(e), None
            self.auth.report_rejected(account.id, credential)
            return AttemptOutcome.AUTH_FAILED, str(e), None
        except QuotaExceededError as e:
            reset_at = None
            if e.retry_after_seconds is not None:
                reset_at = self._clock() + timedelta(seconds=e.retry_after_seconds)
            self.quota.record_rejection(account.id, reset_at)
            return AttemptOutcome.QUOTA_EXHAUSTED, str(e), None
        except ConfigError as e:
            # The account cannot address its provider, e.g. missing endpoint metadata.
            return AttemptOutcome.UPSTREAM_UNAVAILABLE, str(e), None
        except UpstreamUnavailableError as e:
            return AttemptOutcome.UPSTREAM_UNAVAILABLE, str(e), None
        return AttemptOutcome.SUCCESS, None, (value, credential)

    def record_success(self, result: DispatchResult[T], actual_cost: int, reset_hint: ResetHint | None = None) -> None:
        """The provider served the request. Relayed client errors never get here."""
        self.last_success_at = self._clock()
        self.quota.record_usage(result.account.id, actual_cost, reset_hint)
