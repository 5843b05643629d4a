from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from .errors import GatewayError, QuotaPolicyError, UnsupportedFeatureError, UpstreamUnavailableError
from .metrics import quota_refresh_total
from .models import Account, UsageSnapshot, utcnow
from .providers import ProviderRegistry
from .token_store import TokenStore

if TYPE_CHECKING:
    from .auth import AuthManager

log = structlog.get_logger()

DEFAULT_REJECTION_COOLDOWN_SECONDS = 60.0


@dataclass(frozen=True)
class ResetHint:
    """Provider-reported quota window, e.g. from rate-limit response headers."""

    reset_at: datetime
    limit: int | None = None


class QuotaTracker:
    """
    Per-account usage accounting.

    Scan-only accounts (provider policy or account override) are frozen: their
    snapshot only changes through `apply_snapshot(..., manual=True)`.
    """

    def __init__(
        self,
        store: TokenStore,
        providers: ProviderRegistry,
        *,
        fetcher: "UsageFetcher | None" = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.providers = providers
        self.fetcher = fetcher
        self._clock: Callable[[], datetime] = clock or utcnow
        self._cooldowns: dict[str, datetime] = {}
        self._cooldown_lock = threading.Lock()

    def auto_refresh_eligible(self, account: Account) -> bool:
        provider = self.providers.get(account.provider)
        # An override can opt an account out, never opt a scan-only provider in.
        return provider.quota_auto_refresh and account.auto_refresh is not False

    def in_cooldown(self, account_id: str) -> bool:
        with self._cooldown_lock:
            until = self._cooldowns.get(account_id)
            if until is None:
                return False
            if until <= self._clock():
                del self._cooldowns[account_id]
                return False
            return True

    def can_serve(self, account: Account, estimated_cost: int) -> bool:
        if self.in_cooldown(account.id):
            return False
        usage = account.usage
        if usage.limit is None:
            return True
        return usage.effective_consumed(self._clock()) + estimated_cost <= usage.limit

    def record_usage(self, account_id: str, actual_cost: int, reset_hint: ResetHint | None = None) -> bool:
        """Apply the cost of a served request. Returns False when the snapshot was left untouched."""
        account = self.store.get(account_id)
        if account is None or not self.auto_refresh_eligible(account):
            return False
        now = self._clock()

        def _apply(a: Account) -> None:
            u = a.usage
            # Relative hints move later on every response; only an elapsed window starts a new one.
            if u.window_elapsed(now):
                u.consumed = actual_cost
                u.reset_at = reset_hint.reset_at if reset_hint else None
            else:
                u.consumed += actual_cost
                if u.reset_at is None and reset_hint is not None:
                    u.reset_at = reset_hint.reset_at
            if reset_hint is not None and reset_hint.limit is not None:
                u.limit = reset_hint.limit

        return self.store.update(account_id, _apply) is not None

    def record_rejection(self, account_id: str, reset_at: datetime | None = None) -> None:
        """Upstream refused the account for quota. Cools it down and, if allowed, pins its limit."""
        until = reset_at or self._clock() + timedelta(seconds=DEFAULT_REJECTION_COOLDOWN_SECONDS)
        with self._cooldown_lock:
            self._cooldowns[account_id] = until

        account = self.store.get(account_id)
        if account is None or not self.auto_refresh_eligible(account):
            return

        def _apply(a: Account) -> None:
            u = a.usage
            if u.limit is None:
                # Nothing consumed yet tells us nothing about the limit.
                if u.consumed > 0:
                    u.limit = u.consumed
            else:
                u.consumed = max(u.consumed, u.limit)
            # The pinned window ends with the cooldown.
            u.reset_at = until

        self.store.update(account_id, _apply)

    def apply_snapshot(self, account_id: str, snapshot: UsageSnapshot, *, manual: bool) -> UsageSnapshot | None:
        account = self.store.get(account_id)
        if account is None:
            return None
        if not manual and not self.auto_refresh_eligible(account):
            raise QuotaPolicyError(f"Account {account_id!r} is scan-only; background refresh is not allowed.")

        scanned_at = self._clock()

        def _apply(a: Account) -> None:
            a.usage = snapshot.model_copy(update={"scanned_at": scanned_at})

        if manual:
            with self._cooldown_lock:
                self._cooldowns.pop(account_id, None)
        updated = self.store.update(account_id, _apply)
        return updated.usage if updated else None

    async def scan(self, account_id: str) -> UsageSnapshot | None:
        """Explicit user-triggered usage fetch. The only path that may update scan-only accounts."""
        account = self.store.get(account_id)
        if account is None:
            return None
        if self.fetcher is None:
            raise UnsupportedFeatureError("Usage scanning is not configured.")
        try:
            snapshot = await self.fetcher.fetch(account)
        except GatewayError:
            quota_refresh_total.labels(provider=account.provider, trigger="manual", result="error").inc()
            raise
        quota_refresh_total.labels(provider=account.provider, trigger="manual", result="ok").inc()
        log.info("usage_scanned", account_id=account_id, provider=account.provider)
        return self.apply_snapshot(account_id, snapshot, manual=True)

    async def refresh_eligible(self) -> int:
        """One background pass over auto-refresh-eligible accounts. Returns the number refreshed."""
        if self.fetcher is None:
            return 0
        refreshed = 0
        for account in self.store.list_accounts():
            if not self.auto_refresh_eligible(account):
                continue
            if self.providers.get(account.provider).usage_endpoint is None:
                continue
            try:
                snapshot = await self.fetcher.fetch(account)
                self.apply_snapshot(account.id, snapshot, manual=False)
            except GatewayError as e:
                quota_refresh_total.labels(provider=account.provider, trigger="background", result="error").inc()
                log.warning("usage_refresh_failed", account_id=account.id, error=type(e).__name__)
                continue
            quota_refresh_total.labels(provider=account.provider, trigger="background", result="ok").inc()
            refreshed += 1
        return refreshed


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def parse_usage_payload(payload: Any) -> UsageSnapshot:
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        payload = payload["data"]
    if not isinstance(payload, dict):
        raise UpstreamUnavailableError("Usage endpoint returned an unexpected shape.")
    consumed = _first(payload, "consumed", "used", "usage")
    limit = _first(payload, "limit", "quota", "entitlement")
    return UsageSnapshot(
        consumed=int(round(float(consumed))) if isinstance(consumed, (int, float)) else 0,
        limit=int(round(float(limit))) if isinstance(limit, (int, float)) else None,
        reset_at=_parse_datetime(_first(payload, "reset_at", "resets_at", "quota_reset_date")),
    )


class UsageFetcher:
    """Reads an account's usage from its provider's usage endpoint."""

    def __init__(self, auth: "AuthManager", *, client: httpx.AsyncClient | None = None, timeout_seconds: float = 15):
        self.auth = auth
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch(self, account: Account) -> UsageSnapshot:
        provider = self.auth.providers.get(account.provider)
        if not provider.usage_endpoint:
            raise UnsupportedFeatureError(f"Provider {provider.id!r} does not expose usage.")
        credential = await self.auth.ensure_valid(account.id)
        try:
            resp = await self._client.get(
                provider.usage_endpoint,
                headers={"Accept": "application/json", **provider.credential_headers(credential.secret)},
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError("Usage endpoint unreachable.") from e
        if resp.status_code >= 400:
            raise UpstreamUnavailableError(f"Usage endpoint error {resp.status_code}.", status_code=resp.status_code)
        try:
            return parse_usage_payload(resp.json())
        except ValueError as e:
            raise UpstreamUnavailableError("Usage endpoint returned malformed JSON.") from e


class QuotaRefresher:
    """Background task that periodically refreshes usage of auto-refresh-eligible accounts."""

    def __init__(self, tracker: QuotaTracker, *, interval_seconds: float):
        self.tracker = tracker
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._task is None and self.interval_seconds > 0:
            self._task = asyncio.create_task(self._run())
            log.info("quota_refresher_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("quota_refresher_stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            refreshed = await self.tracker.refresh_eligible()
            log.debug("quota_refresh_pass", refreshed=refreshed)
