from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta

import httpx
import structlog

from .errors import AuthError, AuthFailure, ConfigError, RoutingError
from .logging import secret_registry
from .metrics import token_refresh_total
from .models import Account, AccountStatus, ApiKeyCredential, Credential, OAuthCredential, utcnow
from .providers import AuthKind, Provider, ProviderRegistry
from .token_store import TokenStore

log = structlog.get_logger()


class TokenRefresher:
    """Exchanges a refresh token at the provider's OAuth token endpoint."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 15,
        clock: Callable[[], datetime] | None = None,
    ):
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._clock: Callable[[], datetime] = clock or utcnow

    async def close(self) -> None:
        await self._client.aclose()

    async def refresh(self, provider: Provider, credential: OAuthCredential) -> OAuthCredential:
        if not provider.token_endpoint or not credential.refresh_token:
            raise AuthError(AuthFailure.EXPIRED, "Credential cannot be refreshed.")

        form = {"grant_type": "refresh_token", "refresh_token": credential.refresh_token}
        if provider.client_id:
            form["client_id"] = provider.client_id
        if provider.client_secret:
            form["client_secret"] = provider.client_secret

        try:
            resp = await self._client.post(provider.token_endpoint, data=form, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            raise AuthError(AuthFailure.NETWORK_FAILURE, "Token endpoint unreachable.") from e

        if resp.status_code >= 500:
            raise AuthError(AuthFailure.NETWORK_FAILURE, f"Token endpoint error {resp.status_code}.")
        if resp.status_code >= 400:
            raise AuthError(AuthFailure.REVOKED_GRANT, f"Refresh rejected by provider ({resp.status_code}).")

        try:
            payload = resp.json()
        except ValueError as e:
            raise AuthError(AuthFailure.NETWORK_FAILURE, "Token endpoint returned malformed JSON.") from e
        if not isinstance(payload, dict):
            raise AuthError(AuthFailure.NETWORK_FAILURE, "Token endpoint returned malformed JSON.")
        if payload.get("error"):
            raise AuthError(AuthFailure.REVOKED_GRANT, f"Refresh rejected by provider ({payload['error']}).")

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise AuthError(AuthFailure.NETWORK_FAILURE, "Token endpoint response lacks access_token.")

        expires_at = None
        expires_in = payload.get("expires_in")
        if isinstance(expires_in, (int, float)) and expires_in > 0:
            expires_at = self._clock() + timedelta(seconds=float(expires_in))

        refresh_token = payload.get("refresh_token")
        return OAuthCredential(
            access_token=access_token,
            # Providers that do not rotate refresh tokens omit the field.
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else credential.refresh_token,
            expires_at=expires_at,
        )


class AuthManager:
    """
    Credential lifecycle: registration, validity checks and refresh.

    Refreshes are single-flight per account: the first caller that finds a
    credential inside the refresh margin starts one task, and every concurrent
    caller for the same account awaits that task. The refreshed credential is
    written to the TokenStore before the task resolves.
    """

    def __init__(
        self,
        store: TokenStore,
        providers: ProviderRegistry,
        *,
        refresher: TokenRefresher | None = None,
        refresh_margin_seconds: float = 300,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.providers = providers
        self.refresher = refresher or TokenRefresher()
        self.refresh_margin_seconds = refresh_margin_seconds
        self._clock: Callable[[], datetime] = clock or utcnow
        self._inflight: dict[str, asyncio.Task[Credential]] = {}
        self._account_set_listeners: list[Callable[[str], None]] = []

        for account in store.list_accounts():
            self._remember_secrets(account.credential)

    async def close(self) -> None:
        await self.refresher.close()

    def add_account_set_listener(self, listener: Callable[[str], None]) -> None:
        """`listener(provider_id)` runs after an account of that provider is added or removed."""
        self._account_set_listeners.append(listener)

    def _notify(self, provider_id: str) -> None:
        for listener in self._account_set_listeners:
            listener(provider_id)

    @staticmethod
    def _secrets_of(credential: Credential) -> set[str]:
        if isinstance(credential, OAuthCredential):
            return {s for s in (credential.access_token, credential.refresh_token) if s}
        return {credential.api_key}

    def _remember_secrets(self, credential: Credential) -> None:
        secret_registry.add(*self._secrets_of(credential))

    def _rotate_secrets(self, old: Credential | None, new: Credential | None) -> None:
        stale = self._secrets_of(old) if old is not None else set()
        if new is not None:
            stale -= self._secrets_of(new)
            self._remember_secrets(new)
        secret_registry.discard(*stale)

    def register(self, account: Account) -> Account:
        try:
            provider = self.providers.get(account.provider)
        except RoutingError as e:
            raise ConfigError(str(e)) from e
        expected = OAuthCredential if provider.auth_kind is AuthKind.OAUTH else ApiKeyCredential
        if not isinstance(account.credential, expected):
            raise ConfigError(f"Provider {provider.id!r} expects {provider.auth_kind.value} credentials.")
        existing = self.store.get(account.id)
        if existing is not None and existing.provider != account.provider:
            raise ConfigError(f"Account id {account.id!r} already belongs to provider {existing.provider!r}.")

        self.store.save(account)
        self._rotate_secrets(existing.credential if existing else None, account.credential)
        log.info("account_registered", account_id=account.id, provider=account.provider)
        self._notify(account.provider)
        return account

    def deregister(self, account_id: str) -> bool:
        account = self.store.get(account_id)
        if account is None:
            return False
        self.store.delete(account_id)
        self._rotate_secrets(account.credential, None)
        log.info("account_deregistered", account_id=account_id, provider=account.provider)
        self._notify(account.provider)
        return True

    def _require(self, account_id: str) -> Account:
        account = self.store.get(account_id)
        if account is None:
            raise AuthError(AuthFailure.EXPIRED, "Account is no longer registered.")
        return account

    async def ensure_valid(self, account_id: str) -> Credential:
        task = self._inflight.get(account_id)
        if task is None:
            account = self._require(account_id)
            if account.status is AccountStatus.ERROR:
                raise AuthError(AuthFailure.REVOKED_GRANT, "Account is disabled after a rejected refresh.")
            if account.status is AccountStatus.EXPIRED:
                raise AuthError(AuthFailure.EXPIRED, "Account credential has expired.")
            if not account.credential.expires_within(self.refresh_margin_seconds, self._clock()):
                return account.credential

            task = asyncio.ensure_future(self._refresh(account))
            self._inflight[account_id] = task
            task.add_done_callback(lambda t, aid=account_id: self._refresh_done(aid, t))
        # shield: a cancelled caller must not cancel the refresh other callers wait on.
        return await asyncio.shield(task)

    def _refresh_done(self, account_id: str, task: asyncio.Task[Credential]) -> None:
        if self._inflight.get(account_id) is task:
            del self._inflight[account_id]
        if not task.cancelled():
            task.exception()

    async def _refresh(self, account: Account) -> Credential:
        provider = self.providers.get(account.provider)
        cred = account.credential
        if not isinstance(cred, OAuthCredential):
            raise AuthError(AuthFailure.EXPIRED, "Only OAuth credentials can be refreshed.")

        if not cred.refresh_token or not provider.can_refresh:
            self._set_status(account.id, AccountStatus.EXPIRED, "Credential expired and cannot be refreshed.")
            token_refresh_total.labels(provider=provider.id, result="expired").inc()
            raise AuthError(AuthFailure.EXPIRED, "Credential expired and cannot be refreshed.")

        log.debug("credential_refresh_started", account_id=account.id, provider=provider.id)
        try:
            fresh = await self.refresher.refresh(provider, cred)
        except AuthError as e:
            token_refresh_total.labels(provider=provider.id, result=e.reason.value).inc()
            if e.reason is AuthFailure.REVOKED_GRANT:
                self._set_status(account.id, AccountStatus.ERROR, str(e))
            log.warning("credential_refresh_failed", account_id=account.id, provider=provider.id, reason=e.reason.value)
            raise

        def _apply(a: Account) -> None:
            a.credential = fresh
            a.status = AccountStatus.ACTIVE
            a.status_message = None

        if self.store.update(account.id, _apply) is None:
            raise AuthError(AuthFailure.EXPIRED, "Account was removed during refresh.")
        self._rotate_secrets(cred, fresh)
        token_refresh_total.labels(provider=provider.id, result="ok").inc()
        log.info("credential_refreshed", account_id=account.id, provider=provider.id, expires_at=fresh.expires_at)
        return fresh

    def _set_status(self, account_id: str, status: AccountStatus, message: str | None) -> None:
        def _apply(a: Account) -> None:
            a.status = status
            a.status_message = message

        self.store.update(account_id, _apply)

    def report_rejected(self, account_id: str, credential: Credential) -> None:
        """The provider answered 401/403 to `credential`."""
        if isinstance(credential, ApiKeyCredential):
            self._set_status(account_id, AccountStatus.EXPIRED, "API key rejected by provider.")
            log.warning("api_key_rejected", account_id=account_id)
            return

        def _force_expiry(a: Account) -> None:
            current = a.credential
            # Only expire the token that was rejected; a newer one may already be stored.
            if isinstance(current, OAuthCredential) and current.access_token == credential.secret:
                if current.refresh_token:
                    current.expires_at = self._clock()
                else:
                    a.status = AccountStatus.EXPIRED
                    a.status_message = "Access token rejected by provider."

        self.store.update(account_id, _force_expiry)
        log.warning("access_token_rejected", account_id=account_id)
