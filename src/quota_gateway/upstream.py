from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import structlog

from .errors import AuthError, AuthFailure, QuotaExceededError, UpstreamUnavailableError
from .metrics import upstream_latency_seconds
from .models import Account, Credential
from .providers import Provider
from .quota import ResetHint

log = structlog.get_logger()

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")


@dataclass
class UpstreamReply:
    """Buffered provider answer. `status_code` may be a relayed 4xx."""

    status_code: int
    body: Any
    headers: dict[str, str] = field(default_factory=dict)
    reset_hint: ResetHint | None = None

    @property
    def ok(self) -> bool:
        return self.status_code < 400


def parse_retry_after(value: str | None) -> int | None:
    if value and value.strip().isdigit():
        return int(value.strip())
    return None


def _parse_reset(value: str, now: datetime) -> datetime | None:
    value = value.strip()
    try:
        return now + timedelta(seconds=float(value))
    except ValueError:
        pass
    # "6m0s", "1h2m", "250ms"
    parts = _DURATION_RE.findall(value)
    if parts and "".join(n + u for n, u in parts) == value:
        scale = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}
        return now + timedelta(seconds=sum(float(n) * scale[u] for n, u in parts))
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def reset_hint_from_headers(headers: httpx.Headers, now: datetime | None = None) -> ResetHint | None:
    """Token-window hint from rate-limit headers (OpenAI `x-ratelimit-*` or Anthropic `anthropic-ratelimit-*`)."""
    now = now or datetime.now(timezone.utc)
    reset_raw = headers.get("x-ratelimit-reset-tokens") or headers.get("anthropic-ratelimit-tokens-reset")
    if not reset_raw:
        return None
    reset_at = _parse_reset(reset_raw, now)
    if reset_at is None:
        return None
    limit_raw = headers.get("x-ratelimit-limit-tokens") or headers.get("anthropic-ratelimit-tokens-limit")
    limit = int(limit_raw) if limit_raw and limit_raw.isdigit() else None
    return ResetHint(reset_at=reset_at, limit=limit)


def usage_cost(payload: Any) -> int | None:
    """Token count from an OpenAI- or Anthropic-style `usage` object."""
    if not isinstance(payload, dict):
        return None
    usage = payload.get("usage")
    if not isinstance(usage, dict):
        return None
    total = usage.get("total_tokens")
    if isinstance(total, int):
        return total
    parts = [
        usage.get(k)
        for k in ("prompt_tokens", "completion_tokens", "input_tokens", "output_tokens")
        if isinstance(usage.get(k), int)
    ]
    return sum(parts) if parts else None


def raise_for_provider_status(resp: httpx.Response) -> None:
    """Map provider statuses that should move the fallback chain on. Other 4xx are left to the caller."""
    if resp.status_code in (401, 403):
        raise AuthError(AuthFailure.EXPIRED, f"Provider rejected the credential ({resp.status_code}).")
    if resp.status_code == 429:
        raise QuotaExceededError(
            retry_after_seconds=parse_retry_after(resp.headers.get("retry-after")),
            message="Provider quota exceeded.",
        )
    if 500 <= resp.status_code <= 599:
        raise UpstreamUnavailableError(f"Provider error {resp.status_code}.", status_code=resp.status_code)


class UpstreamClient:
    """
    OpenAI-compatible chat calls against a provider with one account's credential.

    No retries here: each call is one attempt of the routing fallback chain.
    """

    def __init__(self, *, client: httpx.AsyncClient | None = None, timeout_seconds: float = 60):
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    def _request(self, provider: Provider, account: Account, credential: Credential, payload: dict[str, Any]):
        url = f"{provider.endpoint(account.metadata)}/chat/completions"
        headers = {
            "Accept": "application/json",
            # Relayed streams are passed through undecoded.
            "Accept-Encoding": "identity",
            **provider.credential_headers(credential.secret),
        }
        return self._client.build_request("POST", url, json=payload, headers=headers)

    async def chat(
        self, provider: Provider, account: Account, credential: Credential, payload: dict[str, Any]
    ) -> UpstreamReply:
        started = time.monotonic()
        try:
            resp = await self._client.send(self._request(provider, account, credential, payload))
        except httpx.TimeoutException as e:
            raise UpstreamUnavailableError("Provider request timed out.") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError("Provider request failed.") from e
        upstream_latency_seconds.labels(provider=provider.id).observe(time.monotonic() - started)

        raise_for_provider_status(resp)
        try:
            body = resp.json()
        except ValueError as e:
            if resp.status_code >= 400:
                body = {"error": {"message": resp.text[:500], "type": "invalid_request_error"}}
            else:
                raise UpstreamUnavailableError("Provider returned malformed JSON.") from e
        if resp.status_code >= 400:
            log.info("provider_request_rejected", provider=provider.id, status_code=resp.status_code)
        return UpstreamReply(
            status_code=resp.status_code,
            body=body,
            headers={"content-type": resp.headers.get("content-type", "application/json")},
            reset_hint=reset_hint_from_headers(resp.headers),
        )

    async def open_stream(
        self, provider: Provider, account: Account, credential: Credential, payload: dict[str, Any]
    ) -> httpx.Response | UpstreamReply:
        """
        Send a streaming request and return once headers arrive.

        The caller owns the returned response and must close it. A relayed 4xx
        comes back buffered as an UpstreamReply instead.
        """
        started = time.monotonic()
        try:
            resp = await self._client.send(self._request(provider, account, credential, payload), stream=True)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailableError("Provider request timed out.") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError("Provider request failed.") from e
        upstream_latency_seconds.labels(provider=provider.id).observe(time.monotonic() - started)

        if resp.status_code < 400:
            return resp
        try:
            await resp.aread()
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError("Provider response was cut off.") from e
        finally:
            await resp.aclose()
        raise_for_provider_status(resp)
        try:
            body = resp.json()
        except ValueError:
            body = {"error": {"message": resp.text[:500], "type": "invalid_request_error"}}
        return UpstreamReply(status_code=resp.status_code, body=body)
