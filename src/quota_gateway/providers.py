from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import ConfigError, RoutingError, RoutingFailure


class AuthKind(str, Enum):
    OAUTH = "oauth"
    API_KEY = "api_key"


@dataclass(frozen=True)
class Provider:
    id: str
    auth_kind: AuthKind
    # May reference account metadata, e.g. "https://{region}-aiplatform.googleapis.com/...".
    base_url: str
    supports_streaming: bool = True
    # False marks the provider scan-only: usage is only refreshed by an explicit user scan.
    quota_auto_refresh: bool = True
    token_endpoint: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    usage_endpoint: str | None = None
    model_prefixes: tuple[str, ...] = ()
    models: tuple[str, ...] = ()
    bridge_path_prefixes: tuple[str, ...] = ()
    credential_header: str = "authorization"
    credential_scheme: str | None = "Bearer"
    extra_headers: dict[str, str] = field(default_factory=dict)

    @property
    def can_refresh(self) -> bool:
        return self.auth_kind is AuthKind.OAUTH and bool(self.token_endpoint)

    def endpoint(self, metadata: dict[str, str]) -> str:
        try:
            return self.base_url.format(**metadata).rstrip("/")
        except KeyError as e:
            raise ConfigError(f"Provider {self.id!r} endpoint needs account metadata {e.args[0]!r}.") from e

    def credential_headers(self, secret: str) -> dict[str, str]:
        value = f"{self.credential_scheme} {secret}" if self.credential_scheme else secret
        return {**self.extra_headers, self.credential_header: value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Provider":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown provider fields: {', '.join(sorted(unknown))}.")
        try:
            values = dict(data)
            values["auth_kind"] = AuthKind(values["auth_kind"])
            for key in ("model_prefixes", "models", "bridge_path_prefixes"):
                if key in values:
                    values[key] = tuple(values[key])
            return cls(**values)
        except (KeyError, ValueError, TypeError) as e:
            raise ConfigError(f"Invalid provider definition {data.get('id')!r}: {e}") from e


BUILTIN_PROVIDERS: tuple[Provider, ...] = (
    Provider(
        id="claude",
        auth_kind=AuthKind.OAUTH,
        base_url="https://api.anthropic.com/v1",
        token_endpoint="https://console.anthropic.com/v1/oauth/token",
        client_id="claude-cli",
        model_prefixes=("claude-",),
        models=("claude-sonnet-4-5", "claude-opus-4-1", "claude-haiku-4-5"),
        bridge_path_prefixes=("/v1/messages", "/anthropic/callback"),
        extra_headers={"anthropic-version": "2023-06-01"},
    ),
    Provider(
        id="codex",
        auth_kind=AuthKind.OAUTH,
        base_url="https://chatgpt.com/backend-api/codex",
        token_endpoint="https://auth.openai.com/oauth/token",
        client_id="app_live_xMF2yQKrWNkDwLaB",
        model_prefixes=("gpt-5-codex", "codex-"),
        models=("gpt-5-codex",),
        bridge_path_prefixes=("/openai/callback",),
    ),
    Provider(
        id="gemini-cli",
        auth_kind=AuthKind.OAUTH,
        base_url="https://generativelanguage.googleapis.com/v1beta/openai",
        token_endpoint="https://oauth2.googleapis.com/token",
        client_id="681255809395-oo8ft2oprdrnp9e3aqf6av3hmdib135j.apps.googleusercontent.com",
        model_prefixes=("gemini-",),
        models=("gemini-2.5-pro", "gemini-2.5-flash"),
        bridge_path_prefixes=("/v1beta", "/google/callback"),
    ),
    Provider(
        id="github-copilot",
        auth_kind=AuthKind.OAUTH,
        base_url="https://api.githubcopilot.com",
        token_endpoint="https://github.com/login/oauth/access_token",
        # Copilot usage is only read on an explicit user scan.
        quota_auto_refresh=False,
        usage_endpoint="https://api.github.com/copilot_internal/user",
        model_prefixes=("copilot-",),
        bridge_path_prefixes=("/github/callback",),
        extra_headers={"editor-version": "vscode/1.95.0"},
    ),
    Provider(
        id="openai",
        auth_kind=AuthKind.API_KEY,
        base_url="https://api.openai.com/v1",
        model_prefixes=("gpt-", "o1", "o3", "o4"),
        models=("gpt-4.1", "gpt-4.1-mini", "o4-mini"),
    ),
    Provider(
        id="openrouter",
        auth_kind=AuthKind.API_KEY,
        base_url="https://openrouter.ai/api/v1",
        usage_endpoint="https://openrouter.ai/api/v1/key",
    ),
)


class ProviderRegistry:
    """Immutable lookup table that resolves provider ids, model names and bridge paths."""

    def __init__(self, providers: list[Provider] | tuple[Provider, ...]):
        by_id: dict[str, Provider] = {}
        for p in providers:
            if p.id in by_id:
                raise ConfigError(f"Duplicate provider id {p.id!r}.")
            by_id[p.id] = p
        self._by_id = by_id

    @classmethod
    def load(cls, path: str | None = None) -> "ProviderRegistry":
        """Built-in table, with entries from a JSON file (a list of provider objects) replacing same-id ones."""
        table = {p.id: p for p in BUILTIN_PROVIDERS}
        if path:
            try:
                raw = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigError(f"Unreadable providers file {path}.") from e
            if not isinstance(raw, list):
                raise ConfigError("Providers file must hold a JSON list.")
            for entry in raw:
                if not isinstance(entry, dict):
                    raise ConfigError("Each provider entry must be a JSON object.")
                p = Provider.from_dict(entry)
                table[p.id] = p
        return cls(list(table.values()))

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._by_id

    def __iter__(self):
        return iter(self._by_id.values())

    def ids(self) -> list[str]:
        return list(self._by_id)

    def get(self, provider_id: str) -> Provider:
        try:
            return self._by_id[provider_id]
        except KeyError:
            raise RoutingError(RoutingFailure.UNKNOWN_PROVIDER, f"Unknown provider {provider_id!r}.") from None

    def resolve_model(self, model: str, provider_hint: str | None = None) -> tuple[Provider, str]:
        """Map a requested model to (provider, upstream model name)."""
        if provider_hint:
            return self.get(provider_hint), model
        if "/" in model:
            prefix, rest = model.split("/", 1)
            if prefix in self._by_id and rest:
                return self._by_id[prefix], rest
        best: tuple[int, Provider] | None = None
        for p in self._by_id.values():
            for prefix in p.model_prefixes:
                if model.startswith(prefix) and (best is None or len(prefix) > best[0]):
                    best = (len(prefix), p)
        if best is None:
            raise RoutingError(RoutingFailure.UNKNOWN_PROVIDER, f"No provider serves model {model!r}.")
        return best[1], model

    def resolve_path(self, path: str) -> Provider | None:
        best: tuple[int, Provider] | None = None
        for p in self._by_id.values():
            for prefix in p.bridge_path_prefixes:
                if path.startswith(prefix) and (best is None or len(prefix) > best[0]):
                    best = (len(prefix), p)
        return best[1] if best else None
