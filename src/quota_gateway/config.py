from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError

CONFIG_FILE_NAME = "server-config.json"
ROUTING_STRATEGIES = ("round-robin", "priority-fallback")


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def expand_path(path: str) -> str:
    return str(Path(path).expanduser())


class GatewayConfig(BaseModel):
    # Server
    host: str = Field(default_factory=lambda: os.getenv("HOST", "127.0.0.1"))
    port: int = Field(default_factory=lambda: int(os.getenv("PORT", "18318")))
    debug: bool = Field(default_factory=lambda: _env_bool("DEBUG"))

    # Paths
    auth_dir: str = Field(default_factory=lambda: os.getenv("AUTH_DIR", "~/.quota-gateway/auth"))
    config_dir: str = Field(default_factory=lambda: os.getenv("CONFIG_DIR", "~/.config/quota-gateway"))
    providers_path: str | None = Field(default_factory=lambda: os.getenv("PROVIDERS_PATH"))

    # Encryption at rest (optional; plain JSON when unset)
    fernet_key: str | None = Field(default_factory=lambda: os.getenv("CREDENTIALS_FERNET_KEY"))

    # Access control
    api_keys: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("GATEWAY_API_KEYS")))
    management_secret: str | None = Field(default_factory=lambda: os.getenv("MANAGEMENT_SECRET"))

    # Observability
    enable_metrics: bool = Field(default_factory=lambda: _env_bool("ENABLE_METRICS"))
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9110")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))
    enable_api_docs: bool = Field(default_factory=lambda: _env_bool("ENABLE_API_DOCS"))

    # Routing
    routing_strategy: str = Field(default_factory=lambda: os.getenv("ROUTING_STRATEGY", "round-robin"))
    attempt_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("ATTEMPT_TIMEOUT_SECONDS", "60"))
    )
    default_estimated_cost: int = Field(default_factory=lambda: int(os.getenv("DEFAULT_ESTIMATED_COST", "1")))
    # Whole-request deadline for native calls, fallback chain included. 0 disables.
    request_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("REQUEST_TIMEOUT_SECONDS", "300"))
    )

    # Credentials
    refresh_margin_seconds: float = Field(
        default_factory=lambda: float(os.getenv("REFRESH_MARGIN_SECONDS", "300"))
    )
    token_endpoint_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("TOKEN_ENDPOINT_TIMEOUT_SECONDS", "15"))
    )

    # Quota
    quota_refresh_interval_seconds: float = Field(
        default_factory=lambda: float(os.getenv("QUOTA_REFRESH_INTERVAL_SECONDS", "300"))
    )

    # Passthrough to the compatibility process
    passthrough_enabled: bool = Field(default_factory=lambda: _env_bool("ENABLE_PASSTHROUGH", "true"))
    passthrough_host: str = Field(default_factory=lambda: os.getenv("CLI_PROXY_HOST", "127.0.0.1"))
    passthrough_port: int = Field(default_factory=lambda: int(os.getenv("CLI_PROXY_PORT", "18317")))
    passthrough_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("PASSTHROUGH_TIMEOUT_SECONDS", "120"))
    )

    # Server hardening
    allowed_hosts: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("ALLOWED_HOSTS")))
    cors_allow_origins: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("CORS_ALLOW_ORIGINS")))
    cors_allow_credentials: bool = Field(default_factory=lambda: _env_bool("CORS_ALLOW_CREDENTIALS"))
    max_request_body_bytes: int = Field(
        default_factory=lambda: int(os.getenv("MAX_REQUEST_BODY_BYTES", str(8 * 1024 * 1024)))
    )
    max_inflight_requests: int = Field(default_factory=lambda: int(os.getenv("MAX_INFLIGHT_REQUESTS", "64")))

    @field_validator("routing_strategy")
    @classmethod
    def _validate_strategy(cls, v: str) -> str:
        if v not in ROUTING_STRATEGIES:
            raise ValueError(f"routing_strategy must be one of {', '.join(ROUTING_STRATEGIES)}.")
        return v

    @field_validator("attempt_timeout_seconds", "refresh_margin_seconds", "passthrough_timeout_seconds")
    @classmethod
    def _validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0.")
        return v

    @field_validator("quota_refresh_interval_seconds", "request_timeout_seconds")
    @classmethod
    def _validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must be >= 0 (0 disables).")
        return v

    @property
    def passthrough_base_url(self) -> str:
        return f"http://{self.passthrough_host}:{self.passthrough_port}"

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.debug else self.log_level

    def secrets(self) -> list[str]:
        return [s for s in (self.fernet_key, self.management_secret, *self.api_keys) if s]


def load_config(overrides: dict[str, Any] | None = None) -> GatewayConfig:
    """Environment defaults, then `server-config.json` from the config dir, then `overrides`."""
    base = GatewayConfig()
    values: dict[str, Any] = {}

    config_file = Path(expand_path(base.config_dir)) / CONFIG_FILE_NAME
    if config_file.exists():
        try:
            loaded = json.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Unreadable config file {config_file}.") from e
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file {config_file} must hold a JSON object.")
        values.update(loaded)
    values.update(overrides or {})

    try:
        cfg = GatewayConfig(**{**base.model_dump(), **values})
    except ValidationError as e:
        raise ConfigError(str(e)) from e

    cfg.auth_dir = expand_path(cfg.auth_dir)
    cfg.config_dir = expand_path(cfg.config_dir)
    return cfg
