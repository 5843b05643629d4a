from __future__ import annotations

from enum import Enum
from typing import Any


class GatewayError(Exception):
    """Base error for gateway failures."""


class ConfigError(GatewayError):
    """Invalid strategy, provider table or account set. Rejected at apply time."""


class AuthFailure(str, Enum):
    EXPIRED = "expired"
    REVOKED_GRANT = "revoked_grant"
    NETWORK_FAILURE = "network_failure"


class AuthError(GatewayError):
    def __init__(self, reason: AuthFailure, message: str | None = None):
        super().__init__(message or f"Authentication failed ({reason.value}).")
        self.reason = reason


class QuotaExceededError(GatewayError):
    def __init__(self, retry_after_seconds: int | None = None, message: str = "Quota exceeded"):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class QuotaPolicyError(GatewayError):
    """A background process tried to refresh a scan-only account."""


class RoutingFailure(str, Enum):
    UNKNOWN_PROVIDER = "unknown_provider"
    NO_ELIGIBLE_ACCOUNT = "no_eligible_account"
    NO_ACCOUNTS_REGISTERED = "no_accounts_registered"


class RoutingError(GatewayError):
    def __init__(self, reason: RoutingFailure, message: str | None = None):
        super().__init__(message or reason.value.replace("_", " ").capitalize() + ".")
        self.reason = reason


class UpstreamUnavailableError(GatewayError):
    """Provider unreachable, timed out, or answered 5xx."""

    def __init__(self, message: str = "Upstream unavailable", status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class BridgeUnavailableError(UpstreamUnavailableError):
    """The compatibility process itself is down, as opposed to a provider failing."""


class FallbackExhaustedError(GatewayError):
    """Every candidate account failed. `failures` holds redacted per-candidate reasons."""

    def __init__(
        self,
        failures: list[dict[str, Any]],
        message: str = "All candidate accounts failed.",
        *,
        attempt: Any = None,
    ):
        super().__init__(message)
        self.failures = failures
        # Full DispatchAttempt, for logging and tests only; never serialized to clients.
        self.attempt = attempt


class RequestTimeoutError(GatewayError):
    """Server-side request deadline exceeded."""


class UnsupportedFeatureError(GatewayError):
    """Requested feature not supported by the selected provider."""
