from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    ACTIVE = "active"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    ERROR = "error"


class OAuthCredential(BaseModel):
    kind: Literal["oauth"] = "oauth"
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None

    @property
    def secret(self) -> str:
        return self.access_token

    def expires_within(self, seconds: float, now: datetime) -> bool:
        # No expiry means the provider issued a non-expiring token.
        if self.expires_at is None:
            return False
        return self.expires_at <= now + timedelta(seconds=seconds)


class ApiKeyCredential(BaseModel):
    kind: Literal["api_key"] = "api_key"
    api_key: str

    @property
    def secret(self) -> str:
        return self.api_key

    def expires_within(self, seconds: float, now: datetime) -> bool:
        return False


Credential = Annotated[OAuthCredential | ApiKeyCredential, Field(discriminator="kind")]


class UsageSnapshot(BaseModel):
    consumed: int = 0
    limit: int | None = None
    reset_at: datetime | None = None
    scanned_at: datetime | None = None

    def window_elapsed(self, now: datetime) -> bool:
        return self.reset_at is not None and self.reset_at <= now

    def effective_consumed(self, now: datetime) -> int:
        return 0 if self.window_elapsed(now) else self.consumed


class Account(BaseModel):
    id: str
    provider: str
    credential: Credential
    status: AccountStatus = AccountStatus.ACTIVE
    status_message: str | None = None
    usage: UsageSnapshot = Field(default_factory=UsageSnapshot)
    # None inherits the provider's quota policy.
    auto_refresh: bool | None = None
    label: str | None = None
    email: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def effective_status(self, refresh_margin_seconds: float, now: datetime) -> AccountStatus:
        if self.status is not AccountStatus.ACTIVE:
            return self.status
        cred = self.credential
        if isinstance(cred, OAuthCredential) and cred.expires_at is not None:
            if cred.expires_at <= now:
                return AccountStatus.EXPIRED
            if cred.expires_within(refresh_margin_seconds, now):
                return AccountStatus.EXPIRING
        return self.status


class AccountSummary(BaseModel):
    """Management view of an account. Never carries credential material."""

    id: str
    provider: str
    label: str | None = None
    email: str | None = None
    auth_kind: str
    status: AccountStatus
    status_message: str | None = None
    usage: UsageSnapshot
    auto_refresh: bool
    credential_expires_at: datetime | None = None

    @classmethod
    def from_account(
        cls, account: Account, *, auto_refresh: bool, refresh_margin_seconds: float, now: datetime
    ) -> "AccountSummary":
        cred = account.credential
        return cls(
            id=account.id,
            provider=account.provider,
            label=account.label,
            email=account.email,
            auth_kind=cred.kind,
            status=account.effective_status(refresh_margin_seconds, now),
            status_message=account.status_message,
            usage=account.usage,
            auto_refresh=auto_refresh,
            credential_expires_at=cred.expires_at if isinstance(cred, OAuthCredential) else None,
        )


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    QUOTA_EXHAUSTED = "quota_exhausted"
    AUTH_FAILED = "auth_failed"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"


@dataclass
class CandidateResult:
    account_id: str
    outcome: AttemptOutcome
    detail: str | None = None


@dataclass
class DispatchAttempt:
    """Per-request record of the fallback chain. Lives only as long as the request."""

    provider_id: str
    candidates: list[str]
    results: list[CandidateResult] = field(default_factory=list)
    resolution: Literal["succeeded", "exhausted"] | None = None

    def mark(self, account_id: str, outcome: AttemptOutcome, detail: str | None = None) -> None:
        self.results.append(CandidateResult(account_id=account_id, outcome=outcome, detail=detail))
        if outcome is AttemptOutcome.SUCCESS:
            self.resolution = "succeeded"

    @property
    def served_by(self) -> str | None:
        for r in self.results:
            if r.outcome is AttemptOutcome.SUCCESS:
                return r.account_id
        return None

    def outcome_for(self, account_id: str) -> AttemptOutcome | None:
        for r in self.results:
            if r.account_id == account_id:
                return r.outcome
        return None

    def redacted_failures(self) -> list[dict[str, Any]]:
        # Positional labels only; account ids stay internal.
        return [
            {"candidate": index + 1, "reason": r.outcome.value, "detail": r.detail or ""}
            for index, r in enumerate(self.results)
            if r.outcome is not AttemptOutcome.SUCCESS
        ]
