from datetime import datetime, timedelta, timezone

import httpx
import pytest

from quota_gateway.auth import AuthManager
from quota_gateway.errors import QuotaPolicyError
from quota_gateway.models import Account, ApiKeyCredential, OAuthCredential, UsageSnapshot
from quota_gateway.providers import ProviderRegistry
from quota_gateway.quota import QuotaTracker, ResetHint, UsageFetcher, parse_usage_payload
from quota_gateway.token_store import TokenStore

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _FakeFetcher:
    def __init__(self, snapshot: UsageSnapshot):
        self.snapshot = snapshot
        self.calls: list[str] = []

    async def fetch(self, account: Account) -> UsageSnapshot:
        self.calls.append(account.id)
        return self.snapshot


def _tracker(tmp_path, *, clock=None, fetcher=None) -> QuotaTracker:
    return QuotaTracker(TokenStore(str(tmp_path)), ProviderRegistry.load(), fetcher=fetcher, clock=clock or _Clock(NOW))


def _api_account(account_id: str, *, usage: UsageSnapshot | None = None, auto_refresh: bool | None = None) -> Account:
    return Account(
        id=account_id,
        provider="openrouter",
        credential=ApiKeyCredential(api_key=f"sk-or-{account_id}-0123456789"),
        usage=usage or UsageSnapshot(),
        auto_refresh=auto_refresh,
    )


def _copilot_account(account_id: str, usage: UsageSnapshot) -> Account:
    return Account(
        id=account_id,
        provider="github-copilot",
        credential=OAuthCredential(access_token=f"gho-{account_id}-0123456789"),
        usage=usage,
    )


def test_can_serve_respects_limit_and_unknown_limit(tmp_path):
    tracker = _tracker(tmp_path)
    bounded = _api_account("a", usage=UsageSnapshot(consumed=95, limit=100))
    unbounded = _api_account("b", usage=UsageSnapshot(consumed=10_000))

    assert tracker.can_serve(bounded, 5)
    assert not tracker.can_serve(bounded, 6)
    assert tracker.can_serve(unbounded, 1_000_000)


def test_elapsed_window_counts_as_fresh(tmp_path):
    tracker = _tracker(tmp_path)
    account = _api_account("a", usage=UsageSnapshot(consumed=100, limit=100, reset_at=NOW - timedelta(seconds=1)))
    assert tracker.can_serve(account, 100)


def test_record_usage_accumulates_within_window(tmp_path):
    tracker = _tracker(tmp_path)
    tracker.store.save(_api_account("a", usage=UsageSnapshot(consumed=10, limit=100)))

    assert tracker.record_usage("a", 5) is True
    assert tracker.record_usage("a", 7) is True
    assert tracker.store.get("a").usage.consumed == 22


def test_record_usage_after_elapsed_window_starts_new_one(tmp_path):
    tracker = _tracker(tmp_path)
    tracker.store.save(_api_account("a", usage=UsageSnapshot(consumed=90, limit=100, reset_at=NOW - timedelta(seconds=1))))

    new_reset = NOW + timedelta(hours=1)
    tracker.record_usage("a", 4, ResetHint(reset_at=new_reset, limit=200))

    usage = tracker.store.get("a").usage
    assert usage.consumed == 4
    assert usage.reset_at == new_reset
    assert usage.limit == 200


def test_relative_reset_hints_accumulate_within_one_window(tmp_path):
    clock = _Clock(NOW)
    tracker = _tracker(tmp_path, clock=clock)
    tracker.store.save(_api_account("a", usage=UsageSnapshot(consumed=0, limit=1000)))

    # "x-ratelimit-reset-tokens: 6m0s" resolves to a later instant on every response.
    for step in range(3):
        clock.now = NOW + timedelta(seconds=step)
        tracker.record_usage("a", 100, ResetHint(reset_at=clock.now + timedelta(minutes=6)))

    usage = tracker.store.get("a").usage
    assert usage.consumed == 300
    assert usage.reset_at == NOW + timedelta(minutes=6)

    clock.now = NOW + timedelta(minutes=7)
    tracker.record_usage("a", 10, ResetHint(reset_at=clock.now + timedelta(minutes=6)))
    usage = tracker.store.get("a").usage
    assert usage.consumed == 10
    assert usage.reset_at == NOW + timedelta(minutes=13)


def test_record_rejection_pins_limit_and_cools_down(tmp_path):
    clock = _Clock(NOW)
    tracker = _tracker(tmp_path, clock=clock)
    tracker.store.save(_api_account("a", usage=UsageSnapshot(consumed=40)))

    tracker.record_rejection("a")

    account = tracker.store.get("a")
    assert account.usage.limit == 40
    assert account.usage.consumed == 40
    assert not tracker.can_serve(account, 1)

    clock.now = NOW + timedelta(minutes=5)
    assert not tracker.in_cooldown("a")
    assert tracker.can_serve(tracker.store.get("a"), 1)


def test_rejection_without_usage_history_recovers_after_cooldown(tmp_path):
    clock = _Clock(NOW)
    tracker = _tracker(tmp_path, clock=clock)
    tracker.store.save(_api_account("a"))

    tracker.record_rejection("a")

    assert not tracker.can_serve(tracker.store.get("a"), 1)
    assert tracker.store.get("a").usage.limit is None

    clock.now = NOW + timedelta(seconds=61)
    assert tracker.can_serve(tracker.store.get("a"), 1)


def test_rejection_with_reset_at_sets_window(tmp_path):
    tracker = _tracker(tmp_path)
    tracker.store.save(_api_account("a", usage=UsageSnapshot(consumed=50, limit=100)))
    reset_at = NOW + timedelta(seconds=30)

    tracker.record_rejection("a", reset_at)

    usage = tracker.store.get("a").usage
    assert usage.consumed == 100
    assert usage.reset_at == reset_at


def test_scan_only_accounts_untouched_by_usage_and_rejections(tmp_path):
    tracker = _tracker(tmp_path)
    snapshot = UsageSnapshot(consumed=3, limit=300)
    tracker.store.save(_copilot_account("cp", snapshot))

    assert tracker.auto_refresh_eligible(tracker.store.get("cp")) is False
    assert tracker.record_usage("cp", 50) is False
    tracker.record_rejection("cp")

    assert tracker.store.get("cp").usage == snapshot
    # The cooldown still keeps it out of rotation.
    assert tracker.in_cooldown("cp")


def test_account_override_can_opt_out_of_auto_refresh(tmp_path):
    tracker = _tracker(tmp_path)
    tracker.store.save(_api_account("a", auto_refresh=False))
    tracker.store.save(_copilot_account("cp", UsageSnapshot()).model_copy(update={"auto_refresh": True}))

    assert tracker.auto_refresh_eligible(tracker.store.get("a")) is False
    # An override cannot opt a scan-only provider in.
    assert tracker.auto_refresh_eligible(tracker.store.get("cp")) is False


@pytest.mark.asyncio
async def test_background_refresh_skips_scan_only_accounts(tmp_path):
    fetcher = _FakeFetcher(UsageSnapshot(consumed=77, limit=1000))
    tracker = _tracker(tmp_path, fetcher=fetcher)
    copilot_snapshot = UsageSnapshot(consumed=3, limit=300)
    tracker.store.save(_copilot_account("cp", copilot_snapshot))
    tracker.store.save(_api_account("or-1"))
    tracker.store.save(_api_account("or-2", auto_refresh=False))

    refreshed = await tracker.refresh_eligible()

    assert refreshed == 1
    assert fetcher.calls == ["or-1"]
    assert tracker.store.get("or-1").usage.consumed == 77
    assert tracker.store.get("or-1").usage.scanned_at == NOW
    assert tracker.store.get("cp").usage == copilot_snapshot
    assert tracker.store.get("or-2").usage == UsageSnapshot()


def test_background_snapshot_for_scan_only_account_raises(tmp_path):
    tracker = _tracker(tmp_path)
    tracker.store.save(_copilot_account("cp", UsageSnapshot()))
    with pytest.raises(QuotaPolicyError):
        tracker.apply_snapshot("cp", UsageSnapshot(consumed=1), manual=False)


@pytest.mark.asyncio
async def test_manual_scan_updates_scan_only_account(tmp_path):
    fetcher = _FakeFetcher(UsageSnapshot(consumed=120, limit=300))
    tracker = _tracker(tmp_path, fetcher=fetcher)
    tracker.store.save(_copilot_account("cp", UsageSnapshot(consumed=3, limit=300)))
    tracker.record_rejection("cp")

    usage = await tracker.scan("cp")

    assert usage.consumed == 120
    assert tracker.store.get("cp").usage.consumed == 120
    assert not tracker.in_cooldown("cp")
    assert await tracker.scan("missing") is None


def test_parse_usage_payload_unwraps_data_and_reads_generic_keys():
    snap = parse_usage_payload({"data": {"usage": 12.0, "limit": 100, "reset_at": "2026-01-02T00:00:00Z"}})
    assert snap.consumed == 12
    assert snap.limit == 100
    assert snap.reset_at == datetime(2026, 1, 2, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_usage_fetcher_reads_provider_usage_endpoint(tmp_path):
    store = TokenStore(str(tmp_path))
    providers = ProviderRegistry.load()
    auth = AuthManager(store, providers, clock=lambda: NOW)
    auth.register(_api_account("or-1"))

    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "https://openrouter.ai/api/v1/key"
        assert request.headers["authorization"] == "Bearer sk-or-or-1-0123456789"
        return httpx.Response(200, json={"data": {"usage": 5, "limit": 50}})

    fetcher = UsageFetcher(auth, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    try:
        snap = await fetcher.fetch(store.get("or-1"))
    finally:
        await fetcher.close()
        await auth.close()
    assert snap == UsageSnapshot(consumed=5, limit=50)
