from datetime import timedelta

import httpx
import pytest

from quota_gateway.config import GatewayConfig
from quota_gateway.gateway import Gateway
from quota_gateway.models import utcnow

BASE = "/v0/management"


def _app(tmp_path, *, usage=None, bridge=None, **overrides):
    pytest.importorskip("fastapi")
    from quota_gateway.server import create_app

    values = {"api_keys": [], "management_secret": None, **overrides}
    cfg = GatewayConfig(auth_dir=str(tmp_path), enable_metrics=False, quota_refresh_interval_seconds=0, **values)
    gateway = Gateway(
        cfg,
        usage_client=httpx.AsyncClient(transport=httpx.MockTransport(usage or (lambda _: httpx.Response(500)))),
        bridge_client=httpx.AsyncClient(transport=httpx.MockTransport(bridge or (lambda _: httpx.Response(200)))),
    )
    return create_app(cfg=cfg, gateway=gateway), gateway


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_account_listing_never_exposes_credentials(tmp_path):
    app, _ = _app(tmp_path)
    expires = (utcnow() + timedelta(hours=2)).isoformat()
    async with _client(app) as client:
        created = await client.post(
            f"{BASE}/accounts",
            json={
                "id": "claude-1",
                "provider": "claude",
                "label": "work",
                "credential": {
                    "kind": "oauth",
                    "access_token": "at-very-secret-0001",
                    "refresh_token": "rt-very-secret-0001",
                    "expires_at": expires,
                },
            },
        )
        listed = await client.get(f"{BASE}/accounts")

    assert created.status_code == 201
    assert created.json()["auth_kind"] == "oauth"
    assert created.json()["status"] == "active"
    assert listed.status_code == 200
    assert [a["id"] for a in listed.json()] == ["claude-1"]
    for body in (created.text, listed.text):
        assert "at-very-secret-0001" not in body
        assert "rt-very-secret-0001" not in body


@pytest.mark.asyncio
async def test_created_account_without_id_gets_generated_one(tmp_path):
    app, gateway = _app(tmp_path)
    async with _client(app) as client:
        resp = await client.post(
            f"{BASE}/accounts",
            json={"provider": "openai", "credential": {"kind": "api_key", "api_key": "sk-0123456789"}},
        )
    assert resp.status_code == 201
    account_id = resp.json()["id"]
    assert account_id.startswith("openai-")
    assert gateway.store.get(account_id) is not None


@pytest.mark.asyncio
async def test_account_listing_filters_by_provider(tmp_path):
    app, _ = _app(tmp_path)
    async with _client(app) as client:
        for account_id, provider in (("oa-1", "openai"), ("or-1", "openrouter")):
            await client.post(
                f"{BASE}/accounts",
                json={
                    "id": account_id,
                    "provider": provider,
                    "credential": {"kind": "api_key", "api_key": f"sk-{account_id}-0123456789"},
                },
            )
        resp = await client.get(f"{BASE}/accounts", params={"provider": "openrouter"})
    assert [a["id"] for a in resp.json()] == ["or-1"]
    assert resp.json()[0]["auto_refresh"] is True


@pytest.mark.asyncio
async def test_invalid_account_is_rejected(tmp_path):
    app, _ = _app(tmp_path)
    async with _client(app) as client:
        unknown = await client.post(
            f"{BASE}/accounts",
            json={"provider": "nope", "credential": {"kind": "api_key", "api_key": "sk-0123456789"}},
        )
        wrong_kind = await client.post(
            f"{BASE}/accounts",
            json={"provider": "openai", "credential": {"kind": "oauth", "access_token": "at-0123456789"}},
        )
    assert unknown.status_code == 400
    assert unknown.json()["error"]["code"] == "invalid_config"
    assert wrong_kind.status_code == 400


@pytest.mark.asyncio
async def test_delete_account_is_idempotent(tmp_path):
    app, gateway = _app(tmp_path)
    async with _client(app) as client:
        await client.post(
            f"{BASE}/accounts",
            json={"id": "oa-1", "provider": "openai", "credential": {"kind": "api_key", "api_key": "sk-0123456789"}},
        )
        first = await client.delete(f"{BASE}/accounts/oa-1")
        second = await client.delete(f"{BASE}/accounts/oa-1")
    assert first.json() == {"id": "oa-1", "deleted": True}
    assert second.json() == {"id": "oa-1", "deleted": False}
    assert gateway.store.get("oa-1") is None


@pytest.mark.asyncio
async def test_routing_update_marks_bridge_for_restart(tmp_path):
    app, gateway = _app(tmp_path)
    async with _client(app) as client:
        for account_id in ("oa-1", "oa-2"):
            await client.post(
                f"{BASE}/accounts",
                json={
                    "id": account_id,
                    "provider": "openai",
                    "credential": {"kind": "api_key", "api_key": f"sk-{account_id}-0123456789"},
                },
            )
        updated = await client.put(
            f"{BASE}/routing/openai", json={"strategy": "priority-fallback", "order": ["oa-2", "oa-1"]}
        )
        health = await client.get(f"{BASE}/health")
        restarted = await client.post(f"{BASE}/bridge/restart")
        routing = await client.get(f"{BASE}/routing")

    assert updated.status_code == 200
    assert updated.json() == {
        "provider": "openai",
        "strategy": "priority-fallback",
        "order": ["oa-2", "oa-1"],
        "bridge_restart_required": True,
    }
    assert health.json()["bridge"]["restart_required"] is True
    assert restarted.json() == {"restarted": True, "restart_required": False}
    assert routing.json()["openai"] == {"strategy": "priority-fallback", "order": ["oa-2", "oa-1"]}
    assert gateway.bridge.strategy_for("openai").value == "priority-fallback"


@pytest.mark.asyncio
async def test_invalid_routing_update_is_rejected(tmp_path):
    app, _ = _app(tmp_path)
    async with _client(app) as client:
        bad_strategy = await client.put(f"{BASE}/routing/openai", json={"strategy": "random"})
        bad_provider = await client.put(f"{BASE}/routing/nope", json={"strategy": "round-robin"})
        foreign = await client.put(f"{BASE}/routing/openai", json={"strategy": "priority-fallback", "order": ["x"]})
    assert bad_strategy.status_code == 400
    assert bad_provider.status_code == 400
    assert foreign.status_code == 400
    assert foreign.json()["error"]["code"] == "invalid_config"


@pytest.mark.asyncio
async def test_manual_scan_updates_scan_only_account(tmp_path):
    def usage(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "https://api.github.com/copilot_internal/user"
        assert request.headers["authorization"] == "Bearer gho-0123456789"
        return httpx.Response(200, json={"used": 120, "entitlement": 300})

    app, gateway = _app(tmp_path, usage=usage)
    async with _client(app) as client:
        await client.post(
            f"{BASE}/accounts",
            json={
                "id": "cp-1",
                "provider": "github-copilot",
                "credential": {"kind": "oauth", "access_token": "gho-0123456789"},
            },
        )
        listed = await client.get(f"{BASE}/accounts")
        scanned = await client.post(f"{BASE}/accounts/cp-1/scan")
        missing = await client.post(f"{BASE}/accounts/nope/scan")

    assert listed.json()[0]["auto_refresh"] is False
    assert scanned.status_code == 200
    assert scanned.json()["usage"]["consumed"] == 120
    assert scanned.json()["usage"]["limit"] == 300
    assert gateway.store.get("cp-1").usage.consumed == 120
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "unknown_account"


@pytest.mark.asyncio
async def test_scan_on_provider_without_usage_endpoint_is_unsupported(tmp_path):
    app, _ = _app(tmp_path)
    async with _client(app) as client:
        await client.post(
            f"{BASE}/accounts",
            json={"id": "oa-1", "provider": "openai", "credential": {"kind": "api_key", "api_key": "sk-0123456789"}},
        )
        resp = await client.post(f"{BASE}/accounts/oa-1/scan")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "unsupported"


@pytest.mark.asyncio
async def test_health_reports_bridge_and_uptime(tmp_path):
    app, _ = _app(tmp_path)
    async with _client(app) as client:
        resp = await client.get(f"{BASE}/health")
    body = resp.json()
    assert body["status"] == "ok"
    assert body["uptime_seconds"] >= 0
    assert body["last_success_at"] is None
    assert body["bridge"] == {"state": "ok", "restart_required": False, "open_streams": 0}


@pytest.mark.asyncio
async def test_config_view_omits_secrets(tmp_path):
    app, _ = _app(tmp_path, api_keys=["gw-key-secret"], management_secret="mgmt-secret")
    async with _client(app) as client:
        resp = await client.get(f"{BASE}/config", headers={"X-Management-Key": "mgmt-secret"})
    assert resp.status_code == 200
    assert "gw-key-secret" not in resp.text
    assert "mgmt-secret" not in resp.text
    assert "openai" in resp.json()["providers"]
