from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .models import Account, AccountSummary, Credential, UsageSnapshot
from .openai_compat import make_openai_error_response

if TYPE_CHECKING:
    from .gateway import Gateway

MANAGEMENT_PREFIX = "/v0/management"


class AccountCreate(BaseModel):
    id: str | None = None
    provider: str
    credential: Credential
    label: str | None = None
    email: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    auto_refresh: bool | None = None
    usage: UsageSnapshot | None = None

    def to_account(self) -> Account:
        return Account(
            id=self.id or f"{self.provider}-{uuid.uuid4().hex[:12]}",
            provider=self.provider,
            credential=self.credential,
            label=self.label,
            email=self.email,
            metadata=self.metadata,
            auto_refresh=self.auto_refresh,
            usage=self.usage or UsageSnapshot(),
        )


class RoutingUpdate(BaseModel):
    strategy: str
    order: list[str] | None = None


def build_management_router(gateway: "Gateway", *, version: str):
    """Routes for the GUI/CLI. Reads never take routing locks beyond a snapshot copy."""
    router = APIRouter(prefix=MANAGEMENT_PREFIX, tags=["management"])

    def _not_found(account_id: str):
        return JSONResponse(
            status_code=404,
            content=make_openai_error_response(
                message=f"Unknown account {account_id!r}.", type="invalid_request_error", code="unknown_account"
            ).model_dump(),
        )

    @router.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "version": version,
            "started_at": gateway.started_at.isoformat(),
            "uptime_seconds": gateway.uptime_seconds,
            "last_success_at": gateway.last_success_at.isoformat() if gateway.last_success_at else None,
            "bridge": {
                "state": await gateway.bridge.health(),
                "restart_required": gateway.bridge.restart_required,
                "open_streams": gateway.bridge.open_streams,
            },
        }

    @router.get("/version")
    async def get_version() -> dict[str, str]:
        return {"version": version}

    @router.get("/config")
    async def get_config() -> dict[str, Any]:
        cfg = gateway.cfg
        return {
            "debug": cfg.debug,
            "routing": gateway.routing.strategies(),
            "passthrough": {
                "enabled": cfg.passthrough_enabled,
                "base_url": cfg.passthrough_base_url,
                "restart_required": gateway.bridge.restart_required,
            },
            "refresh_margin_seconds": cfg.refresh_margin_seconds,
            "attempt_timeout_seconds": cfg.attempt_timeout_seconds,
            "quota_refresh_interval_seconds": cfg.quota_refresh_interval_seconds,
            "providers": gateway.providers.ids(),
        }

    @router.get("/routing")
    async def get_routing() -> dict[str, Any]:
        return gateway.routing.strategies()

    @router.put("/routing/{provider_id}")
    async def put_routing(provider_id: str, update: RoutingUpdate) -> dict[str, Any]:
        gateway.routing.set_strategy(provider_id, update.strategy, update.order)
        return {
            "provider": provider_id,
            **gateway.routing.strategies()[provider_id],
            "bridge_restart_required": gateway.bridge.restart_required,
        }

    @router.get("/accounts", response_model=list[AccountSummary])
    async def list_accounts(provider: str | None = None) -> list[AccountSummary]:
        return gateway.account_summaries(provider)

    @router.post("/accounts", status_code=201, response_model=AccountSummary)
    async def create_account(body: AccountCreate) -> AccountSummary:
        account = gateway.auth.register(body.to_account())
        return gateway.account_summary(account.id)

    @router.delete("/accounts/{account_id}")
    async def delete_account(account_id: str) -> dict[str, Any]:
        return {"id": account_id, "deleted": gateway.auth.deregister(account_id)}

    @router.post("/accounts/{account_id}/scan")
    async def scan_account(account_id: str):
        usage = await gateway.quota.scan(account_id)
        if usage is None:
            return _not_found(account_id)
        return {"id": account_id, "usage": usage.model_dump(mode="json")}

    @router.post("/bridge/restart")
    async def restart_bridge() -> dict[str, Any]:
        await gateway.bridge.restart()
        return {"restarted": True, "restart_required": gateway.bridge.restart_required}

    return router
