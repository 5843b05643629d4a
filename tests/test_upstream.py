import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from quota_gateway.errors import AuthError, QuotaExceededError, UpstreamUnavailableError
from quota_gateway.models import Account, ApiKeyCredential
from quota_gateway.providers import ProviderRegistry
from quota_gateway.upstream import (
    UpstreamClient,
    UpstreamReply,
    parse_retry_after,
    reset_hint_from_headers,
    usage_cost,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

ACCOUNT = Account(id="oa-1", provider="openai", credential=ApiKeyCredential(api_key="sk-live-0123456789"))


def _client(handler) -> UpstreamClient:
    return UpstreamClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


async def _chat(handler, payload=None):
    provider = ProviderRegistry.load().get("openai")
    client = _client(handler)
    try:
        return await client.chat(provider, ACCOUNT, ACCOUNT.credential, payload or {"model": "gpt-4.1", "messages": []})
    finally:
        await client.close()


def test_reset_hint_from_openai_duration_headers():
    headers = httpx.Headers({"x-ratelimit-reset-tokens": "6m0s", "x-ratelimit-limit-tokens": "90000"})
    hint = reset_hint_from_headers(headers, NOW)
    assert hint.reset_at == NOW + timedelta(minutes=6)
    assert hint.limit == 90000


def test_reset_hint_from_anthropic_timestamp_headers():
    headers = httpx.Headers({"anthropic-ratelimit-tokens-reset": "2026-01-01T12:01:00Z"})
    hint = reset_hint_from_headers(headers, NOW)
    assert hint.reset_at == NOW + timedelta(minutes=1)
    assert hint.limit is None


def test_reset_hint_absent_or_unparseable():
    assert reset_hint_from_headers(httpx.Headers({}), NOW) is None
    assert reset_hint_from_headers(httpx.Headers({"x-ratelimit-reset-tokens": "soon"}), NOW) is None


def test_parse_retry_after_accepts_seconds_only():
    assert parse_retry_after("7") == 7
    assert parse_retry_after(" 12 ") == 12
    assert parse_retry_after("Wed, 21 Oct 2026 07:28:00 GMT") is None
    assert parse_retry_after(None) is None


def test_usage_cost_reads_openai_and_anthropic_shapes():
    assert usage_cost({"usage": {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7}}) == 7
    assert usage_cost({"usage": {"input_tokens": 10, "output_tokens": 5}}) == 15
    assert usage_cost({"usage": None}) is None
    assert usage_cost(["not", "a", "dict"]) is None


@pytest.mark.asyncio
async def test_chat_sends_credential_and_returns_reply():
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-live-0123456789"
        assert request.headers["accept-encoding"] == "identity"
        assert json.loads(request.content)["model"] == "gpt-4.1"
        return httpx.Response(
            200,
            json={"id": "c1", "choices": [], "usage": {"total_tokens": 12}},
            headers={"x-ratelimit-reset-tokens": "30s"},
        )

    reply = await _chat(handler)

    assert isinstance(reply, UpstreamReply)
    assert reply.ok
    assert reply.body["id"] == "c1"
    assert reply.reset_hint is not None


@pytest.mark.asyncio
async def test_chat_maps_statuses_that_move_the_fallback_chain():
    with pytest.raises(AuthError):
        await _chat(lambda _: httpx.Response(401, json={"error": {"message": "bad key"}}))

    with pytest.raises(QuotaExceededError) as exc:
        await _chat(lambda _: httpx.Response(429, headers={"retry-after": "7"}, json={}))
    assert exc.value.retry_after_seconds == 7

    with pytest.raises(UpstreamUnavailableError) as unavailable:
        await _chat(lambda _: httpx.Response(503, text="overloaded"))
    assert unavailable.value.status_code == 503


@pytest.mark.asyncio
async def test_chat_relays_other_client_errors():
    reply = await _chat(lambda _: httpx.Response(400, json={"error": {"message": "bad model", "type": "invalid_request_error"}}))
    assert reply.status_code == 400
    assert not reply.ok
    assert reply.body["error"]["message"] == "bad model"

    plain = await _chat(lambda _: httpx.Response(404, text="no such route"))
    assert plain.body["error"]["message"] == "no such route"


@pytest.mark.asyncio
async def test_chat_transport_failure_is_upstream_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamUnavailableError):
        await _chat(handler)


@pytest.mark.asyncio
async def test_open_stream_returns_open_response_or_raises():
    provider = ProviderRegistry.load().get("openai")

    async def sse():
        yield b"data: [DONE]\n\n"

    def ok_handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=sse())

    client = _client(ok_handler)
    try:
        resp = await client.open_stream(provider, ACCOUNT, ACCOUNT.credential, {"model": "gpt-4.1", "stream": True})
        assert isinstance(resp, httpx.Response)
        assert b"".join([c async for c in resp.aiter_raw()]) == b"data: [DONE]\n\n"
        await resp.aclose()
    finally:
        await client.close()

    client = _client(lambda _: httpx.Response(429, headers={"retry-after": "3"}, json={}))
    try:
        with pytest.raises(QuotaExceededError):
            await client.open_stream(provider, ACCOUNT, ACCOUNT.credential, {"model": "gpt-4.1", "stream": True})
    finally:
        await client.close()

    client = _client(lambda _: httpx.Response(400, json={"error": {"message": "nope"}}))
    try:
        reply = await client.open_stream(provider, ACCOUNT, ACCOUNT.credential, {"model": "gpt-4.1", "stream": True})
        assert isinstance(reply, UpstreamReply)
        assert reply.status_code == 400
    finally:
        await client.close()
