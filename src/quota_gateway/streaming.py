from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import structlog

from .openai_compat import make_openai_error_response
from .upstream import usage_cost

log = structlog.get_logger()

# Longest partial SSE line kept while sniffing; a usage event is far smaller.
_MAX_PENDING_LINE = 64 * 1024


def sse_encode(data: str) -> bytes:
    return f"data: {data}\n\n".encode("utf-8")


class UsageSniffer:
    """Watches relayed SSE bytes for a `usage` object without altering them."""

    def __init__(self) -> None:
        self._pending = b""
        self.tokens: int | None = None

    def feed(self, chunk: bytes) -> None:
        data = self._pending + chunk
        lines = data.split(b"\n")
        self._pending = lines.pop()
        if len(self._pending) > _MAX_PENDING_LINE:
            self._pending = b""
        for line in lines:
            self._inspect(line.strip())

    def close(self) -> None:
        if self._pending:
            self._inspect(self._pending.strip())
            self._pending = b""

    def _inspect(self, line: bytes) -> None:
        if not line.startswith(b"data:") or b"usage" not in line:
            return
        raw = line[len(b"data:") :].strip()
        try:
            event: Any = json.loads(raw)
        except ValueError:
            return
        cost = usage_cost(event)
        if cost is None and isinstance(event, dict) and isinstance(event.get("message"), dict):
            # Anthropic puts usage on message_start.message and message_delta.
            cost = usage_cost(event["message"])
        if cost is None:
            return
        if isinstance(event, dict) and event.get("type") == "message_delta":
            # Anthropic reports output tokens after the input count from message_start.
            self.tokens = (self.tokens or 0) + cost
        else:
            self.tokens = cost


async def relay_stream(
    resp: httpx.Response,
    *,
    on_complete: Callable[[int | None], None] | None = None,
    sse_errors: bool = True,
) -> AsyncIterator[bytes]:
    """
    Yield the upstream body byte for byte, then report sniffed usage.

    The upstream response is closed in `finally`, so a client disconnect
    (generator close) releases the provider connection too.
    """
    sniffer = UsageSniffer()
    try:
        async for chunk in resp.aiter_raw():
            sniffer.feed(chunk)
            yield chunk
    except httpx.HTTPError as e:
        log.warning("stream_relay_interrupted", error=type(e).__name__)
        if sse_errors:
            err = make_openai_error_response(
                message="Upstream stream was interrupted.", type="upstream_error", code="upstream_unavailable"
            )
            yield sse_encode(json.dumps(err.model_dump()))
    finally:
        await resp.aclose()
        sniffer.close()
        if on_complete is not None:
            on_complete(sniffer.tokens)
