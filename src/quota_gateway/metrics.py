from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, start_http_server

server_requests_total = Counter(
    "gateway_server_requests_total",
    "Total HTTP requests handled by the gateway",
    labelnames=["path", "status"],
)

server_request_latency_seconds = Histogram(
    "gateway_server_request_latency_seconds",
    "HTTP request latency (seconds)",
    buckets=[0.05, 0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120, 300],
    labelnames=["path"],
)

server_errors_total = Counter(
    "gateway_server_errors_total",
    "Total error responses by error code",
    labelnames=["code"],
)

dispatch_requests_total = Counter(
    "gateway_dispatch_requests_total",
    "Dispatched requests by provider and resolution",
    labelnames=["provider", "resolution"],
)

dispatch_attempts_total = Counter(
    "gateway_dispatch_attempts_total",
    "Per-candidate dispatch attempts by outcome",
    labelnames=["provider", "outcome"],
)

upstream_latency_seconds = Histogram(
    "gateway_upstream_latency_seconds",
    "Upstream provider latency until response headers",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60],
    labelnames=["provider"],
)

token_refresh_total = Counter(
    "gateway_token_refresh_total",
    "Credential refresh calls by result",
    labelnames=["provider", "result"],
)

quota_refresh_total = Counter(
    "gateway_quota_refresh_total",
    "Usage snapshot fetches by trigger and result",
    labelnames=["provider", "trigger", "result"],
)

bridge_requests_total = Counter(
    "gateway_bridge_requests_total",
    "Requests forwarded to the compatibility process",
    labelnames=["status"],
)

bridge_open_streams = Gauge(
    "gateway_bridge_open_streams",
    "Bridge responses currently being relayed",
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
