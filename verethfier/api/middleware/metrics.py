"""Prometheus metrics middleware.

Exposes /api/metrics with request counts, latencies and verification /
reconciliation counters in the Prometheus text exposition format. Metrics
are kept in process; each worker reports its own.
"""

from __future__ import annotations

import bisect
import ipaddress
import re
import time
from typing import Callable

from fastapi import FastAPI, HTTPException, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import PlainTextResponse

_UUID_RE = re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")
_SNOWFLAKE_RE = re.compile(r"/\d+")

REGISTRY: list[_Metric] = []


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help_text: str, labels: tuple[str, ...] = ()) -> None:
        self.name = name
        self.help = help_text
        self.labels = labels
        REGISTRY.append(self)

    def _label_str(self, values: tuple, extra: str = "") -> str:
        pairs = [f'{k}="{v}"' for k, v in zip(self.labels, values)]
        if extra:
            pairs.append(extra)
        return "{" + ",".join(pairs) + "}" if pairs else ""

    def _samples(self) -> list[str]:
        raise NotImplementedError

    def collect(self) -> list[str]:
        return [f"# HELP {self.name} {self.help}", f"# TYPE {self.name} {self.kind}", *self._samples()]


class _Counter(_Metric):
    kind = "counter"

    def __init__(self, name: str, help_text: str, labels: tuple[str, ...] = ()) -> None:
        super().__init__(name, help_text, labels)
        self._values: dict[tuple, float] = {}

    def inc(self, label_values: tuple = (), amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Counters only go up")
        self._values[label_values] = self._values.get(label_values, 0.0) + amount

    def value(self, label_values: tuple = ()) -> float:
        return self._values.get(label_values, 0.0)

    def _samples(self) -> list[str]:
        return [
            f"{self.name}{self._label_str(labels)} {value}"
            for labels, value in sorted(self._values.items())
        ]


class _Histogram(_Metric):
    """Cumulative bucket counts; memory stays constant per label set."""

    kind = "histogram"
    BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

    def __init__(self, name: str, help_text: str, labels: tuple[str, ...] = ()) -> None:
        super().__init__(name, help_text, labels)
        # label values -> [per-bucket counts..., sum, count]
        self._series: dict[tuple, list[float]] = {}

    def observe(self, label_values: tuple, value: float) -> None:
        series = self._series.setdefault(label_values, [0.0] * (len(self.BUCKETS) + 2))
        index = bisect.bisect_left(self.BUCKETS, value)
        for i in range(index, len(self.BUCKETS)):
            series[i] += 1
        series[-2] += value
        series[-1] += 1

    def _samples(self) -> list[str]:
        lines: list[str] = []
        for labels, series in sorted(self._series.items()):
            bounds = [str(b) for b in self.BUCKETS] + ["+Inf"]
            counts = series[: len(self.BUCKETS)] + [series[-1]]
            for bound, count in zip(bounds, counts):
                le = 'le="' + bound + '"'
                lines.append(f"{self.name}_bucket{self._label_str(labels, le)} {int(count)}")
            plain = self._label_str(labels)
            lines.append(f"{self.name}_sum{plain} {series[-2]:.6f}")
            lines.append(f"{self.name}_count{plain} {int(series[-1])}")
        return lines


class _Gauge(_Metric):
    kind = "gauge"

    def __init__(self, name: str, help_text: str) -> None:
        super().__init__(name, help_text)
        self.value = 0.0

    def set(self, value: float) -> None:
        self.value = value

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount

    def dec(self, amount: float = 1.0) -> None:
        self.value -= amount

    def _samples(self) -> list[str]:
        return [f"{self.name} {self.value}"]


# ── HTTP ─────────────────────────────────────────────────────────────────────

http_requests_total = _Counter(
    "verethfier_http_requests_total",
    "Total HTTP requests",
    ("method", "path", "status"),
)

http_request_duration = _Histogram(
    "verethfier_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ("method", "path"),
)

active_requests = _Gauge(
    "verethfier_active_requests",
    "Number of currently active HTTP requests",
)

# ── Verification / reconciliation ────────────────────────────────────────────

verifications_total = _Counter(
    "verethfier_verifications_total",
    "Signature verification attempts by outcome",
    ("outcome",),
)

roles_granted_total = _Counter(
    "verethfier_roles_granted_total",
    "Roles granted through signature verification",
    ("source",),
)

reconciliation_outcomes_total = _Counter(
    "verethfier_reconciliation_outcomes_total",
    "Per-assignment reconciliation outcomes",
    ("outcome",),
)

reconciliation_last_run = _Gauge(
    "verethfier_reconciliation_last_run_timestamp",
    "Unix time of the last completed reconciliation sweep",
)


def collect_all_metrics() -> str:
    lines: list[str] = []
    for metric in REGISTRY:
        lines.extend(metric.collect())
    return "\n".join(lines) + "\n"


def normalize_path(path: str) -> str:
    """Collapse ids (UUIDs, Discord snowflakes) for cardinality control."""
    return _SNOWFLAKE_RE.sub("/{id}", _UUID_RE.sub("/{id}", path))


# ── Middleware ────────────────────────────────────────────────────────────────


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/api/metrics":
            return await call_next(request)

        path = normalize_path(request.url.path)
        active_requests.inc()
        start = time.perf_counter()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            active_requests.dec()
            http_requests_total.inc((request.method, path, status))
            http_request_duration.observe((request.method, path), time.perf_counter() - start)


def _is_internal(host: str) -> bool:
    if host in ("localhost", "testclient"):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return address.is_loopback or address.is_private


def setup_metrics_route(app: FastAPI) -> None:
    """Register the /api/metrics endpoint (internal networks only)."""

    @app.get("/api/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request) -> PlainTextResponse:
        client_host = request.client.host if request.client else ""
        if not _is_internal(client_host):
            raise HTTPException(status_code=403, detail="Metrics endpoint restricted to internal access")
        return PlainTextResponse(
            collect_all_metrics(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )
