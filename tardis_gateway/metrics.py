"""Prometheus metrics for the Tardis gateway (optional).

Safe to import without prometheus_client installed: every hook becomes a
no-op. TARDIS_METRICS_ENABLED=0 disables the /metrics endpoint and the HTTP
middleware.

Labels stay low-cardinality: action kinds, rule types and RPC method names,
never wallet addresses or mints.
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

PROM_AVAILABLE = False
try:
    from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST  # type: ignore
    PROM_AVAILABLE = True
except Exception:  # pragma: no cover
    Counter = Histogram = None  # type: ignore
    generate_latest = None  # type: ignore
    CONTENT_TYPE_LATEST = "text/plain; version=0.0.4"


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


# ---------------------------
# Core metric objects
# ---------------------------
if PROM_AVAILABLE:
    HTTP_REQUESTS_TOTAL = Counter(
        "tardis_http_requests_total",
        "Total HTTP requests received",
        ["method", "route", "status"],
    )
    HTTP_REQUEST_LATENCY_SECONDS = Histogram(
        "tardis_http_request_latency_seconds",
        "HTTP request latency in seconds",
        ["method", "route"],
        buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
    )
    SIGNATURE_VERIFICATIONS_TOTAL = Counter(
        "tardis_signature_verifications_total",
        "Signed action verifications",
        ["kind", "outcome"],
    )
    GATE_DECISIONS_TOTAL = Counter(
        "tardis_gate_decisions_total",
        "Community admission decisions",
        ["outcome", "rule_type"],
    )
    RPC_ERRORS_TOTAL = Counter(
        "tardis_rpc_errors_total",
        "Solana RPC failures (gate fails closed)",
        ["method"],
    )
else:  # pragma: no cover
    HTTP_REQUESTS_TOTAL = HTTP_REQUEST_LATENCY_SECONDS = None
    SIGNATURE_VERIFICATIONS_TOTAL = GATE_DECISIONS_TOTAL = RPC_ERRORS_TOTAL = None


def record_verification(kind: str, outcome: str) -> None:
    if PROM_AVAILABLE and SIGNATURE_VERIFICATIONS_TOTAL is not None:
        SIGNATURE_VERIFICATIONS_TOTAL.labels(kind=str(kind), outcome=str(outcome)).inc()


def record_gate_decision(outcome: str, rule_type: str) -> None:
    if PROM_AVAILABLE and GATE_DECISIONS_TOTAL is not None:
        GATE_DECISIONS_TOTAL.labels(outcome=str(outcome), rule_type=str(rule_type or "none")).inc()


def record_rpc_error(method: str) -> None:
    if PROM_AVAILABLE and RPC_ERRORS_TOTAL is not None:
        RPC_ERRORS_TOTAL.labels(method=str(method)).inc()


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not PROM_AVAILABLE:
        return
    if not _env_bool("TARDIS_METRICS_ENABLED", True):
        return

    from fastapi import Request
    from fastapi.responses import Response

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
