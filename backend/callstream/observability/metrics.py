from __future__ import annotations

from collections import defaultdict, deque
from typing import Deque, Dict, List

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

router = APIRouter()

# --- HTTP ---
REQUEST_COUNTER = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["path", "method", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "Request latency",
    ["path", "method"],
)

# --- Event pipeline ---
WEBHOOKS_RECEIVED = Counter(
    "callstream_webhooks_received_total",
    "Webhook deliveries accepted by the ingestion endpoint",
    ["outcome"],
)
EVENTS_PROCESSED = Counter(
    "callstream_events_processed_total",
    "Claimed events by type and outcome",
    ["event_type", "outcome"],
)
EVENT_BACKLOG = Gauge(
    "callstream_events_unprocessed",
    "Unprocessed rows in the event queue",
)
CYCLE_DURATION = Histogram(
    "callstream_processor_cycle_seconds",
    "Wall time of one processor cycle",
)
JOB_DURATION = Histogram(
    "callstream_job_duration_seconds",
    "Scheduled job duration",
    ["job"],
)

# --- Live fan-out ---
BROADCAST_DELIVERIES = Counter(
    "callstream_broadcast_deliveries_total",
    "Per-connection sends scheduled by the fan-out",
    ["outcome"],
)
SUBSCRIBERS = Gauge(
    "callstream_subscribers",
    "Open subscriber connections",
)

_LATENCY_SAMPLES: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=200))


def record_latency(path: str, duration_ms: float) -> None:
    _LATENCY_SAMPLES[path].append(duration_ms)


@router.get("/metrics")
async def metrics_endpoint() -> PlainTextResponse:
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/api/health/latency")
async def latency_health() -> dict[str, List[dict[str, float | str]]]:
    payload: List[dict[str, float | str]] = []
    for path, samples in _LATENCY_SAMPLES.items():
        if not samples:
            continue
        ordered = sorted(samples)
        payload.append({
            "path": path,
            "p50_ms": round(_percentile(ordered, 50), 2),
            "p95_ms": round(_percentile(ordered, 95), 2),
            "sample_size": len(samples),
        })
    return {"paths": payload}


def _percentile(ordered: List[float], pct: int) -> float:
    if not ordered:
        return 0.0
    k = (len(ordered) - 1) * (pct / 100)
    f = int(k)
    c = min(f + 1, len(ordered) - 1)
    if f == c:
        return ordered[f]
    return ordered[f] * (c - k) + ordered[c] * (k - f)
