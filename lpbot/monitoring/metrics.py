"""
Prometheus metrics and a small HTTP server with a health endpoint.

- /metrics - Prometheus text exposition
- /health  - Liveness plus last cycle summary (no auth)
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class BotMetrics:
    """Rebalancer metrics on a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Execution ===
        self.submissions = Counter(
            'tx_submissions_total',
            'Transaction submission outcomes',
            labelnames=['label', 'status'],
            registry=reg
        )
        self.submission_latency_ms = Histogram(
            'tx_submission_latency_ms',
            'Time from send to resolved outcome (milliseconds)',
            labelnames=['label'],
            buckets=[500, 1000, 2000, 5000, 10000, 20000, 40000, 60000, 90000, 120000],
            registry=reg
        )
        self.swaps = Counter(
            'swaps_total',
            'Swap attempts by result',
            labelnames=['result'],
            registry=reg
        )
        self.slippage_retries = Counter(
            'slippage_retries_total',
            'Slippage rejections followed by a scoped rebuild',
            labelnames=['operation'],
            registry=reg
        )

        # === Strategy ===
        self.cycles = Counter(
            'rebalance_cycles_total',
            'Control loop cycles by action',
            labelnames=['action'],
            registry=reg
        )
        self.price = Gauge('pool_price', 'Current pool price (token B per token A)', registry=reg)
        self.open_price = Gauge('position_open_price', 'Price the open position is keyed to', registry=reg)
        self.lower_boundary = Gauge('range_lower_boundary', 'Lower boundary of the current range', registry=reg)
        self.upper_boundary = Gauge('range_upper_boundary', 'Upper boundary of the current range', registry=reg)
        self.last_cycle_ts = Gauge('last_cycle_timestamp', 'Unix time of the last completed cycle', registry=reg)

    def record_submission(self, label: str, status: str, duration_ms: float) -> None:
        self.submissions.labels(label=label, status=status).inc()
        self.submission_latency_ms.labels(label=label).observe(duration_ms)

    def render(self) -> bytes:
        return generate_latest(self.registry)


class HealthChecker:
    """Liveness tracking for the control loop."""

    def __init__(self, stale_after_sec: float = 600.0) -> None:
        self._stale_after = stale_after_sec
        self._last_heartbeat = time.time()
        self._details: Dict[str, Any] = {}

    def heartbeat(self, **details: Any) -> None:
        self._last_heartbeat = time.time()
        self._details.update(details)

    def is_healthy(self) -> bool:
        return time.time() - self._last_heartbeat < self._stale_after

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.is_healthy(),
            "last_heartbeat_ms": int(self._last_heartbeat * 1000),
            "details": dict(self._details),
        }


def _response(status: bytes, content_type: bytes, body: bytes) -> bytes:
    return (
        b"HTTP/1.1 " + status + b"\r\n"
        b"Content-Type: " + content_type + b"\r\n"
        b"Content-Length: " + str(len(body)).encode() + b"\r\n"
        b"Connection: close\r\n\r\n"
        + body
    )


async def start_metrics_server(
    metrics: BotMetrics,
    port: int,
    health_checker: Optional[HealthChecker] = None,
    host: str = "0.0.0.0",
) -> asyncio.AbstractServer:
    """Start the HTTP server for /metrics and /health."""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        req = await reader.read(2048)
        path_raw = b"/"
        request_line = req.split(b"\r\n", 1)[0]
        parts = request_line.split(b" ")
        if len(parts) >= 2:
            path_raw = parts[1]
        path = urlparse(path_raw.decode("utf-8", errors="ignore")).path

        if path == "/health":
            if health_checker is not None:
                status = b"200 OK" if health_checker.is_healthy() else b"503 Service Unavailable"
                body = json.dumps(health_checker.to_dict()).encode()
            else:
                status, body = b"200 OK", json.dumps({"healthy": True}).encode()
            resp = _response(status, b"application/json", body)
        elif path == "/metrics":
            resp = _response(b"200 OK", b"text/plain; version=0.0.4", metrics.render())
        else:
            resp = _response(b"404 Not Found", b"text/plain", b"not found\n")

        writer.write(resp)
        await writer.drain()
        writer.close()

    return await asyncio.start_server(handle, host, port)
