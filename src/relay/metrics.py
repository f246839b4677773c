"""Request metrics: a JSONL audit log plus Prometheus text counters.

Every request handled by the gateway produces one record written by
``MetricsLogger.write``. Records land in ``requests-YYYYMMDD.jsonl`` under the
metrics directory; the same record updates in-process counters that
``MetricsLogger.render`` exposes in the Prometheus text format and that are
mirrored to ``prometheus.prom`` for file-based scrapers.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
import time
from collections import defaultdict
from typing import Any, Optional

_PROM_FILE = "prometheus.prom"
_HISTOGRAM_BUCKETS: tuple[float, ...] = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0)


def _new_histogram_state() -> dict[str, Any]:
    return {"buckets": [0] * (len(_HISTOGRAM_BUCKETS) + 1), "count": 0, "sum": 0.0}


class _PromMetrics:
    __slots__ = ("_dir", "_lock", "_counter", "_histogram", "_fallbacks")

    def __init__(self, dirpath: str) -> None:
        self._dir = dirpath
        self._lock = threading.Lock()
        self._counter: defaultdict[tuple[str, str, str], int] = defaultdict(int)
        self._histogram: defaultdict[tuple[str, str], dict[str, Any]] = defaultdict(_new_histogram_state)
        self._fallbacks: defaultdict[str, int] = defaultdict(int)

    def record(self, payload: dict[str, Any]) -> None:
        endpoint = str(payload.get("endpoint") or "unknown")
        status = str(payload.get("status") or "0")
        ok_label = "true" if bool(payload.get("ok")) else "false"
        latency_seconds = max(float(payload.get("latency_ms") or 0.0) / 1000.0, 0.0)
        provider = str(payload.get("provider") or "unknown")

        with self._lock:
            self._counter[(endpoint, status, ok_label)] += 1
            hist_state = self._histogram[(endpoint, ok_label)]
            buckets = hist_state["buckets"]
            for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                if latency_seconds <= bound:
                    buckets[idx] += 1
            buckets[-1] += 1
            hist_state["count"] += 1
            hist_state["sum"] += latency_seconds
            if payload.get("rotated"):
                self._fallbacks[provider] += 1
            self._write_locked()

    def render(self) -> str:
        with self._lock:
            return self._render_locked()

    def _render_locked(self) -> str:
        lines: list[str] = [
            "# HELP relay_requests_total Total number of gateway requests",
            "# TYPE relay_requests_total counter",
        ]
        for (endpoint, status, ok_label), value in sorted(self._counter.items()):
            lines.append(
                f'relay_requests_total{{endpoint="{endpoint}",status="{status}",ok="{ok_label}"}} {value}'
            )
        lines.append("# HELP relay_request_latency_seconds Request latency for gateway requests")
        lines.append("# TYPE relay_request_latency_seconds histogram")
        for (endpoint, ok_label), state in sorted(self._histogram.items()):
            buckets = state["buckets"]
            for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                le_value = format(bound, ".6g")
                lines.append(
                    f'relay_request_latency_seconds_bucket{{endpoint="{endpoint}",ok="{ok_label}",le="{le_value}"}} {buckets[idx]}'
                )
            lines.append(
                f'relay_request_latency_seconds_bucket{{endpoint="{endpoint}",ok="{ok_label}",le="+Inf"}} {buckets[-1]}'
            )
            lines.append(
                f'relay_request_latency_seconds_count{{endpoint="{endpoint}",ok="{ok_label}"}} {state["count"]}'
            )
            lines.append(
                f'relay_request_latency_seconds_sum{{endpoint="{endpoint}",ok="{ok_label}"}} {state["sum"]}'
            )
        lines.append("# HELP relay_credential_fallbacks_total Requests that succeeded after credential rotation")
        lines.append("# TYPE relay_credential_fallbacks_total counter")
        for provider, value in sorted(self._fallbacks.items()):
            lines.append(f'relay_credential_fallbacks_total{{provider="{provider}"}} {value}')
        return "\n".join(lines) + "\n"

    def _write_locked(self) -> None:
        os.makedirs(self._dir, exist_ok=True)
        prom_path = os.path.join(self._dir, _PROM_FILE)
        tmp_path = f"{prom_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(self._render_locked())
        os.replace(tmp_path, prom_path)


class MetricsLogger:
    def __init__(self, dirpath: str):
        self.dir = dirpath
        os.makedirs(self.dir, exist_ok=True)
        self._lock: Optional[asyncio.Lock] = None
        self._prom = _PromMetrics(self.dir)

    def _file(self) -> str:
        return os.path.join(self.dir, f"requests-{time.strftime('%Y%m%d')}.jsonl")

    async def write(self, record: dict[str, Any]) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            with open(self._file(), "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        self._prom.record(record)

    def render(self) -> str:
        return self._prom.render()
