"""
Request metrics for the knowledge chat HTTP services.

Tracks: latency per endpoint, throughput, remote vs fallback answer tiers,
error count and process memory. Appends one JSON line per request to
metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from collections import Counter
from pathlib import Path

import psutil

from .config import METRICS_DIR


class _LatencyStats:
    __slots__ = ("count", "total_ms", "min_ms", "max_ms", "errors")

    def __init__(self):
        self.count = 0
        self.total_ms = 0.0
        self.min_ms = float("inf")
        self.max_ms = 0.0
        self.errors = 0

    def add(self, latency_ms: float, success: bool):
        self.count += 1
        self.total_ms += latency_ms
        self.min_ms = min(self.min_ms, latency_ms)
        self.max_ms = max(self.max_ms, latency_ms)
        if not success:
            self.errors += 1

    def as_dict(self) -> dict:
        return {
            "requests": self.count,
            "avg_ms": round(self.total_ms / self.count, 2) if self.count else 0.0,
            "min_ms": round(self.min_ms, 2) if self.count else 0.0,
            "max_ms": round(self.max_ms, 2) if self.count else 0.0,
            "errors": self.errors,
        }


class MetricsCollector:
    """Thread-safe request metrics tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path = METRICS_DIR):
        self._lock = threading.Lock()
        self._start_time: float = time.time()

        self._overall = _LatencyStats()
        self._endpoints: dict[str, _LatencyStats] = {}
        self._tiers: Counter[str] = Counter()

        self._log_dir = Path(log_dir)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = self._log_dir / "metrics.jsonl"

        self._process = psutil.Process(os.getpid())

    def record_request(self, endpoint: str, latency_ms: float, success: bool, tier: str = "") -> None:
        """Records a single request's outcome and appends to JSONL log."""
        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "endpoint": endpoint,
            "latency_ms": round(latency_ms, 2),
            "success": success,
            "tier": tier,
        }

        with self._lock:
            self._overall.add(latency_ms, success)
            self._endpoints.setdefault(endpoint, _LatencyStats()).add(latency_ms, success)
            if tier:
                self._tiers[tier] += 1

        # Append outside the lock.
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError:
            pass

    def get_summary(self) -> dict:
        with self._lock:
            overall = self._overall.as_dict()
            endpoints = {name: stats.as_dict() for name, stats in sorted(self._endpoints.items())}
            tiers = dict(self._tiers)

        total = overall["requests"]
        uptime_s = time.time() - self._start_time
        mem_info = self._process.memory_info()

        return {
            "latency": {k: overall[k] for k in ("avg_ms", "min_ms", "max_ms")},
            "throughput": {
                "total_requests": total,
                "requests_per_second": round((total / uptime_s) if uptime_s > 0 else 0.0, 4),
                "uptime_seconds": round(uptime_s, 1),
            },
            "endpoints": endpoints,
            "tiers": {
                "remote": tiers.get("remote", 0),
                "fallback": tiers.get("fallback", 0),
                **{k: v for k, v in tiers.items() if k not in {"remote", "fallback"}},
            },
            "memory": {
                "rss_mb": round(mem_info.rss / (1024 * 1024), 1),
                "vms_mb": round(mem_info.vms / (1024 * 1024), 1),
            },
            "errors": {
                "count": overall["errors"],
                "rate_percent": round((overall["errors"] / total * 100) if total > 0 else 0.0, 2),
            },
        }


# Module-level singleton used by the API server.
metrics_collector = MetricsCollector()
