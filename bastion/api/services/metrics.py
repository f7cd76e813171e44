"""
BASTION - Request Metrics
=========================

In-process request and audit counters.

One instance is owned by the application (``app.state.metrics``) and
handed to the components that report into it, so tests build isolated
instances instead of sharing module state.
"""

import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional


@dataclass
class LatencyWindow:
    """Rolling window of recent response times."""

    max_samples: int = 1000
    samples: Deque[float] = field(default_factory=deque)

    def add(self, value_ms: float) -> None:
        self.samples.append(value_ms)
        while len(self.samples) > self.max_samples:
            self.samples.popleft()

    def percentile(self, pct: float) -> Optional[float]:
        if not self.samples:
            return None
        ordered = sorted(self.samples)
        index = min(len(ordered) - 1, int(round(pct / 100 * (len(ordered) - 1))))
        return ordered[index]

    def average(self) -> Optional[float]:
        if not self.samples:
            return None
        return sum(self.samples) / len(self.samples)


class RequestMetrics:
    """
    Request, error and audit-write counters.

    Provides:
    - Request counts by method and status class
    - Error counts by error kind
    - Audit write successes and failures
    - Latency average and percentiles
    """

    def __init__(self, max_latency_samples: int = 1000):
        self._lock = threading.Lock()
        self.started_at = datetime.now(timezone.utc)

        self._requests_total = 0
        self._requests_by_method: Dict[str, int] = defaultdict(int)
        self._responses_by_class: Dict[str, int] = defaultdict(int)
        self._errors_by_kind: Dict[str, int] = defaultdict(int)
        self._audit_written = 0
        self._audit_failed = 0
        self._latency = LatencyWindow(max_samples=max_latency_samples)

    def record_request(self, method: str, status_code: int, duration_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            self._requests_by_method[method.upper()] += 1
            self._responses_by_class[f"{status_code // 100}xx"] += 1
            self._latency.add(duration_ms)

    def record_error(self, kind: str) -> None:
        with self._lock:
            self._errors_by_kind[kind] += 1

    def record_audit_write(self, success: bool) -> None:
        with self._lock:
            if success:
                self._audit_written += 1
            else:
                self._audit_failed += 1

    @property
    def audit_failures(self) -> int:
        return self._audit_failed

    def snapshot(self) -> Dict[str, Any]:
        """Current counters as a JSON-friendly dict."""
        with self._lock:
            uptime = (datetime.now(timezone.utc) - self.started_at).total_seconds()
            return {
                "uptime_seconds": round(uptime, 1),
                "requests_total": self._requests_total,
                "requests_by_method": dict(self._requests_by_method),
                "responses_by_class": dict(self._responses_by_class),
                "errors_by_kind": dict(self._errors_by_kind),
                "audit": {
                    "written": self._audit_written,
                    "failed": self._audit_failed,
                },
                "latency_ms": {
                    "avg": self._latency.average(),
                    "p50": self._latency.percentile(50),
                    "p95": self._latency.percentile(95),
                    "p99": self._latency.percentile(99),
                },
            }

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._requests_by_method.clear()
            self._responses_by_class.clear()
            self._errors_by_kind.clear()
            self._audit_written = 0
            self._audit_failed = 0
            self._latency.samples.clear()
