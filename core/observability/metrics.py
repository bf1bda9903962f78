"""
Metrics Collection for Billing Sync

Collects in-memory metrics for:
- Billing platform API requests (by status) and rate-limit headroom
- Synchronizer outcomes (by operation)
- Queue drains (processed, succeeded, failed, stopped on budget)
- Processing times (average, p95)

Exposed through the operator API at GET /metrics.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Dict, List, Optional


# =============================================================================
# Metric Data Classes
# =============================================================================

@dataclass
class ApiMetrics:
    """Metrics for outgoing billing platform requests."""
    requests: int = 0
    by_status: Dict[int, int] = field(default_factory=lambda: defaultdict(int))
    rate_limited: int = 0
    token_reloads: int = 0

    # Last seen X-RateLimit-* values
    rate_limit_limit: Optional[int] = None
    rate_limit_remaining: Optional[int] = None
    rate_limit_reset: Optional[int] = None


@dataclass
class SyncMetrics:
    """Metrics for synchronizer outcomes."""
    succeeded: int = 0
    failed: int = 0
    by_operation: Dict[str, Dict[str, int]] = field(
        default_factory=lambda: defaultdict(lambda: {"success": 0, "error": 0})
    )


@dataclass
class QueueMetrics:
    """Metrics for queue drains."""
    drains: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    budget_stops: int = 0
    last_drain_at: Optional[datetime] = None


@dataclass
class TimingMetrics:
    """Processing time samples, per stage."""
    max_samples: int = 1000
    by_stage: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, duration_ms: float, stage: str):
        samples = self.by_stage[stage]
        samples.append(duration_ms)
        if len(samples) > self.max_samples:
            self.by_stage[stage] = samples[-self.max_samples:]

    def get_average(self, stage: str) -> float:
        samples = self.by_stage.get(stage, [])
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, stage: str) -> float:
        samples = self.by_stage.get(stage, [])
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Metrics Collector (Singleton)
# =============================================================================

class MetricsCollector:
    """
    Thread-safe metrics collector.

    Usage:
        metrics = MetricsCollector.instance()
        metrics.record_api_request(200)
        metrics.record_sync_outcome("invoices.create", success=True, duration_ms=310)
    """

    _instance: Optional["MetricsCollector"] = None
    _instance_lock = Lock()

    def __init__(self):
        self.api = ApiMetrics()
        self.sync = SyncMetrics()
        self.queue = QueueMetrics()
        self.timings = TimingMetrics()
        self._lock = Lock()

    @classmethod
    def instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (used by tests)."""
        with cls._instance_lock:
            cls._instance = None

    # =========================================================================
    # API Metrics
    # =========================================================================

    def record_api_request(self, status: int):
        with self._lock:
            self.api.requests += 1
            self.api.by_status[status] += 1
            if status == 429:
                self.api.rate_limited += 1

    def record_rate_limit(self, limit: Optional[int], remaining: Optional[int], reset: Optional[int]):
        """Store the last rate-limit headers returned by the platform."""
        with self._lock:
            self.api.rate_limit_limit = limit
            self.api.rate_limit_remaining = remaining
            self.api.rate_limit_reset = reset

    def record_token_reload(self):
        with self._lock:
            self.api.token_reloads += 1

    # =========================================================================
    # Sync Metrics
    # =========================================================================

    def record_sync_outcome(self, operation: str, success: bool, duration_ms: Optional[float] = None):
        """Record one synchronizer outcome."""
        with self._lock:
            key = "success" if success else "error"
            self.sync.by_operation[operation][key] += 1
            if success:
                self.sync.succeeded += 1
            else:
                self.sync.failed += 1
            if duration_ms is not None:
                self.timings.add_sample(duration_ms, operation)

    # =========================================================================
    # Queue Metrics
    # =========================================================================

    def record_queue_drain(self, processed: int, succeeded: int, failed: int, stopped_on_budget: bool):
        with self._lock:
            self.queue.drains += 1
            self.queue.processed += processed
            self.queue.succeeded += succeeded
            self.queue.failed += failed
            if stopped_on_budget:
                self.queue.budget_stops += 1
            self.queue.last_drain_at = datetime.utcnow()

    # =========================================================================
    # Summary
    # =========================================================================

    def get_timing_stats(self, stage: str) -> Dict[str, float]:
        with self._lock:
            return {
                "average_ms": self.timings.get_average(stage),
                "p95_ms": self.timings.get_p95(stage),
                "sample_count": len(self.timings.by_stage.get(stage, [])),
            }

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "api": {
                    "requests": self.api.requests,
                    "by_status": dict(self.api.by_status),
                    "rate_limited": self.api.rate_limited,
                    "token_reloads": self.api.token_reloads,
                    "rate_limit": {
                        "limit": self.api.rate_limit_limit,
                        "remaining": self.api.rate_limit_remaining,
                        "reset": self.api.rate_limit_reset,
                    },
                },
                "sync": {
                    "succeeded": self.sync.succeeded,
                    "failed": self.sync.failed,
                    "by_operation": {k: dict(v) for k, v in self.sync.by_operation.items()},
                },
                "queue": {
                    "drains": self.queue.drains,
                    "processed": self.queue.processed,
                    "succeeded": self.queue.succeeded,
                    "failed": self.queue.failed,
                    "budget_stops": self.queue.budget_stops,
                    "last_drain_at": self.queue.last_drain_at.isoformat() if self.queue.last_drain_at else None,
                },
                "timings": {
                    stage: {
                        "average_ms": self.timings.get_average(stage),
                        "p95_ms": self.timings.get_p95(stage),
                    }
                    for stage in self.timings.by_stage.keys()
                },
            }


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return MetricsCollector.instance()
