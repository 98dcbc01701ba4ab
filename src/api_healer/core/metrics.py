"""
Metrics collection system for test self-healing operations.

This module provides metrics collection for healing success rates, AI usage,
cache effectiveness and per-strategy performance.
"""

import threading
from collections import defaultdict, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Dict, Optional, Any
from enum import Enum
import json
import logging

from .models import HealingAttempt, HealingStatus


class MetricType(Enum):
    """Types of metrics collected."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass
class MetricPoint:
    """A single metric data point."""
    timestamp: datetime
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class HealingMetrics:
    """Aggregated healing metrics."""
    # Success/failure rates
    total_healing_attempts: int = 0
    successful_healings: int = 0
    failed_healings: int = 0
    budget_exceeded: int = 0
    pending_validation: int = 0
    success_rate: float = 0.0

    # Performance metrics
    avg_healing_time: float = 0.0
    avg_ai_response_time: float = 0.0

    # Distributions
    failure_type_counts: Dict[str, int] = field(default_factory=dict)
    strategy_counts: Dict[str, int] = field(default_factory=dict)
    strategy_success_rates: Dict[str, float] = field(default_factory=dict)

    # AI usage
    ai_calls: int = 0
    ai_failures: int = 0
    total_tokens_used: int = 0
    total_cost: float = 0.0

    # Cache effectiveness
    cache_hits: int = 0
    cache_misses: int = 0
    cache_hit_rate: float = 0.0


class MetricsCollector:
    """Thread-safe metrics collector for healing operations."""

    def __init__(self, max_points: int = 1000):
        """
        Initialize metrics collector.

        Args:
            max_points: How many histogram points to retain per metric
        """
        # Thread safety
        self._lock = threading.RLock()

        # Metric storage
        self._counters: Dict[str, int] = defaultdict(int)
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_points))
        self._totals: Dict[str, float] = defaultdict(float)

        self.logger = logging.getLogger("healing.metrics")

    def increment_counter(self, name: str, value: int = 1, labels: Optional[Dict[str, str]] = None):
        """Increment a counter metric."""
        with self._lock:
            self._counters[self._make_key(name, labels)] += value

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Set a gauge metric value."""
        with self._lock:
            self._gauges[self._make_key(name, labels)] = value

    def record_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Record a value in a histogram."""
        with self._lock:
            key = self._make_key(name, labels)
            self._histograms[key].append(MetricPoint(
                timestamp=datetime.now(),
                value=value,
                labels=labels or {}
            ))

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> int:
        with self._lock:
            return self._counters.get(self._make_key(name, labels), 0)

    def record_attempt(self, attempt: HealingAttempt):
        """Record a terminal or validating healing attempt."""
        strategy = attempt.strategy.value
        with self._lock:
            self.increment_counter("healing_attempts_total")
            self.increment_counter("healing_attempts_by_type",
                                   labels={"failure_type": attempt.failure_type.value})
            self.increment_counter("healing_attempts_by_strategy", labels={"strategy": strategy})

            if attempt.status == HealingStatus.HEALED:
                self.increment_counter("healing_success_total")
                self.increment_counter("healing_success_by_strategy", labels={"strategy": strategy})
            elif attempt.status == HealingStatus.BUDGET_EXCEEDED:
                self.increment_counter("healing_budget_exceeded_total")
            elif attempt.status == HealingStatus.VALIDATING:
                self.increment_counter("healing_pending_validation_total")
            else:
                self.increment_counter("healing_failure_total")

            self.record_histogram("healing_total_duration", attempt.duration)
            self._totals["tokens_used"] += attempt.tokens_used
            self._totals["cost"] += attempt.estimated_cost

    def record_validation(self, pending: HealingAttempt, final: HealingAttempt):
        """Move an attempt out of the pending-validation bucket."""
        with self._lock:
            self.increment_counter("healing_pending_validation_total", -1)
            if final.status == HealingStatus.HEALED:
                self.increment_counter("healing_success_total")
                self.increment_counter("healing_success_by_strategy",
                                       labels={"strategy": final.strategy.value})
            else:
                self.increment_counter("healing_failure_total")

    def record_ai_call(self, success: bool, duration: float, tokens: int = 0):
        """Record one call to the completion capability."""
        with self._lock:
            self.increment_counter("ai_calls_total")
            if not success:
                self.increment_counter("ai_failures_total")
            self.record_histogram("ai_response_time", duration)
            self.logger.debug(f"AI call recorded: success={success}, tokens={tokens}, duration={duration:.2f}s")

    def record_cache_lookup(self, hit: bool):
        """Record a healing cache lookup."""
        self.increment_counter("cache_hits_total" if hit else "cache_misses_total")

    def get_current_metrics(self) -> HealingMetrics:
        """Get current aggregated metrics."""
        with self._lock:
            total = self._counters.get("healing_attempts_total", 0)
            successful = self._counters.get("healing_success_total", 0)
            hits = self._counters.get("cache_hits_total", 0)
            misses = self._counters.get("cache_misses_total", 0)

            failure_type_counts = self._labelled_counts("healing_attempts_by_type", "failure_type")
            strategy_counts = self._labelled_counts("healing_attempts_by_strategy", "strategy")
            strategy_success = self._labelled_counts("healing_success_by_strategy", "strategy")
            strategy_success_rates = {
                strategy: strategy_success.get(strategy, 0) / count
                for strategy, count in strategy_counts.items() if count > 0
            }

            return HealingMetrics(
                total_healing_attempts=total,
                successful_healings=successful,
                failed_healings=self._counters.get("healing_failure_total", 0),
                budget_exceeded=self._counters.get("healing_budget_exceeded_total", 0),
                pending_validation=self._counters.get("healing_pending_validation_total", 0),
                success_rate=successful / total if total > 0 else 0.0,
                avg_healing_time=self._average("healing_total_duration"),
                avg_ai_response_time=self._average("ai_response_time"),
                failure_type_counts=failure_type_counts,
                strategy_counts=strategy_counts,
                strategy_success_rates=strategy_success_rates,
                ai_calls=self._counters.get("ai_calls_total", 0),
                ai_failures=self._counters.get("ai_failures_total", 0),
                total_tokens_used=int(self._totals["tokens_used"]),
                total_cost=round(self._totals["cost"], 6),
                cache_hits=hits,
                cache_misses=misses,
                cache_hit_rate=hits / (hits + misses) if hits + misses > 0 else 0.0,
            )

    def get_summary(self) -> Dict[str, Any]:
        """Compact view of the current metrics for status endpoints and logs."""
        metrics = self.get_current_metrics()
        return {
            "total_attempts": metrics.total_healing_attempts,
            "successful": metrics.successful_healings,
            "failed": metrics.failed_healings,
            "budget_exceeded": metrics.budget_exceeded,
            "pending_validation": metrics.pending_validation,
            "success_rate": round(metrics.success_rate, 4),
            "avg_healing_time": round(metrics.avg_healing_time, 4),
            "ai_calls": metrics.ai_calls,
            "ai_failures": metrics.ai_failures,
            "cache_hit_rate": round(metrics.cache_hit_rate, 4),
            "total_tokens_used": metrics.total_tokens_used,
            "total_cost": metrics.total_cost,
        }

    def export_metrics(self, format: str = "json") -> str:
        """Export metrics in specified format."""
        metrics = self.get_current_metrics()

        if format == "json":
            return json.dumps(asdict(metrics), default=str, indent=2)
        elif format == "prometheus":
            return self._export_prometheus_format(metrics)
        else:
            raise ValueError(f"Unsupported export format: {format}")

    def reset(self):
        """Drop all collected data."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._totals.clear()

    def _average(self, name: str) -> float:
        points = self._histograms.get(name)
        if not points:
            return 0.0
        return sum(p.value for p in points) / len(points)

    def _labelled_counts(self, name: str, label: str) -> Dict[str, int]:
        prefix = f"{name}_{label}:"
        return {
            key[len(prefix):]: value
            for key, value in self._counters.items()
            if key.startswith(prefix)
        }

    def _make_key(self, name: str, labels: Optional[Dict[str, str]] = None) -> str:
        """Create a key for metric storage."""
        if not labels:
            return name

        label_str = "_".join(f"{k}:{v}" for k, v in sorted(labels.items()))
        return f"{name}_{label_str}"

    def _export_prometheus_format(self, metrics: HealingMetrics) -> str:
        """Export metrics in Prometheus format."""
        lines = []

        lines.append("# HELP healing_attempts_total Total number of healing attempts")
        lines.append("# TYPE healing_attempts_total counter")
        lines.append(f"healing_attempts_total {metrics.total_healing_attempts}")

        lines.append("# HELP healing_success_total Total number of successful healings")
        lines.append("# TYPE healing_success_total counter")
        lines.append(f"healing_success_total {metrics.successful_healings}")

        lines.append("# HELP healing_tokens_total Tokens consumed by AI repairs")
        lines.append("# TYPE healing_tokens_total counter")
        lines.append(f"healing_tokens_total {metrics.total_tokens_used}")

        lines.append("# HELP healing_avg_duration_seconds Average healing duration")
        lines.append("# TYPE healing_avg_duration_seconds gauge")
        lines.append(f"healing_avg_duration_seconds {metrics.avg_healing_time}")

        lines.append("# HELP healing_cache_hit_rate Healing cache hit rate")
        lines.append("# TYPE healing_cache_hit_rate gauge")
        lines.append(f"healing_cache_hit_rate {metrics.cache_hit_rate}")

        return "\n".join(lines)


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector
