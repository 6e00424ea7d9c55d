"""
Metrics collection for Anchor Lens
Counts decode outcomes per stage and times decomposition runs
"""

import time
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple
from dataclasses import dataclass
from collections import defaultdict, deque
import statistics

if TYPE_CHECKING:
    from anchor_lens.core.config import MetricsConfig


LabelKey = Tuple[Tuple[str, str], ...]

# stage -> (success counter, failure counter)
DECODE_STAGES = {
    "schemas": ("schemas_built", "schema_build_failures"),
    "calls": ("calls_decoded", "calls_failed"),
    "accounts": ("accounts_decoded", "account_decode_failures"),
    "events": ("events_decoded", "event_decode_failures"),
}


@dataclass
class HistogramStats:
    """Statistical summary of histogram data"""
    operation: str
    count: int
    p50: float
    p95: float
    p99: float
    mean: float
    min: float
    max: float


class MetricsCollector:
    """Collects decode counters and latency samples"""

    def __init__(self, enable_histogram: bool = True, histogram_buckets: Optional[List[float]] = None):
        """
        Initialize metrics collector

        Args:
            enable_histogram: Whether to keep latency samples
            histogram_buckets: Latency buckets (ms) reported alongside exports
        """
        self.enable_histogram = enable_histogram
        self.histogram_buckets = sorted(histogram_buckets or [0.1, 0.5, 1, 5, 10, 50, 100])

        # operation -> recent latency samples (ms)
        self._latencies: Dict[str, deque] = defaultdict(lambda: deque(maxlen=10000))
        # metric_name -> label key -> value; unlabeled values live under ()
        self._counters: Dict[str, Dict[LabelKey, int]] = defaultdict(lambda: defaultdict(int))

    def record_latency(self, operation: str, latency_ms: float) -> None:
        """Record one latency sample for an operation"""
        if self.enable_histogram:
            self._latencies[operation].append(latency_ms)
        self._counters[f"{operation}_count"][()] += 1

    def increment_counter(
        self,
        metric_name: str,
        value: int = 1,
        labels: Optional[Dict[str, str]] = None
    ) -> None:
        """
        Increment a counter metric

        Args:
            metric_name: Name of the counter
            value: Amount to increment (default 1)
            labels: Optional labels, e.g. {"reason": "DiscriminatorMiss"}
        """
        self._counters[metric_name][_label_key(labels)] += value

    def get_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> int:
        """Value for one exact label set; unlabeled when labels is None"""
        series = self._counters.get(metric_name)
        if series is None:
            return 0
        return series.get(_label_key(labels), 0)

    def counter_total(self, metric_name: str) -> int:
        """Sum of a counter across every label set"""
        return sum(self._counters.get(metric_name, {}).values())

    def counter_breakdown(self, metric_name: str, label: str) -> Dict[str, int]:
        """Totals of a counter grouped by one label's values"""
        out: Dict[str, int] = defaultdict(int)
        for key, value in self._counters.get(metric_name, {}).items():
            labels = dict(key)
            if label in labels:
                out[labels[label]] += value
        return dict(out)

    def decode_summary(self) -> Dict[str, Dict]:
        """
        Success and failure totals per decode stage

        Returns:
            stage -> {"ok", "failed", "success_rate"}; calls also carry
            "by_source" and "by_reason" breakdowns
        """
        summary = {}
        for stage, (ok_name, failed_name) in DECODE_STAGES.items():
            ok = self.counter_total(ok_name)
            failed = self.counter_total(failed_name)
            total = ok + failed
            summary[stage] = {
                "ok": ok,
                "failed": failed,
                "success_rate": ok / total if total else None,
            }
        summary["calls"]["by_source"] = self.counter_breakdown("calls_decoded", "source")
        summary["calls"]["by_reason"] = self.counter_breakdown("calls_failed", "reason")
        return summary

    def get_histogram_stats(self, operation: str) -> Optional[HistogramStats]:
        """
        Get histogram statistics for an operation

        Returns:
            HistogramStats or None if no samples were recorded
        """
        samples = list(self._latencies.get(operation, ()))
        if not samples:
            return None

        if len(samples) == 1:
            p50 = p95 = p99 = samples[0]
        else:
            # 99 cut points; index i is the (i + 1)th percentile
            cuts = statistics.quantiles(samples, n=100, method="inclusive")
            p50, p95, p99 = cuts[49], cuts[94], cuts[98]

        return HistogramStats(
            operation=operation,
            count=len(samples),
            p50=p50,
            p95=p95,
            p99=p99,
            mean=statistics.fmean(samples),
            min=min(samples),
            max=max(samples)
        )

    def export_metrics(self) -> Dict:
        """Export all metrics as a JSON-serializable dict"""
        counters = {}
        labeled = {}
        for name, series in self._counters.items():
            for key, value in series.items():
                if key:
                    label_str = ",".join(f"{k}={v}" for k, v in key)
                    labeled[f"{name}{{{label_str}}}"] = value
                else:
                    counters[name] = value

        histograms = {}
        for operation in list(self._latencies):
            stats = self.get_histogram_stats(operation)
            if stats is None:
                continue
            histograms[operation] = {
                "count": stats.count,
                "p50": stats.p50,
                "p95": stats.p95,
                "p99": stats.p99,
                "mean": stats.mean,
                "min": stats.min,
                "max": stats.max,
                "buckets": self._bucket_counts(operation),
            }

        return {
            "counters": counters,
            "labeled_counters": labeled,
            "histograms": histograms,
            "summary": self.decode_summary(),
        }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)"""
        self._latencies.clear()
        self._counters.clear()

    def _bucket_counts(self, operation: str) -> Dict[str, int]:
        samples = self._latencies.get(operation, ())
        return {
            f"le_{bucket}": sum(1 for s in samples if s <= bucket)
            for bucket in self.histogram_buckets
        }


def _label_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    return tuple(sorted(labels.items())) if labels else ()


class LatencyTimer:
    """Context manager timing one operation into a collector"""

    def __init__(self, metrics: MetricsCollector, operation: str):
        self.metrics = metrics
        self.operation = operation
        self.start_time: Optional[float] = None
        self.latency_ms: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            self.latency_ms = (time.perf_counter() - self.start_time) * 1000
            self.metrics.record_latency(self.operation, self.latency_ms)


_global_metrics: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Global collector, created on first use"""
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


def init_metrics(enable_histogram: bool = True, histogram_buckets: Optional[List[float]] = None) -> MetricsCollector:
    """Replace the global collector"""
    global _global_metrics
    _global_metrics = MetricsCollector(enable_histogram, histogram_buckets)
    return _global_metrics


def setup_from_config(metrics_config: "MetricsConfig") -> MetricsCollector:
    """Replace the global collector using the metrics section of a LensConfig"""
    return init_metrics(
        enable_histogram=metrics_config.enable_histogram,
        histogram_buckets=metrics_config.histogram_buckets,
    )
