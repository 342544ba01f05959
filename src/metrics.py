from __future__ import annotations

from dataclasses import asdict, dataclass, field
from math import ceil, floor, sqrt
from typing import Callable, Iterable, Sequence

from records import LatencySample


# Below this many samples percentiles are reported as 0 instead of being
# computed from a handful of points.
DEFAULT_MIN_SAMPLES = 10

PAYLOAD_SIZE_BUCKETS: tuple[tuple[float, float, str], ...] = (
    (0, 100, "0-100B"),
    (100, 500, "100-500B"),
    (500, 1000, "500B-1KB"),
    (1000, float("inf"), "1KB+"),
)
CONCURRENCY_BUCKETS: tuple[tuple[float, float, str], ...] = (
    (0, 5, "0-5 concurrent"),
    (5, 10, "5-10 concurrent"),
    (10, 20, "10-20 concurrent"),
    (20, float("inf"), "20+ concurrent"),
)


@dataclass(slots=True)
class LatencySummary:
    total_samples: int = 0
    average_latency_ms: float = 0.0
    min_latency_ms: float = 0.0
    max_latency_ms: float = 0.0
    p50_latency_ms: float = 0.0
    p90_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0
    p999_latency_ms: float = 0.0
    tail_ratio: float = 0.0

    def to_dict(self) -> dict[str, float | int]:
        return asdict(self)


@dataclass(slots=True)
class GroupStats:
    count: int
    avg_latency_ms: float
    p95_latency_ms: float
    p99_latency_ms: float


@dataclass(slots=True)
class SLOTargets:
    p95_target_ms: float
    p99_target_ms: float
    window_days: int = 30
    burn_rate_threshold: float = 2.0


@dataclass(slots=True)
class SLOCheck:
    actual_ms: float
    target_ms: float
    compliant: bool
    error_budget_burn: float


@dataclass(slots=True)
class SLOVerdict:
    p95: SLOCheck
    p99: SLOCheck
    window_days: int
    overall_compliant: bool
    burn_rate_alert: bool


@dataclass(slots=True)
class WindowMetric:
    window_start: float
    sample_count: int
    samples_per_s: float
    avg_latency_ms: float
    p95_latency_ms: float


@dataclass(slots=True)
class RunAggregate:
    runs: int
    mean_ms: float
    std_dev_ms: float
    median_ms: float
    p95_ms: float
    min_ms: float
    max_ms: float
    coefficient_of_variation: float


@dataclass(slots=True)
class LatencyAnalysis:
    tail: LatencySummary
    by_endpoint: dict[str, GroupStats] = field(default_factory=dict)
    by_region: dict[str, GroupStats] = field(default_factory=dict)
    by_payload_size: dict[str, GroupStats] = field(default_factory=dict)
    by_concurrency: dict[str, GroupStats] = field(default_factory=dict)
    span_breakdown: dict[str, dict[str, float]] = field(default_factory=dict)
    flag_impact: dict[str, dict[str, float | int]] = field(default_factory=dict)
    slo: SLOVerdict | None = None

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def percentile(values: Sequence[float], p: float) -> float:
    """Continuous-rank percentile (``p`` in 0..100) with linear interpolation."""
    if not values:
        return 0.0
    if len(values) == 1:
        return float(values[0])

    sorted_values = sorted(values)
    position = (len(sorted_values) - 1) * (p / 100.0)
    lower_index = floor(position)
    upper_index = min(ceil(position), len(sorted_values) - 1)
    if lower_index == upper_index:
        return float(sorted_values[lower_index])

    left = sorted_values[lower_index]
    right = sorted_values[upper_index]
    fraction = position - lower_index
    return float(left + (right - left) * fraction)


def tail_ratio(p99: float, p50: float) -> float:
    if p50 <= 0:
        return 0.0
    return p99 / p50


def summarize_latencies(
    values: Sequence[float], min_samples: int = DEFAULT_MIN_SAMPLES
) -> LatencySummary:
    if not values:
        return LatencySummary()

    summary = LatencySummary(
        total_samples=len(values),
        average_latency_ms=sum(values) / len(values),
        min_latency_ms=float(min(values)),
        max_latency_ms=float(max(values)),
    )
    if len(values) < min_samples:
        return summary

    summary.p50_latency_ms = percentile(values, 50)
    summary.p90_latency_ms = percentile(values, 90)
    summary.p95_latency_ms = percentile(values, 95)
    summary.p99_latency_ms = percentile(values, 99)
    summary.p999_latency_ms = percentile(values, 99.9)
    summary.tail_ratio = tail_ratio(summary.p99_latency_ms, summary.p50_latency_ms)
    return summary


def _group_stats(values: list[float], min_samples: int) -> GroupStats:
    summary = summarize_latencies(values, min_samples=min_samples)
    return GroupStats(
        count=summary.total_samples,
        avg_latency_ms=summary.average_latency_ms,
        p95_latency_ms=summary.p95_latency_ms,
        p99_latency_ms=summary.p99_latency_ms,
    )


def group_by(
    samples: Iterable[LatencySample],
    key_fn: Callable[[LatencySample], str | None],
    min_samples: int = DEFAULT_MIN_SAMPLES,
) -> dict[str, GroupStats]:
    groups: dict[str, list[float]] = {}
    for sample in samples:
        key = key_fn(sample)
        if key is None:
            continue
        groups.setdefault(key, []).append(sample.latency_ms)
    return {key: _group_stats(values, min_samples) for key, values in groups.items()}


def bucket_label(
    value: object, buckets: tuple[tuple[float, float, str], ...]
) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    for lower, upper, label in buckets:
        if lower <= numeric < upper:
            return label
    return None


def _dimension(name: str) -> Callable[[LatencySample], str | None]:
    def key_fn(sample: LatencySample) -> str | None:
        value = sample.dimensions.get(name)
        return None if value is None else str(value)

    return key_fn


def _bucketed_dimension(
    name: str, buckets: tuple[tuple[float, float, str], ...]
) -> Callable[[LatencySample], str | None]:
    def key_fn(sample: LatencySample) -> str | None:
        return bucket_label(sample.dimensions.get(name), buckets)

    return key_fn


def span_breakdown(samples: Sequence[LatencySample]) -> dict[str, dict[str, float]]:
    totals: dict[str, float] = {}
    counts: dict[str, int] = {}
    for sample in samples:
        for span_name, duration in sample.spans.items():
            if duration is None:
                continue
            totals[span_name] = totals.get(span_name, 0.0) + float(duration)
            counts[span_name] = counts.get(span_name, 0) + 1

    avg_spans = {name: totals[name] / counts[name] for name in totals}
    total_avg = sum(avg_spans.values())
    return {
        name: {
            "avg_ms": avg,
            "share_pct": (avg / total_avg * 100.0) if total_avg > 0 else 0.0,
        }
        for name, avg in sorted(avg_spans.items())
    }


def flag_impact(
    samples: Sequence[LatencySample], flag: str
) -> dict[str, float | int] | None:
    flagged: list[float] = []
    unflagged: list[float] = []
    for sample in samples:
        value = sample.dimensions.get(flag)
        if value is None:
            continue
        (flagged if bool(value) else unflagged).append(sample.latency_ms)

    measured = len(flagged) + len(unflagged)
    if measured == 0:
        return None
    return {
        "measured": measured,
        "flagged_count": len(flagged),
        "flagged_rate": len(flagged) / measured,
        "avg_latency_flagged_ms": (sum(flagged) / len(flagged)) if flagged else 0.0,
        "avg_latency_unflagged_ms": (sum(unflagged) / len(unflagged)) if unflagged else 0.0,
        "max_latency_flagged_ms": float(max(flagged)) if flagged else 0.0,
    }


def check_slo(summary: LatencySummary, targets: SLOTargets) -> SLOVerdict:
    def _check(actual: float, target: float) -> SLOCheck:
        burn = (actual - target) / target if target > 0 else 0.0
        return SLOCheck(
            actual_ms=actual,
            target_ms=target,
            compliant=actual <= target,
            error_budget_burn=burn,
        )

    p95 = _check(summary.p95_latency_ms, targets.p95_target_ms)
    p99 = _check(summary.p99_latency_ms, targets.p99_target_ms)
    return SLOVerdict(
        p95=p95,
        p99=p99,
        window_days=targets.window_days,
        overall_compliant=p95.compliant and p99.compliant,
        burn_rate_alert=max(p95.error_budget_burn, p99.error_budget_burn)
        > targets.burn_rate_threshold,
    )


def analyze_samples(
    samples: Sequence[LatencySample],
    min_samples: int = DEFAULT_MIN_SAMPLES,
    slo: SLOTargets | None = None,
) -> LatencyAnalysis:
    tail = summarize_latencies([sample.latency_ms for sample in samples], min_samples)
    analysis = LatencyAnalysis(
        tail=tail,
        by_endpoint=group_by(samples, _dimension("endpoint"), min_samples),
        by_region=group_by(samples, _dimension("region"), min_samples),
        by_payload_size=group_by(
            samples, _bucketed_dimension("payload_size", PAYLOAD_SIZE_BUCKETS), min_samples
        ),
        by_concurrency=group_by(
            samples, _bucketed_dimension("concurrency", CONCURRENCY_BUCKETS), min_samples
        ),
        span_breakdown=span_breakdown(samples),
    )
    for flag in ("cold_start", "cache_hit"):
        impact = flag_impact(samples, flag)
        if impact is not None:
            analysis.flag_impact[flag] = impact
    if slo is not None:
        analysis.slo = check_slo(tail, slo)
    return analysis


def build_window_metrics(
    samples: Sequence[LatencySample], window_seconds: float = 1.0
) -> list[WindowMetric]:
    if window_seconds <= 0:
        raise ValueError("window_seconds must be > 0")

    buckets: dict[float, list[float]] = {}
    for sample in samples:
        window_start = floor(sample.received_at / window_seconds) * window_seconds
        # Keep deterministic keys for common decimal window sizes.
        window_start = round(window_start, 9)
        buckets.setdefault(window_start, []).append(sample.latency_ms)

    window_metrics: list[WindowMetric] = []
    for window_start in sorted(buckets):
        latencies = buckets[window_start]
        window_metrics.append(
            WindowMetric(
                window_start=window_start,
                sample_count=len(latencies),
                samples_per_s=len(latencies) / window_seconds,
                avg_latency_ms=sum(latencies) / len(latencies),
                p95_latency_ms=percentile(latencies, 95),
            )
        )
    return window_metrics


def aggregate_runs(run_averages: Sequence[float]) -> RunAggregate | None:
    if not run_averages:
        return None

    runs = len(run_averages)
    mean = sum(run_averages) / runs
    variance = sum((value - mean) ** 2 for value in run_averages) / runs
    std_dev = sqrt(variance)
    return RunAggregate(
        runs=runs,
        mean_ms=mean,
        std_dev_ms=std_dev,
        median_ms=percentile(run_averages, 50),
        p95_ms=percentile(run_averages, 95),
        min_ms=float(min(run_averages)),
        max_ms=float(max(run_averages)),
        coefficient_of_variation=(std_dev / mean * 100.0) if mean > 0 else 0.0,
    )
