from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from enum import Enum
import logging
import time
from typing import Awaitable, Callable, Protocol

from correlator import ArrivalCorrelator
from generator import EventGenerator, MeasuredSpanEnricher, SpanEnricher
from metrics import (
    DEFAULT_MIN_SAMPLES,
    LatencyAnalysis,
    LatencySummary,
    SLOTargets,
    analyze_samples,
    summarize_latencies,
)
from pending import PendingEventTable
from records import LatencySample, Measurement, Notification, SubmitResult
from samples import SampleStore


logger = logging.getLogger(__name__)

NotificationCallback = Callable[[Notification], None]
ProgressCallback = Callable[["ProgressSnapshot"], None]


class SubscriptionError(RuntimeError):
    """The arrival stream could not be established; fatal to the run."""


class SubscriptionHandle(Protocol):
    def unsubscribe(self) -> None:
        ...


class Submitter(Protocol):
    async def submit(self, measurement: Measurement) -> SubmitResult:
        ...


class Subscriber(Protocol):
    async def subscribe(self, on_notification: NotificationCallback) -> SubscriptionHandle:
        ...


@dataclass(slots=True)
class SLOConfig:
    p95_target_ms: float = 1500.0
    p99_target_ms: float = 2500.0
    window_days: int = 30
    burn_rate_threshold: float = 2.0

    def to_targets(self) -> SLOTargets:
        return SLOTargets(
            p95_target_ms=self.p95_target_ms,
            p99_target_ms=self.p99_target_ms,
            window_days=self.window_days,
            burn_rate_threshold=self.burn_rate_threshold,
        )


@dataclass(frozen=True, slots=True)
class BenchmarkConfig:
    sensor_ids: tuple[str, ...] = ("TemperatureSensor1", "HumiditySensor1", "PressureSensor1")
    duration_s: float = 60.0
    interval_ms: float = 1000.0
    max_samples: int = 1000
    drain_timeout_s: float = 15.0
    drain_poll_interval_s: float = 0.1
    min_samples: int = DEFAULT_MIN_SAMPLES
    endpoint: str | None = None
    region: str | None = None
    slo: SLOConfig | None = None

    def __post_init__(self) -> None:
        if not self.sensor_ids:
            raise ValueError("sensor_ids must not be empty")
        if self.duration_s < 0:
            raise ValueError("duration_s must be >= 0")
        if self.interval_ms <= 0:
            raise ValueError("interval_ms must be > 0")
        if self.max_samples < 1:
            raise ValueError("max_samples must be >= 1")
        if self.drain_timeout_s < 0:
            raise ValueError("drain_timeout_s must be >= 0")
        if self.drain_poll_interval_s <= 0:
            raise ValueError("drain_poll_interval_s must be > 0")

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["sensor_ids"] = list(self.sensor_ids)
        return data


class OrchestratorState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    DRAINING = "draining"
    COMPLETE = "complete"


@dataclass(slots=True)
class RunCounters:
    generated: int = 0
    generation_failures: int = 0
    matched: int = 0
    misses: int = 0
    backlog_discarded: int = 0
    malformed: int = 0
    clock_skew: int = 0
    dropped_store_full: int = 0
    unmatched_discarded: int = 0
    subscription_lost: bool = False


@dataclass(slots=True)
class ProgressSnapshot:
    elapsed_s: float
    generated: int
    samples: int
    pending: int
    generation_failures: int
    summary: LatencySummary


@dataclass(slots=True)
class BenchmarkResult:
    run_id: str
    started_at: float
    finished_at: float
    stopped_early: bool
    summary: LatencySummary
    analysis: LatencyAnalysis
    counters: RunCounters
    samples: list[LatencySample] = field(default_factory=list)

    def to_dict(self, include_samples: bool = False) -> dict[str, object]:
        data: dict[str, object] = {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_s": self.finished_at - self.started_at,
            "stopped_early": self.stopped_early,
            "summary": self.summary.to_dict(),
            "analysis": self.analysis.to_dict(),
            "counters": asdict(self.counters),
        }
        if include_samples:
            data["samples"] = [asdict(sample) for sample in self.samples]
        return data


class BenchmarkOrchestrator:
    """Drives one benchmark run: generate, correlate, drain, summarize.

    Each instance owns a fresh pending table and sample store and can run once.
    """

    def __init__(
        self,
        config: BenchmarkConfig,
        submitter: Submitter,
        subscriber: Subscriber,
        run_id: str = "run",
        clock: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
        enricher: SpanEnricher | None = None,
        report_interval_s: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.config = config
        self.submitter = submitter
        self.subscriber = subscriber
        self.run_id = run_id
        self.clock = clock
        self.sleep_fn = sleep_fn
        self.enricher = enricher or MeasuredSpanEnricher(
            endpoint=config.endpoint, region=config.region
        )
        self.report_interval_s = report_interval_s
        self.on_progress = on_progress

        self.state = OrchestratorState.NOT_STARTED
        self.pending = PendingEventTable()
        self.store = SampleStore(config.max_samples)
        self.started_at: float | None = None
        self.correlator: ArrivalCorrelator | None = None
        self.generator: EventGenerator | None = None
        self._subscription: SubscriptionHandle | None = None
        self._early_stop = asyncio.Event()
        self._stopped = False
        self._stopped_early = False
        self._unmatched_discarded = 0
        self._subscription_lost = False
        self._reporter_task: asyncio.Task[None] | None = None

    async def run(self) -> BenchmarkResult:
        if self.state is not OrchestratorState.NOT_STARTED:
            raise RuntimeError("BenchmarkOrchestrator instances can only run once")

        config = self.config
        self.started_at = self.clock()
        logger.info(
            "Starting benchmark %s: sensors=%d duration=%.3fs interval=%.1fms max_samples=%d",
            self.run_id, len(config.sensor_ids), config.duration_s,
            config.interval_ms, config.max_samples,
        )
        self.correlator = ArrivalCorrelator(
            pending=self.pending,
            store=self.store,
            started_at=self.started_at,
            clock=self.clock,
            enricher=self.enricher,
            on_capacity_reached=self._request_early_stop,
        )
        self.generator = EventGenerator(
            submit=self.submitter.submit,
            pending=self.pending,
            sensor_ids=list(config.sensor_ids),
            interval_s=config.interval_ms / 1000.0,
            clock=self.clock,
            enricher=self.enricher,
        )

        try:
            self._subscription = await self.subscriber.subscribe(self._on_notification)
        except Exception as exc:
            self.state = OrchestratorState.COMPLETE
            logger.error("Benchmark %s aborted: subscription failed: %s", self.run_id, exc)
            if isinstance(exc, SubscriptionError):
                raise
            raise SubscriptionError(f"Failed to subscribe: {exc}") from exc
        self._watch_subscription(self._subscription)

        try:
            self.state = OrchestratorState.RUNNING
            self.generator.start(config.duration_s)
            if self.report_interval_s and self.on_progress is not None:
                self._reporter_task = asyncio.create_task(
                    self._report_periodically(self.report_interval_s), name="progress-reporter"
                )
            await self._hold(config.duration_s)

            self.state = OrchestratorState.DRAINING
            await self.generator.stop()
            await self._drain(config.drain_timeout_s)
        finally:
            await self.stop()

        self._unmatched_discarded = self.pending.discard_all()
        if self._unmatched_discarded:
            logger.info(
                "Discarded %d unmatched pending events after drain", self._unmatched_discarded
            )
        finished_at = self.clock()
        self.state = OrchestratorState.COMPLETE
        result = self._build_result(finished_at)
        logger.info(
            "Benchmark %s complete: samples=%d avg=%.2fms p95=%.2fms p99=%.2fms",
            self.run_id, result.summary.total_samples, result.summary.average_latency_ms,
            result.summary.p95_latency_ms, result.summary.p99_latency_ms,
        )
        return result

    async def stop(self) -> None:
        """Cancel generation and unsubscribe; safe to call any number of times."""
        if self._stopped:
            return
        self._stopped = True
        self._early_stop.set()

        if self.correlator is not None:
            self.correlator.close()
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            try:
                subscription.unsubscribe()
            except Exception:  # noqa: BLE001
                logger.warning("Unsubscribe failed for run %s", self.run_id, exc_info=True)
        if self.generator is not None:
            await self.generator.stop()
        if self._reporter_task is not None:
            self._reporter_task.cancel()
            try:
                await self._reporter_task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
            self._reporter_task = None
        logger.debug("Benchmark %s stopped", self.run_id)

    def snapshot(self) -> ProgressSnapshot:
        elapsed = self.clock() - self.started_at if self.started_at is not None else 0.0
        generator_counters = self.generator.counters if self.generator else None
        return ProgressSnapshot(
            elapsed_s=elapsed,
            generated=generator_counters.registered if generator_counters else 0,
            samples=self.store.count(),
            pending=len(self.pending),
            generation_failures=generator_counters.failures if generator_counters else 0,
            summary=summarize_latencies(self.store.latencies(), self.config.min_samples),
        )

    def _on_notification(self, notification: Notification) -> None:
        if self.correlator is None:
            return
        self.correlator.handle(notification)

    def _watch_subscription(self, subscription: SubscriptionHandle) -> None:
        # Handles from KvasirClient report a stream that gave up reconnecting.
        on_error = getattr(subscription, "on_error", None)
        if callable(on_error):
            on_error(self._on_subscription_error)
        on_disconnect = getattr(subscription, "on_disconnect", None)
        if callable(on_disconnect):
            on_disconnect(self._on_subscription_lost)

    def _on_subscription_error(self, error: Exception) -> None:
        logger.error("Benchmark %s subscription failed mid-run: %s", self.run_id, error)
        self._on_subscription_lost()

    def _on_subscription_lost(self) -> None:
        if self._subscription_lost or self._stopped:
            return
        self._subscription_lost = True
        logger.error(
            "Benchmark %s lost its event stream; %d pending events can no longer arrive",
            self.run_id, len(self.pending),
        )

    def _request_early_stop(self) -> None:
        if self.state is OrchestratorState.RUNNING and not self._early_stop.is_set():
            logger.info("Benchmark %s reached its sample cap, stopping early", self.run_id)
            self._stopped_early = True
        self._early_stop.set()

    async def _hold(self, duration_s: float) -> None:
        try:
            await asyncio.wait_for(self._early_stop.wait(), timeout=duration_s)
        except TimeoutError:
            return

    async def _drain(self, timeout_s: float) -> None:
        deadline = self.clock() + timeout_s
        while len(self.pending) > 0 and not self.store.is_full and not self._stopped:
            if self.clock() >= deadline:
                logger.info(
                    "Drain timeout after %.1fs with %d events still pending",
                    timeout_s, len(self.pending),
                )
                return
            await self.sleep_fn(self.config.drain_poll_interval_s)

    async def _report_periodically(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            if self.on_progress is None:
                return
            try:
                self.on_progress(self.snapshot())
            except Exception:  # noqa: BLE001
                logger.debug("Progress callback failed", exc_info=True)

    def _build_result(self, finished_at: float) -> BenchmarkResult:
        samples = self.store.all()
        slo_targets = self.config.slo.to_targets() if self.config.slo is not None else None
        analysis = analyze_samples(samples, self.config.min_samples, slo_targets)
        correlator_counters = self.correlator.counters if self.correlator else None
        generator_counters = self.generator.counters if self.generator else None
        counters = RunCounters(
            generated=generator_counters.registered if generator_counters else 0,
            generation_failures=generator_counters.failures if generator_counters else 0,
            unmatched_discarded=self._unmatched_discarded,
            subscription_lost=self._subscription_lost,
        )
        if correlator_counters is not None:
            counters.matched = correlator_counters.matched
            counters.misses = correlator_counters.misses
            counters.backlog_discarded = correlator_counters.backlog_discarded
            counters.malformed = correlator_counters.malformed
            counters.clock_skew = correlator_counters.clock_skew
            counters.dropped_store_full = correlator_counters.dropped_store_full
        return BenchmarkResult(
            run_id=self.run_id,
            started_at=self.started_at if self.started_at is not None else finished_at,
            finished_at=finished_at,
            stopped_early=self._stopped_early,
            summary=analysis.tail,
            analysis=analysis,
            counters=counters,
            samples=samples,
        )
