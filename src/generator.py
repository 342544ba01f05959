from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from enum import Enum
import json
import logging
import random
import time
from typing import Awaitable, Callable, Protocol

from correlator import build_event_key, to_millis
from pending import PendingEventTable
from records import Measurement, Notification, PendingEvent, SubmitResult


logger = logging.getLogger(__name__)

MEASUREMENT_ID_PREFIX = "http://example.org/Measurement_"

SubmitFn = Callable[[Measurement], Awaitable[SubmitResult]]


class GeneratorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(slots=True)
class GeneratorCounters:
    ticks: int = 0
    submitted: int = 0
    registered: int = 0
    failures: int = 0
    dropped_after_stop: int = 0


class SpanEnricher(Protocol):
    def on_generate(
        self,
        measurement: Measurement,
        submit_elapsed_ms: float,
        pending_count: int,
    ) -> tuple[dict[str, float], dict[str, object]]:
        ...

    def on_arrival(
        self,
        pending: PendingEvent,
        notification: Notification,
        pending_count: int,
    ) -> tuple[dict[str, float], dict[str, object]]:
        ...


class MeasuredSpanEnricher:
    """Records only what the harness can actually observe.

    Spans such as queue, GC or TLS time are not visible from the client side
    and are therefore left out instead of being estimated.
    """

    def __init__(self, endpoint: str | None = None, region: str | None = None) -> None:
        self.endpoint = endpoint
        self.region = region

    def on_generate(
        self,
        measurement: Measurement,
        submit_elapsed_ms: float,
        pending_count: int,
    ) -> tuple[dict[str, float], dict[str, object]]:
        dimensions: dict[str, object] = {
            "payload_size": len(json.dumps(asdict(measurement))),
            "concurrency": pending_count,
        }
        if self.endpoint:
            dimensions["endpoint"] = self.endpoint
        if self.region:
            dimensions["region"] = self.region
        return {"io_time_ms": submit_elapsed_ms}, dimensions

    def on_arrival(
        self,
        pending: PendingEvent,
        notification: Notification,
        pending_count: int,
    ) -> tuple[dict[str, float], dict[str, object]]:
        dimensions: dict[str, object] = {}
        if notification.payload_size is not None:
            dimensions["notification_size"] = notification.payload_size
        return {}, dimensions


def _being_cancelled() -> bool:
    current = asyncio.current_task()
    return current is not None and current.cancelling() > 0


def build_measurement_id(sensor_id: str, generated_at: float) -> str:
    return f"{MEASUREMENT_ID_PREFIX}{sensor_id}_{to_millis(generated_at)}"


class EventGenerator:
    def __init__(
        self,
        submit: SubmitFn,
        pending: PendingEventTable,
        sensor_ids: list[str],
        interval_s: float,
        clock: Callable[[], float] = time.time,
        enricher: SpanEnricher | None = None,
        value_fn: Callable[[], float] | None = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.submit = submit
        self.pending = pending
        self.sensor_ids = list(sensor_ids)
        self.interval_s = interval_s
        self.clock = clock
        self.enricher = enricher
        self.value_fn = value_fn or (lambda: random.random() * 100)
        self.counters = GeneratorCounters()
        self.state = GeneratorState.IDLE
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def start(self, duration_s: float) -> asyncio.Task[None]:
        if self.state is not GeneratorState.IDLE:
            raise RuntimeError(f"Generator cannot start from state {self.state.value}")
        self.state = GeneratorState.RUNNING
        self._task = asyncio.create_task(self._run(duration_s), name="event-generator")
        logger.info(
            "Event generation started: sensors=%s interval=%.3fs duration=%.3fs",
            ",".join(self.sensor_ids), self.interval_s, duration_s,
        )
        return self._task

    async def stop(self) -> None:
        if self.state is GeneratorState.IDLE:
            self.state = GeneratorState.STOPPED
            return
        if self.state is GeneratorState.RUNNING:
            self.state = GeneratorState.STOPPING
        self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                if _being_cancelled():
                    raise
        self.state = GeneratorState.STOPPED

    @property
    def is_running(self) -> bool:
        return self.state is GeneratorState.RUNNING

    async def _run(self, duration_s: float) -> None:
        deadline = self.clock() + duration_s
        try:
            while not self._stop_event.is_set():
                if self.clock() >= deadline:
                    break
                await self.tick()
                remaining = deadline - self.clock()
                if remaining <= 0:
                    break
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(), timeout=min(self.interval_s, remaining)
                    )
                except TimeoutError:
                    continue
        finally:
            if self.state is GeneratorState.RUNNING:
                self.state = GeneratorState.STOPPING
            logger.info(
                "Event generation stopped: submitted=%d registered=%d failures=%d",
                self.counters.submitted, self.counters.registered, self.counters.failures,
            )

    async def tick(self) -> None:
        self.counters.ticks += 1
        for sensor_id in self.sensor_ids:
            if not self.is_running:
                return
            await self._emit(sensor_id)

    async def _emit(self, sensor_id: str) -> None:
        generated_at = self.clock()
        measurement = Measurement(
            measurement_id=build_measurement_id(sensor_id, generated_at),
            sensor_id=sensor_id,
            timestamp=generated_at,
            value=self.value_fn(),
        )

        submit_started = time.perf_counter()
        try:
            result = await self.submit(measurement)
        except Exception as exc:  # noqa: BLE001
            self.counters.failures += 1
            logger.warning(
                "Failed to submit measurement for %s: [%s] %s", sensor_id, type(exc).__name__, exc
            )
            return
        submit_elapsed_ms = (time.perf_counter() - submit_started) * 1000.0
        self.counters.submitted += 1

        if not result.success:
            self.counters.failures += 1
            logger.warning("Submit for %s reported failure", sensor_id)
            return

        if not self.is_running:
            self.counters.dropped_after_stop += 1
            logger.debug("Dropping %s submitted after stop was requested", measurement.measurement_id)
            return

        spans: dict[str, float] = {}
        dimensions: dict[str, object] = {}
        if self.enricher is not None:
            try:
                spans, dimensions = self.enricher.on_generate(
                    measurement, submit_elapsed_ms, len(self.pending)
                )
            except Exception:  # noqa: BLE001
                logger.warning("Generation enrichment failed for %s", sensor_id, exc_info=True)
                spans, dimensions = {}, {}

        # Filed under the identifier the store echoes back and the derived key,
        # so arrivals carrying either one find the entry.
        key = result.identifier or measurement.measurement_id
        aliases = [measurement.measurement_id]
        derived_key = build_event_key(sensor_id, generated_at)
        if derived_key is not None:
            aliases.append(derived_key)
        self.pending.register(
            key,
            sensor_id=sensor_id,
            generated_at=generated_at,
            spans=spans,
            dimensions=dimensions,
            aliases=aliases,
        )
        self.counters.registered += 1
        logger.debug("Tracking pending event %s (pending=%d)", key, len(self.pending))
        if self.counters.registered % 10 == 0:
            logger.info("Generated %d events", self.counters.registered)
