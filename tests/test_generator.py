from __future__ import annotations

import asyncio
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from correlator import build_event_key
from generator import (
    EventGenerator,
    GeneratorState,
    MeasuredSpanEnricher,
    build_measurement_id,
)
from kvasir import KvasirError
from pending import PendingEventTable
from records import Measurement, Notification, SubmitResult


class FakeSubmitter:
    def __init__(
        self,
        result: SubmitResult | Exception | None = None,
        delay_s: float = 0.0,
        use_identifier: bool = False,
    ) -> None:
        self.result = result
        self.delay_s = delay_s
        self.use_identifier = use_identifier
        self.submitted: list[Measurement] = []

    async def submit(self, measurement: Measurement) -> SubmitResult:
        self.submitted.append(measurement)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if isinstance(self.result, Exception):
            raise self.result
        if self.result is not None:
            return self.result
        identifier = f"change-{len(self.submitted)}" if self.use_identifier else None
        return SubmitResult(success=True, identifier=identifier)


def _generator(
    submitter: FakeSubmitter,
    pending: PendingEventTable,
    sensor_ids: list[str] | None = None,
    interval_s: float = 10.0,
    **kwargs,
) -> EventGenerator:
    return EventGenerator(
        submit=submitter.submit,
        pending=pending,
        sensor_ids=sensor_ids or ["S1", "S2"],
        interval_s=interval_s,
        value_fn=lambda: 42.0,
        **kwargs,
    )


async def test_first_tick_registers_every_sensor() -> None:
    submitter = FakeSubmitter()
    pending = PendingEventTable()
    generator = _generator(submitter, pending)

    task = generator.start(duration_s=0.05)
    await asyncio.wait_for(task, timeout=2.0)
    await generator.stop()

    assert generator.counters.ticks == 1
    assert generator.counters.registered == 2
    assert len(pending) == 2
    assert [measurement.sensor_id for measurement in submitter.submitted] == ["S1", "S2"]
    for measurement in submitter.submitted:
        assert measurement.value == 42.0
        assert measurement.measurement_id == build_measurement_id(
            measurement.sensor_id, measurement.timestamp
        )
        assert measurement.measurement_id in pending
        assert build_event_key(measurement.sensor_id, measurement.timestamp) in pending
    assert generator.state is GeneratorState.STOPPED


async def test_submitter_identifier_is_used_as_key() -> None:
    submitter = FakeSubmitter(use_identifier=True)
    pending = PendingEventTable()
    generator = _generator(submitter, pending, sensor_ids=["S1"])

    await asyncio.wait_for(generator.start(duration_s=0.01), timeout=2.0)

    assert pending.keys() == ["change-1"]
    measurement = submitter.submitted[0]
    assert measurement.measurement_id in pending
    assert build_event_key("S1", measurement.timestamp) in pending


@pytest.mark.parametrize(
    "result",
    [KvasirError("Insert failed: 500", status_code=500), SubmitResult(success=False)],
)
async def test_failed_submit_is_counted_and_not_registered(result: object) -> None:
    submitter = FakeSubmitter(result=result)
    pending = PendingEventTable()
    generator = _generator(submitter, pending)

    await asyncio.wait_for(generator.start(duration_s=0.01), timeout=2.0)

    assert generator.counters.failures == 2
    assert generator.counters.registered == 0
    assert len(pending) == 0


async def test_generator_ticks_on_interval_until_duration() -> None:
    submitter = FakeSubmitter()
    pending = PendingEventTable()
    generator = _generator(submitter, pending, sensor_ids=["S1"], interval_s=0.02)

    await asyncio.wait_for(generator.start(duration_s=0.2), timeout=2.0)

    assert generator.counters.ticks >= 3
    assert generator.counters.registered == generator.counters.ticks
    assert len(pending) == generator.counters.registered


async def test_stop_interrupts_wait_and_is_idempotent() -> None:
    submitter = FakeSubmitter()
    pending = PendingEventTable()
    generator = _generator(submitter, pending, interval_s=30.0)

    generator.start(duration_s=600.0)
    await asyncio.sleep(0.01)
    await asyncio.wait_for(generator.stop(), timeout=1.0)
    await asyncio.wait_for(generator.stop(), timeout=1.0)

    assert generator.state is GeneratorState.STOPPED
    assert generator.is_running is False
    assert generator.counters.ticks == 1


async def test_submit_completing_after_stop_is_not_registered() -> None:
    submitter = FakeSubmitter(delay_s=0.05)
    pending = PendingEventTable()
    generator = _generator(submitter, pending, sensor_ids=["S1"])

    generator.start(duration_s=600.0)
    await asyncio.sleep(0.01)
    await asyncio.wait_for(generator.stop(), timeout=1.0)

    assert len(submitter.submitted) == 1
    assert generator.counters.dropped_after_stop == 1
    assert generator.counters.registered == 0
    assert len(pending) == 0


async def test_cannot_start_twice_or_after_stop() -> None:
    generator = _generator(FakeSubmitter(), PendingEventTable())
    await generator.stop()
    assert generator.state is GeneratorState.STOPPED
    with pytest.raises(RuntimeError):
        generator.start(duration_s=1.0)


def test_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        _generator(FakeSubmitter(), PendingEventTable(), interval_s=0)


async def test_measured_enricher_records_observable_values() -> None:
    submitter = FakeSubmitter()
    pending = PendingEventTable()
    enricher = MeasuredSpanEnricher(endpoint="/alice/changes", region="local")
    generator = _generator(submitter, pending, sensor_ids=["S1"], enricher=enricher)

    await asyncio.wait_for(generator.start(duration_s=0.01), timeout=2.0)

    entry = pending.take(pending.keys()[0])
    assert entry is not None
    assert entry.spans["io_time_ms"] >= 0.0
    assert entry.dimensions["payload_size"] > 0
    assert entry.dimensions["concurrency"] == 0
    assert entry.dimensions["endpoint"] == "/alice/changes"
    assert entry.dimensions["region"] == "local"

    spans, dimensions = enricher.on_arrival(
        entry, Notification(timestamp=entry.generated_at, payload_size=512), 0
    )
    assert spans == {}
    assert dimensions == {"notification_size": 512}


async def test_cancelling_stop_propagates_to_the_caller() -> None:
    blocked = asyncio.Event()

    async def submit_forever(measurement: Measurement) -> SubmitResult:
        blocked.set()
        await asyncio.Event().wait()
        return SubmitResult(success=True)

    generator = EventGenerator(
        submit=submit_forever,
        pending=PendingEventTable(),
        sensor_ids=["S1"],
        interval_s=10.0,
    )
    generator.start(duration_s=30.0)
    await asyncio.wait_for(blocked.wait(), timeout=2.0)

    stop_task = asyncio.create_task(generator.stop())
    await asyncio.sleep(0)
    stop_task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await stop_task
