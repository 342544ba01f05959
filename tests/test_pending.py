from __future__ import annotations

from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from pending import PendingEventTable
from records import LatencySample
from samples import SampleStore


def _sample(index: int) -> LatencySample:
    return LatencySample(
        sensor_id="S1",
        correlation_key=f"S1-{index}",
        generated_at=float(index),
        received_at=float(index) + 0.1,
        latency_ms=100,
    )


def test_take_returns_entry_once() -> None:
    table = PendingEventTable()
    table.register("S1-1000", sensor_id="S1", generated_at=1.0)

    entry = table.take("S1-1000")
    assert entry is not None
    assert entry.sensor_id == "S1"
    assert entry.generated_at == 1.0
    assert table.take("S1-1000") is None
    assert len(table) == 0


def test_take_unknown_key_is_absent() -> None:
    table = PendingEventTable()
    assert table.take("missing") is None


def test_register_copies_spans_and_dimensions() -> None:
    table = PendingEventTable()
    spans = {"io_time_ms": 4.0}
    entry = table.register("k", sensor_id="S1", generated_at=0.0, spans=spans)
    spans["io_time_ms"] = 99.0
    assert entry.spans == {"io_time_ms": 4.0}
    assert entry.dimensions == {}


def test_size_tracks_registrations_and_discard() -> None:
    table = PendingEventTable()
    for index in range(3):
        table.register(f"S1-{index}", sensor_id="S1", generated_at=float(index))
    assert len(table) == 3
    assert "S1-2" in table
    assert table.keys() == ["S1-0", "S1-1", "S1-2"]

    assert table.discard_all() == 3
    assert len(table) == 0
    assert table.discard_all() == 0


def test_sample_store_refuses_appends_when_full() -> None:
    store = SampleStore(max_samples=2)
    assert store.append(_sample(1)) is True
    assert store.is_full is False
    assert store.append(_sample(2)) is True
    assert store.is_full is True
    assert store.append(_sample(3)) is False
    assert store.count() == 2
    assert [sample.correlation_key for sample in store.all()] == ["S1-1", "S1-2"]
    assert store.latencies() == [100, 100]


def test_sample_store_all_returns_copy() -> None:
    store = SampleStore(max_samples=5)
    store.append(_sample(1))
    snapshot = store.all()
    snapshot.clear()
    assert len(store) == 1


def test_sample_store_rejects_invalid_capacity() -> None:
    with pytest.raises(ValueError):
        SampleStore(max_samples=0)


def test_entry_is_found_under_every_alias() -> None:
    table = PendingEventTable()
    table.register("m-1", sensor_id="S1", generated_at=1.0, aliases=["S1-1000"])

    assert "m-1" in table
    assert "S1-1000" in table
    assert len(table) == 1
    assert table.keys() == ["m-1"]


def test_taking_one_alias_removes_the_whole_entry() -> None:
    table = PendingEventTable()
    table.register("m-1", sensor_id="S1", generated_at=1.0, aliases=["S1-1000"])

    entry = table.take("S1-1000")

    assert entry is not None
    assert entry.correlation_key == "m-1"
    assert table.take("m-1") is None
    assert "S1-1000" not in table
    assert len(table) == 0


def test_reregistering_an_alias_replaces_the_older_entry() -> None:
    table = PendingEventTable()
    table.register("m-1", sensor_id="S1", generated_at=1.0, aliases=["S1-1000"])
    table.register("m-2", sensor_id="S1", generated_at=1.0, aliases=["S1-1000"])

    assert table.keys() == ["m-2"]
    assert "m-1" not in table
    entry = table.take("S1-1000")
    assert entry is not None
    assert entry.correlation_key == "m-2"
    assert len(table) == 0
