from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import time
from typing import Callable, Protocol

from pending import PendingEventTable
from records import LatencySample, Notification, PendingEvent
from samples import SampleStore


logger = logging.getLogger(__name__)


class ArrivalOutcome(str, Enum):
    MATCHED = "matched"
    BACKLOG = "backlog"
    UNCORRELATABLE = "uncorrelatable"
    MISS = "miss"
    STORE_FULL = "store_full"
    CLOSED = "closed"


@dataclass(slots=True)
class CorrelatorCounters:
    matched: int = 0
    backlog_discarded: int = 0
    malformed: int = 0
    misses: int = 0
    dropped_store_full: int = 0
    clock_skew: int = 0


class ArrivalEnricher(Protocol):
    def on_arrival(
        self,
        pending: PendingEvent,
        notification: Notification,
        pending_count: int,
    ) -> tuple[dict[str, float], dict[str, object]]:
        ...


def to_millis(timestamp: float) -> int:
    # Round to microseconds first so ISO-8601 round trips land on the same millisecond.
    return round(timestamp * 1_000_000) // 1000


def build_event_key(sensor_id: str | None, timestamp: float | None) -> str | None:
    if not sensor_id or timestamp is None:
        return None
    return f"{sensor_id}-{to_millis(timestamp)}"


def correlation_keys_for(notification: Notification) -> list[str]:
    """Candidate keys for an arrival, explicit identifier first."""
    keys: list[str] = []
    if notification.measurement_id:
        keys.append(notification.measurement_id)
    derived = build_event_key(notification.sensor_id, notification.timestamp)
    if derived is not None and derived not in keys:
        keys.append(derived)
    return keys


class ArrivalCorrelator:
    def __init__(
        self,
        pending: PendingEventTable,
        store: SampleStore,
        started_at: float,
        clock: Callable[[], float] = time.time,
        enricher: ArrivalEnricher | None = None,
        on_capacity_reached: Callable[[], None] | None = None,
    ) -> None:
        self.pending = pending
        self.store = store
        self.started_at = started_at
        self.clock = clock
        self.enricher = enricher
        self.on_capacity_reached = on_capacity_reached
        self.counters = CorrelatorCounters()
        self._closed = False
        self._capacity_signalled = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def handle(self, notification: Notification) -> ArrivalOutcome:
        if self._closed:
            return ArrivalOutcome.CLOSED
        try:
            return self._handle(notification)
        except Exception:  # noqa: BLE001
            self.counters.malformed += 1
            logger.warning("Failed to process arrival %r", notification, exc_info=True)
            return ArrivalOutcome.UNCORRELATABLE

    def _handle(self, notification: Notification) -> ArrivalOutcome:
        received_at = self.clock()

        if notification.timestamp is not None and to_millis(notification.timestamp) < to_millis(
            self.started_at
        ):
            self.counters.backlog_discarded += 1
            return ArrivalOutcome.BACKLOG

        keys = correlation_keys_for(notification)
        if not keys:
            self.counters.malformed += 1
            logger.warning("Unable to derive correlation key for arrival %r", notification)
            return ArrivalOutcome.UNCORRELATABLE

        if self.store.is_full:
            self.counters.dropped_store_full += 1
            self._signal_capacity()
            return ArrivalOutcome.STORE_FULL

        pending_event: PendingEvent | None = None
        key = keys[0]
        for candidate in keys:
            pending_event = self.pending.take(candidate)
            if pending_event is not None:
                key = candidate
                break
        if pending_event is None:
            self.counters.misses += 1
            logger.debug("Arrival %s has no pending event (pending=%d)", key, len(self.pending))
            return ArrivalOutcome.MISS

        raw_latency_ms = round((received_at - pending_event.generated_at) * 1000)
        clock_skew = raw_latency_ms < 0
        if clock_skew:
            self.counters.clock_skew += 1
            logger.warning(
                "Negative latency %dms for %s; clamping to 0 (clock skew)", raw_latency_ms, key
            )

        spans = dict(pending_event.spans)
        dimensions = dict(pending_event.dimensions)
        if self.enricher is not None:
            try:
                extra_spans, extra_dimensions = self.enricher.on_arrival(
                    pending_event, notification, len(self.pending)
                )
            except Exception:  # noqa: BLE001
                logger.warning("Arrival enrichment failed for %s", key, exc_info=True)
            else:
                # Values captured at generation time win over arrival-time ones.
                spans = {**extra_spans, **spans}
                dimensions = {**extra_dimensions, **dimensions}

        self.store.append(
            LatencySample(
                sensor_id=notification.sensor_id or pending_event.sensor_id,
                correlation_key=key,
                generated_at=pending_event.generated_at,
                received_at=received_at,
                latency_ms=max(raw_latency_ms, 0),
                clock_skew=clock_skew,
                spans=spans,
                dimensions=dimensions,
            )
        )
        self.counters.matched += 1
        if self.counters.matched % 10 == 0:
            logger.info("Collected %d latency samples", self.counters.matched)

        if self.store.is_full:
            logger.info("Reached maximum sample count (%d)", self.store.max_samples)
            self._signal_capacity()
        return ArrivalOutcome.MATCHED

    def _signal_capacity(self) -> None:
        if self._capacity_signalled or self.on_capacity_reached is None:
            return
        self._capacity_signalled = True
        self.on_capacity_reached()
