from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class Measurement:
    measurement_id: str
    sensor_id: str
    timestamp: float
    value: float
    property_type: str = "test-value"
    value_type: str = "number"


@dataclass(slots=True)
class SubmitResult:
    success: bool
    identifier: str | None = None
    change_id: str | None = None


@dataclass(slots=True)
class Notification:
    timestamp: float | None
    measurement_id: str | None = None
    sensor_id: str | None = None
    payload_size: int | None = None


@dataclass(slots=True)
class PendingEvent:
    correlation_key: str
    sensor_id: str
    generated_at: float
    spans: dict[str, float] = field(default_factory=dict)
    dimensions: dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class LatencySample:
    sensor_id: str
    correlation_key: str
    generated_at: float
    received_at: float
    latency_ms: int
    clock_skew: bool = False
    spans: dict[str, float] = field(default_factory=dict)
    dimensions: dict[str, object] = field(default_factory=dict)
