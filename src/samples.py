from __future__ import annotations

from records import LatencySample


class SampleStore:
    """Append-only, capped sequence of completed latency samples.

    Once ``max_samples`` is reached further appends are refused; nothing is
    evicted.
    """

    def __init__(self, max_samples: int) -> None:
        if max_samples < 1:
            raise ValueError("max_samples must be >= 1")
        self.max_samples = max_samples
        self._samples: list[LatencySample] = []

    def append(self, sample: LatencySample) -> bool:
        if self.is_full:
            return False
        self._samples.append(sample)
        return True

    def count(self) -> int:
        return len(self._samples)

    def all(self) -> list[LatencySample]:
        return list(self._samples)

    def latencies(self) -> list[int]:
        return [sample.latency_ms for sample in self._samples]

    @property
    def is_full(self) -> bool:
        return len(self._samples) >= self.max_samples

    def __len__(self) -> int:
        return len(self._samples)
