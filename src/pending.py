from __future__ import annotations

from collections.abc import Iterable
import logging

from records import PendingEvent


logger = logging.getLogger(__name__)


class PendingEventTable:
    """Correlation ledger of generated events still waiting for their arrival.

    An entry can be filed under several keys (the identifier sent to the store
    and the derived ``sensor-millis`` key). Taking any of them removes the
    whole entry, so each event is handed out at most once. All access happens
    on one event loop, which makes ``take`` an atomic lookup-and-remove.
    """

    def __init__(self) -> None:
        self._entries: dict[str, PendingEvent] = {}
        self._aliases: dict[str, tuple[str, ...]] = {}
        self._index: dict[str, str] = {}

    def register(
        self,
        key: str,
        sensor_id: str,
        generated_at: float,
        spans: dict[str, float] | None = None,
        dimensions: dict[str, object] | None = None,
        aliases: Iterable[str] = (),
    ) -> PendingEvent:
        keys = tuple(dict.fromkeys([key, *aliases]))
        for candidate in keys:
            if candidate in self._index:
                logger.warning(
                    "Correlation key %s registered twice; keeping the newer entry", candidate
                )
                self.take(candidate)
        entry = PendingEvent(
            correlation_key=key,
            sensor_id=sensor_id,
            generated_at=generated_at,
            spans=dict(spans or {}),
            dimensions=dict(dimensions or {}),
        )
        self._entries[key] = entry
        self._aliases[key] = keys
        for candidate in keys:
            self._index[candidate] = key
        return entry

    def take(self, key: str) -> PendingEvent | None:
        primary = self._index.get(key)
        if primary is None:
            return None
        for candidate in self._aliases.pop(primary, (primary,)):
            self._index.pop(candidate, None)
        return self._entries.pop(primary, None)

    def discard_all(self) -> int:
        discarded = len(self._entries)
        self._entries.clear()
        self._aliases.clear()
        self._index.clear()
        return discarded

    def keys(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._index

    def __len__(self) -> int:
        return len(self._entries)
