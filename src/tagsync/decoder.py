"""Turns raw reader lines into validated tag identifiers."""

from __future__ import annotations

import logging

from .config import DEFAULT_SENTINEL
from .logs import log_event
from .radio import ReadEvent, ReadEventType


class TagStreamDecoder:
    """Validates and deduplicates tag reads for one connection.

    A read looks like ``"E2801160600002,RSSI=-52"``; only the text before the
    first comma is the identifier. Reads that are empty, already seen on this
    connection, or contain the all-zero misread pattern are dropped.
    """

    def __init__(self, sentinel: str = DEFAULT_SENTINEL) -> None:
        if not sentinel:
            raise ValueError("sentinel must be a non-empty string")
        self.sentinel = sentinel
        self._seen: list[str] = []
        self._seen_lookup: set[str] = set()

    @property
    def seen(self) -> tuple[str, ...]:
        return tuple(self._seen)

    def feed(self, event: ReadEvent) -> str | None:
        if event.event_type is ReadEventType.ERROR:
            log_event("decoder.error_event", level=logging.WARNING, data=event.data)
            return None

        candidate = event.data.split(",", 1)[0].strip()
        reason = self._reject_reason(candidate)
        if reason is not None:
            log_event("decoder.dropped", level=logging.DEBUG, reason=reason, candidate=candidate)
            return None

        self._seen.append(candidate)
        self._seen_lookup.add(candidate)
        return candidate

    def reset(self) -> None:
        self._seen.clear()
        self._seen_lookup.clear()

    def _reject_reason(self, candidate: str) -> str | None:
        if not candidate:
            return "empty"
        if candidate in self._seen_lookup:
            return "duplicate"
        if self.sentinel in candidate:
            return "sentinel"
        return None
