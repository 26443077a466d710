"""Scan session reconciliation against an expected inventory list."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum, auto
from typing import Iterable

from .connection import ConnectionEvent, ConnectionManager
from .devices import Device
from .events import Observable, Subscription, is_closed_marker
from .logs import log_event


class SessionError(RuntimeError):
    """Raised when a session operation is not valid in the current state."""


class SessionState(Enum):
    RUNNING = auto()
    COMPLETED = auto()
    INTERRUPTED = auto()
    CONNECTION_FAILED = auto()


@dataclass(slots=True, frozen=True)
class ExpectedItem:
    name: str
    identifier: str


@dataclass(slots=True)
class TrackedItem:
    name: str
    expected_identifier: str
    found: bool = False
    found_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class Progress:
    found: int
    total: int

    @property
    def fraction(self) -> float:
        return self.found / self.total if self.total else 1.0

    @property
    def percent(self) -> int:
        return round(self.fraction * 100)


@dataclass(slots=True, frozen=True)
class SessionResult:
    items: tuple[TrackedItem, ...]
    state: SessionState
    started_at: datetime
    finished_at: datetime
    device: Device | None = None

    @property
    def total_count(self) -> int:
        return len(self.items)

    @property
    def found_count(self) -> int:
        return sum(1 for item in self.items if item.found)

    @property
    def success_rate(self) -> float:
        return self.found_count / self.total_count if self.items else 1.0

    @property
    def found_items(self) -> list[TrackedItem]:
        return [item for item in self.items if item.found]

    @property
    def missing_items(self) -> list[TrackedItem]:
        return [item for item in self.items if not item.found]

    @property
    def duration(self) -> timedelta:
        return self.finished_at - self.started_at

    def missing_as_expected(self) -> list[ExpectedItem]:
        """Expected items for a follow-up scan of what was not found."""

        return [ExpectedItem(item.name, item.expected_identifier) for item in self.missing_items]


class ScanSession:
    """Folds decoded identifiers into the expected item set.

    Tag and connection events share one inbox drained by a single task, so
    ``TrackedItem.found`` is only ever updated from one place.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        expected_items: Iterable[ExpectedItem],
        *,
        completion_delay: float = 0.0,
    ) -> None:
        if completion_delay < 0:
            raise ValueError("completion_delay must be >= 0")
        self._connection = connection
        self._completion_delay = completion_delay
        self.items: list[TrackedItem] = []
        self._index: dict[str, TrackedItem] = {}
        for expected in expected_items:
            if expected.identifier in self._index:
                raise ValueError(f"Duplicate expected identifier '{expected.identifier}'")
            item = TrackedItem(name=expected.name, expected_identifier=expected.identifier)
            self.items.append(item)
            self._index[expected.identifier] = item

        self.state: Observable[SessionState | None] = Observable("session_state", None)
        self.progress: Observable[Progress] = Observable("progress", Progress(0, len(self.items)))
        self.result: SessionResult | None = None
        self.device: Device | None = None
        self.started_at: datetime | None = None
        self._started_monotonic: float | None = None
        self._finished_monotonic: float | None = None
        self._subscriptions: list[Subscription] = []
        self._consumer: asyncio.Task[None] | None = None
        self._done = asyncio.Event()
        self._disconnect_requested = False

    @property
    def is_running(self) -> bool:
        return self.state.value is SessionState.RUNNING

    @property
    def elapsed(self) -> float:
        if self._started_monotonic is None:
            return 0.0
        end = self._finished_monotonic or time.monotonic()
        return end - self._started_monotonic

    async def start(self) -> None:
        if self.state.value is not None:
            raise SessionError("Session has already been started")
        if not self._connection.is_connected:
            raise SessionError("A connected reader is required to start a session")

        self.started_at = datetime.now(timezone.utc)
        self._started_monotonic = time.monotonic()
        self.device = self._connection.connected_device
        self.state.set(SessionState.RUNNING)
        log_event("session.start", total=len(self.items))

        if not self.items:
            await self._complete(delay=0.0)
            return

        inbox: asyncio.Queue = asyncio.Queue()
        self._subscriptions = [
            self._connection.tags.subscribe(inbox),
            self._connection.events.subscribe(inbox),
        ]
        # tags read on this connection before the session subscribed
        for identifier in self._connection.decoder.seen:
            self.mark(identifier)
        self._consumer = asyncio.get_running_loop().create_task(self._consume(inbox))

    async def interrupt(self) -> None:
        if not self.is_running:
            return
        found = self.progress.value.found
        self._leave_running(SessionState.INTERRUPTED)
        self._cancel_consumer()
        self._publish_result(SessionState.INTERRUPTED)
        log_event("session.interrupted", found=found, total=len(self.items))
        await self._request_disconnect()

    async def wait(self) -> SessionResult:
        await self._done.wait()
        if self.result is None:
            raise SessionError("Session finished without a result")
        return self.result

    def mark(self, identifier: str) -> bool:
        """Mark the unfound item expecting ``identifier``; report whether one matched."""

        if not self.is_running:
            return False
        item = self._index.get(identifier)
        if item is None or item.found:
            return False
        item.found = True
        item.found_at = datetime.now(timezone.utc)
        found = sum(1 for tracked in self.items if tracked.found)
        self.progress.set(Progress(found, len(self.items)))
        log_event("session.matched", name=item.name, identifier=identifier, found=found)
        return True

    async def _consume(self, inbox: asyncio.Queue) -> None:
        while self.is_running:
            if self.progress.value.found == len(self.items):
                self._consumer = None
                await self._complete(delay=self._completion_delay)
                return
            item = await inbox.get()
            if is_closed_marker(item):
                continue
            if isinstance(item, ConnectionEvent):
                self._on_connection_event(item)
            else:
                self.mark(item)

    def _on_connection_event(self, event: ConnectionEvent) -> None:
        if event is ConnectionEvent.DROPPED:
            self._leave_running(SessionState.CONNECTION_FAILED)
            self._publish_result(SessionState.CONNECTION_FAILED)
            log_event(
                "session.connection_failed",
                level=logging.WARNING,
                found=self.progress.value.found,
                total=len(self.items),
            )
        elif event is ConnectionEvent.DISCONNECTED:
            # disconnect requested outside the session counts as an operator stop
            self._leave_running(SessionState.INTERRUPTED)
            self._publish_result(SessionState.INTERRUPTED)
            log_event("session.interrupted", found=self.progress.value.found, total=len(self.items))

    async def _complete(self, *, delay: float) -> None:
        self._leave_running(SessionState.COMPLETED)
        log_event("session.completed", total=len(self.items), delay=delay)
        if delay:
            await asyncio.sleep(delay)
        await self._request_disconnect()
        self._publish_result(SessionState.COMPLETED)

    def _leave_running(self, state: SessionState) -> None:
        self._finished_monotonic = time.monotonic()
        self.state.set(state)
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions = []

    def _cancel_consumer(self) -> None:
        consumer, self._consumer = self._consumer, None
        if consumer is not None and consumer is not asyncio.current_task():
            consumer.cancel()

    async def _request_disconnect(self) -> None:
        if self._disconnect_requested:
            return
        self._disconnect_requested = True
        await self._connection.disconnect()

    def _publish_result(self, state: SessionState) -> None:
        self.result = SessionResult(
            items=tuple(replace(item) for item in self.items),
            state=state,
            started_at=self.started_at or datetime.now(timezone.utc),
            finished_at=datetime.now(timezone.utc),
            device=self.device,
        )
        self._done.set()
