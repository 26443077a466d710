"""Ordered event channels and observable values."""

from __future__ import annotations

import asyncio
from typing import Any, Generic, TypeVar

T = TypeVar("T")

_CLOSED = object()


class Subscription(Generic[T]):
    """A single consumer's view of a channel.

    Items are delivered in publish order. Several channels may share one
    inbox queue so that a consumer folds them through a single path.
    """

    def __init__(self, channel: EventChannel[T], inbox: asyncio.Queue[Any]) -> None:
        self._channel = channel
        self._inbox = inbox
        self.closed = False

    @property
    def inbox(self) -> asyncio.Queue[Any]:
        return self._inbox

    def deliver(self, item: T) -> None:
        if not self.closed:
            self._inbox.put_nowait(item)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._channel.unsubscribe(self)
        self._inbox.put_nowait(_CLOSED)

    def __aiter__(self) -> Subscription[T]:
        return self

    async def __anext__(self) -> T:
        if self.closed and self._inbox.empty():
            raise StopAsyncIteration
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class EventChannel(Generic[T]):
    """Fan-out channel with explicit subscribe/unsubscribe."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Subscription[T]] = []

    def subscribe(self, inbox: asyncio.Queue[Any] | None = None) -> Subscription[T]:
        subscription: Subscription[T] = Subscription(self, inbox or asyncio.Queue())
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription[T]) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, item: T) -> None:
        for subscription in list(self._subscribers):
            subscription.deliver(item)

    def close(self) -> None:
        for subscription in list(self._subscribers):
            subscription.close()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


def is_closed_marker(item: object) -> bool:
    return item is _CLOSED


class Observable(Generic[T]):
    """Current value plus a channel announcing every change."""

    def __init__(self, name: str, initial: T) -> None:
        self._value = initial
        self.changes: EventChannel[T] = EventChannel(name)

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self._value = value
        self.changes.publish(value)
