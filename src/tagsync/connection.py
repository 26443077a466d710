"""Single active reader connection."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum, auto
from functools import partial
from typing import Protocol

from .decoder import TagStreamDecoder
from .devices import Device, DeviceName, DiscoveryController
from .events import EventChannel, Observable
from .logs import log_event
from .radio import LostCallback, RadioError, RadioLink, ReadCallback, ReadEvent


class ConnectError(RuntimeError):
    """Raised when a connect attempt fails or is aborted."""


class ConnectionBusyError(ConnectError):
    """Raised when a connection is already being established or is active."""


class ConnectionState(Enum):
    IDLE = auto()
    CONNECTING = auto()
    CONNECTED = auto()


class ConnectionEvent(Enum):
    CONNECTING = auto()
    CONNECTED = auto()
    CONNECT_FAILED = auto()
    DISCONNECTED = auto()
    DROPPED = auto()


class ConnectingRadio(Protocol):
    async def connect(
        self,
        address: str,
        *,
        on_read: ReadCallback,
        on_lost: LostCallback,
    ) -> RadioLink:
        ...


class ConnectionManager:
    """Owns the radio link: connect, tag stream, disconnect, failure reporting."""

    def __init__(
        self,
        radio: ConnectingRadio,
        *,
        discovery: DiscoveryController | None = None,
        decoder: TagStreamDecoder | None = None,
    ) -> None:
        self._radio = radio
        self._discovery = discovery
        self.decoder = decoder or TagStreamDecoder()
        self.state: Observable[ConnectionState] = Observable("connection_state", ConnectionState.IDLE)
        self.device: Observable[Device | None] = Observable("connected_device", None)
        self.tags: EventChannel[str] = EventChannel("tags")
        self.events: EventChannel[ConnectionEvent] = EventChannel("connection")
        self._link: RadioLink | None = None
        # bumped on every teardown; callbacks from older links are ignored
        self._attempt = 0

    @property
    def is_connected(self) -> bool:
        return self.state.value is ConnectionState.CONNECTED

    @property
    def connected_device(self) -> Device | None:
        return self.device.value

    async def connect(self, address: str) -> Device:
        current = self.state.value
        if current is not ConnectionState.IDLE:
            log_event("connection.rejected", address=address, state=current.name)
            raise ConnectionBusyError(f"Cannot connect to {address}: connection is {current.name.lower()}")

        self._attempt += 1
        attempt = self._attempt
        self.state.set(ConnectionState.CONNECTING)
        self.events.publish(ConnectionEvent.CONNECTING)
        log_event("connection.start", address=address)

        try:
            if self._discovery is not None and self._discovery.is_discovering:
                await self._discovery.cancel()
            if attempt != self._attempt:
                raise ConnectError(f"Connection to {address} cancelled")
            link = await self._radio.connect(
                address,
                on_read=partial(self._on_read, attempt),
                on_lost=partial(self._on_lost, attempt),
            )
        except RadioError as exc:
            self._fail(attempt, address, str(exc))
            raise ConnectError(f"Connection to {address} failed: {exc}") from exc
        except asyncio.CancelledError:
            self._fail(attempt, address, "cancelled")
            raise

        if attempt != self._attempt:
            # disconnect() arrived while the radio was still connecting
            await self._close_link(link)
            raise ConnectError(f"Connection to {address} cancelled")

        self._link = link
        self.decoder.reset()
        device = self._resolve_device(link)
        self.device.set(device)
        self.state.set(ConnectionState.CONNECTED)
        self.events.publish(ConnectionEvent.CONNECTED)
        log_event("connection.connected", address=address, name=device.display_name)
        return device

    async def disconnect(self) -> None:
        current = self.state.value
        if current is ConnectionState.IDLE:
            return

        link, self._link = self._link, None
        self._teardown()
        self.events.publish(ConnectionEvent.DISCONNECTED)
        log_event("connection.disconnected", state=current.name)
        if link is not None:
            await self._close_link(link)

    def _fail(self, attempt: int, address: str, reason: str) -> None:
        if attempt != self._attempt:
            return
        self._teardown()
        self.events.publish(ConnectionEvent.CONNECT_FAILED)
        log_event("connection.failed", level=logging.WARNING, address=address, reason=reason)

    def _teardown(self) -> None:
        self._attempt += 1
        self.decoder.reset()
        self.device.set(None)
        self.state.set(ConnectionState.IDLE)

    async def _close_link(self, link: RadioLink) -> None:
        try:
            await link.close()
        except RadioError as exc:
            log_event("connection.close_failed", level=logging.WARNING, address=link.address, reason=str(exc))

    def _resolve_device(self, link: RadioLink) -> Device:
        if self._discovery is not None:
            known = self._discovery.registry.find_by_address(link.address)
            if known is not None:
                return known
        return Device(id=link.address, name=DeviceName.parse(link.name), address=link.address)

    def _on_read(self, attempt: int, event: ReadEvent) -> None:
        if attempt != self._attempt or not self.is_connected:
            return
        identifier = self.decoder.feed(event)
        if identifier is not None:
            log_event("connection.tag", level=logging.DEBUG, identifier=identifier)
            self.tags.publish(identifier)

    def _on_lost(self, attempt: int) -> None:
        if attempt != self._attempt or not self.is_connected:
            return
        device = self.device.value
        self._link = None
        self._teardown()
        self.events.publish(ConnectionEvent.DROPPED)
        log_event(
            "connection.dropped",
            level=logging.WARNING,
            address=device.address if device else None,
        )
