"""Thin async wrappers around the bleak radio stack.

Handheld readers expose a serial-style link over the Nordic UART Service:
every tag read arrives as a text line on the notify characteristic.
"""

from __future__ import annotations

import asyncio
import re
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Protocol

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

NUS_TX_CHAR = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"
LINE_DELIMITER = re.compile(rb"\r\n|\r|\n")


class RadioError(RuntimeError):
    """Raised when the radio subsystem rejects or fails an operation."""


@dataclass(slots=True, frozen=True)
class Advertisement:
    id: str
    name: str | None
    address: str


class ReadEventType(Enum):
    DATA = "data"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class ReadEvent:
    event_type: ReadEventType
    data: str


FoundCallback = Callable[[Advertisement], None]
ReadCallback = Callable[[ReadEvent], None]
LostCallback = Callable[[], None]


@dataclass(slots=True)
class LineAssembler:
    """Reassembles notification fragments into complete lines."""

    max_buffer: int = 4096
    _buffer: bytearray = field(default_factory=bytearray)

    def feed(self, chunk: bytes) -> list[ReadEvent]:
        self._buffer.extend(chunk)
        *lines, rest = LINE_DELIMITER.split(bytes(self._buffer))
        self._buffer = bytearray(rest)
        events = [self._to_event(line) for line in lines if line]
        if len(self._buffer) > self.max_buffer:
            self._buffer.clear()
            events.append(ReadEvent(ReadEventType.ERROR, "line buffer overflow"))
        return events

    @staticmethod
    def _to_event(line: bytes) -> ReadEvent:
        try:
            return ReadEvent(ReadEventType.DATA, line.decode("utf-8"))
        except UnicodeDecodeError as exc:
            return ReadEvent(ReadEventType.ERROR, f"undecodable read {line!r}: {exc}")


class RadioLink(Protocol):
    """An open link to one reader."""

    address: str
    name: str | None

    async def close(self) -> None:
        ...


class BleakLink:
    def __init__(
        self,
        client: BleakClient,
        *,
        address: str,
        name: str | None,
        characteristic: str,
        timeout: float | None,
    ) -> None:
        self.address = address
        self.name = name
        self._client = client
        self._characteristic = characteristic
        self._timeout = timeout

    async def close(self) -> None:
        if self._client.is_connected:
            with suppress(BleakError):
                await self._client.stop_notify(self._characteristic)
        try:
            await asyncio.wait_for(self._client.disconnect(), timeout=self._timeout)
        except (BleakError, asyncio.TimeoutError) as exc:
            raise RadioError(f"disconnect from {self.address} failed: {exc}") from exc


@dataclass(slots=True)
class BleakRadio:
    """Asynchronous helper for scanning and connecting to readers."""

    connect_timeout: float | None = 10.0
    notify_characteristic: str = NUS_TX_CHAR
    _scanner: BleakScanner | None = None
    _names: dict[str, str] = field(default_factory=dict)

    async def start_scan(self, on_found: FoundCallback) -> None:
        def _detected(device: BLEDevice, advertisement: AdvertisementData) -> None:
            name = advertisement.local_name or device.name
            if name:
                self._names[device.address] = name
            on_found(Advertisement(id=device.address, name=name, address=device.address))

        scanner = BleakScanner(detection_callback=_detected)
        try:
            await scanner.start()
        except (BleakError, OSError) as exc:
            raise RadioError(f"scan start failed: {exc}") from exc
        self._scanner = scanner

    async def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except (BleakError, OSError) as exc:
            raise RadioError(f"scan stop failed: {exc}") from exc

    async def connect(
        self,
        address: str,
        *,
        on_read: ReadCallback,
        on_lost: LostCallback,
    ) -> RadioLink:
        assembler = LineAssembler()

        def _notified(_sender: object, data: bytearray) -> None:
            for event in assembler.feed(bytes(data)):
                on_read(event)

        client = BleakClient(address, disconnected_callback=lambda _client: on_lost())
        try:
            await asyncio.wait_for(client.connect(), timeout=self.connect_timeout)
            await client.start_notify(self.notify_characteristic, _notified)
        except (BleakError, OSError, asyncio.TimeoutError) as exc:
            with suppress(BleakError, OSError):
                await client.disconnect()
            raise RadioError(f"connect to {address} failed: {exc}") from exc

        return BleakLink(
            client,
            address=address,
            name=self._names.get(address),
            characteristic=self.notify_characteristic,
            timeout=self.connect_timeout,
        )
