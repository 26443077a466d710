"""Discovered readers and the discovery lifecycle."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterator, Protocol

from .config import DEFAULT_DISCOVERY_TIMEOUT
from .events import Observable
from .logs import log_event
from .radio import Advertisement, FoundCallback, RadioError
from .timers import Watchdog

# Some radios report their address as a placeholder name until the real one resolves.
ADDRESS_PLACEHOLDER_PATTERN = re.compile(r"(?:[0-9A-Fa-f]{2}:)+[0-9A-Fa-f]{2}")


class NameKind(Enum):
    NAMED = auto()
    UNNAMED = auto()
    ADDRESS_PLACEHOLDER = auto()


@dataclass(slots=True, frozen=True)
class DeviceName:
    kind: NameKind
    value: str | None = None

    @classmethod
    def parse(cls, raw: str | None) -> DeviceName:
        cleaned = (raw or "").strip()
        if not cleaned:
            return cls(NameKind.UNNAMED)
        if ADDRESS_PLACEHOLDER_PATTERN.fullmatch(cleaned):
            return cls(NameKind.ADDRESS_PLACEHOLDER, cleaned)
        return cls(NameKind.NAMED, cleaned)

    @property
    def is_named(self) -> bool:
        return self.kind is NameKind.NAMED


@dataclass(slots=True, frozen=True)
class Device:
    id: str
    name: DeviceName
    address: str

    @property
    def display_name(self) -> str:
        return self.name.value if self.name.is_named else self.address

    @classmethod
    def from_advertisement(cls, advertisement: Advertisement) -> Device:
        return cls(
            id=advertisement.id,
            name=DeviceName.parse(advertisement.name),
            address=advertisement.address,
        )


class DeviceRegistry:
    """Discovery-ordered set of devices, unique by id."""

    def __init__(self) -> None:
        self._devices: dict[str, Device] = {}
        self.snapshot: Observable[tuple[Device, ...]] = Observable("devices", ())

    def add(self, device: Device) -> bool:
        if device.id in self._devices:
            return False
        self._devices[device.id] = device
        self._publish()
        return True

    def clear(self) -> None:
        if not self._devices:
            return
        self._devices.clear()
        self._publish()

    def find_by_address(self, address: str) -> Device | None:
        for device in self._devices.values():
            if device.address == address:
                return device
        return None

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __iter__(self) -> Iterator[Device]:
        return iter(tuple(self._devices.values()))

    def __len__(self) -> int:
        return len(self._devices)

    def _publish(self) -> None:
        self.snapshot.set(tuple(self._devices.values()))


class ScanningRadio(Protocol):
    async def start_scan(self, on_found: FoundCallback) -> None:
        ...

    async def stop_scan(self) -> None:
        ...


class DiscoveryController:
    """Owns the time-boxed scan for nearby readers."""

    def __init__(
        self,
        radio: ScanningRadio,
        registry: DeviceRegistry,
        *,
        timeout: float = DEFAULT_DISCOVERY_TIMEOUT,
    ) -> None:
        self._radio = radio
        self.registry = registry
        self._watchdog = Watchdog(timeout, self._expire)
        self._generation = 0
        self.discovering: Observable[bool] = Observable("discovering", False)

    @property
    def is_discovering(self) -> bool:
        return self.discovering.value

    @property
    def timeout(self) -> float:
        return self._watchdog.timeout

    @property
    def timed_out(self) -> bool:
        return self._watchdog.expired

    async def start(self) -> None:
        if self.is_discovering:
            return

        self.registry.clear()
        self._generation += 1
        generation = self._generation
        self.discovering.set(True)
        self._watchdog.start()
        log_event("discovery.start", timeout=self._watchdog.timeout)

        try:
            await self._radio.start_scan(lambda ad: self._on_found(generation, ad))
        except RadioError as exc:
            log_event("discovery.failed", level=logging.WARNING, reason=str(exc))
            if generation == self._generation:
                self._halt()
            return

        if generation != self._generation:
            # cancelled while the radio was still starting up
            try:
                await self._radio.stop_scan()
            except RadioError as exc:
                log_event("discovery.failed", level=logging.WARNING, reason=str(exc))

    async def cancel(self) -> None:
        await self._stop("cancelled")

    async def _expire(self) -> None:
        await self._stop("timeout")

    async def _stop(self, reason: str) -> None:
        if not self.is_discovering:
            return
        # flip state first so in-flight events from this run are dropped
        self._halt()
        try:
            await self._radio.stop_scan()
        except RadioError as exc:
            log_event("discovery.failed", level=logging.WARNING, reason=str(exc))
        log_event("discovery.stop", reason=reason, devices=len(self.registry))

    def _halt(self) -> None:
        self._generation += 1
        self._watchdog.cancel()
        self.discovering.set(False)

    def _on_found(self, generation: int, advertisement: Advertisement) -> None:
        if generation != self._generation or not self.is_discovering:
            return
        device = Device.from_advertisement(advertisement)
        if not device.name.is_named:
            log_event(
                "discovery.ignored",
                level=logging.DEBUG,
                device_id=device.id,
                name_kind=device.name.kind.name,
            )
            return
        if self.registry.add(device):
            log_event("discovery.found", device_id=device.id, name=device.name.value)
