"""The connectivity session: one owner for discovery, connection and scanning."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Protocol

from .config import Settings
from .connection import ConnectingRadio, ConnectionManager
from .decoder import TagStreamDecoder
from .devices import Device, DeviceRegistry, DiscoveryController, ScanningRadio
from .logs import log_event
from .reports import MemoryResultSink, ResultSink
from .session import ExpectedItem, ScanSession, SessionError


class Radio(ScanningRadio, ConnectingRadio, Protocol):
    pass


class ConnectivitySession:
    """Explicit state owner handed to whatever layer drives the reader."""

    def __init__(
        self,
        radio: Radio,
        *,
        settings: Settings | None = None,
        sink: ResultSink | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.registry = DeviceRegistry()
        self.discovery = DiscoveryController(
            radio,
            self.registry,
            timeout=self.settings.discovery.timeout,
        )
        self.connection = ConnectionManager(
            radio,
            discovery=self.discovery,
            decoder=TagStreamDecoder(self.settings.sentinel),
        )
        self.sink: ResultSink = sink or MemoryResultSink()
        self.scan: ScanSession | None = None
        self._session_lock = asyncio.Lock()
        self._handoffs: set[asyncio.Task[None]] = set()

    @property
    def devices(self) -> tuple[Device, ...]:
        return self.registry.snapshot.value

    async def start_discovery(self) -> None:
        await self.discovery.start()

    async def cancel_discovery(self) -> None:
        await self.discovery.cancel()

    async def connect(self, address: str) -> Device:
        return await self.connection.connect(address)

    async def disconnect(self) -> None:
        await self.connection.disconnect()

    async def start_session(self, expected_items: Iterable[ExpectedItem]) -> ScanSession:
        async with self._session_lock:
            if self.scan is not None and self.scan.is_running:
                raise SessionError("A scan session is already running")
            if self.scan is not None and self.scan.result is None:
                # completed but still waiting out its disconnect delay
                raise SessionError("The previous scan session is still finishing")
            session = ScanSession(
                self.connection,
                expected_items,
                completion_delay=self.settings.session.completion_delay,
            )
            await session.start()
            self.scan = session

        task = asyncio.get_running_loop().create_task(self._hand_off(session))
        self._handoffs.add(task)
        task.add_done_callback(self._handoffs.discard)
        return session

    async def interrupt(self) -> None:
        if self.scan is not None:
            await self.scan.interrupt()

    async def drain(self) -> None:
        """Wait until every finished session has reached the sink."""

        if self._handoffs:
            await asyncio.gather(*tuple(self._handoffs))

    async def close(self) -> None:
        await self.discovery.cancel()
        await self.interrupt()
        await self.connection.disconnect()
        await self.drain()

    def snapshot(self) -> dict[str, Any]:
        device = self.connection.connected_device
        scan = self.scan
        return {
            "discovering": self.discovery.is_discovering,
            "devices": len(self.registry),
            "connection": self.connection.state.value.name.lower(),
            "device": device.address if device else None,
            "session": scan.state.value.name.lower() if scan and scan.state.value else None,
        }

    async def _hand_off(self, session: ScanSession) -> None:
        result = await session.wait()
        try:
            await self.sink.submit(result)
        except OSError as exc:
            log_event("session.handoff_failed", level=logging.ERROR, reason=str(exc))
            return
        log_event(
            "session.handoff",
            state=result.state.name,
            found=result.found_count,
            total=result.total_count,
        )
