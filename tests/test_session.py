from __future__ import annotations

import asyncio

import pytest
from radio_stubs import StubRadio, settle

from tagsync.connection import ConnectionManager, ConnectionState
from tagsync.session import (
    ExpectedItem,
    Progress,
    ScanSession,
    SessionError,
    SessionState,
)

ADDRESS = "00:1A:7D:DA:71:13"
INVENTORY = [ExpectedItem("Laptop", "A1"), ExpectedItem("Monitor", "B2")]


async def _connected(radio: StubRadio) -> ConnectionManager:
    manager = ConnectionManager(radio)
    await manager.connect(ADDRESS)
    return manager


@pytest.mark.asyncio
async def test_stream_with_duplicates_and_sentinels_completes() -> None:
    radio = StubRadio()
    manager = await _connected(radio)
    tags = manager.tags.subscribe()
    session = ScanSession(manager, INVENTORY)
    await session.start()

    radio.emit("A1", "A1", "000000X", "B2")
    result = await asyncio.wait_for(session.wait(), timeout=1)

    assert result.state is SessionState.COMPLETED
    assert {item.name: item.found for item in result.items} == {"Laptop": True, "Monitor": True}
    assert result.found_count == 2
    assert tags.inbox.qsize() == 2
    assert radio.close_calls == [ADDRESS]
    assert manager.state.value is ConnectionState.IDLE


@pytest.mark.asyncio
async def test_completion_disconnects_exactly_once_after_delay() -> None:
    radio = StubRadio()
    manager = await _connected(radio)
    session = ScanSession(manager, INVENTORY, completion_delay=0.05)
    await session.start()

    radio.emit("B2", "A1")
    await settle()

    assert session.state.value is SessionState.COMPLETED
    assert session.result is None
    assert radio.close_calls == []

    result = await asyncio.wait_for(session.wait(), timeout=1)
    await session.interrupt()

    assert result.state is SessionState.COMPLETED
    assert radio.close_calls == [ADDRESS]


@pytest.mark.asyncio
async def test_empty_session_completes_immediately() -> None:
    radio = StubRadio()
    manager = await _connected(radio)
    session = ScanSession(manager, [])

    await session.start()

    assert session.state.value is SessionState.COMPLETED
    assert session.progress.value == Progress(0, 0)
    assert session.result is not None
    assert session.result.found_count == 0
    assert session.result.total_count == 0
    assert radio.close_calls == [ADDRESS]


@pytest.mark.asyncio
async def test_tags_read_before_start_are_matched() -> None:
    radio = StubRadio()
    manager = await _connected(radio)
    radio.emit("A1")

    session = ScanSession(manager, INVENTORY)
    await session.start()

    assert session.progress.value == Progress(1, 2)
    radio.emit("A1", "B2")
    result = await asyncio.wait_for(session.wait(), timeout=1)

    assert result.state is SessionState.COMPLETED
    assert [item.found for item in result.items] == [True, True]
    assert radio.close_calls == [ADDRESS]


@pytest.mark.asyncio
async def test_session_completes_from_tags_read_before_start() -> None:
    radio = StubRadio()
    manager = await _connected(radio)
    radio.emit("B2", "A1")

    session = ScanSession(manager, INVENTORY)
    await session.start()
    result = await asyncio.wait_for(session.wait(), timeout=1)

    assert result.state is SessionState.COMPLETED
    assert result.found_count == 2
    assert radio.close_calls == [ADDRESS]


@pytest.mark.asyncio
async def test_interrupt_keeps_partial_results() -> None:
    radio = StubRadio()
    manager = await _connected(radio)
    session = ScanSession(manager, INVENTORY)
    await session.start()

    radio.emit("A1")
    await settle()
    await session.interrupt()

    result = session.result
    assert result is not None
    assert result.state is SessionState.INTERRUPTED
    assert [item.found for item in result.items] == [True, False]
    assert result.missing_as_expected() == [ExpectedItem("Monitor", "B2")]
    assert radio.close_calls == [ADDRESS]

    await session.interrupt()
    assert radio.close_calls == [ADDRESS]
    assert [item.found for item in session.items] == [True, False]


@pytest.mark.asyncio
async def test_unexpected_drop_fails_session_without_reconnect() -> None:
    radio = StubRadio()
    manager = await _connected(radio)
    session = ScanSession(manager, INVENTORY)
    await session.start()

    radio.emit("B2")
    radio.drop()
    result = await asyncio.wait_for(session.wait(), timeout=1)

    assert result.state is SessionState.CONNECTION_FAILED
    assert [item.found for item in result.items] == [False, True]
    assert radio.connect_calls == [ADDRESS]
    assert radio.close_calls == []


@pytest.mark.asyncio
async def test_external_disconnect_counts_as_interruption() -> None:
    radio = StubRadio()
    manager = await _connected(radio)
    session = ScanSession(manager, INVENTORY)
    await session.start()

    await manager.disconnect()
    result = await asyncio.wait_for(session.wait(), timeout=1)

    assert result.state is SessionState.INTERRUPTED
    assert radio.close_calls == [ADDRESS]


@pytest.mark.asyncio
async def test_unknown_and_repeated_identifiers_are_ignored() -> None:
    radio = StubRadio()
    manager = await _connected(radio)
    session = ScanSession(manager, INVENTORY)
    await session.start()

    assert session.mark("ZZ") is False
    assert session.mark("A1") is True
    assert session.mark("A1") is False
    assert session.progress.value == Progress(1, 2)
    assert session.progress.value.percent == 50

    await session.interrupt()


@pytest.mark.asyncio
async def test_progress_is_observable() -> None:
    radio = StubRadio()
    manager = await _connected(radio)
    session = ScanSession(manager, INVENTORY)
    updates = session.progress.changes.subscribe()
    await session.start()

    radio.emit("A1", "B2")
    await asyncio.wait_for(session.wait(), timeout=1)

    seen = []
    while not updates.inbox.empty():
        seen.append(updates.inbox.get_nowait())
    assert seen == [Progress(1, 2), Progress(2, 2)]


@pytest.mark.asyncio
async def test_start_requires_connection() -> None:
    manager = ConnectionManager(StubRadio())
    session = ScanSession(manager, INVENTORY)

    with pytest.raises(SessionError, match="connected reader"):
        await session.start()

    assert session.state.value is None


@pytest.mark.asyncio
async def test_start_twice_is_rejected() -> None:
    radio = StubRadio()
    manager = await _connected(radio)
    session = ScanSession(manager, INVENTORY)
    await session.start()

    with pytest.raises(SessionError, match="already"):
        await session.start()

    await session.interrupt()


def test_duplicate_expected_identifiers_are_rejected() -> None:
    manager = ConnectionManager(StubRadio())

    with pytest.raises(ValueError, match="Duplicate"):
        ScanSession(manager, [ExpectedItem("Laptop", "A1"), ExpectedItem("Dock", "A1")])


@pytest.mark.asyncio
async def test_result_summary() -> None:
    radio = StubRadio()
    manager = await _connected(radio)
    session = ScanSession(manager, INVENTORY)
    await session.start()

    radio.emit("A1")
    await settle()
    await session.interrupt()
    result = session.result

    assert result is not None
    assert result.success_rate == 0.5
    assert [item.name for item in result.found_items] == ["Laptop"]
    assert [item.name for item in result.missing_items] == ["Monitor"]
    assert result.found_items[0].found_at is not None
    assert result.device is not None and result.device.address == ADDRESS
    assert result.duration.total_seconds() >= 0
    assert session.elapsed >= 0
