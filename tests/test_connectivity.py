from __future__ import annotations

import asyncio
import csv
from pathlib import Path

import pytest
from radio_stubs import StubRadio, settle

from tagsync.config import SessionSettings, Settings
from tagsync.connectivity import ConnectivitySession
from tagsync.reports import CsvReportSink, MemoryResultSink, report_filename
from tagsync.session import ExpectedItem, SessionError, SessionState

ADDRESS = "00:1A:7D:DA:71:13"
INVENTORY = [ExpectedItem("Laptop", "A1"), ExpectedItem("Monitor", "B2")]


def _settings() -> Settings:
    return Settings(session=SessionSettings(completion_delay=0))


@pytest.mark.asyncio
async def test_full_flow_hands_result_to_sink() -> None:
    radio = StubRadio()
    sink = MemoryResultSink()
    connectivity = ConnectivitySession(radio, settings=_settings(), sink=sink)

    await connectivity.start_discovery()
    radio.advertise("reader-1", "Reader One", address=ADDRESS)
    radio.advertise("AA:BB:CC:DD:EE:FF", "AA:BB:CC:DD:EE:FF")
    assert [device.id for device in connectivity.devices] == ["reader-1"]

    await connectivity.connect(ADDRESS)
    assert connectivity.discovery.is_discovering is False

    session = await connectivity.start_session(INVENTORY)
    radio.emit("A1", "A1", "000000X", "B2")
    await asyncio.wait_for(session.wait(), timeout=1)
    await connectivity.drain()

    assert sink.latest is not None
    assert sink.latest.state is SessionState.COMPLETED
    assert sink.latest.found_count == 2
    assert sink.latest.device is not None and sink.latest.device.id == "reader-1"
    assert connectivity.snapshot()["connection"] == "idle"


@pytest.mark.asyncio
async def test_only_one_running_session() -> None:
    radio = StubRadio()
    connectivity = ConnectivitySession(radio, settings=_settings())
    await connectivity.connect(ADDRESS)
    await connectivity.start_session(INVENTORY)

    with pytest.raises(SessionError, match="already running"):
        await connectivity.start_session(INVENTORY)

    await connectivity.interrupt()
    await connectivity.drain()
    assert connectivity.scan is not None
    assert connectivity.scan.state.value is SessionState.INTERRUPTED


@pytest.mark.asyncio
async def test_new_session_waits_for_previous_to_finish() -> None:
    radio = StubRadio()
    settings = Settings(session=SessionSettings(completion_delay=0.05))
    connectivity = ConnectivitySession(radio, settings=settings)
    await connectivity.connect(ADDRESS)
    first = await connectivity.start_session(INVENTORY)

    radio.emit("A1", "B2")
    await settle()
    assert first.state.value is SessionState.COMPLETED
    assert first.result is None

    with pytest.raises(SessionError, match="still finishing"):
        await connectivity.start_session([ExpectedItem("Monitor", "B2")])

    result = await asyncio.wait_for(first.wait(), timeout=1)
    await connectivity.drain()
    assert result.state is SessionState.COMPLETED
    assert connectivity.scan is first
    assert radio.close_calls == [ADDRESS]


@pytest.mark.asyncio
async def test_close_interrupts_and_disconnects() -> None:
    radio = StubRadio()
    sink = MemoryResultSink()
    connectivity = ConnectivitySession(radio, settings=_settings(), sink=sink)
    await connectivity.start_discovery()
    await connectivity.connect(ADDRESS)
    await connectivity.start_session(INVENTORY)

    await connectivity.close()

    assert [result.state for result in sink.results] == [SessionState.INTERRUPTED]
    assert radio.close_calls == [ADDRESS]
    assert connectivity.snapshot() == {
        "discovering": False,
        "devices": 0,
        "connection": "idle",
        "device": None,
        "session": "interrupted",
    }


@pytest.mark.asyncio
async def test_csv_report_sink_writes_per_item_rows(tmp_path: Path) -> None:
    radio = StubRadio()
    sink = CsvReportSink(tmp_path / "reports")
    connectivity = ConnectivitySession(radio, settings=_settings(), sink=sink)
    await connectivity.connect(ADDRESS)
    session = await connectivity.start_session(INVENTORY)

    radio.emit("B2")
    await settle()
    await connectivity.interrupt()
    await connectivity.drain()

    assert len(sink.written) == 1
    path = sink.written[0]
    assert path.name == report_filename(session.result)
    with path.open(encoding="utf-8", newline="") as handle:
        rows = list(csv.DictReader(handle))

    assert [(row["name"], row["identifier"], row["found"]) for row in rows] == [
        ("Laptop", "A1", "false"),
        ("Monitor", "B2", "true"),
    ]
    assert rows[0]["found_at"] == ""
    assert rows[1]["found_at"]
