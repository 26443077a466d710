"""Destinations for terminal scan session results."""

from __future__ import annotations

import asyncio
import csv
from pathlib import Path
from typing import Protocol

from .logs import log_event
from .session import SessionResult

REPORT_COLUMNS = ("name", "identifier", "found", "found_at")


class ResultSink(Protocol):
    async def submit(self, result: SessionResult) -> None:
        ...


class MemoryResultSink:
    """Keeps every submitted result, newest last."""

    def __init__(self) -> None:
        self.results: list[SessionResult] = []

    async def submit(self, result: SessionResult) -> None:
        self.results.append(result)

    @property
    def latest(self) -> SessionResult | None:
        return self.results[-1] if self.results else None


class CsvReportSink(MemoryResultSink):
    """Writes one per-item CSV report for each result."""

    def __init__(self, directory: Path) -> None:
        super().__init__()
        self.directory = directory
        self.written: list[Path] = []

    async def submit(self, result: SessionResult) -> None:
        await super().submit(result)
        path = self.directory / report_filename(result)
        await asyncio.to_thread(write_report, result, path)
        self.written.append(path)
        log_event("report.written", path=str(path), state=result.state.name)


def report_filename(result: SessionResult) -> str:
    stamp = result.started_at.strftime("%Y%m%dT%H%M%S")
    return f"scan_{stamp}_{result.state.name.lower()}.csv"


def write_report(result: SessionResult, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle)
        writer.writerow(REPORT_COLUMNS)
        for item in result.items:
            writer.writerow(
                (
                    item.name,
                    item.expected_identifier,
                    "true" if item.found else "false",
                    item.found_at.isoformat() if item.found_at else "",
                )
            )
