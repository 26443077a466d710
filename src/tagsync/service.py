"""FastAPI integration entrypoint."""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Iterable

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .config import Settings, load_settings
from .connection import ConnectError, ConnectionBusyError
from .connectivity import ConnectivitySession, Radio
from .devices import Device
from .logs import SERVICE_NAME, configure_logging, log_event
from .radio import BleakRadio
from .reports import CsvReportSink, MemoryResultSink
from .session import ExpectedItem, ScanSession, SessionError, SessionResult, TrackedItem

CONFIG_ENV_VAR = "TAGSYNC_CONFIG_PATH"
CONFIG_SEARCH_PATHS_ENV_VAR = "TAGSYNC_CONFIG_SEARCH_PATHS"
DEFAULT_CONFIG_FILENAME = "config.yaml"
DEFAULT_CONFIG_SEARCH_PATHS: tuple[Path, ...] = (
    Path("config.yaml"),
    Path("config/config.yaml"),
    Path(__file__).resolve().parent / DEFAULT_CONFIG_FILENAME,
)


class ConnectRequest(BaseModel):
    address: str = Field(min_length=1)


class ExpectedItemPayload(BaseModel):
    name: str
    identifier: str = Field(min_length=1)


class SessionRequest(BaseModel):
    items: list[ExpectedItemPayload] = Field(default_factory=list)


def create_app(
    *,
    config_path: str | None = None,
    radio: Radio | None = None,
    config_search_paths: Iterable[str | os.PathLike[str]] | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application."""

    configure_logging()

    state: dict[str, Any] = {
        "settings": None,
        "radio": radio,
        "config_path": config_path,
        "connectivity": None,
        "config_search_paths": tuple(config_search_paths or ()),
    }

    @asynccontextmanager
    async def _lifespan(app: FastAPI):  # pragma: no cover - exercised via tests
        resolved_path = _resolve_config_path(state["config_path"], state["config_search_paths"])
        try:
            settings = load_settings(resolved_path)
        except Exception:
            log_event("config.load_failed", path=str(resolved_path))
            raise

        state["settings"] = settings
        state["config_path"] = str(resolved_path)
        state["connectivity"] = ConnectivitySession(
            state["radio"] or _build_radio(settings),
            settings=settings,
            sink=_build_sink(settings),
        )
        log_event("config.loaded", path=str(resolved_path))
        try:
            yield
        finally:
            await state["connectivity"].close()
            state["connectivity"] = None
            state["settings"] = None
            log_event("config.unloaded")

    app = FastAPI(
        title="tagsync - handheld RFID reader reconciliation",
        description="Discover a reader, stream tag reads and reconcile them against an expected list.",
        version="1.0.0",
        lifespan=_lifespan,
    )

    def _require_connectivity() -> ConnectivitySession:
        connectivity = state.get("connectivity")
        if connectivity is None:
            raise HTTPException(status_code=503, detail={"message": "Service not initialized"})
        return connectivity

    def _require_scan() -> ScanSession:
        scan = _require_connectivity().scan
        if scan is None:
            raise HTTPException(status_code=404, detail={"message": "No scan session has been started"})
        return scan

    @app.get("/")
    async def root() -> dict[str, Any]:
        settings: Settings | None = state.get("settings")
        return {
            "service": SERVICE_NAME,
            "version": app.version,
            "config_path": state.get("config_path"),
            "discovery_timeout": settings.discovery.timeout if settings else None,
        }

    @app.get("/health")
    async def health() -> dict[str, Any]:
        snapshot = _require_connectivity().snapshot()
        return {"service": SERVICE_NAME, "status": "ok", **snapshot}

    @app.post("/discovery")
    async def start_discovery() -> dict[str, Any]:
        connectivity = _require_connectivity()
        await connectivity.start_discovery()
        return {"discovering": connectivity.discovery.is_discovering}

    @app.delete("/discovery")
    async def cancel_discovery() -> dict[str, Any]:
        connectivity = _require_connectivity()
        await connectivity.cancel_discovery()
        return {"discovering": False, "devices": len(connectivity.registry)}

    @app.get("/devices")
    async def devices() -> dict[str, Any]:
        connectivity = _require_connectivity()
        return {
            "discovering": connectivity.discovery.is_discovering,
            "devices": [_device_payload(device) for device in connectivity.devices],
        }

    @app.post("/connection")
    async def connect(request: ConnectRequest) -> dict[str, Any]:
        connectivity = _require_connectivity()
        try:
            device = await connectivity.connect(request.address)
        except ConnectionBusyError as exc:
            raise HTTPException(status_code=409, detail={"message": str(exc)}) from exc
        except ConnectError as exc:
            raise HTTPException(status_code=502, detail={"message": str(exc)}) from exc
        return {"state": "connected", "device": _device_payload(device)}

    @app.get("/connection")
    async def connection() -> dict[str, Any]:
        manager = _require_connectivity().connection
        device = manager.connected_device
        return {
            "state": manager.state.value.name.lower(),
            "device": _device_payload(device) if device else None,
        }

    @app.delete("/connection")
    async def disconnect() -> dict[str, Any]:
        await _require_connectivity().disconnect()
        return {"state": "idle"}

    @app.post("/session")
    async def start_session(request: SessionRequest) -> dict[str, Any]:
        connectivity = _require_connectivity()
        expected = [ExpectedItem(name=item.name, identifier=item.identifier) for item in request.items]
        try:
            scan = await connectivity.start_session(expected)
        except SessionError as exc:
            raise HTTPException(status_code=409, detail={"message": str(exc)}) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail={"message": str(exc)}) from exc
        return _session_payload(scan)

    @app.get("/session")
    async def session() -> dict[str, Any]:
        return _session_payload(_require_scan())

    @app.post("/session/interrupt")
    async def interrupt() -> dict[str, Any]:
        scan = _require_scan()
        await scan.interrupt()
        return _session_payload(scan)

    @app.get("/results")
    async def results() -> dict[str, Any]:
        sink = _require_connectivity().sink
        stored = sink.results if isinstance(sink, MemoryResultSink) else []
        return {"count": len(stored), "results": [_result_payload(result) for result in stored]}

    return app


def _build_radio(settings: Settings) -> BleakRadio:
    return BleakRadio(
        connect_timeout=settings.connection.connect_timeout,
        notify_characteristic=settings.connection.notify_characteristic,
    )


def _build_sink(settings: Settings) -> MemoryResultSink:
    if settings.report_directory is not None:
        return CsvReportSink(settings.report_directory)
    return MemoryResultSink()


def _device_payload(device: Device) -> dict[str, Any]:
    return {
        "id": device.id,
        "name": device.name.value if device.name.is_named else None,
        "address": device.address,
    }


def _item_payload(item: TrackedItem) -> dict[str, Any]:
    return {
        "name": item.name,
        "identifier": item.expected_identifier,
        "found": item.found,
        "found_at": item.found_at.isoformat() if item.found_at else None,
    }


def _result_payload(result: SessionResult) -> dict[str, Any]:
    return {
        "state": result.state.name.lower(),
        "found": result.found_count,
        "total": result.total_count,
        "success_rate": result.success_rate,
        "started_at": result.started_at.isoformat(),
        "finished_at": result.finished_at.isoformat(),
        "device": _device_payload(result.device) if result.device else None,
        "items": [_item_payload(item) for item in result.items],
    }


def _session_payload(scan: ScanSession) -> dict[str, Any]:
    progress = scan.progress.value
    state = scan.state.value
    return {
        "state": state.name.lower() if state else None,
        "found": progress.found,
        "total": progress.total,
        "percent": progress.percent,
        "elapsed_seconds": round(scan.elapsed, 3),
        "items": [_item_payload(item) for item in scan.items],
        "result": _result_payload(scan.result) if scan.result else None,
    }


def _resolve_config_path(
    override: str | None = None,
    extra_search_paths: Iterable[str | os.PathLike[str]] | None = None,
) -> Path:
    candidate = override or os.getenv(CONFIG_ENV_VAR)
    if candidate:
        path = _normalize_path(candidate)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found at {path}")
        return path

    search_candidates: list[Path] = []
    env_search = os.getenv(CONFIG_SEARCH_PATHS_ENV_VAR)
    if env_search:
        for raw in env_search.split(os.pathsep):
            cleaned = raw.strip()
            if cleaned:
                search_candidates.append(Path(cleaned))

    if extra_search_paths:
        for configured in extra_search_paths:
            search_candidates.append(Path(str(configured)))

    search_candidates.extend(DEFAULT_CONFIG_SEARCH_PATHS)

    evaluated_paths: list[Path] = []
    for candidate_path in search_candidates:
        path = _normalize_path(candidate_path)
        evaluated_paths.append(path)
        if path.exists():
            return path

    searched = ", ".join(str(p) for p in evaluated_paths)
    raise FileNotFoundError(
        (
            "Unable to locate configuration file. Set "
            f"{CONFIG_ENV_VAR} or place config.yaml in one of: {searched}"
        )
    )


def _normalize_path(candidate: str | os.PathLike[str]) -> Path:
    path = Path(candidate).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    return path
