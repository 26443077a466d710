"""Configuration loading helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .radio import NUS_TX_CHAR

UUID_PATTERN = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
DEFAULT_DISCOVERY_TIMEOUT = 120.0
DEFAULT_SENTINEL = "000000"


@dataclass(slots=True, frozen=True)
class DiscoverySettings:
    timeout: float = DEFAULT_DISCOVERY_TIMEOUT


@dataclass(slots=True, frozen=True)
class ConnectionSettings:
    connect_timeout: float = 10.0
    notify_characteristic: str = NUS_TX_CHAR


@dataclass(slots=True, frozen=True)
class SessionSettings:
    completion_delay: float = 3.0


@dataclass(slots=True, frozen=True)
class Settings:
    discovery: DiscoverySettings = field(default_factory=DiscoverySettings)
    connection: ConnectionSettings = field(default_factory=ConnectionSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    sentinel: str = DEFAULT_SENTINEL
    report_directory: Path | None = None


def load_settings(path: Path) -> Settings:
    """Load configuration from a YAML document."""

    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    settings_raw = raw.get("settings") or {}
    discovery_raw = settings_raw.get("discovery") or {}
    connection_raw = settings_raw.get("connection") or {}
    decoder_raw = settings_raw.get("decoder") or {}
    session_raw = settings_raw.get("session") or {}
    reports_raw = settings_raw.get("reports") or {}

    discovery = DiscoverySettings(
        timeout=_positive_float(discovery_raw, "timeout_seconds", DEFAULT_DISCOVERY_TIMEOUT),
    )
    connection = ConnectionSettings(
        connect_timeout=_positive_float(connection_raw, "connect_timeout_seconds", 10.0),
        notify_characteristic=_require_uuid(connection_raw, "notify_characteristic", NUS_TX_CHAR),
    )

    completion_delay = _optional_float(session_raw, "completion_delay_seconds", 3.0)
    if completion_delay < 0:
        raise ValueError("settings.session.completion_delay_seconds must be >= 0")

    sentinel = decoder_raw.get("sentinel", DEFAULT_SENTINEL)
    if not isinstance(sentinel, str) or not sentinel:
        raise ValueError("Field 'sentinel' must be a non-empty string")

    report_directory = None
    if reports_raw.get("directory"):
        report_directory = Path(_require_str(reports_raw, "directory")).expanduser()

    return Settings(
        discovery=discovery,
        connection=connection,
        session=SessionSettings(completion_delay=completion_delay),
        sentinel=sentinel,
        report_directory=report_directory,
    )


def _require_str(source: dict[str, Any], key: str) -> str:
    value = source.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Field '{key}' must be a non-empty string")
    return value.strip()


def _optional_float(source: dict[str, Any], key: str, default: float) -> float:
    value = source.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Field '{key}' must be numeric") from exc


def _positive_float(source: dict[str, Any], key: str, default: float) -> float:
    value = _optional_float(source, key, default)
    if value <= 0:
        raise ValueError(f"Field '{key}' must be > 0")
    return value


def _require_uuid(source: dict[str, Any], key: str, default: str) -> str:
    if source.get(key) is None:
        return default
    value = _require_str(source, key)
    if not UUID_PATTERN.fullmatch(value):
        raise ValueError(f"Field '{key}' must be a 128-bit UUID string")
    return value.lower()
