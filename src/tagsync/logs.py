"""Structured JSON event logging."""

from __future__ import annotations

import json
import logging
import os
from typing import Any

SERVICE_NAME = "tagsync"
LOG_LEVEL_ENV_VAR = "TAGSYNC_LOG_LEVEL"

logger = logging.getLogger(SERVICE_NAME)


def configure_logging() -> None:
    level_name = os.getenv(LOG_LEVEL_ENV_VAR, "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger.setLevel(level)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(message)s")


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    if not logger.isEnabledFor(level):
        return
    record = {"event": event, "service": SERVICE_NAME, **fields}
    logger.log(level, json.dumps(record, sort_keys=True, default=str))
