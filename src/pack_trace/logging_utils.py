"""Logging setup shared by the service, the CLI and the backfill worker."""

from __future__ import annotations

import logging
import os
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL_ENV = "PACK_TRACE_LOG_LEVEL"


def resolve_level(value: str | int | None) -> int:
    if isinstance(value, int):
        return value
    text = str(value or "").strip().upper()
    if not text:
        return logging.INFO
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: str | int | None = None, log_paths: list[str] | None = None) -> None:
    """Install root handlers once; later calls are no-ops."""
    root = logging.getLogger()
    if root.handlers:
        return
    resolved = resolve_level(level if level is not None else os.getenv(LOG_LEVEL_ENV))
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    for entry in log_paths or []:
        path = Path(entry)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(
        level=resolved,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )
