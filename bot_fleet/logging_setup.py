from __future__ import annotations

import logging
import os
import sys

from bot_fleet.config import EngineConfig

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def resolve_level(level: int | str) -> int:
    """Map a level name such as ``"debug"`` to its number; unknown names mean INFO."""
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    *,
    level: int | str = logging.INFO,
    log_file: str | None = None,
    console: bool = True,
) -> None:
    handlers: list[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler(stream=sys.stderr))
    if log_file:
        handlers.append(_file_handler(str(log_file)))
    if not handlers:
        # Never leave logging unconfigured.
        handlers.append(logging.NullHandler())
    logging.basicConfig(level=resolve_level(level), format=LOG_FORMAT, handlers=handlers, force=True)


def configure_for_engine(
    cfg: EngineConfig,
    *,
    level: int | str | None = None,
    log_file: str | None = None,
) -> None:
    """Configure root logging from ``BOT_LOG_LEVEL``/``BOT_LOG_FILE``; explicit arguments win."""
    configure_logging(level=level or cfg.log_level, log_file=log_file or cfg.log_file)


def _file_handler(path: str) -> logging.FileHandler:
    log_dir = os.path.dirname(path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    return logging.FileHandler(path, encoding="utf-8")
