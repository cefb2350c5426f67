from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any

from .config import HubRuntimeConfig

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_LEVEL_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}


def parse_level(value: Any, default: int) -> int:
    """Accept a level name ("debug", "WARN"), a number, or a numeric string."""
    if value is None:
        return default
    if isinstance(value, int):
        return value

    text = str(value).strip().upper()
    if not text:
        return default
    text = _LEVEL_ALIASES.get(text, text)

    level = logging.getLevelNamesMapping().get(text)
    if level is not None:
        return level
    try:
        return int(text)
    except ValueError:
        return default


def _log_file_path(cfg: HubRuntimeConfig, override_file: str | None) -> Path | None:
    # An explicit override, even an empty one, wins over the config file.
    raw = override_file if override_file is not None else cfg.log_file
    if raw is None or not str(raw).strip():
        return None
    return Path(os.path.expanduser(str(raw)))


def _build_handlers(
    cfg: HubRuntimeConfig, override_file: str | None
) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []

    if cfg.log_console:
        handlers.append(logging.StreamHandler())

    path = _log_file_path(cfg, override_file)
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # Reopens the file if logrotate moves it away.
        handlers.append(logging.handlers.WatchedFileHandler(path, encoding="utf-8"))
        try:
            os.chmod(path, 0o600)
        except OSError:
            pass

    fmt = str(cfg.log_format).strip() or DEFAULT_FORMAT
    datefmt = str(cfg.log_datefmt).strip() if cfg.log_datefmt else None
    formatter = logging.Formatter(fmt=fmt, datefmt=datefmt or None)
    for h in handlers:
        h.setFormatter(formatter)
    return handlers


def configure_logging(
    cfg: HubRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install rdmd's root handlers, replacing any installed before."""
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    for h in _build_handlers(cfg, override_file):
        root.addHandler(h)

    root.setLevel(parse_level(override_level or cfg.log_level, logging.INFO))
    logging.getLogger("RNS").setLevel(parse_level(cfg.log_rns_level, logging.WARNING))

    logging.captureWarnings(True)
