from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import HubRuntimeConfig

_LEVELS: dict[str, int] = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET,
}


def parse_level(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default
    if text in _LEVELS:
        return _LEVELS[text]
    try:
        return int(text)
    except ValueError:
        return default


def _optional(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value)
    return s if s.strip() else None


def _file_handler(path: str) -> logging.Handler:
    p = Path(os.path.expanduser(path))
    p.parent.mkdir(parents=True, exist_ok=True)
    # Create with owner-only permissions before the handler opens it.
    fd = os.open(p, os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o600)
    os.close(fd)
    return logging.FileHandler(p, encoding="utf-8")


def configure_logging(
    cfg: HubRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install console/file handlers on the root logger.

    Replaces any handlers from a previous call, so it can be re-run after
    the config changes.
    """

    level = parse_level(override_level or cfg.log_level, logging.INFO)
    rns_level = parse_level(cfg.log_rns_level, logging.WARNING)

    handlers: list[logging.Handler] = []
    if bool(cfg.log_console):
        handlers.append(logging.StreamHandler())

    log_file = _optional(override_file) if override_file is not None else _optional(cfg.log_file)
    if log_file:
        handlers.append(_file_handler(log_file))

    fmt = str(cfg.log_format).strip() or "%(asctime)s %(levelname)s %(name)s: %(message)s"
    formatter = logging.Formatter(fmt=fmt, datefmt=_optional(cfg.log_datefmt))

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)
    root.setLevel(level)

    logging.getLogger("RNS").setLevel(rns_level)
    logging.captureWarnings(True)
