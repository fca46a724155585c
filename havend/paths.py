from __future__ import annotations

import os
from pathlib import Path


def default_havend_dir() -> Path:
    override = os.environ.get("HAVEND_HOME")
    if override:
        return Path(override)
    return Path.home() / ".havend"


def default_config_path() -> Path:
    return default_havend_dir() / "havend.toml"


def default_identity_path() -> Path:
    return default_havend_dir() / "hub_identity"


def default_db_path() -> Path:
    return default_havend_dir() / "haven.sqlite3"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(path, 0o700)
    except OSError:
        pass
