from __future__ import annotations

import logging
import os
import threading
from dataclasses import asdict, dataclass, replace
from typing import Any

from .util import expand_path


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    db_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "haven.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "haven"
    greeting: str | None = None
    history_lines: int = 80
    chunk_length: int = 10
    max_catchup_lines: int = 1000
    user_verify: bool = False
    default_access_level: int = 1
    admin_access_level: int = 13
    command_levels: tuple[tuple[str, int], ...] = ()
    max_room_name_len: int = 32
    max_user_name_len: int = 20
    rate_limit_msgs_per_minute: int = 240
    max_resource_bytes: int = 262144
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


class ConfigManager:
    """Reads the hub TOML file and writes operator changes back into it."""

    def __init__(self, config_path: str | None) -> None:
        self.config_path = config_path
        self.log = logging.getLogger("havend.config")
        self._write_lock = threading.Lock()

    def load_toml(self, path: str | None = None) -> dict:
        import tomllib

        p = path or self.config_path
        if not p:
            return {}
        with open(expand_path(p), "rb") as f:
            data = tomllib.load(f)
        return data if isinstance(data, dict) else {}

    def apply_config_data(self, base: HubRuntimeConfig, data: dict) -> HubRuntimeConfig:
        hub = data.get("hub") if isinstance(data, dict) else None
        if isinstance(hub, dict):
            data = {**data, **hub}

        log_table = data.get("logging") if isinstance(data, dict) else None
        if isinstance(log_table, dict):
            mapped: dict[str, object] = {}
            for key in ("level", "rns_level", "console", "file", "format", "datefmt"):
                if key in log_table:
                    mapped[f"log_{key}"] = log_table.get(key)
            data = {**data, **mapped}

        allowed = set(asdict(base).keys())
        allowed.discard("config_path")
        allowed.discard("command_levels")

        updates = {k: v for k, v in data.items() if k in allowed}

        commands = data.get("commands")
        if isinstance(commands, dict):
            levels: list[tuple[str, int]] = []
            for name, level in commands.items():
                try:
                    levels.append((str(name), int(level)))
                except (TypeError, ValueError):
                    self.log.warning("Ignoring bad command level command=%s value=%r", name, level)
            updates["command_levels"] = tuple(sorted(levels))

        if "announce" in data and "announce_on_start" not in updates:
            updates["announce_on_start"] = bool(data["announce"])
        for key in ("configdir", "greeting", "db_path", "log_file", "log_datefmt"):
            if key in updates and updates[key] == "":
                updates[key] = None

        return replace(base, **updates) if updates else base

    def load(self, base: HubRuntimeConfig) -> HubRuntimeConfig:
        if not self.config_path or not os.path.exists(expand_path(self.config_path)):
            return base
        return self.apply_config_data(base, self.load_toml())

    def persist_command_level(self, command: str, level: int) -> bool:
        """Store a command level override in the [commands] table.

        Returns False when there is no config file to write to.
        """
        if not self.config_path:
            return False

        from tomlkit import dumps, parse, table

        path = expand_path(self.config_path)
        with self._write_lock:
            try:
                st = os.stat(path)
            except OSError:
                st = None

            if st is not None:
                with open(path, encoding="utf-8") as f:
                    doc = parse(f.read())
            else:
                doc = parse("")

            commands = doc.get("commands")
            if commands is None:
                commands = table()
                doc["commands"] = commands
            commands[command] = int(level)

            with open(path, "w", encoding="utf-8") as f:
                f.write(dumps(doc))

            if st is not None:
                try:
                    os.chmod(path, st.st_mode)
                except OSError:
                    pass

        self.log.info("Persisted command level command=%s level=%s", command, level)
        return True


def command_level_overrides(cfg: HubRuntimeConfig) -> dict[str, Any]:
    return {name: int(level) for name, level in cfg.command_levels}
