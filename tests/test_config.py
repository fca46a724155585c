from havend.config import ConfigManager, HubRuntimeConfig, command_level_overrides


def test_apply_config_data_maps_tables() -> None:
    mgr = ConfigManager(None)
    cfg = mgr.apply_config_data(
        HubRuntimeConfig(config_path="/etc/havend.toml"),
        {
            "hub": {"hub_name": "lan", "history_lines": 20, "greeting": "", "config_path": "x"},
            "logging": {"level": "DEBUG", "file": ""},
            "commands": {"ban": 20, "broken": "high"},
        },
    )
    assert cfg.hub_name == "lan"
    assert cfg.history_lines == 20
    assert cfg.greeting is None
    assert cfg.config_path == "/etc/havend.toml"
    assert cfg.log_level == "DEBUG"
    assert cfg.log_file is None
    assert command_level_overrides(cfg) == {"ban": 20}


def test_load_without_file_keeps_base(tmp_path) -> None:
    base = HubRuntimeConfig(hub_name="base")
    assert ConfigManager(str(tmp_path / "missing.toml")).load(base) is base
    assert ConfigManager(None).persist_command_level("ban", 20) is False


def test_persist_creates_commands_table(tmp_path) -> None:
    path = tmp_path / "havend.toml"
    path.write_text("# comment kept\n[hub]\nhub_name = \"x\"\n", encoding="utf-8")
    mgr = ConfigManager(str(path))

    assert mgr.persist_command_level("follow", 4) is True
    assert mgr.persist_command_level("follow", 6) is True

    text = path.read_text(encoding="utf-8")
    assert "# comment kept" in text
    cfg = mgr.load(HubRuntimeConfig())
    assert command_level_overrides(cfg) == {"follow": 6}
    assert cfg.hub_name == "x"
