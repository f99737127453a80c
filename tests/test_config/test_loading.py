from pathlib import Path

import pytest

import shellpilot.config as config_module
from shellpilot.config import Config, get_config, set_config
from shellpilot.exceptions import ConfigurationError


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  model: llama3.2\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    (tmp_path / "shellpilot.yaml").write_text(
        (
            "model:\n"
            "  model: qwen3:8b\n"
            "agent:\n"
            "  plan_merge: false\n"
            "approval:\n"
            "  allowlist:\n"
            "    - name: git\n"
            "      subcommands: [status]\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.model == "qwen3:8b"
    assert cfg.agent.plan_merge is False
    assert [entry.name for entry in cfg.approval.allowlist] == ["git"]
    assert cfg.approval.allowlist[0].subcommands == ["status"]


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("memory:\n  dementia_limit: 12\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.memory.dementia_limit == 12
    assert cfg.memory.amnesia_threshold == 10


def test_missing_file_gives_defaults(tmp_path: Path):
    cfg = Config.from_yaml(tmp_path / "missing.yaml")
    assert cfg.agent.plan_reminder_limit == 3
    assert cfg.guard.growth_factor == 5.0
    assert cfg.guard.min_growth_bytes == 1024
    assert cfg.agent.id_prefix == "key"


def test_env_overrides_nested_values(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SHELLPILOT_SHELL__DEFAULT_TIMEOUT_SEC", "15")
    cfg = Config()
    assert cfg.shell.default_timeout_sec == 15


def test_save_round_trips(tmp_path: Path):
    cfg = Config()
    cfg.agent.auto_approve = True
    path = tmp_path / "out" / "config.yaml"
    cfg.save(path)

    assert Config.from_yaml(path).agent.auto_approve is True


def test_set_config_replaces_global_instance():
    previous = get_config()
    replacement = previous.model_copy(deep=True)
    replacement.agent.debug = True
    try:
        set_config(replacement)
        assert get_config().agent.debug is True
    finally:
        set_config(previous)


def test_malformed_yaml_raises_configuration_error(tmp_path: Path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("model: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        Config.from_yaml(bad)

    listing = tmp_path / "list.yaml"
    listing.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        Config.from_yaml(listing)
