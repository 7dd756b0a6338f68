"""Tests for configuration loading and environment overrides."""

import json

import pytest

from taskloop.config.loader import (
    DEFAULT_MAX_ITERATIONS,
    ConfigManager,
    GlobalConfig,
    LoopConfig,
    get_config_manager,
    parse_max_iterations,
    resolve_data_path,
)
from taskloop.errors import ConfigError


@pytest.mark.parametrize("raw, expected", [
    (None, DEFAULT_MAX_ITERATIONS),
    ("", DEFAULT_MAX_ITERATIONS),
    ("abc", DEFAULT_MAX_ITERATIONS),
    ("7", 7),
    (" 4 ", 4),
    ("0", 1),
    ("-3", 1),
])
def test_parse_max_iterations(raw, expected):
    assert parse_max_iterations(raw) == expected


def test_max_iterations_precedence():
    env = {"LLM_MAX_ITERATIONS": "9"}

    assert LoopConfig().resolve_max_iterations(None, {}) == 15
    assert LoopConfig().resolve_max_iterations(None, env) == 9
    assert LoopConfig(max_iterations=4).resolve_max_iterations(None, env) == 4
    assert LoopConfig(max_iterations=4).resolve_max_iterations(2, env) == 2
    assert LoopConfig().resolve_max_iterations(0, env) == 1


def test_resolve_data_path(monkeypatch, tmp_path):
    assert resolve_data_path(str(tmp_path / "x")) == tmp_path / "x"
    monkeypatch.setenv("STORE_DATA_PATH", str(tmp_path / "env"))
    assert resolve_data_path() == tmp_path / "env"


def test_missing_file_gives_defaults(tmp_path):
    config = ConfigManager(str(tmp_path / "none.json")).load(environ={})

    assert config.to_dict() == GlobalConfig().to_dict()
    assert config.resources.max_concurrent_llm_calls == 10
    assert config.scheduler.cleanup_max_age_days == 30


def test_file_values_and_environment_overrides(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "loop": {"max_iterations": 6, "default_model": "file-model"},
        "resources": {"max_concurrent_llm_calls": 4},
        "scheduler": {"sync_delay_seconds": 1.5},
        "logging": {"level": "DEBUG"},
    }), encoding="utf-8")

    config = ConfigManager(str(path)).load(environ={
        "DEFAULT_MODEL": "env-model",
        "RESOURCE_MAX_CONCURRENT_LLM_CALLS": "2",
        "STORE_DATA_PATH": "/srv/data",
        "LOG_LEVEL": "warning",
        "TASKLOOP_API_PORT": "9100",
    })

    assert config.loop.max_iterations == 6
    assert config.loop.default_model == "env-model"
    assert config.resources.max_concurrent_llm_calls == 2
    assert config.scheduler.sync_delay_seconds == 1.5
    assert config.scheduler.data_path == "/srv/data"
    assert config.logging.level == "WARNING"
    assert config.api.port == 9100


def test_invalid_file_raises_config_error(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{broken", encoding="utf-8")
    with pytest.raises(ConfigError):
        ConfigManager(str(path)).load(environ={})

    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ConfigError):
        ConfigManager(str(path)).load(environ={})


def test_save_and_reload(tmp_path):
    path = tmp_path / "CONFIG" / "config.json"
    manager = ConfigManager(str(path))
    manager.load(environ={})
    manager.global_config.scheduler.max_parallel_stores = 2
    manager.save()

    reloaded = ConfigManager(str(path)).load(environ={})
    assert reloaded.scheduler.max_parallel_stores == 2


def test_config_path_from_environment(monkeypatch, tmp_path):
    path = tmp_path / "env-config.json"
    path.write_text(json.dumps({"api": {"port": 8123}}), encoding="utf-8")
    monkeypatch.setenv("TASKLOOP_CONFIG", str(path))

    assert get_config_manager().get().api.port == 8123
