import json
import logging

import pytest

from utils import DEFAULT_CONFIG, load_config, setup_logger


def test_load_config_defaults_when_missing(tmp_path):
    config = load_config(str(tmp_path / "missing.json"))
    assert config == DEFAULT_CONFIG
    # Defaults are copied, not shared
    config["pins"]["grid_size"] = 3
    assert DEFAULT_CONFIG["pins"]["grid_size"] == 120


def test_load_config_merges_sections(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "pins": {"grid_size": 64, "actuation_mode": "scale"},
        "extra": {"note": "kept"},
    }), encoding="utf-8")

    config = load_config(str(path))

    assert config["pins"]["grid_size"] == 64
    assert config["pins"]["actuation_mode"] == "scale"
    assert config["pins"]["spacing"] == DEFAULT_CONFIG["pins"]["spacing"]
    assert config["camera"] == DEFAULT_CONFIG["camera"]
    assert config["extra"] == {"note": "kept"}


def test_load_config_invalid_json_falls_back(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    assert load_config(str(path)) == DEFAULT_CONFIG


@pytest.mark.parametrize("env_var, value, section, key, expected", [
    ("PINS_PINS_GRID_SIZE", "32", "pins", "grid_size", 32),
    ("PINS_PINS_HEIGHT_SCALE", "2.5", "pins", "height_scale", 2.5),
    ("PINS_PIPELINE_AUTOSTART", "false", "pipeline", "autostart", False),
    ("PINS_SERVER_HOST", "127.0.0.1", "server", "host", "127.0.0.1"),
    ("PINS_DEPTH_MODEL_PROVIDERS", "CUDAExecutionProvider, CPUExecutionProvider",
     "depth_model", "providers", ["CUDAExecutionProvider", "CPUExecutionProvider"]),
])
def test_env_overrides(tmp_path, monkeypatch, env_var, value, section, key, expected):
    monkeypatch.setenv(env_var, value)
    config = load_config(str(tmp_path / "missing.json"))
    assert config[section][key] == expected


def test_env_override_beats_file(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"pins": {"grid_size": 64}}), encoding="utf-8")
    monkeypatch.setenv("PINS_PINS_GRID_SIZE", "16")
    assert load_config(str(path))["pins"]["grid_size"] == 16


def test_invalid_env_value_is_ignored(tmp_path, monkeypatch):
    monkeypatch.setenv("PINS_PINS_GRID_SIZE", "lots")
    config = load_config(str(tmp_path / "missing.json"))
    assert config["pins"]["grid_size"] == DEFAULT_CONFIG["pins"]["grid_size"]


def test_setup_logger(tmp_path):
    log_file = tmp_path / "logs" / "pins.log"
    test_logger = setup_logger("pin_depth.test_setup", "DEBUG", str(log_file))

    assert test_logger.level == logging.DEBUG
    assert len(test_logger.handlers) == 2
    test_logger.debug("hello pins")
    for handler in test_logger.handlers:
        handler.flush()
    assert "hello pins" in log_file.read_text(encoding="utf-8")

    # Calling again replaces handlers instead of stacking them
    test_logger = setup_logger("pin_depth.test_setup", "bogus")
    assert test_logger.level == logging.INFO
    assert len(test_logger.handlers) == 1
