"""Unit tests for calley_recurrence.core.config_loader."""
import logging

import pytest

from calley_recurrence.core.config_loader import (
    DEFAULT_MAX_INSTANCES,
    SUPPORTED_FREQUENCIES,
    EngineConfig,
    apply_env_overrides,
    load_config,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch):
    for name in ("CALLEY_MAX_INSTANCES", "CALLEY_LOG_LEVEL", "CALLEY_DEFAULT_WINDOW_DAYS"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    cfg = EngineConfig()
    assert cfg.max_instances_per_series == DEFAULT_MAX_INSTANCES == 1000
    assert cfg.allowed_frequencies == ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")
    assert cfg.log_level == "INFO"
    assert cfg.default_window_days == 42
    assert EngineConfig.from_dict(None) == cfg


def test_from_dict_coerces_values():
    cfg = EngineConfig.from_dict(
        {
            "max_instances_per_series": "250",
            "allowed_frequencies": ["weekly", "daily", "weekly"],
            "log_level": "debug",
            "default_window_days": "7",
        }
    )
    assert cfg.max_instances_per_series == 250
    assert cfg.allowed_frequencies == ("WEEKLY", "DAILY")
    assert cfg.log_level == "DEBUG"
    assert cfg.default_window_days == 7


@pytest.mark.parametrize(
    "raw,expected",
    [("lots", 1000), (0, 1), (-5, 1), (50000, 10000), (10000, 10000)],
)
def test_ceiling_is_clamped(raw, expected, caplog):
    with caplog.at_level(logging.WARNING):
        cfg = EngineConfig.from_dict({"max_instances_per_series": raw})
    assert cfg.max_instances_per_series == expected
    if raw != expected:
        assert caplog.records


def test_unsupported_frequencies_are_dropped(caplog):
    with caplog.at_level(logging.WARNING):
        cfg = EngineConfig.from_dict({"allowed_frequencies": ["HOURLY", "MONTHLY"]})
    assert cfg.allowed_frequencies == ("MONTHLY",)
    assert "HOURLY" in caplog.text


@pytest.mark.parametrize("raw", [[], ["SECONDLY"], None])
def test_empty_frequency_list_falls_back_to_defaults(raw):
    assert EngineConfig.from_dict({"allowed_frequencies": raw}).allowed_frequencies == SUPPORTED_FREQUENCIES


def test_single_frequency_string():
    assert EngineConfig.from_dict({"allowed_frequencies": "weekly"}).allowed_frequencies == ("WEEKLY",)


def test_load_config_missing_file_uses_defaults(tmp_path):
    assert load_config(str(tmp_path / "missing.yaml")) == EngineConfig()


def test_load_config_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("max_instances_per_series: 200\nallowed_frequencies:\n  - WEEKLY\n  - MONTHLY\n")

    cfg = load_config(str(path))

    assert cfg.max_instances_per_series == 200
    assert cfg.allowed_frequencies == ("WEEKLY", "MONTHLY")


def test_load_config_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text('{"default_window_days": 14, "log_level": "warning"}')

    cfg = load_config(str(path))

    assert cfg.default_window_days == 14
    assert cfg.log_level == "WARNING"


def test_load_config_empty_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert load_config(str(path)) == EngineConfig()


def test_load_config_rejects_non_mapping(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        load_config(str(path))


def test_env_overrides_win_over_file(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("max_instances_per_series: 200\n")
    monkeypatch.setenv("CALLEY_MAX_INSTANCES", "300")
    monkeypatch.setenv("CALLEY_LOG_LEVEL", "error")
    monkeypatch.setenv("CALLEY_DEFAULT_WINDOW_DAYS", "3")

    cfg = load_config(str(path))

    assert cfg.max_instances_per_series == 300
    assert cfg.log_level == "ERROR"
    assert cfg.default_window_days == 3


def test_invalid_env_values_are_ignored(monkeypatch, caplog):
    monkeypatch.setenv("CALLEY_MAX_INSTANCES", "many")
    monkeypatch.setenv("CALLEY_DEFAULT_WINDOW_DAYS", "soon")

    with caplog.at_level(logging.WARNING):
        merged = apply_env_overrides({"max_instances_per_series": 5})

    assert merged == {"max_instances_per_series": 5}
    assert "CALLEY_MAX_INSTANCES" in caplog.text
