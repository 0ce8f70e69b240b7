import tomllib

import pytest

from rekur.rekur_env import (
    MaterializationConfig,
    RekurConfig,
    RekurEnvironment,
    apply_env_overrides,
    render_config,
)


@pytest.mark.unit
def test_default_config_is_written(test_env):
    assert test_env.config_path.exists()
    data = tomllib.loads(test_env.config_path.read_text(encoding="utf-8"))
    assert data["recurrence"]["lookahead_days"] == 30
    assert data["recurrence"]["enable_catchup"] is False
    assert data["default_filters"]["status"] == "pending"


@pytest.mark.unit
def test_rendered_config_round_trips():
    config = RekurConfig(
        recurrence=MaterializationConfig(default_timezone="Europe/Paris", lookahead_days=14)
    )
    text = render_config(config)
    assert "# lookahead_days: int >= 1" in text
    assert RekurConfig.model_validate(tomllib.loads(text)) == config


@pytest.mark.unit
def test_env_overrides_apply():
    config = RekurConfig(recurrence=MaterializationConfig(default_timezone="UTC"))
    got = apply_env_overrides(
        config, {"REKUR_LOOKAHEAD_DAYS": "7", "REKUR_ENABLE_CATCHUP": "true"}
    )
    assert got.recurrence.lookahead_days == 7
    assert got.recurrence.enable_catchup is True
    assert config.recurrence.lookahead_days == 30


@pytest.mark.unit
def test_invalid_env_override_is_ignored(capsys):
    config = RekurConfig(recurrence=MaterializationConfig(default_timezone="UTC"))
    got = apply_env_overrides(config, {"REKUR_TIMEZONE": "Mars/Olympus_Mons"})
    assert got.recurrence.default_timezone == "UTC"
    assert "Ignoring invalid" in capsys.readouterr().out


@pytest.mark.unit
def test_invalid_config_falls_back_to_defaults(test_env, capsys):
    test_env.config_path.write_text("[recurrence]\nlookahead_days = 0\n", encoding="utf-8")
    config = RekurEnvironment().load_config()
    assert config.recurrence.lookahead_days == 30
    assert "Using defaults" in capsys.readouterr().out


@pytest.mark.unit
def test_missing_keys_are_filled_in(test_env):
    test_env.config_path.write_text("[ui]\nampm = true\n", encoding="utf-8")
    config = RekurEnvironment().load_config()
    assert config.ui.ampm is True
    assert "lookahead_days = 30" in test_env.config_path.read_text(encoding="utf-8")


@pytest.mark.unit
def test_retired_keys_are_dropped(test_env):
    test_env.config_path.write_text("[ui]\nshow_completed = true\ndayfirst = true\n", encoding="utf-8")
    config = RekurEnvironment().load_config()
    assert config.ui.dayfirst is True
    text = test_env.config_path.read_text(encoding="utf-8")
    assert "show_completed" not in text
    assert "dayfirst = true" in text
