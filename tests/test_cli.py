import importlib

import pytest
from click.testing import CliRunner

from rekur.rekur_env import ENV_OVERRIDES


@pytest.mark.unit
def test_help_does_not_require_config(monkeypatch, tmp_path):
    home = tmp_path / "home"
    xdg = tmp_path / "xdg"

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    monkeypatch.delenv("REKUR_HOME", raising=False)

    import rekur.cli.main as cli_main

    importlib.reload(cli_main)

    runner = CliRunner()
    result = runner.invoke(cli_main.cli, ["--help"])

    assert result.exit_code == 0
    assert "Usage:" in result.output
    assert not (xdg / "rekur" / "config.toml").exists()


@pytest.fixture
def run(tmp_path, monkeypatch, freeze_at):
    """Invoke the CLI against a scratch home, with the clock at 2025-01-06 12:00 UTC."""
    from rekur.cli.main import cli

    home = tmp_path / "rekur"
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("REKUR_HOME", str(home))
    monkeypatch.setenv("REKUR_TIMEZONE", "America/New_York")
    runner = CliRunner()

    def _run(*args, input=None):
        with freeze_at("2025-01-06 12:00:00"):
            return runner.invoke(cli, ["--home", str(home), *args], input=input)

    return _run


@pytest.mark.integration
def test_add_and_list(run):
    result = run("add", "buy", "milk", "--due", "2025-01-07 10:00", "--tag", "errands")
    assert result.exit_code == 0, result.output
    assert "Added task" in result.output

    result = run("list")
    assert result.exit_code == 0, result.output
    assert "buy milk" in result.output
    assert "#errands" in result.output


@pytest.mark.integration
def test_add_recurring_shows_upcoming_occurrences(run):
    result = run(
        "add", "standup", "--recur", "weekdays", "--at", "9:00", "--start", "2025-01-06"
    )
    assert result.exit_code == 0, result.output
    assert "Added recurring task" in result.output
    assert "FREQ=WEEKLY;BYDAY=MO,TU,WE,TH,FR" in result.output
    assert "2025-01-06 09:00" in result.output

    listing = run("list", "--limit", "100")
    assert listing.output.count("standup") >= 20


@pytest.mark.integration
def test_recurrence_options_need_a_rule(run):
    result = run("add", "stretch", "--every", "2")
    assert result.exit_code != 0
    assert "--recur" in result.output


@pytest.mark.integration
def test_unknown_timezone_suggests_matches(run):
    result = run("timezones", "check", "New_York")
    assert result.exit_code == 1
    assert "America/New_York" in result.output

    result = run("add", "call", "--recur", "daily", "--tz", "New_York")
    assert result.exit_code == 1
    assert "Did you mean" in result.output


@pytest.mark.integration
def test_editing_an_occurrence_needs_a_scope(run):
    run("add", "standup", "--recur", "daily", "--at", "9:00", "--start", "2025-01-06")
    from rekur.controller import Controller
    from rekur.rekur_env import RekurEnvironment

    env = RekurEnvironment()
    ctrl = Controller(str(env.db_path), env)
    instance = next(t for t in ctrl.db_manager.list_tasks() if t.is_instance)
    ctrl.close()

    result = run("edit", instance.short_id, "--name", "remote standup")
    assert result.exit_code == 1
    assert "scope" in result.output

    result = run("edit", instance.short_id, "--name", "remote standup", "--scope", "occurrence")
    assert result.exit_code == 0, result.output
    assert "Edited" in result.output


@pytest.mark.integration
def test_config_prints_toml(run):
    run("list")
    result = run("config")
    assert result.exit_code == 0
    assert "[recurrence]" in result.output
    assert 'default_timezone = "America/New_York"' in result.output


@pytest.mark.integration
def test_color_can_be_turned_off(run, tmp_path, monkeypatch):
    import rich

    from rekur.cli import main as cli_main

    monkeypatch.setattr(cli_main.console, "no_color", False)
    monkeypatch.setattr(rich, "_console", None)
    run("list")
    config_path = tmp_path / "rekur" / "config.toml"
    text = config_path.read_text(encoding="utf-8")
    config_path.write_text(text.replace("color = true", "color = false"), encoding="utf-8")

    result = run("config")
    assert result.exit_code == 0, result.output
    assert "color = false" in result.output
    assert cli_main.console.no_color
    assert rich.get_console().no_color
