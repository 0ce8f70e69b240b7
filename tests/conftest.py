"""
Shared pytest fixtures for rekur tests.

This module provides common fixtures used across all test files, including:
- Time freezing utilities
- Test environment setup
- Database and controller fixtures
- Task and series factories
"""

import pytest
from datetime import datetime, timezone
from freezegun import freeze_time

from rekur.controller import Controller
from rekur.model import DatabaseManager
from rekur.models import Task
from rekur.rekur_env import ENV_OVERRIDES, MaterializationConfig, RekurConfig, RekurEnvironment
from rekur.series import create_series
from rekur.shared import new_id

NY = "America/New_York"


def utc(*args) -> datetime:
    """datetime(*args) in UTC."""
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def frozen_time():
    """
    Provides a freezegun context that freezes time to 2025-01-01 12:00:00 UTC.

    Usage:
        def test_something(frozen_time):
            frozen_time.tick(delta=timedelta(hours=2))
    """
    with freeze_time("2025-01-01 12:00:00") as frozen:
        yield frozen


@pytest.fixture
def freeze_at():
    """
    Returns a function that freezes time to a specific moment (UTC).

    Usage:
        def test_something(freeze_at):
            with freeze_at("2025-01-15 10:00:00"):
                ...
    """
    return freeze_time


@pytest.fixture
def test_env(tmp_path, monkeypatch):
    """
    Provides a RekurEnvironment rooted in a temporary home, with any REKUR_*
    overrides from the calling shell removed.
    """
    monkeypatch.setenv("REKUR_HOME", str(tmp_path / "home"))
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    env = RekurEnvironment()
    env.ensure(init_config=True)
    return env


@pytest.fixture
def test_config():
    """Defaults, pinned to New York so results do not depend on the machine."""
    return RekurConfig(recurrence=MaterializationConfig(default_timezone=NY))


@pytest.fixture
def temp_db_path(tmp_path):
    """
    Provides a temporary database path that will be cleaned up after the test.
    """
    return tmp_path / "test_rekur.db"


@pytest.fixture
def db(temp_db_path, test_env):
    dbm = DatabaseManager(str(temp_db_path), test_env, reset=True)
    yield dbm
    dbm.close()


@pytest.fixture
def test_controller(temp_db_path, test_env, test_config):
    """
    Provides a Controller with a fresh test database.
    """
    ctrl = Controller(str(temp_db_path), test_env, reset=True, config=test_config)
    yield ctrl
    ctrl.close()


@pytest.fixture
def task_factory(db):
    """
    Usage:
        task = task_factory("write report", priority=TaskPriority.HIGH)
    """

    def _create(name: str = "task", **fields) -> Task:
        return db.add_task(Task(id=new_id(), name=name, **fields))

    return _create


@pytest.fixture
def series_factory(db, task_factory):
    """
    A template plus series; by default daily at 09:00 New York from
    Monday 2025-01-06.
    """

    def _create(
        rrule: str = "FREQ=DAILY",
        dtstart: datetime = datetime(2025, 1, 6, 9, 0),
        timezone: str = NY,
        name: str = "recurring",
        **fields,
    ):
        template = task_factory(name, **fields)
        return create_series(db, template.id, rrule, dtstart, timezone)

    return _create
