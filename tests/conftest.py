"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from linkace.app import _create_user, app, get_db, init_db, seed_settings

_TABLES = (
    "link_history",
    "link_tag",
    "link_list",
    "link",
    "tag",
    "list",
    "setting",
    "user",
)


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    db_file = tmp_path_factory.mktemp("data") / "test.sqlite3"
    return db_file


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        # no outgoing HTTP unless a test patches `requests` itself
        FETCH_LINK_META=False,
        DUPLICATE_URL_MATCH="exact",
    )
    with app.app_context():
        init_db()


@pytest.fixture(autouse=True)
def _clean_tables() -> None:
    """Every test starts with empty tables, fresh ids and default settings."""
    with app.app_context():
        db = get_db()
        for table in _TABLES:
            db.execute(f"DELETE FROM {table}")
        db.execute("DELETE FROM sqlite_sequence")
        db.commit()
        seed_settings(db)


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def user_id(client) -> int:
    """A regular account, created straight in SQLite."""
    return _create_user(get_db(), username="alice", password="secret-pass")


@pytest.fixture
def other_user_id(client) -> int:
    return _create_user(get_db(), username="bob", password="other-pass")


@pytest.fixture(autouse=True, scope="session")
def _ticking_clock():
    """
    Patch linkace.app.utc_now for the whole test session so every call
    returns an ever-increasing timestamp → stable “newest first” ordering.
    """
    from linkace import app as linkace_app  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(linkace_app, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end
