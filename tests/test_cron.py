"""
tests/test_cron.py
"""
from __future__ import annotations

import datetime as dt

import pytest
import requests

import linkace.app as linkace_app
from linkace.app import (
    STATUS_BROKEN,
    STATUS_MOVED,
    STATUS_OK,
    check_link,
    check_links,
    create_link,
    delete_link,
    get_db,
    get_setting,
    purge_trash,
    run_schedule,
    set_setting,
)


# ───────────────────────── helpers ────────────────────────────────────
class _FakeResponse:
    def __init__(self, status_code: int):
        self.status_code = status_code

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _fake_get(codes: dict[str, int | Exception]):
    """requests.get stand-in answering per URL; records the calls."""
    calls = []

    def _get(url, **kwargs):
        calls.append((url, kwargs))
        answer = codes[url]
        if isinstance(answer, Exception):
            raise answer
        return _FakeResponse(answer)

    _get.calls = calls
    return _get


# ───────────────────────── cron route ─────────────────────────────────
def test_cron_rejects_wrong_token(client, monkeypatch):
    ran = []
    monkeypatch.setattr(linkace_app, "run_schedule", lambda: ran.append(1) or [])

    rv = client.get("/cron/not-the-token")
    assert rv.status_code == 403
    assert b"The cron token is invalid." in rv.data
    assert ran == []


def test_cron_runs_schedule(client, monkeypatch):
    ran = []
    monkeypatch.setattr(linkace_app, "run_schedule", lambda: ran.append(1) or ["check_links"])

    rv = client.get(f"/cron/{get_setting('cron_token')}")
    assert rv.status_code == 200
    assert rv.data == b"Cron successfully executed."
    assert ran == [1]


def test_cron_token_can_be_rotated(client):
    old = get_setting("cron_token")
    set_setting("cron_token", "fresh-token")

    assert client.get(f"/cron/{old}").status_code == 403


# ───────────────────────── link checks ────────────────────────────────
@pytest.mark.parametrize(
    "answer, status",
    [
        (200, STATUS_OK),
        (204, STATUS_OK),
        (301, STATUS_MOVED),
        (308, STATUS_MOVED),
        (404, STATUS_BROKEN),
        (500, STATUS_BROKEN),
        (requests.ConnectionError("nope"), STATUS_BROKEN),
        (requests.Timeout("slow"), STATUS_BROKEN),
    ],
)
def test_check_link_status_mapping(client, monkeypatch, answer, status):
    fake = _fake_get({"https://x.example": answer})
    monkeypatch.setattr(linkace_app.requests, "get", fake)

    assert check_link("https://x.example") == status
    assert fake.calls[0][1]["allow_redirects"] is False


def test_check_links_updates_status_and_skips_disabled(client, user_id, monkeypatch):
    ok = create_link(user_id, {"url": "https://ok.example"})
    bad = create_link(user_id, {"url": "https://bad.example"})
    create_link(user_id, {"url": "https://skip.example", "check_disabled": True})
    fake = _fake_get({"https://ok.example": 200, "https://bad.example": 404})
    monkeypatch.setattr(linkace_app.requests, "get", fake)

    counts = check_links()
    assert counts == {STATUS_OK: 1, STATUS_BROKEN: 1}
    assert [c[0] for c in fake.calls] == ["https://ok.example", "https://bad.example"]

    db = get_db()
    assert db.execute("SELECT status FROM link WHERE id=?", (ok["id"],)).fetchone()[0] == STATUS_OK
    row = db.execute("SELECT status, last_checked_at FROM link WHERE id=?", (bad["id"],)).fetchone()
    assert row["status"] == STATUS_BROKEN
    assert row["last_checked_at"] is not None


def test_check_links_rotates_through_batches(client, user_id, monkeypatch):
    urls = [f"https://{i}.example" for i in range(3)]
    for u in urls:
        create_link(user_id, {"url": u})
    fake = _fake_get({u: 200 for u in urls})
    monkeypatch.setattr(linkace_app.requests, "get", fake)

    check_links(limit=2)
    check_links(limit=2)
    check_links(limit=2)      # offset wrapped around
    assert [c[0] for c in fake.calls] == urls + urls[:2]


# ───────────────────────── scheduler ──────────────────────────────────
def test_run_schedule_respects_intervals(client, monkeypatch):
    ran = []
    monkeypatch.setattr(
        linkace_app,
        "SCHEDULE",
        {
            "hourly": (dt.timedelta(hours=1), lambda: ran.append("hourly")),
            "daily": (dt.timedelta(days=1), lambda: ran.append("daily")),
        },
    )
    t0 = dt.datetime(2099, 6, 1, tzinfo=dt.timezone.utc)

    assert run_schedule(t0) == ["hourly", "daily"]
    assert run_schedule(t0 + dt.timedelta(minutes=30)) == []
    assert run_schedule(t0 + dt.timedelta(hours=2)) == ["hourly"]
    assert ran == ["hourly", "daily", "hourly"]
    assert get_setting("schedule_last_daily") == t0.isoformat(timespec="seconds")


def test_run_schedule_accepts_naive_now(client, monkeypatch):
    ran = []
    monkeypatch.setattr(
        linkace_app, "SCHEDULE", {"hourly": (dt.timedelta(hours=1), lambda: ran.append(1))}
    )
    t0 = dt.datetime(2099, 6, 1, tzinfo=dt.timezone.utc)
    assert run_schedule(t0) == ["hourly"]
    assert run_schedule(dt.datetime(2099, 6, 1, 0, 30)) == []
    assert run_schedule(dt.datetime(2099, 6, 1, 2)) == ["hourly"]
    assert len(ran) == 2


def test_failed_task_is_not_marked_as_run(client, monkeypatch):
    def boom():
        raise RuntimeError("kaputt")

    monkeypatch.setattr(linkace_app, "SCHEDULE", {"boom": (dt.timedelta(hours=1), boom)})
    with pytest.raises(RuntimeError):
        run_schedule()
    assert get_setting("schedule_last_boom") is None


def test_registered_tasks():
    assert set(linkace_app.SCHEDULE) == {"check_links", "purge_trash"}


# ───────────────────────── trash retention ────────────────────────────
def test_purge_task_needs_retention_setting(client, user_id):
    link = create_link(user_id, {"url": "https://old.example"})
    delete_link(link)

    linkace_app._task_purge_trash()          # retention 0 → keep forever
    assert get_db().execute("SELECT COUNT(*) FROM link").fetchone()[0] == 1


def test_purge_trash_older_than(client, user_id):
    old = create_link(user_id, {"url": "https://old.example"})
    new = create_link(user_id, {"url": "https://new.example"})
    db = get_db()
    db.execute("UPDATE link SET deleted_at='2000-01-01T00:00:00+00:00' WHERE id=?", (old["id"],))
    db.commit()
    delete_link(new)

    removed = purge_trash(older_than=dt.datetime(2050, 1, 1, tzinfo=dt.timezone.utc))
    assert removed == 1
    ids = [r[0] for r in db.execute("SELECT id FROM link")]
    assert ids == [new["id"]]
