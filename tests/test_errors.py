"""
tests/test_errors.py
"""
from __future__ import annotations

import pytest

import linkace.app as linkace_app
from linkace.app import app

CSRF = "errors-csrf"


@pytest.fixture
def no_propagation(monkeypatch):
    """Let Flask route unhandled exceptions to the 500 handler."""
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)


# ─────────────────────────■  tests  ■────────────────────────────────
def test_html_404(client):
    rv = client.get("/nope")
    assert rv.status_code == 404
    assert b"Page not found" in rv.data


def test_api_404_is_json(client):
    rv = client.get("/api/v1/nope")
    assert rv.status_code == 404
    assert rv.get_json() == {"message": "Not found."}


def test_html_500(client, user_id, monkeypatch, no_propagation):
    def boom(*a, **kw):
        raise RuntimeError("kaputt")

    monkeypatch.setattr(linkace_app, "paginate", boom)
    with client.session_transaction() as s:
        s["user_id"] = user_id
        s["csrf"] = CSRF

    rv = client.get("/links")
    assert rv.status_code == 500
    assert b"Internal Server Error" in rv.data


def test_api_500_is_json(client, user_id, monkeypatch, no_propagation):
    from linkace.app import _issue_api_token, get_db

    headers = {"Authorization": f"Bearer {_issue_api_token(get_db(), user_id)}"}

    def boom(*a, **kw):
        raise RuntimeError("kaputt")

    monkeypatch.setattr(linkace_app, "paginate", boom)
    rv = client.get("/api/v1/tags", headers=headers)
    assert rv.status_code == 500
    assert rv.get_json() == {"message": "Server Error"}


def test_security_headers(client):
    rv = client.get("/login")
    assert rv.headers["X-Frame-Options"] == "DENY"
    assert rv.headers["X-Content-Type-Options"] == "nosniff"


def test_failed_transaction_rolls_back(client, user_id, monkeypatch):
    """A failing tag sync must not leave a half-created link behind."""
    from linkace.app import create_link, get_db

    def boom(*a, **kw):
        raise RuntimeError("sync failed")

    monkeypatch.setattr(linkace_app, "sync_link_lists", boom)
    with pytest.raises(RuntimeError):
        create_link(user_id, {"url": "https://x.example", "tags": ["t"]})

    db = get_db()
    assert db.execute("SELECT COUNT(*) FROM link").fetchone()[0] == 0
    assert db.execute("SELECT COUNT(*) FROM tag").fetchone()[0] == 0
