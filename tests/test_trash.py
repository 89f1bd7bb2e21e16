"""
tests/test_trash.py
"""
from __future__ import annotations

from linkace.app import (
    create_link,
    create_list,
    delete_link,
    delete_list,
    get_db,
    link_lists,
)

CSRF = "trash-csrf"


def _login(client, uid: int) -> None:
    with client.session_transaction() as s:
        s["user_id"] = uid
        s["csrf"] = CSRF


# ───────────────────────── tests ──────────────────────────────────────
def test_trash_lists_deleted_entries(client, user_id, other_user_id):
    delete_link(create_link(user_id, {"url": "https://gone.example", "title": "Gone link"}))
    delete_list(create_list(user_id, {"name": "Gone list"}))
    delete_link(create_link(other_user_id, {"url": "https://theirs.example", "title": "Their link"}))
    create_link(user_id, {"url": "https://alive.example", "title": "Alive link"})
    _login(client, user_id)

    html = client.get("/trash").get_data(as_text=True)
    assert "Gone link" in html and "Gone list" in html
    assert "Their link" not in html
    assert "Alive link" not in html


def test_restore_link(client, user_id):
    link = create_link(user_id, {"url": "https://back.example", "lists": ["Kept"]})
    delete_link(link)
    _login(client, user_id)

    rv = client.post(f"/trash/link/{link['id']}/restore", data={"csrf": CSRF})
    assert rv.status_code == 302
    assert client.get(f"/links/{link['id']}").status_code == 200
    assert [l["name"] for l in link_lists(link["id"])] == ["Kept"]


def test_restore_requires_trashed_row(client, user_id):
    link = create_link(user_id, {"url": "https://alive.example"})
    _login(client, user_id)
    rv = client.post(f"/trash/link/{link['id']}/restore", data={"csrf": CSRF})
    assert rv.status_code == 404


def test_restore_list_with_reused_name(client, user_id):
    old = create_list(user_id, {"name": "Reading"})
    delete_list(old)
    create_list(user_id, {"name": "Reading"})
    _login(client, user_id)

    client.post(f"/trash/list/{old['id']}/restore", data={"csrf": CSRF})
    with client.session_transaction() as s:
        flashes = s.get("_flashes", [])
    assert any(cat == "error" and "already taken" in msg for cat, msg in flashes)
    row = get_db().execute("SELECT deleted_at FROM list WHERE id=?", (old["id"],)).fetchone()
    assert row["deleted_at"] is not None


def test_clear_trash_only_touches_own_rows(client, user_id, other_user_id):
    mine = create_link(user_id, {"url": "https://mine.example"})
    theirs = create_link(other_user_id, {"url": "https://theirs.example"})
    delete_link(mine)
    delete_link(theirs)
    _login(client, user_id)

    rv = client.post("/trash/clear", data={"csrf": CSRF})
    assert rv.status_code == 302

    ids = {r[0] for r in get_db().execute("SELECT id FROM link")}
    assert ids == {theirs["id"]}


def test_clear_one_kind(client, user_id):
    delete_link(create_link(user_id, {"url": "https://a.example"}))
    delete_list(create_list(user_id, {"name": "L"}))
    _login(client, user_id)

    client.post("/trash/clear", data={"kind": "list", "csrf": CSRF})
    db = get_db()
    assert db.execute("SELECT COUNT(*) FROM list").fetchone()[0] == 0
    assert db.execute("SELECT COUNT(*) FROM link").fetchone()[0] == 1


def test_clear_unknown_kind(client, user_id):
    _login(client, user_id)
    assert client.post("/trash/clear", data={"kind": "user", "csrf": CSRF}).status_code == 400


def test_purge_cascades_relations(client, user_id):
    link = create_link(user_id, {"url": "https://a.example", "tags": ["t"], "lists": ["l"]})
    db = get_db()
    db.execute(
        "INSERT INTO link_history (link_id, field, old_value, new_value, changed_at) "
        "VALUES (?, 'title', NULL, 'x', '2099-01-01')",
        (link["id"],),
    )
    db.commit()
    delete_link(link)
    _login(client, user_id)

    client.post("/trash/clear", data={"kind": "link", "csrf": CSRF})
    for table in ("link_tag", "link_list", "link_history"):
        assert db.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0] == 0
