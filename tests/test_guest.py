"""
tests/test_guest.py
"""
from __future__ import annotations

import pytest

from linkace.app import create_link, create_list, create_tag, set_setting


@pytest.fixture
def guest_on(client):
    set_setting("guest_access", 1)


# ───────────────────────── tests ──────────────────────────────────────
def test_guest_pages_closed_by_default(client):
    assert client.get("/").headers["Location"].endswith("/login")
    rv = client.get("/guest/links")
    assert rv.status_code == 302
    assert "/login" in rv.headers["Location"]


def test_root_redirects_to_guest_links(client, guest_on):
    assert client.get("/").headers["Location"].endswith("/guest/links")


def test_guest_sees_public_links_only(client, user_id, guest_on):
    create_link(user_id, {"url": "https://public.example", "title": "Public one"})
    create_link(user_id, {"url": "https://private.example", "title": "Private one", "is_private": True})
    gone = create_link(user_id, {"url": "https://gone.example", "title": "Trashed one"})
    from linkace.app import delete_link
    delete_link(gone)

    html = client.get("/guest/links").get_data(as_text=True)
    assert "Public one" in html
    assert "Private one" not in html
    assert "Trashed one" not in html
    assert "/edit" not in html


def test_guest_tag_page(client, user_id, guest_on):
    tag = create_tag(user_id, {"name": "shared", "is_private": False})
    hidden = create_tag(user_id, {"name": "hidden", "is_private": True})
    create_link(user_id, {"url": "https://a.example", "title": "Tagged public", "tags": [tag["id"]]})
    create_link(user_id, {"url": "https://b.example", "title": "Tagged private",
                          "tags": [tag["id"]], "is_private": True})

    html = client.get(f"/guest/tags/{tag['id']}").get_data(as_text=True)
    assert "Tagged public" in html
    assert "Tagged private" not in html
    assert client.get(f"/guest/tags/{hidden['id']}").status_code == 404


def test_guest_list_page(client, user_id, guest_on):
    lst = create_list(user_id, {"name": "Public list", "description": "Hand *picked*"})
    create_link(user_id, {"url": "https://a.example", "title": "In list", "lists": [lst["id"]]})

    rv = client.get(f"/guest/lists/{lst['id']}")
    assert rv.status_code == 200
    html = rv.get_data(as_text=True)
    assert "Public list" in html and "In list" in html
    assert "<em>picked</em>" in html
    assert "Delete" not in html
