#!/usr/bin/env python3
"""
A single-file, self-hosted bookmark manager.
"""

import os
import re
import secrets
import sqlite3
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import wraps
from html import unescape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import Callable, DefaultDict, Mapping
from urllib.parse import urlparse

import click
import markdown
import requests
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from itsdangerous import BadSignature, Signer
from markupsafe import Markup, escape
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("LINKACE_DATABASE", str(ROOT / "linkace.sqlite3")))

SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = os.environ.get("LINKACE_SECRET_KEY") or (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
if not SECRET_FILE.exists():
    SECRET_FILE.write_text(SECRET_KEY)
TOKEN_LEN = 48
signer = Signer(SECRET_KEY, salt="api-token")

STATUS_UNKNOWN = "unknown"
STATUS_OK = "ok"
STATUS_MOVED = "moved"
STATUS_BROKEN = "broken"
STATUS_LABELS = {
    STATUS_UNKNOWN: "Not checked yet",
    STATUS_OK: "OK",
    STATUS_MOVED: "Moved",
    STATUS_BROKEN: "Broken",
}

PAGE_DEFAULT = 24
PAGE_MAX = 500
SQLITE_INT_MAX = 2**63 - 1
TRASH_RETENTION_MAX = 36500  # days
LINK_CHECK_BATCH = 100
META_MAX_BYTES = 512 * 1024
USER_AGENT = "LinkAce (+https://www.linkace.org)"

ORDER_COLUMNS = ("created_at", "updated_at", "url", "title", "id")
ORDER_DIRS = ("asc", "desc")
LINK_FIELDS = ("url", "title", "description", "is_private", "check_disabled")
TRASHABLE = ("link", "list", "tag")

USER_SETTING_DEFAULTS = {
    "links_per_page": str(PAGE_DEFAULT),
    "links_private_default": "0",
    "lists_private_default": "0",
    "tags_private_default": "0",
    "markdown_for_text": "1",
}
SYSTEM_SETTING_DEFAULTS = {
    "site_name": "LinkAce",
    "guest_access": "0",
    "trash_retention_days": "0",
}

MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
]

TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.I | re.S)
META_DESC_RE = re.compile(
    r"""<meta\s+[^>]*?name=["']description["'][^>]*?content=["']([^"']*)["']""",
    re.I,
)
META_DESC_REV_RE = re.compile(
    r"""<meta\s+[^>]*?content=["']([^"']*)["'][^>]*?name=["']description["']""",
    re.I,
)

try:
    __version__ = version("linkace")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(DB_FILE))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=os.environ.get("LINKACE_INSECURE_COOKIES", "0") != "1",
    FETCH_LINK_META=os.environ.get("LINKACE_FETCH_META", "1") != "0",
    LINK_CHECK_TIMEOUT=int(os.environ.get("LINKACE_LINK_CHECK_TIMEOUT", "10")),
    DUPLICATE_URL_MATCH=os.environ.get("LINKACE_DUPLICATE_URL_MATCH", "exact"),
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    """Render a description as Markdown or as plain text, per user setting."""
    if not text:
        return Markup("")
    if not user_flag("markdown_for_text"):
        return Markup("<br>").join(escape(text).splitlines())
    return Markup(markdown.markdown(text, extensions=MD_EXTENSIONS))


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        return datetime.fromisoformat(iso).strftime("%Y-%m-%d %H:%M")
    except ValueError:
        return iso


@app.template_filter("short_url")
def short_url(url: str | None) -> str:
    """example.com/path – scheme and trailing slash dropped."""
    if not url:
        return ""
    return re.sub(r"^[a-z][a-z0-9+.-]*://", "", url, flags=re.I).rstrip("/")


def link_host(url: str | None) -> str:
    if not url:
        return ""
    host = urlparse(url).hostname or ""
    return host[4:] if host.startswith("www.") else host


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
        g.db.create_function("casefold", 1, casefold)
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Accounts
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            username        TEXT UNIQUE NOT NULL,
            password_hash   TEXT NOT NULL,
            api_token_hash  TEXT,
            created_at      TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 2.  Links
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS link (
            id               INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id          INTEGER NOT NULL,
            url              TEXT NOT NULL,
            title            TEXT,
            description      TEXT,
            is_private       INTEGER NOT NULL DEFAULT 0,
            status           TEXT NOT NULL DEFAULT 'unknown',  -- unknown | ok | moved | broken
            check_disabled   INTEGER NOT NULL DEFAULT 0,
            last_checked_at  TEXT,
            created_at       TEXT NOT NULL,
            updated_at       TEXT NOT NULL,
            deleted_at       TEXT,
            FOREIGN KEY (user_id) REFERENCES user(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_link_user ON link(user_id, deleted_at);
        CREATE INDEX IF NOT EXISTS idx_link_url  ON link(url);

        ------------------------------------------------------------
        -- 3.  Tags + lists
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS tag (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id     INTEGER NOT NULL,
            name        TEXT NOT NULL,
            is_private  INTEGER NOT NULL DEFAULT 0,
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL,
            deleted_at  TEXT,
            FOREIGN KEY (user_id) REFERENCES user(id) ON DELETE CASCADE
        );

        CREATE UNIQUE INDEX IF NOT EXISTS uq_tag_name
            ON tag(user_id, name) WHERE deleted_at IS NULL;

        CREATE TABLE IF NOT EXISTS list (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id      INTEGER NOT NULL,
            name         TEXT NOT NULL,
            description  TEXT,
            is_private   INTEGER NOT NULL DEFAULT 0,
            created_at   TEXT NOT NULL,
            updated_at   TEXT NOT NULL,
            deleted_at   TEXT,
            FOREIGN KEY (user_id) REFERENCES user(id) ON DELETE CASCADE
        );

        CREATE UNIQUE INDEX IF NOT EXISTS uq_list_name
            ON list(user_id, name) WHERE deleted_at IS NULL;

        CREATE TABLE IF NOT EXISTS link_tag (
            link_id INTEGER NOT NULL,
            tag_id  INTEGER NOT NULL,
            PRIMARY KEY (link_id, tag_id),
            FOREIGN KEY (link_id) REFERENCES link(id) ON DELETE CASCADE,
            FOREIGN KEY (tag_id)  REFERENCES tag(id)  ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS link_list (
            link_id INTEGER NOT NULL,
            list_id INTEGER NOT NULL,
            PRIMARY KEY (link_id, list_id),
            FOREIGN KEY (link_id) REFERENCES link(id) ON DELETE CASCADE,
            FOREIGN KEY (list_id) REFERENCES list(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_link_tag_tag   ON link_tag(tag_id);
        CREATE INDEX IF NOT EXISTS idx_link_list_list ON link_list(list_id);

        ------------------------------------------------------------
        -- 4.  Change history of links
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS link_history (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            link_id     INTEGER NOT NULL,
            field       TEXT NOT NULL,
            old_value   TEXT,
            new_value   TEXT,
            changed_at  TEXT NOT NULL,
            FOREIGN KEY (link_id) REFERENCES link(id) ON DELETE CASCADE
        );

        ------------------------------------------------------------
        -- 5.  Key/value settings  (user_id = 0  →  system-wide)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS setting (
            user_id  INTEGER NOT NULL DEFAULT 0,
            key      TEXT NOT NULL,
            value    TEXT,
            PRIMARY KEY (user_id, key)
        );
        """
    )
    seed_settings(db)


def seed_settings(db) -> None:
    """Insert system defaults + a cron token unless they exist already."""
    rows = [(0, k, v) for k, v in SYSTEM_SETTING_DEFAULTS.items()]
    rows.append((0, "cron_token", secrets.token_hex(16)))
    db.executemany(
        "INSERT OR IGNORE INTO setting (user_id, key, value) VALUES (?,?,?)", rows
    )
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat(timespec="seconds")


###############################################################################
# CLI – users, tokens, scheduled work
###############################################################################
def _create_user(db, *, username: str, password: str) -> int:
    cur = db.execute(
        "INSERT INTO user (username, password_hash, created_at) VALUES (?,?,?)",
        (username, generate_password_hash(password), now_iso()),
    )
    db.commit()
    return cur.lastrowid


def _issue_api_token(db, user_id: int) -> str:
    """Generate + store a *new* API token for *user_id*, return it for display."""
    handle = f"{user_id}:{secrets.token_urlsafe(TOKEN_LEN)}"
    token = signer.sign(handle).decode()
    db.execute(
        "UPDATE user SET api_token_hash=? WHERE id=?",
        (generate_password_hash(handle), user_id),
    )
    db.commit()
    return token


@app.cli.command("init")
@click.option("--username", prompt=True, help="Name of the first account")
@click.password_option(help="Password of the first account")
def cli_init(username: str, password: str):
    """Initialise DB *and* create the first user account."""
    init_db()  # no-op if already there
    db = get_db()
    user_id = _create_user(db, username=username.strip(), password=password)
    token = _issue_api_token(db, user_id)

    click.secho("\n✅  User created.", fg="green")
    click.echo(f"\nAPI token:\n\n{token}\n")
    click.echo(f"Cron URL:  /cron/{get_setting('cron_token')}")


@app.cli.command("token")
@click.option("--username", prompt=True)
def cli_token(username: str):
    """Rotate a user’s API token."""
    db = get_db()
    row = db.execute("SELECT id FROM user WHERE username=?", (username,)).fetchone()
    if row is None:
        raise click.ClickException(f"No such user: {username}")
    token = _issue_api_token(db, row["id"])

    click.secho("\n🔑  Fresh API token generated.\n", fg="yellow")
    click.echo(f"{token}\n")


@app.cli.command("check-links")
@click.option("--limit", default=LINK_CHECK_BATCH, show_default=True)
def cli_check_links(limit: int):
    """Check the next batch of links right away."""
    counts = check_links(limit=limit)
    for status, n in sorted(counts.items()):
        click.echo(f"{STATUS_LABELS[status]:>16}: {n}")


@app.cli.command("schedule-run")
def cli_schedule_run():
    """Run every scheduled task that is due (for a system crontab)."""
    ran = run_schedule()
    click.echo(", ".join(ran) if ran else "Nothing due.")


###############################################################################
# Settings
###############################################################################
def get_setting(key, default=None):
    row = (
        get_db()
        .execute("SELECT value FROM setting WHERE user_id=0 AND key=?", (key,))
        .fetchone()
    )
    return row["value"] if row else default


def set_setting(key, value):
    set_user_setting(key, value, user_id=0)


def user_setting(key, default=None, user_id=None):
    """Per-user setting with fallback to the built-in default."""
    uid = user_id if user_id is not None else current_user_id()
    if default is None:
        default = USER_SETTING_DEFAULTS.get(key)
    if not uid:
        return default
    row = (
        get_db()
        .execute("SELECT value FROM setting WHERE user_id=? AND key=?", (uid, key))
        .fetchone()
    )
    return row["value"] if row else default


def set_user_setting(key, value, user_id):
    db = get_db()
    db.execute(
        "INSERT INTO setting (user_id,key,value) VALUES (?,?,?) "
        "ON CONFLICT(user_id,key) DO UPDATE SET value=excluded.value",
        (user_id, key, None if value is None else str(value)),
    )
    db.commit()


def user_flag(key, user_id=None) -> bool:
    return _flag(user_setting(key, user_id=user_id))


def page_size(user_id=None) -> int:
    try:
        size = int(user_setting("links_per_page", user_id=user_id))
    except (TypeError, ValueError):
        return PAGE_DEFAULT
    return min(max(size, 1), PAGE_MAX)


def site_name() -> str:
    return get_setting("site_name", SYSTEM_SETTING_DEFAULTS["site_name"])


def guest_access() -> bool:
    return _flag(get_setting("guest_access", "0"))


###############################################################################
# Ownership scope
###############################################################################
def owned(table: str, *, user_id: int, trashed: str = "without") -> tuple[str, tuple]:
    """
    WHERE-fragment + params restricting *table* to rows of *user_id*.

    trashed: "without" (default), "with" or "only".
    """
    clauses = [f"{table}.user_id=?"]
    if trashed == "without":
        clauses.append(f"{table}.deleted_at IS NULL")
    elif trashed == "only":
        clauses.append(f"{table}.deleted_at IS NOT NULL")
    return " AND ".join(clauses), (user_id,)


def find_owned(table: str, row_id: int, *, user_id: int, trashed="without", db=None):
    db = db or get_db()
    scope, params = owned(table, user_id=user_id, trashed=trashed)
    return db.execute(
        f"SELECT * FROM {table} WHERE id=? AND {scope}", (row_id, *params)
    ).fetchone()


def find_owned_or_404(table: str, row_id: int, *, user_id: int, trashed="without"):
    row = find_owned(table, row_id, user_id=user_id, trashed=trashed)
    if row is None:
        abort(404)
    return row


###############################################################################
# Repositories
###############################################################################
def diff_edges(current: set, desired: set) -> tuple[set, set]:
    """Return (edges to insert, edges to remove) turning *current* into *desired*."""
    return desired - current, current - desired


def parse_names(raw) -> list:
    """
    Accept "a, b ,c", ["a", 3] or None → ordered list of unique names/ids.
    """
    if raw is None:
        return []
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    out, seen = [], set()
    for item in items:
        if isinstance(item, str):
            item = item.strip()
            if not item:
                continue
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out


def _resolve_ids(table: str, values, *, user_id: int, db) -> set[int]:
    """
    Map submitted tag/list values onto ids owned by *user_id*.

    ints are existing ids (foreign or trashed ids are ignored); strings are
    names, created on demand.
    """
    scope, params = owned(table, user_id=user_id)
    ids: set[int] = set()
    for value in values:
        if isinstance(value, int) and not isinstance(value, bool):
            if not 0 < value <= SQLITE_INT_MAX:
                continue
            row = db.execute(
                f"SELECT id FROM {table} WHERE id=? AND {scope}", (value, *params)
            ).fetchone()
            if row:
                ids.add(row["id"])
            continue

        name = str(value).strip()
        if not name:
            continue
        row = db.execute(
            f"SELECT id FROM {table} WHERE name=? AND {scope}", (name, *params)
        ).fetchone()
        if row:
            ids.add(row["id"])
            continue
        now = now_iso()
        cur = db.execute(
            f"INSERT INTO {table} (user_id, name, is_private, created_at, updated_at) "
            "VALUES (?,?,?,?,?)",
            (
                user_id,
                name,
                int(user_flag(f"{table}s_private_default", user_id=user_id)),
                now,
                now,
            ),
        )
        ids.add(cur.lastrowid)
    return ids


def _sync_edges(link_id: int, desired: set[int], *, junction: str, column: str, db):
    current = {
        r[0]
        for r in db.execute(
            f"SELECT {column} FROM {junction} WHERE link_id=?", (link_id,)
        )
    }
    add, remove = diff_edges(current, desired)
    db.executemany(
        f"INSERT OR IGNORE INTO {junction} (link_id, {column}) VALUES (?,?)",
        [(link_id, x) for x in sorted(add)],
    )
    db.executemany(
        f"DELETE FROM {junction} WHERE link_id=? AND {column}=?",
        [(link_id, x) for x in sorted(remove)],
    )
    return add, remove


def sync_link_tags(link_id: int, values, *, user_id: int, db):
    """Bring `link_tag` in sync with *values*. Caller owns the transaction."""
    ids = _resolve_ids("tag", parse_names(values), user_id=user_id, db=db)
    return _sync_edges(link_id, ids, junction="link_tag", column="tag_id", db=db)


def sync_link_lists(link_id: int, values, *, user_id: int, db):
    """Bring `link_list` in sync with *values*. Caller owns the transaction."""
    ids = _resolve_ids("list", parse_names(values), user_id=user_id, db=db)
    return _sync_edges(link_id, ids, junction="link_list", column="list_id", db=db)


def link_tags(link_id: int, *, db=None) -> list:
    db = db or get_db()
    return db.execute(
        "SELECT t.* FROM tag t JOIN link_tag lt ON t.id=lt.tag_id "
        "WHERE lt.link_id=? AND t.deleted_at IS NULL ORDER BY t.name",
        (link_id,),
    ).fetchall()


def link_lists(link_id: int, *, db=None) -> list:
    db = db or get_db()
    return db.execute(
        "SELECT l.* FROM list l JOIN link_list ll ON l.id=ll.list_id "
        "WHERE ll.link_id=? AND l.deleted_at IS NULL ORDER BY l.name",
        (link_id,),
    ).fetchall()


def create_link(user_id: int, data: Mapping, *, db=None):
    """Insert a link and its tag/list edges in one transaction."""
    db = db or get_db()
    now = now_iso()
    with db:
        cur = db.execute(
            """
            INSERT INTO link (user_id, url, title, description, is_private,
                              check_disabled, status, created_at, updated_at)
                 VALUES (?,?,?,?,?,?,?,?,?)
            """,
            (
                user_id,
                data["url"],
                data.get("title"),
                data.get("description"),
                int(bool(data.get("is_private"))),
                int(bool(data.get("check_disabled"))),
                STATUS_UNKNOWN,
                now,
                now,
            ),
        )
        link_id = cur.lastrowid
        sync_link_tags(link_id, data.get("tags"), user_id=user_id, db=db)
        sync_link_lists(link_id, data.get("lists"), user_id=user_id, db=db)
    return find_owned("link", link_id, user_id=user_id, db=db)


def update_link(link, data: Mapping, *, db=None):
    """
    Replace scalar fields present in *data*, record what changed and
    re-sync tag/list edges – all or nothing.
    """
    db = db or get_db()
    now = now_iso()
    changes = {}
    for key in LINK_FIELDS:
        if key not in data:
            continue
        new = data[key]
        if key in ("is_private", "check_disabled"):
            new = int(bool(new))
        if new != link[key]:
            changes[key] = new

    with db:
        if changes:
            cols = ", ".join(f"{k}=?" for k in changes)
            db.execute(
                f"UPDATE link SET {cols}, updated_at=? WHERE id=?",
                (*changes.values(), now, link["id"]),
            )
            db.executemany(
                "INSERT INTO link_history (link_id, field, old_value, new_value, changed_at) "
                "VALUES (?,?,?,?,?)",
                [
                    (link["id"], k, _as_text(link[k]), _as_text(v), now)
                    for k, v in changes.items()
                ],
            )
        if "tags" in data:
            sync_link_tags(link["id"], data["tags"], user_id=link["user_id"], db=db)
        if "lists" in data:
            sync_link_lists(link["id"], data["lists"], user_id=link["user_id"], db=db)
    return find_owned("link", link["id"], user_id=link["user_id"], db=db)


def _as_text(value) -> str | None:
    return None if value is None else str(value)


def soft_delete(table: str, row, *, db=None) -> bool:
    """Stamp *row* as trashed; the row itself stays."""
    db = db or get_db()
    with db:
        cur = db.execute(
            f"UPDATE {table} SET deleted_at=? WHERE id=? AND deleted_at IS NULL",
            (now_iso(), row["id"]),
        )
    return cur.rowcount == 1


def delete_link(link, *, db=None) -> bool:
    return soft_delete("link", link, db=db)


def restore_entity(table: str, row, *, db=None) -> None:
    """
    Un-trash *row*. Lists/tags whose name was re-used meanwhile raise ValueError.
    """
    db = db or get_db()
    if table in ("list", "tag"):
        scope, params = owned(table, user_id=row["user_id"])
        clash = db.execute(
            f"SELECT 1 FROM {table} WHERE name=? AND {scope}", (row["name"], *params)
        ).fetchone()
        if clash:
            raise ValueError(f"The name “{row['name']}” is already taken.")
    with db:
        db.execute(
            f"UPDATE {table} SET deleted_at=NULL, updated_at=? WHERE id=?",
            (now_iso(), row["id"]),
        )


def purge_trash(*, user_id: int | None = None, older_than: datetime | None = None,
                tables=TRASHABLE, db=None) -> int:
    """Permanently remove trashed rows; junction rows follow via FK cascade."""
    db = db or get_db()
    removed = 0
    with db:
        for table in tables:
            sql = f"DELETE FROM {table} WHERE deleted_at IS NOT NULL"
            params: list = []
            if user_id is not None:
                sql += " AND user_id=?"
                params.append(user_id)
            if older_than is not None:
                sql += " AND deleted_at < ?"
                params.append(older_than.isoformat(timespec="seconds"))
            removed += db.execute(sql, params).rowcount
    return removed


def create_collection(table: str, user_id: int, data: Mapping, *, db=None):
    """Create a list or a tag."""
    db = db or get_db()
    now = now_iso()
    cols = ["user_id", "name", "is_private", "created_at", "updated_at"]
    vals = [user_id, data["name"], int(bool(data.get("is_private"))), now, now]
    if table == "list":
        cols.append("description")
        vals.append(data.get("description"))
    with db:
        cur = db.execute(
            f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({','.join('?' * len(cols))})",
            vals,
        )
    return find_owned(table, cur.lastrowid, user_id=user_id, db=db)


def update_collection(table: str, row, data: Mapping, *, db=None):
    db = db or get_db()
    fields = ["name", "is_private"] + (["description"] if table == "list" else [])
    values = [data.get(f, row[f]) for f in fields]
    values[1] = int(bool(values[1]))
    with db:
        db.execute(
            f"UPDATE {table} SET {', '.join(f'{f}=?' for f in fields)}, updated_at=? "
            "WHERE id=?",
            (*values, now_iso(), row["id"]),
        )
    return find_owned(table, row["id"], user_id=row["user_id"], db=db)


def create_list(user_id, data, *, db=None):
    return create_collection("list", user_id, data, db=db)


def update_list(row, data, *, db=None):
    return update_collection("list", row, data, db=db)


def delete_list(row, *, db=None) -> bool:
    return soft_delete("list", row, db=db)


def create_tag(user_id, data, *, db=None):
    return create_collection("tag", user_id, data, db=db)


def update_tag(row, data, *, db=None):
    return update_collection("tag", row, data, db=db)


def delete_tag(row, *, db=None) -> bool:
    return soft_delete("tag", row, db=db)


def restore_link(row, *, db=None):
    restore_entity("link", row, db=db)


def restore_list(row, *, db=None):
    restore_entity("list", row, db=db)


def restore_tag(row, *, db=None):
    restore_entity("tag", row, db=db)


# Pagination helpers
def paginate(base_sql: str, params: tuple, *, page: int, per_page: int, db):
    total = db.execute(f"SELECT COUNT(*) FROM ({base_sql})", params).fetchone()[0]
    rows = db.execute(
        f"{base_sql} LIMIT ? OFFSET ?", tuple(params) + (per_page, (page - 1) * per_page)
    ).fetchall()
    return rows, total


def pagination(total: int, *, page: int, per_page: int) -> dict:
    last_page = max((total + per_page - 1) // per_page, 1)
    start = (page - 1) * per_page
    has_rows = total > 0 and start < total
    return {
        "current_page": page,
        "per_page": per_page,
        "total": total,
        "last_page": last_page,
        "from": start + 1 if has_rows else None,
        "to": min(start + per_page, total) if has_rows else None,
    }


def current_page() -> int:
    try:
        return min(max(int(request.args.get("page", 1)), 1), SQLITE_INT_MAX // PAGE_MAX)
    except ValueError:
        return 1


###############################################################################
# Duplicate detection
###############################################################################
def normalize_url(url: str) -> str:
    """Scheme-, www.- and trailing-slash-insensitive form of *url*."""
    p = urlparse(url.strip())
    host = (p.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    port = f":{p.port}" if p.port else ""
    tail = p.path.rstrip("/")
    if p.query:
        tail += f"?{p.query}"
    return f"{host}{port}{tail}"


def find_duplicate_urls(link, *, db=None) -> list:
    """Other live links of the same owner that point to the same URL."""
    db = db or get_db()
    scope, params = owned("link", user_id=link["user_id"])
    if app.config.get("DUPLICATE_URL_MATCH") == "normalized":
        target = normalize_url(link["url"])
        rows = db.execute(
            f"SELECT * FROM link WHERE {scope} AND id<>? ORDER BY id",
            (*params, link["id"]),
        ).fetchall()
        return [r for r in rows if normalize_url(r["url"]) == target]
    return db.execute(
        f"SELECT * FROM link WHERE {scope} AND id<>? AND url=? ORDER BY id",
        (*params, link["id"], link["url"]),
    ).fetchall()


###############################################################################
# Search
###############################################################################
@dataclass
class LinkSearch:
    """Every filter the link search understands."""

    query: str = ""
    search_title: bool = False
    search_description: bool = False
    private_only: bool = False
    broken_only: bool = False
    only_lists: set[int] = field(default_factory=set)
    only_tags: set[int] = field(default_factory=set)


def _like(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def casefold(text: str | None) -> str | None:
    """Unicode-aware lower-casing for SQL; LIKE alone only folds ASCII."""
    return text.casefold() if isinstance(text, str) else text


def compose_link_search(opts: LinkSearch, *, user_id: int) -> tuple[str, tuple]:
    """
    Fold every enabled filter into one statement.

    The text match is an OR over the enabled fields; every other filter
    narrows the result with AND. The owner scope is always applied.
    """
    scope, scope_params = owned("link", user_id=user_id)
    clauses = [scope]
    params: list = list(scope_params)

    if opts.query:
        fields = ["link.url"]
        if opts.search_title:
            fields.append("link.title")
        if opts.search_description:
            fields.append("link.description")
        clauses.append(
            "(" + " OR ".join(f"casefold({f}) LIKE ? ESCAPE '\\'" for f in fields) + ")"
        )
        params.extend([_like(opts.query.casefold())] * len(fields))

    if opts.private_only:
        clauses.append("link.is_private=1")

    if opts.broken_only:
        clauses.append("link.status=?")
        params.append(STATUS_BROKEN)

    for ids, junction, column, table in (
        (opts.only_lists, "link_list", "list_id", "list"),
        (opts.only_tags, "link_tag", "tag_id", "tag"),
    ):
        if not ids:
            continue
        marks = ",".join("?" * len(ids))
        clauses.append(
            f"link.id IN (SELECT j.link_id FROM {junction} j "
            f"JOIN {table} c ON c.id=j.{column} "
            f"WHERE c.user_id=? AND c.deleted_at IS NULL AND j.{column} IN ({marks}))"
        )
        params.append(user_id)
        params.extend(sorted(ids))

    sql = (
        "SELECT link.* FROM link WHERE "
        + " AND ".join(clauses)
        + " ORDER BY link.created_at DESC, link.id DESC"
    )
    return sql, tuple(params)


def search_links(opts: LinkSearch, *, user_id: int, page: int = 1, per_page: int = PAGE_DEFAULT, db=None):
    """Return (rows_on_page, total_hits)."""
    db = db or get_db()
    sql, params = compose_link_search(opts, user_id=user_id)
    return paginate(sql, params, page=page, per_page=per_page, db=db)


###############################################################################
# Validation
###############################################################################
def _flag(value) -> bool:
    return str(value).strip().lower() in {"1", "true", "on", "yes"}


def parse_id_list(raw) -> set[int] | None:
    """
    "1,2" / [1, 2] / None → set of ids; None when something isn’t an id.
    """
    if raw is None or raw == "":
        return set()
    items = raw.split(",") if isinstance(raw, str) else raw
    if not isinstance(items, (list, tuple)):
        return None
    out = set()
    for item in items:
        if isinstance(item, bool):
            return None
        if isinstance(item, int):
            if not 0 <= item <= SQLITE_INT_MAX:
                return None
            out.add(item)
            continue
        text = str(item).strip()
        if not text.isdecimal():
            return None
        out.add(int(text))
    if any(i > SQLITE_INT_MAX for i in out):
        return None
    return out


def _is_url(value: str) -> bool:
    p = urlparse(value)
    return p.scheme in ("http", "https", "ftp") and bool(p.netloc) and " " not in value


def _name_taken(table: str, name: str, *, user_id: int, exclude_id=None) -> bool:
    scope, params = owned(table, user_id=user_id)
    sql = f"SELECT 1 FROM {table} WHERE name=? AND {scope}"
    args = [name, *params]
    if exclude_id is not None:
        sql += " AND id<>?"
        args.append(exclude_id)
    return get_db().execute(sql, args).fetchone() is not None


def validate_search_args(args: Mapping) -> tuple[LinkSearch | None, dict]:
    errors: dict[str, list[str]] = {}
    query = (args.get("query") or "").strip()
    lists = parse_id_list(args.get("only_lists"))
    tags = parse_id_list(args.get("only_tags"))

    if not query:
        errors.setdefault("query", []).append("The query field is required.")
        if not args.get("only_lists") and not args.get("only_tags"):
            for key in ("only_lists", "only_tags"):
                errors.setdefault(key, []).append(
                    f"The {key} field is required when none of query / only_lists / only_tags are present."
                )
    if lists is None:
        errors.setdefault("only_lists", []).append("only_lists must be a list of ids.")
    if tags is None:
        errors.setdefault("only_tags", []).append("only_tags must be a list of ids.")
    if errors:
        return None, errors

    return (
        LinkSearch(
            query=query,
            search_title=_flag(args.get("search_title")),
            search_description=_flag(args.get("search_description")),
            private_only=_flag(args.get("private_only")),
            broken_only=_flag(args.get("broken_only")),
            only_lists=lists,
            only_tags=tags,
        ),
        errors,
    )


def validate_link_form(form: Mapping, *, user_id: int, partial: bool = False) -> tuple[dict, dict]:
    """
    Clean a link submission.  With *partial* only supplied fields are checked
    (API PATCH).
    """
    errors: dict[str, list[str]] = {}
    data: dict = {}

    if not partial or "url" in form:
        url = str(form.get("url") or "").strip()
        if not url:
            errors.setdefault("url", []).append("The url field is required.")
        elif not _is_url(url) or len(url) > 2048:
            errors.setdefault("url", []).append("The url format is invalid.")
        data["url"] = url

    if not partial or "title" in form:
        title = str(form.get("title") or "").strip() or None
        if title and len(title) > 255:
            errors.setdefault("title", []).append("The title may not be greater than 255 characters.")
        data["title"] = title

    if not partial or "description" in form:
        data["description"] = str(form.get("description") or "").strip() or None

    if "is_private" in form:
        data["is_private"] = _flag(form.get("is_private"))
    elif not partial:
        data["is_private"] = user_flag("links_private_default", user_id=user_id)

    if "check_disabled" in form or not partial:
        data["check_disabled"] = _flag(form.get("check_disabled"))

    for key in ("tags", "lists"):
        if key in form or not partial:
            raw = form.get(key)
            if raw is not None and not isinstance(raw, (str, list, tuple)):
                errors.setdefault(key, []).append(f"The {key} field is invalid.")
                continue
            data[key] = parse_names(raw)

    return data, errors


def validate_collection_form(table: str, form: Mapping, *, user_id: int, exclude_id=None) -> tuple[dict, dict]:
    """Shared rules for lists and tags: a name unique per owner."""
    errors: dict[str, list[str]] = {}
    name = str(form.get("name") or "").strip()
    if not name:
        errors.setdefault("name", []).append("The name field is required.")
    elif len(name) > 255:
        errors.setdefault("name", []).append("The name may not be greater than 255 characters.")
    elif _name_taken(table, name, user_id=user_id, exclude_id=exclude_id):
        errors.setdefault("name", []).append("The name has already been taken.")

    data = {"name": name}
    if "is_private" in form:
        data["is_private"] = _flag(form.get("is_private"))
    else:
        data["is_private"] = user_flag(f"{table}s_private_default", user_id=user_id)
    if table == "list":
        data["description"] = str(form.get("description") or "").strip() or None
    return data, errors


def validate_list_form(form: Mapping, *, user_id: int, list_id=None):
    return validate_collection_form("list", form, user_id=user_id, exclude_id=list_id)


def validate_tag_form(form: Mapping, *, user_id: int, tag_id=None):
    return validate_collection_form("tag", form, user_id=user_id, exclude_id=tag_id)


def validate_settings_form(form: Mapping) -> tuple[dict, dict]:
    errors: dict[str, list[str]] = {}
    data: dict = {}
    raw = (form.get("links_per_page") or "").strip()
    if not raw.isdecimal() or not 1 <= int(raw) <= PAGE_MAX:
        errors.setdefault("links_per_page", []).append(
            f"Links per page must be a number between 1 and {PAGE_MAX}."
        )
    else:
        data["links_per_page"] = int(raw)
    for key in ("links_private_default", "lists_private_default",
                "tags_private_default", "markdown_for_text"):
        data[key] = int(_flag(form.get(key)))
    return data, errors


###############################################################################
# Link metadata + health checks
###############################################################################
def fetch_html_meta(url: str) -> dict:
    """
    Pull <title> and the meta description from *url*.
    Any failure falls back to the host name as title.
    """
    fallback = {"title": link_host(url) or url, "description": None}
    if not app.config.get("FETCH_LINK_META"):
        return fallback

    try:
        with requests.get(
            url,
            timeout=app.config["LINK_CHECK_TIMEOUT"],
            stream=True,
            headers={"User-Agent": USER_AGENT, "Accept": "text/html"},
        ) as resp:
            resp.raise_for_status()
            if "html" not in resp.headers.get("Content-Type", ""):
                return fallback
            raw = b""
            for chunk in resp.iter_content(8192):
                raw += chunk
                if len(raw) > META_MAX_BYTES:
                    break
            text = raw.decode(resp.encoding or "utf-8", errors="replace")
    except requests.RequestException as exc:
        app.logger.warning("Could not fetch meta data for %s: %s", url, exc)
        return fallback

    m_title = TITLE_RE.search(text)
    m_desc = META_DESC_RE.search(text) or META_DESC_REV_RE.search(text)
    title = unescape(" ".join(m_title.group(1).split())) if m_title else ""
    desc = unescape(" ".join(m_desc.group(1).split())) if m_desc else ""
    return {
        "title": title[:255] or fallback["title"],
        "description": desc or None,
    }


def check_link(url: str) -> str:
    """2xx → ok, 3xx → moved, everything else (incl. network errors) → broken."""
    try:
        with requests.get(
            url,
            timeout=app.config["LINK_CHECK_TIMEOUT"],
            allow_redirects=False,
            stream=True,
            headers={"User-Agent": USER_AGENT},
        ) as resp:
            code = resp.status_code
    except requests.RequestException as exc:
        app.logger.warning("Link check failed for %s: %s", url, exc)
        return STATUS_BROKEN

    if 200 <= code < 300:
        return STATUS_OK
    if 300 <= code < 400:
        return STATUS_MOVED
    app.logger.warning("Link %s answered with HTTP %s", url, code)
    return STATUS_BROKEN


def check_links(*, limit: int = LINK_CHECK_BATCH, db=None) -> dict[str, int]:
    """
    Check the next *limit* links (all users), continuing where the previous
    run stopped.
    """
    db = db or get_db()
    base = "FROM link WHERE deleted_at IS NULL AND check_disabled=0"
    total = db.execute(f"SELECT COUNT(*) {base}").fetchone()[0]
    try:
        offset = int(get_setting("check_links_offset", "0"))
    except (TypeError, ValueError):
        offset = 0
    if offset >= total:
        offset = 0

    rows = db.execute(
        f"SELECT id, url {base} ORDER BY id LIMIT ? OFFSET ?", (limit, offset)
    ).fetchall()

    counts: DefaultDict[str, int] = defaultdict(int)
    for row in rows:
        status = check_link(row["url"])
        counts[status] += 1
        db.execute(
            "UPDATE link SET status=?, last_checked_at=? WHERE id=?",
            (status, now_iso(), row["id"]),
        )
    db.commit()

    set_setting("check_links_offset", offset + len(rows))
    app.logger.info("Checked %d links: %s", len(rows), dict(counts))
    return dict(counts)


# -------------------------------------------------------------------------
# Scheduled tasks
# -------------------------------------------------------------------------
SCHEDULE: dict[str, tuple[timedelta, Callable[[], None]]] = {}


def scheduled(name: str, every: timedelta):
    def decorator(task):
        SCHEDULE[name] = (every, task)
        return task

    return decorator


@scheduled("check_links", timedelta(hours=1))
def _task_check_links():
    check_links()


@scheduled("purge_trash", timedelta(days=1))
def _task_purge_trash():
    try:
        days = int(get_setting("trash_retention_days", "0"))
    except (TypeError, ValueError):
        days = 0
    days = min(days, TRASH_RETENTION_MAX)
    if days > 0:
        n = purge_trash(older_than=utc_now() - timedelta(days=days))
        app.logger.info("Purged %d trashed entries older than %d days", n, days)


def run_schedule(now: datetime | None = None) -> list[str]:
    """
    Run every task whose interval has elapsed; return their names.
    A naive *now* is taken to be UTC.
    """
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    ran = []
    for name, (every, task) in SCHEDULE.items():
        last = get_setting(f"schedule_last_{name}")
        if last and datetime.fromisoformat(last) + every > now:
            continue
        app.logger.info("Running scheduled task %s", name)
        try:
            task()
        except Exception:
            app.logger.exception("Scheduled task %s failed", name)
            raise
        set_setting(f"schedule_last_{name}", now.isoformat(timespec="seconds"))
        ran.append(name)
    return ran


###############################################################################
# Authentication
###############################################################################
def current_user_id() -> int | None:
    if "user_id" in g:
        return g.user_id
    return session.get("user_id")


def current_user():
    uid = current_user_id()
    if not uid:
        return None
    return get_db().execute("SELECT * FROM user WHERE id=?", (uid,)).fetchone()


def login_required() -> int:
    """Return the logged-in user id or bounce to the login form."""
    user = current_user()
    if user is None:
        session.pop("user_id", None)
        abort(redirect(url_for("login", next=request.path)))
    return user["id"]


def validate_api_token(token: str) -> int | None:
    """Return the user id the token belongs to, or None."""
    try:
        handle = signer.unsign(token).decode()
    except BadSignature:
        return None
    uid, _, _ = handle.partition(":")
    if not uid.isdigit():
        return None
    row = (
        get_db()
        .execute("SELECT id, api_token_hash FROM user WHERE id=?", (int(uid),))
        .fetchone()
    )
    if row and row["api_token_hash"] and check_password_hash(row["api_token_hash"], handle):
        return row["id"]
    return None


def api_auth(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        uid = validate_api_token(token.strip()) if scheme.lower() == "bearer" else None
        if uid is None:
            return jsonify(message="Unauthenticated."), 401
        g.user_id = uid
        return view(*args, **kwargs)

    return wrapped


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    if request.method in SAFE_METHODS:
        return
    # token-authenticated API – no cookies involved
    if request.path.startswith("/api/"):
        return
    if not session.get("user_id"):
        return

    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


def effective_method() -> str:
    """HTML forms can only POST; `_method` carries PATCH / DELETE."""
    if request.method == "POST":
        return (request.form.get("_method") or "POST").upper()
    return request.method


def page_href(page: int) -> str:
    args = request.args.to_dict()
    args["page"] = page
    return url_for(request.endpoint, **{**(request.view_args or {}), **args})


# Expose helpers to templates
app.jinja_env.globals.update(
    csrf_token=_csrf_token,
    is_on=_flag,
    get_setting=get_setting,
    user_setting=user_setting,
    site_name=site_name,
    guest_access=guest_access,
    link_tags=link_tags,
    link_lists=link_lists,
    link_host=link_host,
    page_href=page_href,
    STATUS_LABELS=STATUS_LABELS,
    STATUS_BROKEN=STATUS_BROKEN,
    version=__version__,
)


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{% if title %}{{ title }} – {% endif %}{{ site_name() }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}
body{font-size:1.7rem;line-height:1.55;max-width:60em;margin:auto;color:#c9c9c9;background:#222;padding:13px}
a{color:#fff;text-decoration:none}a:hover{color:#9ccaf5}
h1,h2,h3{line-height:1.15;margin:2rem 0 1rem}
input,textarea,select{color:#c9c9c9;padding:6px 10px;margin-bottom:10px;background:#3a3a3a;border:1px solid #4a4a4a;border-radius:4px;box-sizing:border-box;width:100%}
label{display:block;font-weight:600;margin-bottom:.3rem}
button,.button{display:inline-block;padding:5px 12px;background:#fff;color:#222;border:1px solid #fff;border-radius:2px;cursor:pointer}
button.danger{background:#c33;border-color:#c33;color:#fff}
table{width:100%;border-collapse:collapse}td,th{padding:.4em;border-bottom:1px solid #444;text-align:left}
.nav{display:flex;gap:1.25rem;flex-wrap:wrap;align-items:center;margin-bottom:1.5rem;font-size:.9em}
.nav .right{margin-left:auto;display:flex;gap:1rem}
.card{border:1px solid #444;border-radius:6px;padding:1rem 1.25rem;margin-bottom:1rem;background:#2a2a2a}
.muted{color:#888;font-size:.8em}
.pill{display:inline-block;padding:.05em .6em;margin:.1em .15em;border-radius:1em;background:#444;font-size:.75em}
.pill.broken{background:#7a2020}.pill.moved{background:#7a6020}.pill.ok{background:#205a30}
.errors{color:#f08080;font-size:.85em;margin:-.5rem 0 .75rem}
.flash{padding:.6rem 1rem;margin-bottom:.75rem;border-radius:.3rem;background:#323232}
.flash.warning{background:#5a4a1a}.flash.error{background:#5a1a1a}.flash.success{background:#1a4a2a}
.pager{display:flex;gap:.5rem;margin:1rem 0;font-size:.85em}
</style>
<body>
{% macro field_errors(name) -%}
  {% for msg in (errors or {}).get(name, []) %}<div class="errors">{{ msg }}</div>{% endfor %}
{%- endmacro %}
{% macro pager(p) -%}
  {% if p and p.last_page > 1 %}
  <nav class="pager" aria-label="Pagination">
    {% if p.current_page > 1 %}<a href="{{ page_href(p.current_page - 1) }}">‹ Prev</a>{% endif %}
    <span class="muted">Page {{ p.current_page }} of {{ p.last_page }} · {{ p.total }} links</span>
    {% if p.current_page < p.last_page %}<a href="{{ page_href(p.current_page + 1) }}">Next ›</a>{% endif %}
  </nav>
  {% endif %}
{%- endmacro %}
{% macro link_card(link, guest=False) -%}
  <article class="card">
    <div>
      {% if link['is_private'] %}<span title="Private">🔒</span>{% endif %}
      <a href="{{ link['url'] }}" rel="noopener" target="_blank">{{ link['title'] or (link['url']|short_url) }}</a>
      {% if link['status'] != 'unknown' %}<span class="pill {{ link['status'] }}">{{ STATUS_LABELS[link['status']] }}</span>{% endif %}
      <br><small class="muted">{{ link['url']|short_url }}</small>
    </div>
    <div style="margin-top:.4rem;">
      {% for t in link_tags(link['id']) if not guest or not t['is_private'] %}
        <a class="pill" href="{{ url_for('guest_tag_detail' if guest else 'tag_detail', tag_id=t['id']) }}">{{ t['name'] }}</a>
      {% endfor %}
      <span class="muted" style="float:right;">
        Added {{ link['created_at']|ts }}
        {% if not guest %}
        · <a href="{{ url_for('link_detail', link_id=link['id']) }}">Details</a>
        · <a href="{{ url_for('link_edit', link_id=link['id']) }}">Edit</a>
        {% endif %}
      </span>
    </div>
  </article>
{%- endmacro %}
<div class="container">
  <h1 style="margin-top:0;font-size:2.1em;"><a href="{{ url_for('index') }}">{{ site_name() }}</a></h1>
  <nav class="nav" aria-label="Primary">
    {% if session.get('user_id') %}
      <a href="{{ url_for('links_index') }}">Links</a>
      <a href="{{ url_for('lists_index') }}">Lists</a>
      <a href="{{ url_for('tags_index') }}">Tags</a>
      <a href="{{ url_for('search') }}">Search</a>
      <a href="{{ url_for('trash') }}">Trash</a>
      <span class="right">
        <a href="{{ url_for('link_create') }}">+ Add Link</a>
        <a href="{{ url_for('settings') }}">Settings</a>
        <a href="{{ url_for('logout') }}">Logout</a>
      </span>
    {% else %}
      {% if guest_access() %}<a href="{{ url_for('guest_links') }}">Links</a>{% endif %}
      <span class="right"><a href="{{ url_for('login') }}">Login</a></span>
    {% endif %}
  </nav>
  {% with msgs = get_flashed_messages(with_categories=true) %}
    {% for cat, msg in msgs %}
      <div class="flash {{ cat }}" role="status">{{ msg }}</div>
    {% endfor %}
  {% endwith %}
  <main id="main-content">
"""

TEMPL_EPILOG = """
  </main>
  <footer class="muted" style="margin-top:2rem;padding-top:1rem;border-top:1px solid #444;">
    LinkAce v{{ version }}
  </footer>
</div>
</body>
</html>
"""

TEMPL_LOGIN = wrap("""
<h2>Login</h2>
{% if failed %}<div class="flash error">These credentials do not match our records.</div>{% endif %}
<form method="post">
  <label for="username">Username</label>
  <input id="username" name="username" value="{{ username or '' }}" autocomplete="username" required>
  <label for="password">Password</label>
  <input id="password" name="password" type="password" autocomplete="current-password" required>
  <button type="submit">Login</button>
</form>
""")

TEMPL_LINKS = wrap("""
<h2>Links</h2>
<form method="get" class="muted" style="display:flex;gap:.5rem;max-width:30rem;">
  <select name="orderBy">
    {% for col in order_columns %}<option value="{{ col }}" {% if col == order_by %}selected{% endif %}>{{ col }}</option>{% endfor %}
  </select>
  <select name="orderDir">
    <option value="desc" {% if order_dir == 'desc' %}selected{% endif %}>descending</option>
    <option value="asc" {% if order_dir == 'asc' %}selected{% endif %}>ascending</option>
  </select>
  <button type="submit" style="height:2.6em;">Sort</button>
</form>
{% for link in links %}
  {{ link_card(link) }}
{% else %}
  <p>No links yet. <a href="{{ url_for('link_create') }}">Add one</a>.</p>
{% endfor %}
{{ pager(pagination) }}
""")

TEMPL_LINK_FORM = wrap("""
<h2>{{ 'Edit Link' if link else 'Add Link' }}</h2>
<form method="post" action="{{ url_for('link_detail', link_id=link['id']) if link else url_for('links_index') }}">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {% if link %}<input type="hidden" name="_method" value="patch">{% endif %}
  <label for="url">URL</label>
  <input id="url" name="url" type="url" value="{{ form.get('url') or '' }}" required>
  {{ field_errors('url') }}
  <label for="title">Title</label>
  <input id="title" name="title" value="{{ form.get('title') or '' }}" placeholder="Fetched automatically when empty">
  {{ field_errors('title') }}
  <label for="description">Description</label>
  <textarea id="description" name="description" rows="4">{{ form.get('description') or '' }}</textarea>
  <label for="lists">Lists</label>
  <input id="lists" name="lists" value="{{ form.get('lists') or '' }}" placeholder="Comma separated">
  {{ field_errors('lists') }}
  <label for="tags">Tags</label>
  <input id="tags" name="tags" value="{{ form.get('tags') or '' }}" placeholder="Comma separated">
  {{ field_errors('tags') }}
  <label for="is_private">Privacy</label>
  <select id="is_private" name="is_private">
    <option value="0" {% if not is_on(form.get('is_private')) %}selected{% endif %}>Public</option>
    <option value="1" {% if is_on(form.get('is_private')) %}selected{% endif %}>Private</option>
  </select>
  <label for="check_disabled">Health checks</label>
  <select id="check_disabled" name="check_disabled">
    <option value="0" {% if not is_on(form.get('check_disabled')) %}selected{% endif %}>Enabled</option>
    <option value="1" {% if is_on(form.get('check_disabled')) %}selected{% endif %}>Disabled</option>
  </select>
  {% if not link %}
  <label><input type="checkbox" name="reload_view" value="1" style="width:auto;"> Continue adding</label>
  {% endif %}
  <button type="submit">{{ 'Update Link' if link else 'Save Link' }}</button>
</form>
""")

TEMPL_LINK_DETAIL = wrap("""
<h2>{% if link['is_private'] %}🔒 {% endif %}{{ link['title'] or (link['url']|short_url) }}</h2>
<p><a href="{{ link['url'] }}" rel="noopener" target="_blank">{{ link['url'] }}</a></p>
<div class="card">
  {% if link['description'] %}<div>{{ link['description']|md }}</div>{% endif %}
  <p class="muted">
    Status: <span class="pill {{ link['status'] }}">{{ STATUS_LABELS[link['status']] }}</span>
    {% if link['last_checked_at'] %}(checked {{ link['last_checked_at']|ts }}){% endif %}
    · Added {{ link['created_at']|ts }} · Updated {{ link['updated_at']|ts }}
  </p>
  <p>
    {% for l in link_lists(link['id']) %}<a class="pill" href="{{ url_for('list_detail', list_id=l['id']) }}">{{ l['name'] }}</a>{% else %}<span class="muted">No lists</span>{% endfor %}
  </p>
  <p>
    {% for t in link_tags(link['id']) %}<a class="pill" href="{{ url_for('tag_detail', tag_id=t['id']) }}">{{ t['name'] }}</a>{% else %}<span class="muted">No tags</span>{% endfor %}
  </p>
</div>
<div style="display:flex;gap:1rem;align-items:center;">
  <a class="button" href="{{ url_for('link_edit', link_id=link['id']) }}">Edit</a>
  <form method="post" action="{{ url_for('link_toggle_check', link_id=link['id']) }}" style="margin:0;">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <input type="hidden" name="_method" value="patch">
    <input type="hidden" name="toggle" value="{{ 0 if link['check_disabled'] else 1 }}">
    <button type="submit">{{ 'Enable checks' if link['check_disabled'] else 'Disable checks' }}</button>
  </form>
  <form method="post" action="{{ url_for('link_detail', link_id=link['id']) }}" style="margin:0;">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <input type="hidden" name="_method" value="delete">
    <button type="submit" class="danger">Delete</button>
  </form>
</div>
{% if history %}
<h3>History</h3>
<table>
  {% for h in history %}
  <tr><td class="muted">{{ h['changed_at']|ts }}</td><td>{{ h['field'] }}</td>
      <td><del>{{ h['old_value'] or '–' }}</del> → {{ h['new_value'] or '–' }}</td></tr>
  {% endfor %}
</table>
{% endif %}
""")

TEMPL_COLLECTIONS = wrap("""
<h2>{{ heading }}</h2>
<p><a class="button" href="{{ url_for(kind ~ '_create') }}">Add {{ noun }}</a></p>
<table>
  {% for row in rows %}
  <tr>
    <td>{% if row['is_private'] %}🔒 {% endif %}<a href="{{ url_for(kind ~ '_detail', **{kind ~ '_id': row['id']}) }}">{{ row['name'] }}</a></td>
    <td class="muted">{{ row['link_count'] }} links</td>
    <td class="muted"><a href="{{ url_for(kind ~ '_edit', **{kind ~ '_id': row['id']}) }}">Edit</a></td>
  </tr>
  {% else %}
  <tr><td>No {{ noun|lower }}s yet.</td></tr>
  {% endfor %}
</table>
{{ pager(pagination) }}
""")

TEMPL_COLLECTION_FORM = wrap("""
<h2>{{ ('Edit ' if row else 'Add ') ~ noun }}</h2>
<form method="post" action="{{ url_for(kind ~ '_detail', **{kind ~ '_id': row['id']}) if row else url_for(kind ~ 's_index') }}">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {% if row %}<input type="hidden" name="_method" value="patch">{% endif %}
  <label for="name">Name</label>
  <input id="name" name="name" value="{{ form.get('name') or '' }}" required>
  {{ field_errors('name') }}
  {% if kind == 'list' %}
  <label for="description">Description</label>
  <textarea id="description" name="description" rows="3">{{ form.get('description') or '' }}</textarea>
  {% endif %}
  <label for="is_private">Privacy</label>
  <select id="is_private" name="is_private">
    <option value="0" {% if not is_on(form.get('is_private')) %}selected{% endif %}>Public</option>
    <option value="1" {% if is_on(form.get('is_private')) %}selected{% endif %}>Private</option>
  </select>
  {% if not row %}
  <label><input type="checkbox" name="reload_view" value="1" style="width:auto;"> Continue adding</label>
  {% endif %}
  <button type="submit">{{ ('Update ' if row else 'Save ') ~ noun }}</button>
</form>
""")

TEMPL_COLLECTION_DETAIL = wrap("""
<div class="card">
  <span class="muted">{{ noun }}</span>
  <h2 style="margin-top:.25rem;">{% if row['is_private'] %}🔒 {% endif %}{{ row['name'] }}</h2>
  {% if row['description'] %}<div>{{ row['description']|md }}</div>{% endif %}
  {% if not guest %}
  <div style="display:flex;gap:1rem;align-items:center;">
    <a class="button" href="{{ url_for(kind ~ '_edit', **{kind ~ '_id': row['id']}) }}">Edit</a>
    <form method="post" action="{{ url_for(kind ~ '_detail', **{kind ~ '_id': row['id']}) }}" style="margin:0;">
      <input type="hidden" name="csrf" value="{{ csrf_token() }}">
      <input type="hidden" name="_method" value="delete">
      <button type="submit" class="danger">Delete</button>
    </form>
  </div>
  {% endif %}
</div>
<h3>Links</h3>
{% for link in links %}
  {{ link_card(link, guest=guest) }}
{% else %}
  <p class="muted">No links.</p>
{% endfor %}
{{ pager(pagination) }}
""")

TEMPL_SEARCH = wrap("""
<h2>Search</h2>
<form method="get">
  <input name="query" value="{{ args.get('query', '') }}" placeholder="Search term" aria-label="Search term">
  {{ field_errors('query') }}
  <label><input type="checkbox" name="search_title" value="1" style="width:auto;" {% if args.get('search_title') %}checked{% endif %}> Search titles</label>
  <label><input type="checkbox" name="search_description" value="1" style="width:auto;" {% if args.get('search_description') %}checked{% endif %}> Search descriptions</label>
  <label><input type="checkbox" name="private_only" value="1" style="width:auto;" {% if args.get('private_only') %}checked{% endif %}> Private links only</label>
  <label><input type="checkbox" name="broken_only" value="1" style="width:auto;" {% if args.get('broken_only') %}checked{% endif %}> Broken links only</label>
  <label for="only_lists">Only lists</label>
  <select id="only_lists" name="only_lists">
    <option value="">–</option>
    {% for l in all_lists %}<option value="{{ l['id'] }}" {% if args.get('only_lists') == l['id']|string %}selected{% endif %}>{{ l['name'] }}</option>{% endfor %}
  </select>
  {{ field_errors('only_lists') }}
  <label for="only_tags">Only tags</label>
  <select id="only_tags" name="only_tags">
    <option value="">–</option>
    {% for t in all_tags %}<option value="{{ t['id'] }}" {% if args.get('only_tags') == t['id']|string %}selected{% endif %}>{{ t['name'] }}</option>{% endfor %}
  </select>
  {{ field_errors('only_tags') }}
  <button type="submit">Search</button>
</form>
{% if results is not none %}
  <h3>{{ pagination.total }} results</h3>
  {% for link in results %}{{ link_card(link) }}{% endfor %}
  {{ pager(pagination) }}
{% endif %}
""")

TEMPL_TRASH = wrap("""
<h2>Trash</h2>
{% for kind, label, rows in sections %}
  <h3>{{ label }}</h3>
  {% if rows %}
  <table>
    {% for row in rows %}
    <tr>
      <td>{{ row['name'] if kind != 'link' else (row['title'] or row['url']) }}</td>
      <td class="muted">deleted {{ row['deleted_at']|ts }}</td>
      <td>
        <form method="post" action="{{ url_for('trash_restore', kind=kind, row_id=row['id']) }}" style="margin:0;">
          <input type="hidden" name="csrf" value="{{ csrf_token() }}">
          <button type="submit">Restore</button>
        </form>
      </td>
    </tr>
    {% endfor %}
  </table>
  <form method="post" action="{{ url_for('trash_clear') }}">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <input type="hidden" name="kind" value="{{ kind }}">
    <button type="submit" class="danger">Clear {{ label|lower }}</button>
  </form>
  {% else %}
  <p class="muted">Nothing here.</p>
  {% endif %}
{% endfor %}
""")

TEMPL_SETTINGS = wrap("""
<h2>User Settings</h2>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="action" value="user">
  <label for="links_per_page">Links per page</label>
  <input id="links_per_page" name="links_per_page" value="{{ user_setting('links_per_page') }}">
  {{ field_errors('links_per_page') }}
  {% for key, label in flags %}
  <label><input type="checkbox" name="{{ key }}" value="1" style="width:auto;" {% if user_setting(key) == '1' %}checked{% endif %}> {{ label }}</label>
  {% endfor %}
  <button type="submit">Save Settings</button>
</form>

<h2>API Token</h2>
{% if new_token %}
  <p id="new-token">Copy your new token now, it won’t be shown again:</p>
  <pre style="white-space:pre-wrap;word-break:break-all;">{{ new_token }}</pre>
{% endif %}
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="action" value="api_token">
  <button type="submit">Generate API Token</button>
</form>

<h2>System Settings</h2>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="action" value="system">
  <label for="site_name">Site name</label>
  <input id="site_name" name="site_name" value="{{ site_name() }}">
  <label><input type="checkbox" name="guest_access" value="1" style="width:auto;" {% if guest_access() %}checked{% endif %}> Allow guest access to public links</label>
  <label for="trash_retention_days">Empty trash after … days (0 = never)</label>
  <input id="trash_retention_days" name="trash_retention_days" value="{{ get_setting('trash_retention_days', '0') }}">
  <button type="submit">Save System Settings</button>
</form>

<h2>Cron</h2>
<p class="muted">Call this URL regularly if no system scheduler is available:</p>
<pre style="white-space:pre-wrap;word-break:break-all;">{{ url_for('cron', cron_token=get_setting('cron_token'), _external=True) }}</pre>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="action" value="cron_token">
  <button type="submit">Generate new cron token</button>
</form>
""")

TEMPL_GUEST_LINKS = wrap("""
<h2>Links</h2>
{% for link in links %}
  {{ link_card(link, guest=True) }}
{% else %}
  <p class="muted">No public links.</p>
{% endfor %}
{{ pager(pagination) }}
""")

TEMPL_404 = wrap("""
<h2>Page not found</h2>
<p>The URL you asked for doesn’t exist. <a href="{{ url_for('index') }}">Back to the start page</a>.</p>
""")

TEMPL_500 = wrap("""
<h2>Internal Server Error</h2>
<p>Our fault, not yours. Please try again in a minute.</p>
""")


###############################################################################
# Login
###############################################################################
@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    if request.method == "POST":
        username = request.form.get("username", "").strip()
        password = request.form.get("password", "")
        row = (
            get_db()
            .execute("SELECT * FROM user WHERE username=?", (username,))
            .fetchone()
        )
        if row and check_password_hash(row["password_hash"], password):
            session.clear()
            session.permanent = True
            session["user_id"] = row["id"]
            session["csrf"] = secrets.token_hex(16)
            nxt = request.args.get("next", "")
            if not nxt.startswith("/") or nxt.startswith("//"):
                nxt = url_for("links_index")
            return redirect(nxt)
        app.logger.info("Failed login for %r", username)
        return render_template_string(TEMPL_LOGIN, title="Login", failed=True, username=username), 401

    return render_template_string(TEMPL_LOGIN, title="Login")


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("login"))


@app.route("/")
def index():
    if current_user() is not None:
        return redirect(url_for("links_index"))
    if guest_access():
        return redirect(url_for("guest_links"))
    return redirect(url_for("login"))


###############################################################################
# Links
###############################################################################
def _link_form_values(link) -> dict:
    """Flatten a stored link into form values (tags/lists as names)."""
    values = dict(link)
    values["tags"] = ", ".join(t["name"] for t in link_tags(link["id"]))
    values["lists"] = ", ".join(l["name"] for l in link_lists(link["id"]))
    return values


def _flash_duplicates(dups) -> None:
    msg = Markup("Found existing links with the same URL:")
    parts = [
        Markup(' <a href="{}">{}</a>').format(
            url_for("link_detail", link_id=d["id"]), short_url(d["url"])
        )
        for d in dups
    ]
    flash(msg + Markup(",").join(parts), "warning")


@app.route("/links", methods=["GET", "POST"])
def links_index():
    uid = login_required()
    db = get_db()

    if request.method == "POST":
        data, errors = validate_link_form(request.form, user_id=uid)
        if errors:
            return render_template_string(
                TEMPL_LINK_FORM, title="Add Link", link=None, form=request.form, errors=errors
            ), 422

        if not data["title"]:
            meta = fetch_html_meta(data["url"])
            data["title"] = meta["title"]
            data["description"] = data["description"] or meta["description"]

        link = create_link(uid, data, db=db)
        flash("Link added successfully.", "success")

        dups = find_duplicate_urls(link, db=db)
        if dups:
            _flash_duplicates(dups)

        if _flag(request.form.get("reload_view")):
            return redirect(url_for("link_create"))
        return redirect(url_for("link_detail", link_id=link["id"]))

    order_by = request.args.get("orderBy", "created_at")
    if order_by not in ORDER_COLUMNS:
        order_by = "created_at"
    order_dir = request.args.get("orderDir", "desc").lower()
    if order_dir not in ORDER_DIRS:
        order_dir = "desc"

    scope, params = owned("link", user_id=uid)
    page, per_page = current_page(), page_size(uid)
    rows, total = paginate(
        f"SELECT * FROM link WHERE {scope} ORDER BY {order_by} {order_dir}, id {order_dir}",
        params,
        page=page,
        per_page=per_page,
        db=db,
    )
    return render_template_string(
        TEMPL_LINKS,
        title="Links",
        links=rows,
        pagination=pagination(total, page=page, per_page=per_page),
        order_columns=ORDER_COLUMNS,
        order_by=order_by,
        order_dir=order_dir,
    )


@app.route("/links/create")
def link_create():
    uid = login_required()
    form = {"is_private": user_flag("links_private_default", user_id=uid)}
    return render_template_string(TEMPL_LINK_FORM, title="Add Link", link=None, form=form)


@app.route("/links/<int:link_id>", methods=["GET", "POST", "PATCH", "DELETE"])
def link_detail(link_id):
    uid = login_required()
    link = find_owned_or_404("link", link_id, user_id=uid)
    method = effective_method()

    if method == "PATCH":
        data, errors = validate_link_form(request.form, user_id=uid)
        if errors:
            return render_template_string(
                TEMPL_LINK_FORM, title="Edit Link", link=link, form=request.form, errors=errors
            ), 422
        link = update_link(link, data)
        flash("Link updated successfully.", "success")
        return redirect(url_for("link_detail", link_id=link["id"]))

    if method == "DELETE":
        if not delete_link(link):
            flash("The link could not be deleted.", "error")
            return redirect(url_for("link_detail", link_id=link["id"]))
        flash("Link moved to the trash.", "warning")
        return redirect(url_for("links_index"))

    if method != "GET":
        abort(405)

    history = get_db().execute(
        "SELECT * FROM link_history WHERE link_id=? ORDER BY id DESC", (link_id,)
    ).fetchall()
    return render_template_string(
        TEMPL_LINK_DETAIL, title=link["title"], link=link, history=history
    )


@app.route("/links/<int:link_id>/edit")
def link_edit(link_id):
    uid = login_required()
    link = find_owned_or_404("link", link_id, user_id=uid)
    return render_template_string(
        TEMPL_LINK_FORM, title="Edit Link", link=link, form=_link_form_values(link)
    )


@app.route("/links/<int:link_id>/toggle-check", methods=["POST", "PATCH"])
def link_toggle_check(link_id):
    uid = login_required()
    link = find_owned_or_404("link", link_id, user_id=uid)
    raw = request.form.get("toggle")
    disabled = _flag(raw) if raw is not None else not link["check_disabled"]
    update_link(link, {"check_disabled": disabled})
    return redirect(url_for("link_detail", link_id=link_id))


###############################################################################
# Lists + tags
###############################################################################
COLLECTIONS = {
    "list": {"noun": "List", "heading": "Lists", "junction": "link_list", "column": "list_id"},
    "tag": {"noun": "Tag", "heading": "Tags", "junction": "link_tag", "column": "tag_id"},
}


def _collection_index(kind: str):
    uid = login_required()
    db = get_db()
    meta = COLLECTIONS[kind]

    if request.method == "POST":
        data, errors = validate_collection_form(kind, request.form, user_id=uid)
        if errors:
            return render_template_string(
                TEMPL_COLLECTION_FORM, title=f"Add {meta['noun']}", kind=kind,
                noun=meta["noun"], row=None, form=request.form, errors=errors,
            ), 422
        row = create_collection(kind, uid, data, db=db)
        flash(f"{meta['noun']} added successfully.", "success")
        if _flag(request.form.get("reload_view")):
            return redirect(url_for(f"{kind}_create"))
        return redirect(url_for(f"{kind}_detail", **{f"{kind}_id": row["id"]}))

    scope, params = owned(kind, user_id=uid)
    page, per_page = current_page(), page_size(uid)
    rows, total = paginate(
        f"""
        SELECT {kind}.*,
               (SELECT COUNT(*) FROM {meta['junction']} j
                  JOIN link ON link.id=j.link_id AND link.deleted_at IS NULL
                 WHERE j.{meta['column']}={kind}.id) AS link_count
          FROM {kind} WHERE {scope} ORDER BY {kind}.name COLLATE NOCASE
        """,
        params,
        page=page,
        per_page=per_page,
        db=db,
    )
    return render_template_string(
        TEMPL_COLLECTIONS, title=meta["heading"], kind=kind, noun=meta["noun"],
        heading=meta["heading"], rows=rows,
        pagination=pagination(total, page=page, per_page=per_page),
    )


def _collection_links(kind: str, row_id: int, *, public_only: bool = False):
    """Links attached to a list/tag, paginated."""
    meta = COLLECTIONS[kind]
    sql = (
        f"SELECT link.* FROM link JOIN {meta['junction']} j ON j.link_id=link.id "
        f"WHERE j.{meta['column']}=? AND link.deleted_at IS NULL"
    )
    if public_only:
        sql += " AND link.is_private=0"
    sql += " ORDER BY link.created_at DESC, link.id DESC"
    page = current_page()
    per_page = page_size() if not public_only else PAGE_DEFAULT
    rows, total = paginate(sql, (row_id,), page=page, per_page=per_page, db=get_db())
    return rows, pagination(total, page=page, per_page=per_page)


def _collection_detail(kind: str, row_id: int):
    uid = login_required()
    meta = COLLECTIONS[kind]
    row = find_owned_or_404(kind, row_id, user_id=uid)
    method = effective_method()

    if method == "PATCH":
        data, errors = validate_collection_form(kind, request.form, user_id=uid, exclude_id=row_id)
        if errors:
            return render_template_string(
                TEMPL_COLLECTION_FORM, title=f"Edit {meta['noun']}", kind=kind,
                noun=meta["noun"], row=row, form=request.form, errors=errors,
            ), 422
        update_collection(kind, row, data)
        flash(f"{meta['noun']} updated successfully.", "success")
        return redirect(url_for(f"{kind}_detail", **{f"{kind}_id": row_id}))

    if method == "DELETE":
        soft_delete(kind, row)
        flash(f"{meta['noun']} moved to the trash.", "warning")
        return redirect(url_for(f"{kind}s_index"))

    if method != "GET":
        abort(405)

    links, pages = _collection_links(kind, row_id)
    return render_template_string(
        TEMPL_COLLECTION_DETAIL, title=row["name"], kind=kind, noun=meta["noun"],
        row=row, links=links, pagination=pages, guest=False,
    )


def _collection_form(kind: str, row_id: int | None = None):
    uid = login_required()
    meta = COLLECTIONS[kind]
    if row_id is None:
        form = {"is_private": user_flag(f"{kind}s_private_default", user_id=uid)}
        row = None
    else:
        row = find_owned_or_404(kind, row_id, user_id=uid)
        form = dict(row)
    title = ("Edit " if row else "Add ") + meta["noun"]
    return render_template_string(
        TEMPL_COLLECTION_FORM, title=title, kind=kind, noun=meta["noun"], row=row, form=form
    )


@app.route("/lists", methods=["GET", "POST"])
def lists_index():
    return _collection_index("list")


@app.route("/lists/create")
def list_create():
    return _collection_form("list")


@app.route("/lists/<int:list_id>", methods=["GET", "POST", "PATCH", "DELETE"])
def list_detail(list_id):
    return _collection_detail("list", list_id)


@app.route("/lists/<int:list_id>/edit")
def list_edit(list_id):
    return _collection_form("list", list_id)


@app.route("/tags", methods=["GET", "POST"])
def tags_index():
    return _collection_index("tag")


@app.route("/tags/create")
def tag_create():
    return _collection_form("tag")


@app.route("/tags/<int:tag_id>", methods=["GET", "POST", "PATCH", "DELETE"])
def tag_detail(tag_id):
    return _collection_detail("tag", tag_id)


@app.route("/tags/<int:tag_id>/edit")
def tag_edit(tag_id):
    return _collection_form("tag", tag_id)


###############################################################################
# Search
###############################################################################
SEARCH_KEYS = ("query", "search_title", "search_description", "private_only",
               "broken_only", "only_lists", "only_tags")


@app.route("/search")
def search():
    uid = login_required()
    db = get_db()
    results, pages, errors, status = None, None, {}, 200

    if any(request.args.get(k) for k in SEARCH_KEYS):
        opts, errors = validate_search_args(request.args)
        if opts is None:
            status = 422
        else:
            page, per_page = current_page(), page_size(uid)
            results, total = search_links(opts, user_id=uid, page=page, per_page=per_page, db=db)
            pages = pagination(total, page=page, per_page=per_page)

    scope, params = owned("list", user_id=uid)
    all_lists = db.execute(f"SELECT id, name FROM list WHERE {scope} ORDER BY name", params).fetchall()
    scope, params = owned("tag", user_id=uid)
    all_tags = db.execute(f"SELECT id, name FROM tag WHERE {scope} ORDER BY name", params).fetchall()

    return render_template_string(
        TEMPL_SEARCH, title="Search", args=request.args, errors=errors,
        results=results, pagination=pages, all_lists=all_lists, all_tags=all_tags,
    ), status


###############################################################################
# Trash
###############################################################################
@app.route("/trash")
def trash():
    uid = login_required()
    db = get_db()
    sections = []
    for kind, label in (("link", "Links"), ("list", "Lists"), ("tag", "Tags")):
        scope, params = owned(kind, user_id=uid, trashed="only")
        rows = db.execute(
            f"SELECT * FROM {kind} WHERE {scope} ORDER BY deleted_at DESC", params
        ).fetchall()
        sections.append((kind, label, rows))
    return render_template_string(TEMPL_TRASH, title="Trash", sections=sections)


@app.route("/trash/<kind>/<int:row_id>/restore", methods=["POST"])
def trash_restore(kind, row_id):
    uid = login_required()
    if kind not in TRASHABLE:
        abort(404)
    row = find_owned_or_404(kind, row_id, user_id=uid, trashed="only")
    try:
        restore_entity(kind, row)
    except ValueError as exc:
        flash(str(exc), "error")
    else:
        flash("Entry restored.", "success")
    return redirect(url_for("trash"))


@app.route("/trash/clear", methods=["POST"])
def trash_clear():
    uid = login_required()
    kind = request.form.get("kind")
    if kind and kind not in TRASHABLE:
        abort(400)
    n = purge_trash(user_id=uid, tables=(kind,) if kind else TRASHABLE)
    flash(f"Permanently deleted {n} entries.", "warning")
    return redirect(url_for("trash"))


###############################################################################
# Settings
###############################################################################
SETTING_FLAGS = (
    ("links_private_default", "New links are private by default"),
    ("lists_private_default", "New lists are private by default"),
    ("tags_private_default", "New tags are private by default"),
    ("markdown_for_text", "Render descriptions as Markdown"),
)


@app.route("/settings", methods=["GET", "POST"])
def settings():
    uid = login_required()
    errors: dict = {}
    action = request.form.get("action")

    if request.method == "POST" and action == "api_token":
        session["one_time_token"] = _issue_api_token(get_db(), uid)
        return redirect(url_for("settings") + "#new-token", code=303)

    if request.method == "POST" and action == "cron_token":
        set_setting("cron_token", secrets.token_hex(16))
        flash("A new cron token was generated.", "success")
        return redirect(url_for("settings"), code=303)

    if request.method == "POST" and action == "system":
        name = request.form.get("site_name", "").strip()
        if name:
            set_setting("site_name", name)
        set_setting("guest_access", int(_flag(request.form.get("guest_access"))))
        days = request.form.get("trash_retention_days", "").strip()
        set_setting("trash_retention_days", min(int(days), TRASH_RETENTION_MAX) if days.isdecimal() else 0)
        flash("System settings saved.", "success")
        return redirect(url_for("settings"), code=303)

    if request.method == "POST":
        data, errors = validate_settings_form(request.form)
        if not errors:
            for key, value in data.items():
                set_user_setting(key, value, user_id=uid)
            flash("Settings saved.", "success")
            return redirect(url_for("settings"), code=303)

    return render_template_string(
        TEMPL_SETTINGS,
        title="Settings",
        flags=SETTING_FLAGS,
        errors=errors,
        new_token=session.pop("one_time_token", None),
    ), (422 if errors else 200)


###############################################################################
# Cron
###############################################################################
@app.route("/cron/<cron_token>")
def cron(cron_token):
    expected = get_setting("cron_token") or ""
    if not expected or not secrets.compare_digest(cron_token.encode(), expected.encode()):
        app.logger.warning("Cron call with an invalid token")
        return Response("The cron token is invalid.", status=403, mimetype="text/plain")

    ran = run_schedule()
    app.logger.info("Cron executed: %s", ", ".join(ran) or "nothing due")
    return Response("Cron successfully executed.", mimetype="text/plain")


###############################################################################
# Guest access
###############################################################################
def guest_required() -> None:
    if not guest_access():
        abort(redirect(url_for("login")))


@app.route("/guest/links")
def guest_links():
    guest_required()
    page = current_page()
    rows, total = paginate(
        "SELECT * FROM link WHERE is_private=0 AND deleted_at IS NULL "
        "ORDER BY created_at DESC, id DESC",
        (),
        page=page,
        per_page=PAGE_DEFAULT,
        db=get_db(),
    )
    return render_template_string(
        TEMPL_GUEST_LINKS, title="Links", links=rows,
        pagination=pagination(total, page=page, per_page=PAGE_DEFAULT),
    )


def _guest_collection(kind: str, row_id: int):
    guest_required()
    row = get_db().execute(
        f"SELECT * FROM {kind} WHERE id=? AND is_private=0 AND deleted_at IS NULL",
        (row_id,),
    ).fetchone()
    if row is None:
        abort(404)
    links, pages = _collection_links(kind, row_id, public_only=True)
    return render_template_string(
        TEMPL_COLLECTION_DETAIL, title=row["name"], kind=kind,
        noun=COLLECTIONS[kind]["noun"], row=row, links=links, pagination=pages, guest=True,
    )


@app.route("/guest/lists/<int:list_id>")
def guest_list_detail(list_id):
    return _guest_collection("list", list_id)


@app.route("/guest/tags/<int:tag_id>")
def guest_tag_detail(tag_id):
    return _guest_collection("tag", tag_id)


###############################################################################
# JSON API
###############################################################################
def link_json(row, *, with_relations: bool = True) -> dict:
    out = dict(row)
    out["is_private"] = bool(out["is_private"])
    out["check_disabled"] = bool(out["check_disabled"])
    if with_relations:
        out["tags"] = [{"id": t["id"], "name": t["name"]} for t in link_tags(row["id"])]
        out["lists"] = [{"id": l["id"], "name": l["name"]} for l in link_lists(row["id"])]
    return out


def collection_json(row) -> dict:
    out = dict(row)
    out["is_private"] = bool(out["is_private"])
    return out


def page_envelope(rows, total: int, *, page: int, per_page: int, serialize) -> dict:
    env = pagination(total, page=page, per_page=per_page)
    env["data"] = [serialize(r) for r in rows]
    env["next_page_url"] = page_href(page + 1) if page < env["last_page"] else None
    env["prev_page_url"] = page_href(page - 1) if page > 1 else None
    return env


def _validation_failed(errors: dict):
    return jsonify(message="The given data was invalid.", errors=errors), 422


def _api_payload() -> Mapping | None:
    """JSON object body, else the form; None for any other JSON value."""
    payload = request.get_json(silent=True)
    if payload is None:
        return request.form
    return payload if isinstance(payload, dict) else None


def _not_an_object():
    return _validation_failed({"body": ["The request body must be a JSON object."]})


@app.route("/api/v1/links", methods=["GET", "POST"])
@api_auth
def api_links():
    uid = g.user_id
    db = get_db()

    if request.method == "POST":
        payload = _api_payload()
        if payload is None:
            return _not_an_object()
        data, errors = validate_link_form(payload, user_id=uid)
        if errors:
            return _validation_failed(errors)
        if not data["title"]:
            meta = fetch_html_meta(data["url"])
            data["title"] = meta["title"]
            data["description"] = data["description"] or meta["description"]
        link = create_link(uid, data, db=db)
        out = link_json(link)
        out["duplicates"] = [d["id"] for d in find_duplicate_urls(link, db=db)]
        return jsonify(out), 201

    scope, params = owned("link", user_id=uid)
    page, per_page = current_page(), page_size(uid)
    rows, total = paginate(
        f"SELECT * FROM link WHERE {scope} ORDER BY created_at DESC, id DESC",
        params, page=page, per_page=per_page, db=db,
    )
    return jsonify(page_envelope(rows, total, page=page, per_page=per_page, serialize=link_json))


@app.route("/api/v1/links/<int:link_id>", methods=["GET", "PATCH", "DELETE"])
@api_auth
def api_link(link_id):
    uid = g.user_id
    link = find_owned_or_404("link", link_id, user_id=uid)

    if request.method == "PATCH":
        payload = _api_payload()
        if payload is None:
            return _not_an_object()
        data, errors = validate_link_form(payload, user_id=uid, partial=True)
        if errors:
            return _validation_failed(errors)
        return jsonify(link_json(update_link(link, data)))

    if request.method == "DELETE":
        delete_link(link)
        return "", 204

    return jsonify(link_json(link))


def _api_collection_index(kind: str):
    uid = g.user_id
    scope, params = owned(kind, user_id=uid)
    page, per_page = current_page(), page_size(uid)
    rows, total = paginate(
        f"SELECT * FROM {kind} WHERE {scope} ORDER BY name COLLATE NOCASE",
        params, page=page, per_page=per_page, db=get_db(),
    )
    return jsonify(page_envelope(rows, total, page=page, per_page=per_page, serialize=collection_json))


@app.route("/api/v1/lists")
@api_auth
def api_lists():
    return _api_collection_index("list")


@app.route("/api/v1/tags")
@api_auth
def api_tags():
    return _api_collection_index("tag")


@app.route("/api/v1/search/links")
@api_auth
def api_search_links():
    uid = g.user_id
    opts, errors = validate_search_args(request.args)
    if opts is None:
        return _validation_failed(errors)
    page, per_page = current_page(), page_size(uid)
    rows, total = search_links(opts, user_id=uid, page=page, per_page=per_page)
    return jsonify(page_envelope(rows, total, page=page, per_page=per_page, serialize=link_json))


###############################################################################
# Errors
###############################################################################
@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    if request.path.startswith("/api/"):
        return jsonify(message="Not found."), 404
    return render_template_string(TEMPL_404, title="Not found"), 404


@app.errorhandler(500)
def internal_error(exc):
    """Generic 500 page; the debugger still takes over in debug mode."""
    app.logger.error("Unhandled error on %s: %s", request.path, exc)
    if request.path.startswith("/api/"):
        return jsonify(message="Server Error"), 500
    return render_template_string(TEMPL_500, title="Error"), 500


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    with app.app_context():
        init_db()
    app.run(debug=True)
