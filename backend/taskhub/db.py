import json
import logging
import sqlite3
from typing import Any, Iterable, Optional
from uuid import uuid4

from . import config
from .core.dates import now_iso

logger = logging.getLogger(__name__)

# Columns stored as JSON text, decoded by row_to_dict.
JSON_COLUMNS = {
    "token",
    "scopes",
    "calendars",
    "comments",
    "attendee_emails",
    "external_priority",
    "all_external_priorities",
    "status",
    "previous_status",
    "completed_status",
    "all_statuses",
}

# Same-named columns that hold plain text in these tables.
PLAIN_TEXT_COLUMNS = {
    "internal_api_tokens": {"token"},
}

BOOL_COLUMNS = {
    "is_bad_token",
    "is_primary_login",
    "is_completed",
    "is_deleted",
    "is_enabled",
    "has_been_reordered",
    "can_modify",
}


# ------------------
# CONNECTION / SCHEMA
# ------------------
def get_db(path=None) -> sqlite3.Connection:
    # One connection per caller; sync workers each open their own.
    conn = sqlite3.connect(str(path or config.DB_PATH), timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def _try_add_column(conn: sqlite3.Connection, table: str, coldef: str):
    """
    SQLite doesn't support IF NOT EXISTS on ADD COLUMN in older versions, so we try/catch.
    coldef example: "last_fetched TEXT"
    """
    try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {coldef}")
    except sqlite3.OperationalError:
        pass


_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT,
        google_id TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS internal_api_tokens (
        token TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS external_api_tokens (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        service_id TEXT NOT NULL,           -- 'google', 'github', ...
        account_id TEXT NOT NULL,
        display_id TEXT,
        token TEXT,                         -- JSON
        scopes TEXT,                        -- JSON list
        is_bad_token INTEGER DEFAULT 0,
        is_primary_login INTEGER DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_sections (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        id_ordering INTEGER DEFAULT 0,
        is_deleted INTEGER DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        id_external TEXT,
        source_id TEXT NOT NULL,
        source_account_id TEXT,
        title TEXT,
        body TEXT,
        deeplink TEXT,
        id_task_section TEXT,
        id_ordering INTEGER DEFAULT 0,
        has_been_reordered INTEGER DEFAULT 0,
        is_completed INTEGER DEFAULT 0,
        completed_at TEXT,
        is_deleted INTEGER DEFAULT 0,
        deleted_at TEXT,
        due_date TEXT,
        time_allocated INTEGER,             -- nanoseconds
        priority_normalized REAL,
        external_priority TEXT,
        all_external_priorities TEXT,
        status TEXT,
        previous_status TEXT,
        completed_status TEXT,
        all_statuses TEXT,
        comments TEXT,
        parent_task_id TEXT,
        shared_access TEXT,
        shared_until TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notes (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT,
        body TEXT,
        author TEXT,
        linked_event_id TEXT,
        shared_access TEXT,
        shared_until TEXT,
        is_deleted INTEGER DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS calendar_accounts (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        id_external TEXT NOT NULL,
        source_id TEXT NOT NULL,
        scopes TEXT,
        calendars TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS calendar_events (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        id_external TEXT NOT NULL,
        source_id TEXT NOT NULL,
        source_account_id TEXT,
        calendar_id TEXT,
        title TEXT,
        body TEXT,
        location TEXT,
        deeplink TEXT,
        can_modify INTEGER DEFAULT 0,
        call_url TEXT,
        call_platform TEXT,
        call_logo TEXT,
        attendee_emails TEXT,
        datetime_start TEXT,
        datetime_end TEXT,
        linked_task_id TEXT,
        linked_view_id TEXT,
        linked_source_id TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS repositories (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        account_id TEXT,
        repository_id TEXT NOT NULL,
        full_name TEXT,
        deeplink TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pull_requests (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        id_external TEXT NOT NULL,
        source_id TEXT NOT NULL,
        source_account_id TEXT,
        title TEXT,
        body TEXT,
        deeplink TEXT,
        repository_id TEXT,
        repository_name TEXT,
        number INTEGER,
        author TEXT,
        branch TEXT,
        base_branch TEXT,
        required_action TEXT,
        comments TEXT,
        comment_count INTEGER DEFAULT 0,
        commit_count INTEGER DEFAULT 0,
        additions INTEGER DEFAULT 0,
        deletions INTEGER DEFAULT 0,
        created_at_external TEXT,
        last_updated_at TEXT,
        is_completed INTEGER DEFAULT 0,
        completed_at TEXT,
        id_ordering INTEGER DEFAULT 0,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS views (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        type TEXT NOT NULL,                 -- 'task_section', 'github', 'meeting_preparation', ...
        task_section_id TEXT,
        github_id TEXT,
        id_ordering INTEGER DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS log_events (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        event_type TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS feedback_items (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        feedback TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS recurring_task_templates (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT,
        body TEXT,
        id_task_section TEXT,
        priority_normalized REAL,
        recurrence_rate TEXT,               -- 'daily', 'weekdays', 'weekly', 'monthly', 'yearly'
        time_of_day_seconds_to_create INTEGER,
        day_to_create INTEGER,
        month_to_create INTEGER,
        is_enabled INTEGER DEFAULT 1,
        is_deleted INTEGER DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_pull_requests_external ON pull_requests (user_id, source_id, id_external)",
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_calendar_events_external "
    "ON calendar_events (user_id, source_id, id_external, calendar_id)",
    "CREATE INDEX IF NOT EXISTS ix_tasks_user_section ON tasks (user_id, id_task_section, id_ordering)",
]


def init_db(path=None):
    conn = get_db(path)
    # WAL lets the sync fan-out read while another worker writes.
    conn.execute("PRAGMA journal_mode=WAL")
    for stmt in _SCHEMA:
        conn.execute(stmt)

    # Columns added after the first release of these tables
    _try_add_column(conn, "pull_requests", "last_fetched TEXT")
    _try_add_column(conn, "calendar_events", "color_id TEXT")
    _try_add_column(conn, "tasks", "recurring_task_template_id TEXT")
    _try_add_column(conn, "external_api_tokens", "timezone TEXT")

    conn.commit()
    conn.close()


# ------------------
# ROW HELPERS
# ------------------
def new_id() -> str:
    return uuid4().hex


def _json_columns(table: Optional[str]) -> set:
    return JSON_COLUMNS - PLAIN_TEXT_COLUMNS.get(table, set())


def row_to_dict(row: Optional[sqlite3.Row], table: Optional[str] = None) -> Optional[dict]:
    if row is None:
        return None
    json_columns = _json_columns(table)
    out = {}
    for key in row.keys():
        val = row[key]
        if key in json_columns and val is not None:
            val = json.loads(val)
        elif key in BOOL_COLUMNS:
            val = bool(val)
        out[key] = val
    return out


def _encode(fields: dict, table: Optional[str] = None) -> dict:
    json_columns = _json_columns(table)
    out = {}
    for key, val in fields.items():
        if key in json_columns and val is not None:
            val = json.dumps(val)
        elif isinstance(val, bool):
            val = int(val)
        out[key] = val
    return out


def _where(filters: dict) -> tuple[str, list]:
    clauses, params = [], []
    for key, val in filters.items():
        if val is None:
            clauses.append(f"{key} IS NULL")
        else:
            clauses.append(f"{key}=?")
            params.append(val)
    return " AND ".join(clauses), params


# ------------------
# GENERIC CRUD
# ------------------
def insert(conn: sqlite3.Connection, table: str, fields: dict) -> str:
    fields = dict(fields)
    fields.setdefault("id", new_id())
    enc = _encode(fields, table)
    cols = ", ".join(enc.keys())
    marks = ", ".join("?" for _ in enc)
    conn.execute(f"INSERT INTO {table} ({cols}) VALUES ({marks})", list(enc.values()))
    return fields["id"]


def update(conn: sqlite3.Connection, table: str, filters: dict, fields: dict) -> int:
    if not fields:
        return 0
    enc = _encode(fields, table)
    sets = ", ".join(f"{k}=?" for k in enc)
    where, params = _where(filters)
    cur = conn.execute(f"UPDATE {table} SET {sets} WHERE {where}", list(enc.values()) + params)
    return cur.rowcount


def find_one(conn: sqlite3.Connection, table: str, filters: dict) -> Optional[dict]:
    where, params = _where(filters)
    row = conn.execute(f"SELECT * FROM {table} WHERE {where} LIMIT 1", params).fetchone()
    return row_to_dict(row, table)


def find(
    conn: sqlite3.Connection,
    table: str,
    user_id: str,
    extra_sql: str = "",
    params: Iterable[Any] = (),
    order_by: Optional[str] = None,
    limit: Optional[int] = None,
) -> list[dict]:
    sql = f"SELECT * FROM {table} WHERE user_id=?"
    if extra_sql:
        sql += f" AND {extra_sql}"
    if order_by:
        sql += f" ORDER BY {order_by}"
    if limit:
        sql += f" LIMIT {int(limit)}"
    rows = conn.execute(sql, [user_id, *params]).fetchall()
    return [row_to_dict(r, table) for r in rows]


def find_one_external(
    conn: sqlite3.Connection,
    table: str,
    user_id: str,
    id_external: str,
    source_id: str,
    extra_filters: Optional[dict] = None,
) -> Optional[dict]:
    filters = {"id_external": id_external, "source_id": source_id, "user_id": user_id}
    filters.update(extra_filters or {})
    return find_one(conn, table, filters)


def update_or_create(
    conn: sqlite3.Connection,
    table: str,
    user_id: str,
    id_external: str,
    source_id: str,
    fields: dict,
    fields_to_insert_if_missing: Optional[dict] = None,
    extra_filters: Optional[dict] = None,
) -> dict:
    """
    Reconcile one external item: match on (user, external id, source [, extra filters]),
    insert with `fields_to_insert_if_missing` + `fields` when absent, otherwise overwrite
    `fields` only. Returns the stored row.
    """
    keys = {"id_external": id_external, "source_id": source_id, "user_id": user_id}
    keys.update(extra_filters or {})

    existing = find_one(conn, table, keys)
    if existing is None:
        row = {**(fields_to_insert_if_missing or {}), **fields, **keys}
        item_id = insert(conn, table, row)
    else:
        item_id = existing["id"]
        update(conn, table, {"id": item_id}, fields)
    return find_one(conn, table, {"id": item_id})


def insert_log_event(conn: sqlite3.Connection, user_id: Optional[str], event_type: str) -> None:
    insert(conn, "log_events", {"user_id": user_id, "event_type": event_type, "created_at": now_iso()})


def log_event(user_id: Optional[str], event_type: str) -> None:
    """Standalone log event write for worker threads; failures are logged, never raised."""
    try:
        conn = get_db()
        try:
            insert_log_event(conn, user_id, event_type)
            conn.commit()
        finally:
            conn.close()
    except sqlite3.Error:
        logger.exception("error inserting log event %s", event_type)
