"""
id_ordering maintenance for user-ordered lists.

A move sets the item's new position, pushes every other item at or after that
position down by one, then renumbers the whole scope 1..n so gaps left by
deletes and completions disappear. The statements run one after another with
no transaction around them: a concurrent edit can interleave, and the next
reorder's renumber pass repairs whatever it leaves behind.
"""
import logging
import sqlite3
from typing import Optional

from .. import db
from .dates import now_iso

logger = logging.getLogger(__name__)

_REORDERABLE_TABLES = {"tasks", "task_sections", "views", "pull_requests"}


def _renumber(conn: sqlite3.Connection, table: str, rows) -> int:
    changed = 0
    for index, row in enumerate(rows):
        new_ordering = index + 1
        if row["id_ordering"] != new_ordering:
            conn.execute(f"UPDATE {table} SET id_ordering=? WHERE id=?", (new_ordering, row["id"]))
            changed += 1
    return changed


def _task_scope(task: dict, id_task_section: Optional[str]):
    """Filters for the list a task lives in: its siblings, or its section's open tasks."""
    if task.get("parent_task_id"):
        return "parent_task_id=?", [task["parent_task_id"]]
    return "id_task_section=? AND is_completed=0", [id_task_section]


def reorder_task(
    conn: sqlite3.Connection,
    task_id: str,
    user_id: str,
    id_ordering: Optional[int],
    id_task_section: Optional[str],
    task: dict,
) -> bool:
    """
    Move a task to `id_ordering` (and optionally into `id_task_section`).
    Returns False when the task does not belong to the user.
    """
    fields = {"has_been_reordered": True, "updated_at": now_iso()}
    if id_ordering is not None:
        fields["id_ordering"] = id_ordering
    if id_task_section is not None:
        fields["id_task_section"] = id_task_section
    else:
        id_task_section = task.get("id_task_section")

    if db.update(conn, "tasks", {"id": task_id, "user_id": user_id}, fields) != 1:
        return False

    if id_ordering is None:
        # position unchanged, nothing else moves
        return True

    scope_sql, scope_params = _task_scope(task, id_task_section)

    conn.execute(
        f"""
        UPDATE tasks SET id_ordering = id_ordering + 1
        WHERE user_id=? AND id<>? AND is_deleted=0 AND id_ordering >= ? AND {scope_sql}
        """,
        [user_id, task_id, id_ordering, *scope_params],
    )

    rows = conn.execute(
        f"""
        SELECT id, id_ordering FROM tasks
        WHERE user_id=? AND is_deleted=0 AND {scope_sql}
        ORDER BY id_ordering ASC, created_at ASC
        """,
        [user_id, *scope_params],
    ).fetchall()
    changed = _renumber(conn, "tasks", rows)
    logger.debug("reordered task %s to %d (%d rows renumbered)", task_id, id_ordering, changed)
    return True


def adjust_ordering_ids(conn: sqlite3.Connection, table: str, user_id: str, item_id: str, id_ordering: int):
    """Shift-then-renumber over every row a user owns in `table`."""
    if table not in _REORDERABLE_TABLES:
        raise ValueError(f"{table} is not an ordered collection")

    conn.execute(
        f"UPDATE {table} SET id_ordering = id_ordering + 1 WHERE user_id=? AND id<>? AND id_ordering >= ?",
        (user_id, item_id, id_ordering),
    )
    rows = conn.execute(
        f"SELECT id, id_ordering FROM {table} WHERE user_id=? ORDER BY id_ordering ASC",
        (user_id,),
    ).fetchall()
    _renumber(conn, table, rows)
