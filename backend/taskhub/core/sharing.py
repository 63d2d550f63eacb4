import logging
import sqlite3
from typing import Optional

from .. import db
from ..errors import SharedAccessError
from .dates import now_iso
from .schemas import SharedAccess

logger = logging.getLogger(__name__)

TASK_ACCESS_VALUES = {SharedAccess.public.value, SharedAccess.domain.value}
NOTE_ACCESS_VALUES = {a.value for a in SharedAccess}


def get_email_domain(email: str) -> str:
    # only handles addresses with a single @
    if not email or "@" not in email:
        raise ValueError("invalid email address")
    domain = email.split("@")[1]
    if not domain:
        raise ValueError("invalid email address")
    return domain


def check_task_sharing_access_valid(shared_access) -> bool:
    return shared_access in TASK_ACCESS_VALUES


def check_note_sharing_access_valid(shared_access) -> bool:
    # notes shared before access modes existed have no value
    return shared_access is None or shared_access in NOTE_ACCESS_VALUES


def _find_shared(conn: sqlite3.Connection, table: str, item_id: str) -> dict:
    row = conn.execute(
        f"SELECT * FROM {table} WHERE id=? AND shared_until >= ? AND is_deleted=0",
        (item_id, now_iso()),
    ).fetchone()
    if row is None:
        raise LookupError(f"{table}: {item_id} is not shared")
    return db.row_to_dict(row, table)


def _get_user(conn: sqlite3.Connection, user_id: str) -> dict:
    user = db.find_one(conn, "users", {"id": user_id})
    if user is None:
        raise LookupError(f"user {user_id} not found")
    return user


def _require_same_domain(conn: sqlite3.Connection, viewer_id: str, owner_id: str):
    viewer = _get_user(conn, viewer_id)
    owner = _get_user(conn, owner_id)
    try:
        same = get_email_domain(viewer["email"]) == get_email_domain(owner["email"])
    except ValueError as e:
        raise SharedAccessError(str(e)) from e
    if not same:
        raise SharedAccessError("user domain does not match owner domain")


def get_shared_task(conn: sqlite3.Connection, task_id: str, user_id: Optional[str]) -> dict:
    """
    Load a task through its share link. `domain` shares require a logged in
    viewer from the owner's email domain.
    """
    task = _find_shared(conn, "tasks", task_id)

    access = task.get("shared_access")
    if access is None:
        raise SharedAccessError("task is not shared")
    if not check_task_sharing_access_valid(access):
        raise SharedAccessError("invalid shared access value")

    if access == SharedAccess.domain.value:
        if user_id is None:
            raise SharedAccessError("user is not allowed to access this task")
        _require_same_domain(conn, user_id, task["user_id"])
    return task


def get_shared_note(conn: sqlite3.Connection, note_id: str) -> dict:
    note = _find_shared(conn, "notes", note_id)
    if note.get("shared_access") not in (None, SharedAccess.public.value):
        raise SharedAccessError("unable to fetch note without auth")
    return note


def get_shared_note_with_auth(conn: sqlite3.Connection, note_id: str, user_id: str) -> dict:
    note = _find_shared(conn, "notes", note_id)

    access = note.get("shared_access")
    if access in (None, SharedAccess.public.value) or note["user_id"] == user_id:
        return note
    if not check_note_sharing_access_valid(access):
        raise SharedAccessError("invalid shared access value")

    if access == SharedAccess.domain.value:
        _require_same_domain(conn, user_id, note["user_id"])
        return note

    # meeting_attendees
    viewer = _get_user(conn, user_id)
    if not note.get("linked_event_id"):
        raise SharedAccessError("linked event required for note's shared access type")
    event = db.find_one(conn, "calendar_events", {"id": note["linked_event_id"]})
    if event is None:
        raise LookupError(f"linked event {note['linked_event_id']} not found")
    if viewer["email"] not in (event.get("attendee_emails") or []):
        raise SharedAccessError("user not found in list of attendees")
    return note
