import logging

from fastapi import APIRouter, Body, Request
from fastapi.responses import JSONResponse

from .. import db
from ..core.dates import now_iso, to_utc_iso
from ..core.sharing import check_note_sharing_access_valid, get_shared_note, get_shared_note_with_auth
from ..deps import get_user_id, require_user_id
from ..errors import SharedAccessError

logger = logging.getLogger(__name__)

router = APIRouter()

_NOTE_KEYS = ("title", "body", "author", "linked_event_id", "shared_access", "shared_until", "is_deleted")


def _note_result(row: dict) -> dict:
    return {
        "id": row["id"],
        "title": row.get("title") or "",
        "body": row.get("body") or "",
        "author": row.get("author") or "",
        "linked_event_id": row.get("linked_event_id"),
        "shared_access": row.get("shared_access"),
        "shared_until": row.get("shared_until") or "",
        "is_deleted": bool(row.get("is_deleted")),
        "created_at": row.get("created_at"),
        "updated_at": row.get("updated_at"),
    }


def _note_fields(payload: dict) -> tuple:
    """Column updates from a create / modify payload, or an error message."""
    fields = {}
    for key in _NOTE_KEYS:
        if key in payload:
            fields[key] = payload[key]

    if "shared_access" in fields and not check_note_sharing_access_valid(fields["shared_access"]):
        return None, "invalid shared access value"
    if "shared_until" in fields:
        try:
            fields["shared_until"] = to_utc_iso(fields["shared_until"]) if fields["shared_until"] else None
        except (TypeError, ValueError):
            return None, "shared_until is not a valid date"
    if "is_deleted" in fields:
        fields["is_deleted"] = bool(fields["is_deleted"])
    return fields, None


@router.get("/notes/")
def notes_list(request: Request):
    user_id = require_user_id(request)
    conn = db.get_db()
    rows = db.find(conn, "notes", user_id, "is_deleted=0", order_by="updated_at DESC")
    conn.close()
    return [_note_result(r) for r in rows]


@router.post("/notes/create/")
def note_create(request: Request, payload: dict = Body(...)):
    user_id = require_user_id(request)

    fields, error = _note_fields(payload)
    if error:
        return JSONResponse({"error": error}, status_code=400)
    if not fields.get("title"):
        return JSONResponse({"error": "invalid or missing 'title' parameter."}, status_code=400)

    conn = db.get_db()
    try:
        if fields.get("linked_event_id"):
            event = db.find_one(conn, "calendar_events", {"id": fields["linked_event_id"], "user_id": user_id})
            if event is None:
                return JSONResponse({"error": "linked event not found"}, status_code=400)
        now = now_iso()
        note_id = db.insert(conn, "notes", {**fields, "user_id": user_id, "created_at": now, "updated_at": now})
        conn.commit()
    finally:
        conn.close()
    return {"note_id": note_id}


@router.patch("/notes/modify/{note_id}/")
def note_modify(note_id: str, request: Request, payload: dict = Body(...)):
    user_id = require_user_id(request)

    fields, error = _note_fields(payload)
    if error:
        return JSONResponse({"error": error}, status_code=400)
    if not fields:
        return JSONResponse({"error": "note changes missing"}, status_code=400)
    if "title" in fields and not fields["title"]:
        return JSONResponse({"error": "title cannot be empty"}, status_code=400)

    conn = db.get_db()
    try:
        fields["updated_at"] = now_iso()
        if db.update(conn, "notes", {"id": note_id, "user_id": user_id}, fields) != 1:
            return JSONResponse({"error": "note not found.", "noteId": note_id}, status_code=404)
        conn.commit()
    finally:
        conn.close()
    return {}


@router.get("/notes/detail/{note_id}/")
def note_detail(note_id: str, request: Request):
    viewer_id = get_user_id(request)
    conn = db.get_db()
    try:
        if viewer_id:
            note = get_shared_note_with_auth(conn, note_id, viewer_id)
        else:
            note = get_shared_note(conn, note_id)
    except (SharedAccessError, LookupError) as e:
        logger.info("shared note %s not available: %s", note_id, e)
        return JSONResponse({"error": "note not found"}, status_code=404)
    finally:
        conn.close()
    return _note_result(note)
