import logging

from fastapi import APIRouter, Body, Request
from fastapi.responses import JSONResponse

from .. import config, db
from ..core.dates import now_iso
from ..core.ordering import adjust_ordering_ids
from ..deps import require_user_id

logger = logging.getLogger(__name__)

router = APIRouter()


def _section_result(row: dict) -> dict:
    return {
        "id": row["id"],
        "name": row["name"],
        "id_ordering": row.get("id_ordering") or 0,
        "is_deleted": bool(row.get("is_deleted")),
    }


@router.get("/sections/")
def sections_list(request: Request):
    user_id = require_user_id(request)
    conn = db.get_db()
    rows = db.find(conn, "task_sections", user_id, "is_deleted=0", order_by="id_ordering ASC")
    conn.close()
    # The inbox section is implicit and always first
    inbox = {"id": config.DEFAULT_SECTION_ID, "name": config.DEFAULT_SECTION_NAME, "id_ordering": 0, "is_deleted": False}
    return [inbox] + [_section_result(r) for r in rows]


@router.post("/sections/create/")
def section_create(request: Request, payload: dict = Body(...)):
    user_id = require_user_id(request)

    name = payload.get("name")
    if not name or not isinstance(name, str):
        return JSONResponse({"error": "invalid or missing 'name' parameter."}, status_code=400)
    id_ordering = payload.get("id_ordering")
    if id_ordering is not None and not isinstance(id_ordering, int):
        return JSONResponse({"error": "'id_ordering' must be an integer"}, status_code=400)

    conn = db.get_db()
    try:
        if id_ordering is None:
            row = conn.execute(
                "SELECT COALESCE(MAX(id_ordering), 0) AS max_ordering FROM task_sections WHERE user_id=?",
                (user_id,),
            ).fetchone()
            id_ordering = row["max_ordering"] + 1
        now = now_iso()
        section_id = db.insert(
            conn,
            "task_sections",
            {"user_id": user_id, "name": name, "id_ordering": id_ordering, "created_at": now, "updated_at": now},
        )
        adjust_ordering_ids(conn, "task_sections", user_id, section_id, id_ordering)
        conn.commit()
    finally:
        conn.close()
    return {"id": section_id}


@router.patch("/sections/modify/{section_id}/")
def section_modify(section_id: str, request: Request, payload: dict = Body(...)):
    user_id = require_user_id(request)

    name = payload.get("name")
    id_ordering = payload.get("id_ordering")
    if name is None and id_ordering is None:
        return JSONResponse({"error": "parameter missing"}, status_code=400)
    if name is not None and (not isinstance(name, str) or not name):
        return JSONResponse({"error": "'name' cannot be empty"}, status_code=400)
    if id_ordering is not None and not isinstance(id_ordering, int):
        return JSONResponse({"error": "'id_ordering' must be an integer"}, status_code=400)

    conn = db.get_db()
    try:
        section = db.find_one(conn, "task_sections", {"id": section_id, "user_id": user_id})
        if section is None or section.get("is_deleted"):
            return JSONResponse({"error": "task section not found"}, status_code=404)

        fields = {"updated_at": now_iso()}
        if name is not None:
            fields["name"] = name
        if id_ordering is not None:
            fields["id_ordering"] = id_ordering
        db.update(conn, "task_sections", {"id": section_id}, fields)
        if id_ordering is not None:
            adjust_ordering_ids(conn, "task_sections", user_id, section_id, id_ordering)
        conn.commit()
    finally:
        conn.close()
    return {}


@router.delete("/sections/delete/{section_id}/")
def section_delete(section_id: str, request: Request):
    user_id = require_user_id(request)

    conn = db.get_db()
    try:
        section = db.find_one(conn, "task_sections", {"id": section_id, "user_id": user_id})
        if section is None or section.get("is_deleted"):
            return JSONResponse({"error": "task section not found"}, status_code=404)

        now = now_iso()
        db.update(conn, "task_sections", {"id": section_id}, {"is_deleted": True, "updated_at": now})
        # tasks go with their section
        conn.execute(
            "UPDATE tasks SET is_deleted=1, deleted_at=?, updated_at=? WHERE user_id=? AND id_task_section=? AND is_deleted=0",
            (now, now, user_id, section_id),
        )
        conn.execute(
            "DELETE FROM views WHERE user_id=? AND type='task_section' AND task_section_id=?",
            (user_id, section_id),
        )
        conn.commit()
    finally:
        conn.close()
    logger.info("deleted task section %s", section_id)
    return {}
