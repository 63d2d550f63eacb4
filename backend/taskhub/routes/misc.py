import logging

from fastapi import APIRouter, Body, Request
from fastapi.responses import JSONResponse

from .. import config, db
from ..core.dates import now_iso
from ..deps import require_user_id
from .tasks import section_exists

logger = logging.getLogger(__name__)

router = APIRouter()

RECURRENCE_RATES = {"daily", "weekdays", "weekly", "monthly", "yearly"}
SECONDS_IN_DAY = 24 * 60 * 60


# ------------------
# FEEDBACK / LOG EVENTS
# ------------------
@router.post("/feedback/", status_code=201)
def feedback_add(request: Request, payload: dict = Body(...)):
    user_id = require_user_id(request)
    feedback = payload.get("feedback")
    if not feedback or not isinstance(feedback, str):
        return JSONResponse({"error": "invalid or missing 'feedback' parameter."}, status_code=400)

    conn = db.get_db()
    db.insert(conn, "feedback_items", {"user_id": user_id, "feedback": feedback, "created_at": now_iso()})
    conn.commit()
    conn.close()
    return {}


@router.post("/log_events/", status_code=201)
def log_event_add(request: Request, payload: dict = Body(...)):
    user_id = require_user_id(request)
    event_type = payload.get("event_type")
    if not event_type or not isinstance(event_type, str):
        return JSONResponse({"error": "invalid or missing 'event_type' parameter."}, status_code=400)

    conn = db.get_db()
    db.insert_log_event(conn, user_id, event_type)
    conn.commit()
    conn.close()
    return {}


# ------------------
# RECURRING TASK TEMPLATES
# ------------------
def _template_result(row: dict) -> dict:
    return {
        "id": row["id"],
        "title": row.get("title") or "",
        "body": row.get("body") or "",
        "id_task_section": row.get("id_task_section"),
        "priority_normalized": row.get("priority_normalized") or 0.0,
        "recurrence_rate": row.get("recurrence_rate"),
        "time_of_day_seconds_to_create": row.get("time_of_day_seconds_to_create"),
        "day_to_create": row.get("day_to_create"),
        "month_to_create": row.get("month_to_create"),
        "is_enabled": bool(row.get("is_enabled")),
        "created_at": row.get("created_at"),
        "updated_at": row.get("updated_at"),
    }


def _optional_int(payload: dict, key: str, low: int, high: int):
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool) or not low <= value <= high:
        raise ValueError(f"'{key}' must be between {low} and {high}")
    return value


@router.get("/recurring_task_templates/v2/")
def recurring_task_templates_list(request: Request):
    user_id = require_user_id(request)
    conn = db.get_db()
    rows = db.find(conn, "recurring_task_templates", user_id, "is_deleted=0", order_by="created_at DESC")
    conn.close()
    return [_template_result(r) for r in rows]


@router.post("/recurring_task_templates/create/")
def recurring_task_template_create(request: Request, payload: dict = Body(...)):
    user_id = require_user_id(request)

    title = payload.get("title")
    if not title or not isinstance(title, str):
        return JSONResponse({"error": "invalid or missing 'title' parameter."}, status_code=400)
    recurrence_rate = payload.get("recurrence_rate")
    if recurrence_rate not in RECURRENCE_RATES:
        return JSONResponse({"error": "invalid or missing 'recurrence_rate' parameter."}, status_code=400)
    try:
        time_of_day = _optional_int(payload, "time_of_day_seconds_to_create", 0, SECONDS_IN_DAY - 1)
        day_to_create = _optional_int(payload, "day_to_create", 1, 31)
        month_to_create = _optional_int(payload, "month_to_create", 1, 12)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    section_id = payload.get("id_task_section") or config.DEFAULT_SECTION_ID
    conn = db.get_db()
    try:
        if not section_exists(conn, user_id, section_id):
            return JSONResponse({"error": "'id_task_section' is not a valid ID"}, status_code=400)
        now = now_iso()
        template_id = db.insert(
            conn,
            "recurring_task_templates",
            {
                "user_id": user_id,
                "title": title,
                "body": payload.get("body") or "",
                "id_task_section": section_id,
                "priority_normalized": payload.get("priority_normalized"),
                "recurrence_rate": recurrence_rate,
                "time_of_day_seconds_to_create": time_of_day,
                "day_to_create": day_to_create,
                "month_to_create": month_to_create,
                "is_enabled": bool(payload.get("is_enabled", True)),
                "created_at": now,
                "updated_at": now,
            },
        )
        conn.commit()
    finally:
        conn.close()
    return {"template_id": template_id}
