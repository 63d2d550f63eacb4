import logging
import sqlite3
from datetime import datetime, time, timezone

from fastapi import APIRouter, Body, Request
from fastapi.responses import JSONResponse

from .. import config, db
from ..core.dates import now_iso, now_utc
from ..core.ordering import adjust_ordering_ids
from ..deps import require_user_id
from ..external.sources import TASK_SERVICE_ID_GITHUB, TASK_SERVICE_ID_GOOGLE
from .events import event_result
from .pull_requests import pull_request_result, sort_pull_requests
from .tasks import section_exists, task_result

logger = logging.getLogger(__name__)

router = APIRouter()

VIEW_TASK_SECTION = "task_section"
VIEW_GITHUB = "github"
VIEW_MEETING_PREPARATION = "meeting_preparation"
VIEW_TYPES = {VIEW_TASK_SECTION, VIEW_GITHUB, VIEW_MEETING_PREPARATION}


# ------------------
# HELPERS
# ------------------
def _has_service(conn: sqlite3.Connection, user_id: str, service_id: str) -> bool:
    return db.find_one(conn, "external_api_tokens", {"user_id": user_id, "service_id": service_id}) is not None


def _task_section_view(conn, view: dict) -> dict:
    section_id = view.get("task_section_id")
    if section_id == config.DEFAULT_SECTION_ID:
        name = config.DEFAULT_SECTION_NAME
    else:
        section = db.find_one(conn, "task_sections", {"id": section_id})
        name = section["name"] if section else ""
    tasks = db.find(
        conn,
        "tasks",
        view["user_id"],
        "id_task_section=? AND is_completed=0 AND is_deleted=0 AND parent_task_id IS NULL",
        (section_id,),
        order_by="id_ordering ASC",
    )
    return {"name": name, "is_linked": True, "view_items": [task_result(t) for t in tasks]}


def _github_view(conn, view: dict) -> dict:
    repository = db.find_one(conn, "repositories", {"repository_id": view.get("github_id"), "user_id": view["user_id"]})
    prs = db.find(
        conn,
        "pull_requests",
        view["user_id"],
        "repository_id=? AND is_completed=0",
        (view.get("github_id"),),
    )
    return {
        "name": repository["full_name"] if repository else "",
        "is_linked": _has_service(conn, view["user_id"], TASK_SERVICE_ID_GITHUB),
        "view_items": [pull_request_result(pr) for pr in sort_pull_requests(prs)],
    }


def _meeting_preparation_view(conn, view: dict) -> dict:
    now = now_utc()
    end_of_day = datetime.combine(now.date(), time.max, tzinfo=timezone.utc)
    events = db.find(
        conn,
        "calendar_events",
        view["user_id"],
        "datetime_end > ? AND datetime_start < ?",
        (now.isoformat(), end_of_day.isoformat()),
        order_by="datetime_start ASC",
    )
    return {
        "name": "Meeting Preparation",
        "is_linked": _has_service(conn, view["user_id"], TASK_SERVICE_ID_GOOGLE),
        "view_items": [event_result(e) for e in events],
    }


_VIEW_BUILDERS = {
    VIEW_TASK_SECTION: _task_section_view,
    VIEW_GITHUB: _github_view,
    VIEW_MEETING_PREPARATION: _meeting_preparation_view,
}


def view_result(conn: sqlite3.Connection, view: dict) -> dict:
    return {
        "id": view["id"],
        "type": view["type"],
        "task_section_id": view.get("task_section_id"),
        "github_id": view.get("github_id"),
        "id_ordering": view.get("id_ordering") or 0,
        **_VIEW_BUILDERS[view["type"]](conn, view),
    }


# ------------------
# VIEW ROUTES
# ------------------
@router.get("/overview/views/")
def views_list(request: Request):
    user_id = require_user_id(request)
    conn = db.get_db()
    try:
        views = db.find(conn, "views", user_id, order_by="id_ordering ASC")
        return [view_result(conn, v) for v in views if v["type"] in _VIEW_BUILDERS]
    finally:
        conn.close()


@router.post("/overview/views/")
def view_add(request: Request, payload: dict = Body(...)):
    user_id = require_user_id(request)

    view_type = payload.get("type")
    if view_type not in VIEW_TYPES:
        return JSONResponse({"error": "'type' is not a valid view type"}, status_code=400)

    conn = db.get_db()
    try:
        filters = {"user_id": user_id, "type": view_type}
        if view_type == VIEW_TASK_SECTION:
            section_id = payload.get("task_section_id")
            if not section_id or not section_exists(conn, user_id, section_id):
                return JSONResponse({"error": "'task_section_id' is not a valid ID"}, status_code=400)
            filters["task_section_id"] = section_id
        elif view_type == VIEW_GITHUB:
            github_id = payload.get("github_id")
            if not github_id or db.find_one(conn, "repositories", {"repository_id": github_id, "user_id": user_id}) is None:
                return JSONResponse({"error": "'github_id' is not a valid repository"}, status_code=400)
            filters["github_id"] = github_id

        if db.find_one(conn, "views", filters) is not None:
            return JSONResponse({"error": "view already exists"}, status_code=400)

        row = conn.execute(
            "SELECT COALESCE(MAX(id_ordering), 0) AS max_ordering FROM views WHERE user_id=?",
            (user_id,),
        ).fetchone()
        view_id = db.insert(
            conn,
            "views",
            {**filters, "id_ordering": row["max_ordering"] + 1, "created_at": now_iso()},
        )
        conn.commit()
    finally:
        conn.close()
    return {"id": view_id}


@router.patch("/overview/views/{view_id}/")
def view_modify(view_id: str, request: Request, payload: dict = Body(...)):
    user_id = require_user_id(request)

    id_ordering = payload.get("id_ordering")
    if not isinstance(id_ordering, int) or isinstance(id_ordering, bool):
        return JSONResponse({"error": "'id_ordering' is required"}, status_code=400)

    conn = db.get_db()
    try:
        if db.update(conn, "views", {"id": view_id, "user_id": user_id}, {"id_ordering": id_ordering}) != 1:
            return JSONResponse({"error": "view not found"}, status_code=404)
        adjust_ordering_ids(conn, "views", user_id, view_id, id_ordering)
        conn.commit()
    finally:
        conn.close()
    return {}


@router.delete("/overview/views/{view_id}/")
def view_delete(view_id: str, request: Request):
    user_id = require_user_id(request)
    conn = db.get_db()
    try:
        cur = conn.execute("DELETE FROM views WHERE id=? AND user_id=?", (view_id, user_id))
        if cur.rowcount != 1:
            return JSONResponse({"error": "view not found"}, status_code=404)
        conn.commit()
    finally:
        conn.close()
    return {}
