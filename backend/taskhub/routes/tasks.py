import logging
import sqlite3
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, Body, Request
from fastapi.responses import JSONResponse

from .. import config, db
from ..core.dates import now_iso, parse_due_date, to_utc_iso
from ..core.ordering import reorder_task
from ..core.sharing import get_email_domain, get_shared_task, check_task_sharing_access_valid
from ..deps import get_user, get_user_id, require_user_id
from ..errors import SharedAccessError
from ..external.sources import TASK_SOURCE_ID_GT_TASK, get_source_details

logger = logging.getLogger(__name__)

router = APIRouter()

NANOSECONDS_IN_SECOND = 1_000_000_000

_MODIFIABLE_KEYS = {
    "title",
    "body",
    "time_duration",
    "due_date",
    "is_completed",
    "is_deleted",
    "priority",
    "status",
    "shared_access",
    "shared_until",
    "recurring_task_template_id",
    "id_ordering",
    "id_task_section",
}


# ------------------
# HELPERS
# ------------------
def task_result(row: dict) -> dict:
    source = get_source_details(row["source_id"])
    return {
        "id": row["id"],
        "id_ordering": row["id_ordering"] or 0,
        "id_task_section": row.get("id_task_section"),
        "parent_task_id": row.get("parent_task_id"),
        "source": {
            "name": source.name,
            "logo": source.logo,
            "is_completable": source.is_completable,
            "is_replyable": source.can_add_comment,
        },
        "deeplink": row.get("deeplink") or "",
        "title": row.get("title") or "",
        "body": row.get("body") or "",
        "due_date": row.get("due_date") or "",
        "time_allocated": row.get("time_allocated") or 0,
        "priority_normalized": row.get("priority_normalized") or 0.0,
        "external_priority": row.get("external_priority"),
        "all_priorities": row.get("all_external_priorities") or [],
        "external_status": row.get("status"),
        "all_statuses": row.get("all_statuses") or [],
        "comments": row.get("comments") or [],
        "is_done": bool(row.get("is_completed")),
        "is_deleted": bool(row.get("is_deleted")),
        "completed_at": row.get("completed_at") or "",
        "deleted_at": row.get("deleted_at") or "",
        "shared_access": row.get("shared_access"),
        "shared_until": row.get("shared_until") or "",
        "recurring_task_template_id": row.get("recurring_task_template_id"),
        "created_at": row.get("created_at"),
        "updated_at": row.get("updated_at"),
    }


def _get_task(conn: sqlite3.Connection, task_id: str, user_id: str) -> Optional[dict]:
    return db.find_one(conn, "tasks", {"id": task_id, "user_id": user_id})


def _get_subtasks(conn: sqlite3.Connection, task: dict) -> list:
    return db.find(
        conn,
        "tasks",
        task["user_id"],
        "parent_task_id=? AND is_deleted=0",
        (task["id"],),
        order_by="id_ordering ASC",
    )


def section_exists(conn: sqlite3.Connection, user_id: str, section_id: str) -> bool:
    if section_id == config.DEFAULT_SECTION_ID:
        return True
    return db.find_one(conn, "task_sections", {"id": section_id, "user_id": user_id, "is_deleted": False}) is not None


def _match_external_id(options, wanted) -> Optional[dict]:
    if not isinstance(wanted, dict):
        return None
    for option in options or []:
        if option.get("external_id") == wanted.get("external_id"):
            return option
    return None


def _bad_request(msg: str) -> JSONResponse:
    return JSONResponse({"error": msg}, status_code=400)


def _validate_modify(payload: dict, task: dict) -> tuple:
    """
    Turn a modify payload into column updates.
    Returns (fields, error_response); exactly one of them is None.
    """
    source = get_source_details(task["source_id"])
    fields = {}

    if "title" in payload:
        if not payload["title"]:
            return None, _bad_request("title cannot be empty")
        fields["title"] = payload["title"]
    if "body" in payload:
        fields["body"] = payload["body"] or ""

    is_completed = payload.get("is_completed")

    if payload.get("status") is not None:
        status = _match_external_id(task.get("all_statuses"), payload["status"])
        if status is None:
            return None, _bad_request("status value not in all status field for task")
        fields["previous_status"] = task.get("status")
        fields["status"] = status
        if status.get("is_completed_status"):
            fields["completed_status"] = status
        if bool(task.get("is_completed")) != bool(status.get("is_completed_status")):
            is_completed = bool(status.get("is_completed_status"))

    if is_completed is not None:
        # a deleted task can be completed only in the same request that restores it
        task_stays_deleted = payload.get("is_deleted", True) is not False and task.get("is_deleted")
        if is_completed and (not source.is_completable or task_stays_deleted):
            return None, _bad_request("cannot be marked done")
        fields["is_completed"] = bool(is_completed)
        fields["completed_at"] = now_iso() if is_completed else None

    if "is_deleted" in payload:
        fields["is_deleted"] = bool(payload["is_deleted"])
        fields["deleted_at"] = now_iso() if payload["is_deleted"] else None

    if "time_duration" in payload:
        try:
            seconds = int(payload["time_duration"])
        except (TypeError, ValueError):
            return None, _bad_request("time_duration must be an integer")
        if seconds < 0:
            return None, _bad_request("time duration cannot be negative")
        fields["time_allocated"] = seconds * NANOSECONDS_IN_SECOND

    if payload.get("priority") is not None:
        priority = _match_external_id(task.get("all_external_priorities"), payload["priority"])
        if priority is None:
            return None, _bad_request("priority value not valid for task")
        fields["external_priority"] = priority
        fields["priority_normalized"] = priority.get("priority_normalized")

    if payload.get("due_date") is not None:
        due_date = parse_due_date(str(payload["due_date"])) if payload["due_date"] else None
        if payload["due_date"] and due_date is None:
            return None, _bad_request("due_date is not a valid date")
        fields["due_date"] = due_date

    if "shared_access" in payload or "shared_until" in payload:
        if task["source_id"] != TASK_SOURCE_ID_GT_TASK:
            return None, _bad_request("only General Task tasks can be shared")
        if "shared_access" in payload:
            if not check_task_sharing_access_valid(payload["shared_access"]):
                return None, _bad_request("invalid shared access token")
            fields["shared_access"] = payload["shared_access"]
        if "shared_until" in payload:
            try:
                fields["shared_until"] = to_utc_iso(payload["shared_until"]) if payload["shared_until"] else None
            except (TypeError, ValueError):
                return None, _bad_request("shared_until is not a valid date")

    if payload.get("recurring_task_template_id") is not None:
        fields["recurring_task_template_id"] = payload["recurring_task_template_id"]

    return fields, None


# ------------------
# TASK ROUTES
# ------------------
@router.get("/tasks/v4/")
def tasks_list(request: Request):
    user_id = require_user_id(request)
    conn = db.get_db()
    active = db.find(conn, "tasks", user_id, "is_completed=0 AND is_deleted=0", order_by="id_ordering ASC")
    completed = db.find(
        conn,
        "tasks",
        user_id,
        "is_completed=1 AND is_deleted=0",
        order_by="completed_at DESC",
        limit=config.MAX_COMPLETED_TASKS,
    )
    conn.close()
    return [task_result(row) for row in active + completed]


@router.post("/tasks/create/gt_task/")
def task_create(request: Request, payload: dict = Body(...)):
    user_id = require_user_id(request)

    title = payload.get("title")
    if not title or not isinstance(title, str):
        return _bad_request("invalid or missing parameter.")

    section_id = payload.get("id_task_section") or config.DEFAULT_SECTION_ID
    parent_task_id = payload.get("parent_task_id")
    id_ordering = payload.get("id_ordering")
    if id_ordering is not None and not isinstance(id_ordering, int):
        return _bad_request("'id_ordering' must be an integer")

    conn = db.get_db()
    try:
        if not section_exists(conn, user_id, section_id):
            return _bad_request("'id_task_section' is not a valid ID")
        parent = None
        if parent_task_id:
            parent = _get_task(conn, parent_task_id, user_id)
            if parent is None:
                return _bad_request("'parent_task_id' is not a valid ID")

        now = now_iso()
        task_id = db.insert(
            conn,
            "tasks",
            {
                "user_id": user_id,
                "id_external": uuid4().hex,
                "source_id": TASK_SOURCE_ID_GT_TASK,
                "source_account_id": "General Task",
                "title": title,
                "body": payload.get("body") or "",
                "id_task_section": parent["id_task_section"] if parent else section_id,
                "parent_task_id": parent_task_id if parent else None,
                "id_ordering": id_ordering or 0,
                "comments": [],
                "created_at": now,
                "updated_at": now,
            },
        )
        if id_ordering is not None:
            task = _get_task(conn, task_id, user_id)
            reorder_task(conn, task_id, user_id, id_ordering, None, task)
        conn.commit()
    finally:
        conn.close()

    return {"task_id": task_id}


@router.patch("/tasks/modify/{task_id}/")
def task_modify(task_id: str, request: Request, payload: dict = Body(...)):
    user_id = require_user_id(request)

    conn = db.get_db()
    try:
        task = _get_task(conn, task_id, user_id)
        if task is None:
            return JSONResponse({"error": "task not found.", "taskId": task_id}, status_code=404)

        if not any(k in _MODIFIABLE_KEYS for k in payload):
            return _bad_request("task changes missing")

        id_ordering = payload.get("id_ordering")
        if id_ordering is not None and not isinstance(id_ordering, int):
            return _bad_request("'id_ordering' must be an integer")
        id_task_section = payload.get("id_task_section")
        if id_task_section is not None and not section_exists(conn, user_id, id_task_section):
            return _bad_request("'id_task_section' is not a valid ID")

        fields, error = _validate_modify(payload, task)
        if error is not None:
            return error

        if fields:
            fields["updated_at"] = now_iso()
            db.update(conn, "tasks", {"id": task_id, "user_id": user_id}, fields)
            task = {**task, **fields}

        if id_ordering is not None or id_task_section is not None or task.get("parent_task_id"):
            if not reorder_task(conn, task_id, user_id, id_ordering, id_task_section, task):
                return JSONResponse({"error": "task not found.", "taskId": task_id}, status_code=404)
        conn.commit()
    finally:
        conn.close()

    return {}


@router.get("/tasks/detail/{task_id}/")
def task_detail(task_id: str, request: Request):
    user_id = require_user_id(request)
    conn = db.get_db()
    try:
        task = _get_task(conn, task_id, user_id)
        if task is None or task.get("is_deleted"):
            return JSONResponse({"error": "task not found.", "taskId": task_id}, status_code=404)
        subtasks = _get_subtasks(conn, task)
    finally:
        conn.close()
    return {**task_result(task), "sub_tasks": [task_result(s) for s in subtasks]}


@router.post("/tasks/{task_id}/comments/add/")
def task_add_comment(task_id: str, request: Request, payload: dict = Body(...)):
    user_id = require_user_id(request)

    body = payload.get("body")
    if not body or not isinstance(body, str):
        return _bad_request("parameter missing")

    conn = db.get_db()
    try:
        task = _get_task(conn, task_id, user_id)
        if task is None:
            return JSONResponse({"error": "task not found.", "taskId": task_id}, status_code=404)
        if not get_source_details(task["source_id"]).can_add_comment:
            return _bad_request("cannot add comments to this task")

        user = get_user(conn, user_id)
        comment = {
            "external_id": uuid4().hex,
            "body": body,
            "author": {"display_name": user.get("name") or user["email"], "external_id": user_id},
            "created_at": now_iso(),
        }
        comments = (task.get("comments") or []) + [comment]
        db.update(conn, "tasks", {"id": task_id}, {"comments": comments, "updated_at": now_iso()})
        conn.commit()
    finally:
        conn.close()
    return {}


@router.get("/shareable_tasks/detail/{task_id}/")
def shareable_task_detail(task_id: str, request: Request):
    viewer_id = get_user_id(request)
    conn = db.get_db()
    try:
        try:
            task = get_shared_task(conn, task_id, viewer_id)
        except (SharedAccessError, LookupError) as e:
            logger.info("shared task %s not available: %s", task_id, e)
            return JSONResponse({"error": "task not found"}, status_code=404)

        owner = db.find_one(conn, "users", {"id": task["user_id"]})
        subtasks = _get_subtasks(conn, task)
    finally:
        conn.close()

    try:
        domain = "@" + get_email_domain(owner["email"]) if owner else ""
    except ValueError:
        domain = ""
    return {
        "task": task_result(task),
        "subtasks": [task_result(s) for s in subtasks],
        "domain": domain,
    }
