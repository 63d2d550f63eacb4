import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse
from google.auth.exceptions import GoogleAuthError
from googleapiclient.errors import HttpError
from pydantic import ValidationError

from .. import config, db
from ..core.dates import now_iso, parse_dt, to_utc_iso
from ..core.schemas import EventCreate, EventModify
from ..deps import require_user_id
from ..errors import ExternalAPIError
from ..external.google_calendar import GoogleCalendarSource
from ..external.sources import (
    TASK_SERVICE_ID_GOOGLE,
    TASK_SOURCE_ID_GCAL,
    get_external_tokens,
    get_source_details,
)

logger = logging.getLogger(__name__)

router = APIRouter()

_WRITE_ERRORS = (HttpError, GoogleAuthError, ExternalAPIError, OSError)


def get_calendar_source() -> GoogleCalendarSource:
    return GoogleCalendarSource()


# ------------------
# HELPERS
# ------------------
def event_result(row: dict) -> dict:
    source = get_source_details(row["source_id"])
    return {
        "id": row["id"],
        "title": row.get("title") or "",
        "body": row.get("body") or "",
        "location": row.get("location") or "",
        "deeplink": row.get("deeplink") or "",
        "account_id": row.get("source_account_id") or "",
        "calendar_id": row.get("calendar_id") or "",
        "color_id": row.get("color_id") or "",
        "datetime_start": row.get("datetime_start"),
        "datetime_end": row.get("datetime_end"),
        "can_modify": bool(row.get("can_modify")),
        "attendee_emails": row.get("attendee_emails") or [],
        "conference_call": {
            "url": row.get("call_url") or "",
            "platform": row.get("call_platform") or "",
            "logo": row.get("call_logo") or "",
        },
        "linked_task_id": row.get("linked_task_id"),
        "linked_view_id": row.get("linked_view_id"),
        "linked_source_id": row.get("linked_source_id"),
        "logo": source.logo,
    }


def _cached_events(conn: sqlite3.Connection, user_id: str, account_id: str, start: str, end: str, calendar_ids=None):
    sql = "source_id=? AND source_account_id=? AND datetime_start < ? AND datetime_end > ?"
    params = [TASK_SOURCE_ID_GCAL, account_id, end, start]
    if calendar_ids:
        sql += f" AND calendar_id IN ({', '.join('?' for _ in calendar_ids)})"
        params.extend(calendar_ids)
    return db.find(conn, "calendar_events", user_id, sql, params)


def _get_event(conn: sqlite3.Connection, event_id: str, user_id: str):
    return db.find_one(conn, "calendar_events", {"id": event_id, "user_id": user_id})


# ------------------
# EVENT ROUTES
# ------------------
@router.get("/events/")
def events_list(
    request: Request,
    datetime_start: str = "",
    datetime_end: str = "",
    source: GoogleCalendarSource = Depends(get_calendar_source),
):
    user_id = require_user_id(request)
    try:
        start = parse_dt(datetime_start)
        end = parse_dt(datetime_end)
    except ValueError:
        return JSONResponse({"error": "invalid or missing parameter."}, status_code=400)

    conn = db.get_db()
    tokens = [t for t in get_external_tokens(conn, user_id, TASK_SERVICE_ID_GOOGLE) if not t.get("is_bad_token")]
    conn.close()

    with ThreadPoolExecutor(max_workers=config.SYNC_MAX_WORKERS, thread_name_prefix="events") as pool:
        futures = [
            (token["account_id"], pool.submit(source.get_events, user_id, token["account_id"], start, end, token.get("scopes")))
            for token in tokens
        ]
        results = [(account_id, future.result()) for account_id, future in futures]

    start_iso, end_iso = to_utc_iso(start), to_utc_iso(end)
    events = []
    conn = db.get_db()
    try:
        for account_id, result in results:
            fresh = [e.model_dump() for e in result.events if e.id is not None]
            events.extend(fresh)
            if result.error is None:
                continue
            logger.warning("calendar sync for account %s failed: %s", account_id, result.error)
            if result.failed_calendars:
                events.extend(_cached_events(conn, user_id, account_id, start_iso, end_iso, result.failed_calendars))
            elif not fresh:
                # listing calendars failed, so everything comes from the cache
                events.extend(_cached_events(conn, user_id, account_id, start_iso, end_iso))
    finally:
        conn.close()

    for event in events:
        event["datetime_start"] = to_utc_iso(event["datetime_start"])
        event["datetime_end"] = to_utc_iso(event["datetime_end"])
    events.sort(key=lambda e: e["datetime_start"])
    return [event_result(e) for e in events]


@router.post("/events/create/gcal/")
def event_create(
    request: Request,
    payload: dict = Body(...),
    source: GoogleCalendarSource = Depends(get_calendar_source),
):
    user_id = require_user_id(request)
    try:
        params = EventCreate(**payload)
    except ValidationError:
        return JSONResponse({"error": "invalid or missing parameter."}, status_code=400)
    if params.datetime_end < params.datetime_start:
        return JSONResponse({"error": "datetime_end must not be before datetime_start"}, status_code=400)

    conn = db.get_db()
    try:
        token = db.find_one(
            conn,
            "external_api_tokens",
            {"user_id": user_id, "service_id": TASK_SERVICE_ID_GOOGLE, "account_id": params.account_id},
        )
        if token is None:
            return JSONResponse({"error": "account not found"}, status_code=404)
        if params.linked_task_id and db.find_one(conn, "tasks", {"id": params.linked_task_id, "user_id": user_id}) is None:
            return JSONResponse({"error": "linked task not found"}, status_code=400)
        if params.linked_view_id and db.find_one(conn, "views", {"id": params.linked_view_id, "user_id": user_id}) is None:
            return JSONResponse({"error": "linked view not found"}, status_code=400)
    finally:
        conn.close()

    try:
        event = source.create_event(user_id, params)
    except _WRITE_ERRORS:
        logger.exception("failed to create event for account %s", params.account_id)
        return JSONResponse({"error": "failed to create event"}, status_code=500)
    return {"event_id": event.id}


@router.patch("/events/modify/{event_id}/")
def event_modify(
    event_id: str,
    request: Request,
    payload: dict = Body(...),
    source: GoogleCalendarSource = Depends(get_calendar_source),
):
    user_id = require_user_id(request)
    try:
        params = EventModify(**payload)
    except ValidationError:
        return JSONResponse({"error": "invalid parameter."}, status_code=400)
    if params.is_empty():
        return JSONResponse({"error": "event changes missing"}, status_code=400)

    conn = db.get_db()
    try:
        event = _get_event(conn, event_id, user_id)
        if event is None:
            return JSONResponse({"error": "event not found"}, status_code=404)

        try:
            source.modify_event(user_id, event["source_account_id"], event["id_external"], event["calendar_id"], params)
        except _WRITE_ERRORS:
            logger.exception("failed to modify event %s", event_id)
            return JSONResponse({"error": "failed to modify event"}, status_code=500)

        fields = {"updated_at": now_iso()}
        if params.summary is not None:
            fields["title"] = params.summary
        if params.description is not None:
            fields["body"] = params.description
        if params.datetime_start is not None:
            fields["datetime_start"] = to_utc_iso(params.datetime_start)
        if params.datetime_end is not None:
            fields["datetime_end"] = to_utc_iso(params.datetime_end)
        db.update(conn, "calendar_events", {"id": event_id}, fields)
        conn.commit()
    finally:
        conn.close()
    return {}


@router.delete("/events/delete/{event_id}/")
def event_delete(
    event_id: str,
    request: Request,
    source: GoogleCalendarSource = Depends(get_calendar_source),
):
    user_id = require_user_id(request)
    conn = db.get_db()
    try:
        event = _get_event(conn, event_id, user_id)
        if event is None:
            return JSONResponse({"error": "event not found"}, status_code=404)

        try:
            source.delete_event(user_id, event["source_account_id"], event["id_external"], event["calendar_id"])
        except _WRITE_ERRORS:
            logger.exception("failed to delete event %s", event_id)
            return JSONResponse({"error": "failed to delete event"}, status_code=500)

        conn.execute("DELETE FROM calendar_events WHERE id=?", (event_id,))
        conn.commit()
    finally:
        conn.close()
    return {}


@router.get("/events/{event_id}/")
def event_detail(event_id: str, request: Request):
    user_id = require_user_id(request)
    conn = db.get_db()
    event = _get_event(conn, event_id, user_id)
    conn.close()
    if event is None:
        return JSONResponse({"error": "event not found"}, status_code=404)
    return event_result(event)
