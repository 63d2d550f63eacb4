"""
Google Calendar sync: list calendars, fetch each calendar's events in parallel,
then reconcile the cached `calendar_events` rows for the requested window.
"""
from __future__ import annotations

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, List, Optional
from uuid import uuid4

from google.auth.exceptions import GoogleAuthError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .. import config, db
from ..core.dates import now_iso, to_utc_iso
from ..core.schemas import CalendarEvent, CalendarInfo, EventCreate, EventModify
from ..errors import ExternalAPIError
from .google_auth import credentials_from_token
from .sources import (
    TASK_SERVICE_ID_GOOGLE,
    TASK_SOURCE_ID_GCAL,
    CalendarResult,
    get_external_token,
)

logger = logging.getLogger(__name__)

ACCESS_CONTROL_OWNER = "owner"
ACCESS_CONTROL_WRITER = "writer"

_FETCH_ERRORS = (HttpError, GoogleAuthError, ExternalAPIError, OSError, ValueError)

ServiceBuilder = Callable[[str, str], object]


def has_multi_calendar_scope(scopes) -> bool:
    return config.SCOPE_CALENDAR_MULTI in (scopes or [])


def has_primary_calendar_scope(scopes) -> bool:
    scopes = scopes or []
    return config.SCOPE_CALENDAR_EVENTS in scopes or config.SCOPE_CALENDAR_MULTI in scopes


def build_calendar_service(user_id: str, account_id: str):
    conn = db.get_db()
    try:
        token_row = get_external_token(conn, user_id, account_id, TASK_SERVICE_ID_GOOGLE)
    finally:
        conn.close()
    creds = credentials_from_token(token_row)
    return build("calendar", "v3", credentials=creds, cache_discovery=False)


def _event_datetime(evt: dict, key: str):
    data = evt.get(key, {}) or {}
    return data.get("dateTime"), data.get("date")


def _conference_details(evt: dict, account_id: str):
    conference = evt.get("conferenceData") or {}
    entry_points = conference.get("entryPoints") or []
    uri = ""
    for entry in entry_points:
        if entry.get("entryPointType") == "video" and entry.get("uri"):
            uri = entry["uri"]
            break
    if not uri and entry_points:
        uri = entry_points[0].get("uri") or ""
    solution = conference.get("conferenceSolution") or {}
    call_url = f"{uri}?authuser={account_id}" if uri else ""
    return call_url, solution.get("name") or "", solution.get("iconUri") or ""


def event_from_google(evt: dict, user_id: str, account_id: str, calendar_id: str) -> Optional[CalendarEvent]:
    start_dt, _ = _event_datetime(evt, "start")
    end_dt, _ = _event_datetime(evt, "end")
    # all-day events only carry a date
    if not start_dt or not end_dt or not evt.get("id"):
        return None

    organizer = evt.get("organizer") or {}
    call_url, call_platform, call_logo = _conference_details(evt, account_id)

    return CalendarEvent(
        user_id=user_id,
        id_external=evt["id"],
        source_id=TASK_SOURCE_ID_GCAL,
        source_account_id=account_id,
        calendar_id=calendar_id,
        title=evt.get("summary") or "",
        body=evt.get("description") or "",
        location=evt.get("location") or "",
        deeplink=f"{evt.get('htmlLink') or ''}&authuser={account_id}",
        can_modify=bool(organizer.get("self")) or bool(evt.get("guestsCanModify")),
        call_url=call_url,
        call_platform=call_platform,
        call_logo=call_logo,
        color_id=evt.get("colorId") or "",
        attendee_emails=[a["email"] for a in evt.get("attendees") or [] if a.get("email")],
        datetime_start=start_dt,
        datetime_end=end_dt,
    )


def _event_fields(event: CalendarEvent) -> dict:
    return {
        "source_account_id": event.source_account_id,
        "title": event.title,
        "body": event.body,
        "location": event.location,
        "deeplink": event.deeplink,
        "can_modify": event.can_modify,
        "call_url": event.call_url,
        "call_platform": event.call_platform,
        "call_logo": event.call_logo,
        "color_id": event.color_id,
        "attendee_emails": event.attendee_emails,
        "datetime_start": to_utc_iso(event.datetime_start),
        "datetime_end": to_utc_iso(event.datetime_end),
        "updated_at": now_iso(),
    }


class GoogleCalendarSource:
    def __init__(self, service_builder: Optional[ServiceBuilder] = None, max_workers: Optional[int] = None):
        # The discovery client is not thread safe, so each worker builds its own service.
        self.service_builder = service_builder or build_calendar_service
        self.max_workers = max_workers or config.SYNC_MAX_WORKERS

    # ------------------
    # READ
    # ------------------
    def list_calendars(self, service, account_id: str, scopes) -> List[CalendarInfo]:
        if not has_multi_calendar_scope(scopes):
            return [CalendarInfo(calendar_id=account_id, access_role=ACCESS_CONTROL_OWNER)]

        calendars = []
        page_token = None
        while True:
            resp = service.calendarList().list(pageToken=page_token).execute()
            for item in resp.get("items", []):
                calendars.append(
                    CalendarInfo(
                        calendar_id=item.get("id", ""),
                        title=item.get("summary") or "",
                        access_role=item.get("accessRole") or "",
                        color_id=item.get("colorId") or "",
                        color_background=item.get("backgroundColor") or "",
                        color_foreground=item.get("foregroundColor") or "",
                    )
                )
            page_token = resp.get("nextPageToken")
            if not page_token:
                return calendars

    def _fetch_calendar_events(
        self, user_id: str, account_id: str, calendar_id: str, start: datetime, end: datetime
    ) -> List[CalendarEvent]:
        service = self.service_builder(user_id, account_id)
        google_calendar_id = "primary" if calendar_id == account_id else calendar_id

        events = []
        page_token = None
        while True:
            resp = (
                service.events()
                .list(
                    calendarId=google_calendar_id,
                    timeMin=to_utc_iso(start),
                    timeMax=to_utc_iso(end),
                    singleEvents=True,
                    orderBy="startTime",
                    maxResults=250,
                    pageToken=page_token,
                )
                .execute()
            )
            for evt in resp.get("items", []):
                event = event_from_google(evt, user_id, account_id, calendar_id)
                if event is not None:
                    events.append(event)
            page_token = resp.get("nextPageToken")
            if not page_token:
                return events

    def _update_calendar_account(self, conn: sqlite3.Connection, user_id: str, account_id: str, scopes, calendars):
        db.update_or_create(
            conn,
            "calendar_accounts",
            user_id,
            account_id,
            TASK_SOURCE_ID_GCAL,
            {
                "scopes": list(scopes or []),
                "calendars": [c.model_dump() for c in calendars],
                "updated_at": now_iso(),
            },
        )

    def get_events(
        self, user_id: str, account_id: str, start: datetime, end: datetime, scopes=None
    ) -> CalendarResult:
        db.log_event(user_id, "get_events")
        try:
            service = self.service_builder(user_id, account_id)
            calendars = self.list_calendars(service, account_id, scopes)
        except _FETCH_ERRORS as e:
            logger.error("failed to list calendars for account %s: %s", account_id, e)
            return CalendarResult(error="failed to fetch Google calendars")

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="gcal") as pool:
            futures = [
                (calendar.calendar_id, pool.submit(
                    self._fetch_calendar_events, user_id, account_id, calendar.calendar_id, start, end
                ))
                for calendar in calendars
            ]

        events: List[CalendarEvent] = []
        fetched_calendars: List[str] = []
        failed_calendars: List[str] = []
        for calendar_id, future in futures:
            try:
                events.extend(future.result())
                fetched_calendars.append(calendar_id)
            except _FETCH_ERRORS as e:
                logger.error("failed to fetch events for calendar %s: %s", calendar_id, e)
                failed_calendars.append(calendar_id)

        conn = db.get_db()
        try:
            self._update_calendar_account(conn, user_id, account_id, scopes, calendars)
            for event in events:
                stored = db.update_or_create(
                    conn,
                    "calendar_events",
                    user_id,
                    event.id_external,
                    event.source_id,
                    _event_fields(event),
                    fields_to_insert_if_missing={"created_at": now_iso()},
                    extra_filters={"calendar_id": event.calendar_id},
                )
                event.id = stored["id"]
                event.linked_task_id = stored.get("linked_task_id")
                event.linked_view_id = stored.get("linked_view_id")
                event.linked_source_id = stored.get("linked_source_id")

            for calendar_id in fetched_calendars:
                kept = [e.id for e in events if e.calendar_id == calendar_id]
                self._delete_stale_events(conn, user_id, account_id, calendar_id, start, end, kept)
            conn.commit()
        except sqlite3.Error:
            logger.exception("failed to reconcile calendar events for account %s", account_id)
            conn.rollback()
            return CalendarResult(events=events, error="failed to store calendar events")
        finally:
            conn.close()

        error = None
        if failed_calendars:
            error = f"failed to fetch events for {len(failed_calendars)} calendar(s)"
        return CalendarResult(events=events, error=error, failed_calendars=failed_calendars)

    def _delete_stale_events(self, conn, user_id, account_id, calendar_id, start, end, kept_ids: List[str]):
        sql = """
            DELETE FROM calendar_events
            WHERE user_id = ?
              AND source_id = ?
              AND source_account_id = ?
              AND calendar_id = ?
              AND datetime_start < ?
              AND datetime_end > ?
        """
        params = [user_id, TASK_SOURCE_ID_GCAL, account_id, calendar_id, to_utc_iso(end), to_utc_iso(start)]
        if kept_ids:
            sql += f" AND id NOT IN ({', '.join('?' for _ in kept_ids)})"
            params.extend(kept_ids)
        cur = conn.execute(sql, params)
        if cur.rowcount:
            logger.info("removed %d stale events from calendar %s", cur.rowcount, calendar_id)

    # ------------------
    # WRITE-BACK
    # ------------------
    def create_event(self, user_id: str, event: EventCreate) -> CalendarEvent:
        service = self.service_builder(user_id, event.account_id)
        body = {
            "summary": event.summary,
            "description": event.description,
            "start": {"dateTime": to_utc_iso(event.datetime_start)},
            "end": {"dateTime": to_utc_iso(event.datetime_end)},
            "attendees": [{"email": e} for e in event.attendee_emails],
        }
        if event.add_conference_call:
            body["conferenceData"] = {
                "createRequest": {
                    "requestId": uuid4().hex,
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            }
        created = (
            service.events()
            .insert(
                calendarId=event.calendar_id,
                body=body,
                conferenceDataVersion=1 if event.add_conference_call else 0,
            )
            .execute()
        )

        calendar_id = event.account_id if event.calendar_id == "primary" else event.calendar_id
        normalized = event_from_google(created, user_id, event.account_id, calendar_id)
        if normalized is None:
            raise ExternalAPIError("created event is missing start / end")
        # creator is the organizer
        normalized.can_modify = True

        linked = {}
        if event.linked_task_id:
            linked = {"linked_task_id": event.linked_task_id, "linked_source_id": "gt_task"}
        elif event.linked_view_id:
            linked = {"linked_view_id": event.linked_view_id}

        conn = db.get_db()
        try:
            stored = db.update_or_create(
                conn,
                "calendar_events",
                user_id,
                normalized.id_external,
                normalized.source_id,
                {**_event_fields(normalized), **linked},
                fields_to_insert_if_missing={"created_at": now_iso()},
                extra_filters={"calendar_id": calendar_id},
            )
            conn.commit()
        finally:
            conn.close()
        normalized.id = stored["id"]
        normalized.linked_task_id = stored.get("linked_task_id")
        normalized.linked_view_id = stored.get("linked_view_id")
        normalized.linked_source_id = stored.get("linked_source_id")
        return normalized

    def delete_event(self, user_id: str, account_id: str, external_id: str, calendar_id: str) -> None:
        service = self.service_builder(user_id, account_id)
        google_calendar_id = "primary" if calendar_id == account_id else calendar_id
        service.events().delete(calendarId=google_calendar_id, eventId=external_id).execute()

    def modify_event(
        self, user_id: str, account_id: str, external_id: str, calendar_id: str, modify: EventModify
    ) -> None:
        if modify.is_empty():
            raise ValueError("nothing to modify")
        body = {}
        if modify.summary is not None:
            body["summary"] = modify.summary
        if modify.description is not None:
            body["description"] = modify.description
        if modify.datetime_start is not None:
            body["start"] = {"dateTime": to_utc_iso(modify.datetime_start)}
        if modify.datetime_end is not None:
            body["end"] = {"dateTime": to_utc_iso(modify.datetime_end)}

        service = self.service_builder(user_id, account_id)
        google_calendar_id = "primary" if calendar_id == account_id else calendar_id
        service.events().patch(calendarId=google_calendar_id, eventId=external_id, body=body).execute()
