# tests/test_google_calendar.py

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from taskhub import config, db
from taskhub.core.schemas import EventCreate, EventModify
from taskhub.external.google_calendar import GoogleCalendarSource, event_from_google

from fakes import FakeCalendarService, gcal_event

ACCOUNT = "user@example.com"
START = datetime(2026, 10, 17, 0, 0, tzinfo=timezone.utc)
END = datetime(2026, 10, 18, 0, 0, tzinfo=timezone.utc)


def _source(service: FakeCalendarService) -> GoogleCalendarSource:
    return GoogleCalendarSource(service_builder=lambda user_id, account_id: service, max_workers=4)


def _stored_events(conn, user_id: str) -> list[dict]:
    return db.find(conn, "calendar_events", user_id, order_by="datetime_start ASC")


def test_event_normalization() -> None:
    raw = gcal_event(
        "e1",
        "2026-10-17T10:00:00-04:00",
        "2026-10-17T11:00:00-04:00",
        summary="Standup",
        description="daily",
        location="Room 1",
        colorId="5",
        guestsCanModify=True,
        attendees=[{"email": "a@example.com"}, {"email": "b@example.com"}, {"displayName": "no email"}],
        conferenceData={
            "entryPoints": [
                {"entryPointType": "phone", "uri": "tel:+1-555"},
                {"entryPointType": "video", "uri": "https://zoom.us/j/123"},
            ],
            "conferenceSolution": {"name": "Zoom Meeting", "iconUri": "https://zoom.example/logo.png"},
        },
    )

    event = event_from_google(raw, "u1", ACCOUNT, "cal-1")

    assert event.deeplink == f"https://calendar.google.com/event?eid=e1&authuser={ACCOUNT}"
    assert event.can_modify is True
    assert event.call_url == f"https://zoom.us/j/123?authuser={ACCOUNT}"
    assert event.call_platform == "Zoom Meeting"
    assert event.call_logo == "https://zoom.example/logo.png"
    assert event.attendee_emails == ["a@example.com", "b@example.com"]
    assert event.color_id == "5"
    assert event.calendar_id == "cal-1"
    assert event.datetime_start == datetime(2026, 10, 17, 14, 0, tzinfo=timezone.utc)


def test_organizer_can_modify_and_all_day_is_skipped() -> None:
    raw = gcal_event("e1", "2026-10-17T10:00:00Z", "2026-10-17T11:00:00Z", organizer={"self": True})
    assert event_from_google(raw, "u1", ACCOUNT, ACCOUNT).can_modify is True

    raw = gcal_event("e2", "2026-10-17T10:00:00Z", "2026-10-17T11:00:00Z", organizer={"self": False})
    assert event_from_google(raw, "u1", ACCOUNT, ACCOUNT).can_modify is False

    all_day = gcal_event("e3", "2026-10-17", "2026-10-18", all_day=True)
    assert event_from_google(all_day, "u1", ACCOUNT, ACCOUNT) is None


def test_primary_scope_fetches_primary_calendar(user, conn) -> None:
    service = FakeCalendarService(
        pages={"primary": [[gcal_event("e1", "2026-10-17T10:00:00Z", "2026-10-17T11:00:00Z")]]}
    )

    result = _source(service).get_events(user.id, ACCOUNT, START, END, [config.SCOPE_CALENDAR_EVENTS])

    assert result.error is None
    assert [e.id_external for e in result.events] == ["e1"]
    assert result.events[0].id is not None
    assert [c["calendarId"] for c in service.calls_named("list")] == ["primary"]
    assert service.calls_named("list")[0]["singleEvents"] is True

    account = db.find_one(conn, "calendar_accounts", {"user_id": user.id, "id_external": ACCOUNT})
    assert account["calendars"][0]["calendar_id"] == ACCOUNT
    assert account["calendars"][0]["access_role"] == "owner"
    assert account["scopes"] == [config.SCOPE_CALENDAR_EVENTS]


def test_pagination_and_reconciliation(user, conn) -> None:
    service = FakeCalendarService(
        pages={
            "primary": [
                [gcal_event("e1", "2026-10-17T10:00:00Z", "2026-10-17T11:00:00Z")],
                [gcal_event("e2", "2026-10-17T12:00:00Z", "2026-10-17T13:00:00Z")],
            ]
        }
    )
    source = _source(service)
    source.get_events(user.id, ACCOUNT, START, END, [])
    first_ids = {e["id_external"]: e["id"] for e in _stored_events(conn, user.id)}
    assert set(first_ids) == {"e1", "e2"}

    service.pages["primary"] = [[gcal_event("e1", "2026-10-17T10:00:00Z", "2026-10-17T11:30:00Z", summary="Renamed")]]
    result = source.get_events(user.id, ACCOUNT, START, END, [])

    stored = _stored_events(conn, user.id)
    assert [e["id_external"] for e in stored] == ["e1"]
    assert stored[0]["id"] == first_ids["e1"]
    assert stored[0]["title"] == "Renamed"
    assert result.events[0].id == first_ids["e1"]


def test_events_outside_window_are_kept(user, conn) -> None:
    service = FakeCalendarService(
        pages={"primary": [[gcal_event("tomorrow", "2026-10-18T10:00:00Z", "2026-10-18T11:00:00Z")]]}
    )
    source = _source(service)
    source.get_events(user.id, ACCOUNT, datetime(2026, 10, 18, tzinfo=timezone.utc), datetime(2026, 10, 19, tzinfo=timezone.utc), [])

    service.pages["primary"] = [[]]
    source.get_events(user.id, ACCOUNT, START, END, [])

    assert [e["id_external"] for e in _stored_events(conn, user.id)] == ["tomorrow"]


def test_failed_calendar_keeps_its_cache(user, conn) -> None:
    scopes = [config.SCOPE_CALENDAR_MULTI]
    service = FakeCalendarService(
        calendars=[
            {"id": "work", "summary": "Work", "accessRole": "owner", "colorId": "1"},
            {"id": "team", "summary": "Team", "accessRole": "reader", "backgroundColor": "#fff"},
        ],
        pages={
            "work": [[gcal_event("w1", "2026-10-17T09:00:00Z", "2026-10-17T10:00:00Z")]],
            "team": [[gcal_event("t1", "2026-10-17T11:00:00Z", "2026-10-17T12:00:00Z")]],
        },
    )
    source = _source(service)
    source.get_events(user.id, ACCOUNT, START, END, scopes)
    assert {e["id_external"] for e in _stored_events(conn, user.id)} == {"w1", "t1"}

    service.pages["work"] = [[]]
    service.failing_calendars.add("team")
    result = source.get_events(user.id, ACCOUNT, START, END, scopes)

    assert result.failed_calendars == ["team"]
    assert result.error is not None
    # w1 vanished from a calendar that synced; t1 stays because its calendar failed
    assert {e["id_external"] for e in _stored_events(conn, user.id)} == {"t1"}

    account = db.find_one(conn, "calendar_accounts", {"user_id": user.id, "id_external": ACCOUNT})
    titles = {c["calendar_id"]: c["title"] for c in account["calendars"]}
    assert titles == {"work": "Work", "team": "Team"}


def test_same_event_in_two_calendars_is_two_rows(user, conn) -> None:
    service = FakeCalendarService(
        calendars=[{"id": "a", "accessRole": "owner"}, {"id": "b", "accessRole": "owner"}],
        pages={
            "a": [[gcal_event("shared", "2026-10-17T09:00:00Z", "2026-10-17T10:00:00Z")]],
            "b": [[gcal_event("shared", "2026-10-17T09:00:00Z", "2026-10-17T10:00:00Z")]],
        },
    )
    _source(service).get_events(user.id, ACCOUNT, START, END, [config.SCOPE_CALENDAR_MULTI])

    assert sorted(e["calendar_id"] for e in _stored_events(conn, user.id)) == ["a", "b"]


def test_create_event_with_conference_and_linked_task(user, conn) -> None:
    service = FakeCalendarService()
    params = EventCreate(
        account_id=ACCOUNT,
        summary="Focus",
        datetime_start="2026-10-17T15:00:00Z",
        datetime_end="2026-10-17T16:00:00Z",
        attendee_emails=["a@example.com"],
        add_conference_call=True,
        linked_task_id="task-1",
    )

    event = _source(service).create_event(user.id, params)

    insert = service.calls_named("insert")[0]
    assert insert["calendarId"] == "primary"
    assert insert["conferenceDataVersion"] == 1
    assert "createRequest" in insert["body"]["conferenceData"]
    assert event.call_platform == "Google Meet"
    assert event.can_modify is True

    row = db.find_one(conn, "calendar_events", {"id": event.id})
    assert row["calendar_id"] == ACCOUNT
    assert row["linked_task_id"] == "task-1"
    assert row["linked_source_id"] == "gt_task"


def test_modify_and_delete_event() -> None:
    service = FakeCalendarService()
    source = _source(service)

    with pytest.raises(ValueError):
        source.modify_event("u1", ACCOUNT, "e1", ACCOUNT, EventModify())

    source.modify_event("u1", ACCOUNT, "e1", "work", EventModify(summary="New title"))
    patch = service.calls_named("patch")[0]
    assert patch == {"calendarId": "work", "eventId": "e1", "body": {"summary": "New title"}}

    source.delete_event("u1", ACCOUNT, "e1", ACCOUNT)
    assert service.calls_named("delete") == [{"calendarId": "primary", "eventId": "e1"}]
