# tests/test_sharing.py

from __future__ import annotations

from datetime import timedelta

import pytest

from taskhub import db
from taskhub.core.dates import now_iso, now_utc
from taskhub.core.sharing import (
    check_note_sharing_access_valid,
    check_task_sharing_access_valid,
    get_email_domain,
    get_shared_note,
    get_shared_note_with_auth,
    get_shared_task,
)
from taskhub.errors import SharedAccessError

from seed import insert_task


def _tomorrow() -> str:
    return (now_utc() + timedelta(days=1)).isoformat()


def _insert_note(conn, user_id: str, **fields) -> str:
    now = now_iso()
    note_id = db.insert(conn, "notes", {"user_id": user_id, "title": "note", "created_at": now, "updated_at": now, **fields})
    conn.commit()
    return note_id


def test_email_domain() -> None:
    assert get_email_domain("jane@example.com") == "example.com"
    with pytest.raises(ValueError):
        get_email_domain("no-at-sign")
    with pytest.raises(ValueError):
        get_email_domain("jane@")


def test_access_values() -> None:
    assert check_task_sharing_access_valid("public")
    assert check_task_sharing_access_valid("domain")
    assert not check_task_sharing_access_valid("meeting_attendees")
    assert not check_task_sharing_access_valid(None)

    assert check_note_sharing_access_valid(None)
    assert check_note_sharing_access_valid("meeting_attendees")
    assert not check_note_sharing_access_valid("everyone")


def test_public_task_needs_no_login(user, conn) -> None:
    task_id = insert_task(user.id, shared_access="public", shared_until=_tomorrow())
    assert get_shared_task(conn, task_id, None)["id"] == task_id


def test_domain_task_requires_matching_domain(login, conn) -> None:
    owner = login("owner@acme.com")
    colleague = login("colleague@acme.com")
    outsider = login("someone@other.org")
    task_id = insert_task(owner.id, shared_access="domain", shared_until=_tomorrow())

    assert get_shared_task(conn, task_id, colleague.id)["id"] == task_id
    with pytest.raises(SharedAccessError):
        get_shared_task(conn, task_id, outsider.id)
    with pytest.raises(SharedAccessError):
        get_shared_task(conn, task_id, None)


def test_expired_deleted_or_unshared_task(user, conn) -> None:
    expired = insert_task(user.id, shared_access="public", shared_until=(now_utc() - timedelta(minutes=1)).isoformat())
    deleted = insert_task(user.id, shared_access="public", shared_until=_tomorrow(), is_deleted=True)
    unshared = insert_task(user.id, shared_until=_tomorrow())

    with pytest.raises(LookupError):
        get_shared_task(conn, expired, None)
    with pytest.raises(LookupError):
        get_shared_task(conn, deleted, None)
    with pytest.raises(SharedAccessError):
        get_shared_task(conn, unshared, None)


def test_note_without_auth_is_public_only(user, conn) -> None:
    public = _insert_note(conn, user.id, shared_access="public", shared_until=_tomorrow())
    legacy = _insert_note(conn, user.id, shared_until=_tomorrow())
    domain = _insert_note(conn, user.id, shared_access="domain", shared_until=_tomorrow())

    assert get_shared_note(conn, public)["id"] == public
    assert get_shared_note(conn, legacy)["id"] == legacy
    with pytest.raises(SharedAccessError):
        get_shared_note(conn, domain)


def test_note_owner_always_passes(login, conn) -> None:
    owner = login("owner@acme.com")
    note_id = _insert_note(conn, owner.id, shared_access="meeting_attendees", shared_until=_tomorrow())
    assert get_shared_note_with_auth(conn, note_id, owner.id)["id"] == note_id


def test_meeting_attendee_note(login, conn) -> None:
    owner = login("owner@acme.com")
    attendee = login("guest@other.org")
    stranger = login("stranger@other.org")
    event_id = db.insert(
        conn,
        "calendar_events",
        {
            "user_id": owner.id,
            "id_external": "evt",
            "source_id": "gcal",
            "calendar_id": owner.email,
            "attendee_emails": [owner.email, attendee.email],
        },
    )
    note_id = _insert_note(
        conn, owner.id, shared_access="meeting_attendees", shared_until=_tomorrow(), linked_event_id=event_id
    )

    assert get_shared_note_with_auth(conn, note_id, attendee.id)["id"] == note_id
    with pytest.raises(SharedAccessError):
        get_shared_note_with_auth(conn, note_id, stranger.id)


def test_meeting_attendee_note_needs_linked_event(login, conn) -> None:
    owner = login("owner@acme.com")
    viewer = login("guest@other.org")
    note_id = _insert_note(conn, owner.id, shared_access="meeting_attendees", shared_until=_tomorrow())

    with pytest.raises(SharedAccessError):
        get_shared_note_with_auth(conn, note_id, viewer.id)


def test_domain_note(login, conn) -> None:
    owner = login("owner@acme.com")
    note_id = _insert_note(conn, owner.id, shared_access="domain", shared_until=_tomorrow())

    assert get_shared_note_with_auth(conn, note_id, login("peer@acme.com").id)["id"] == note_id
    with pytest.raises(SharedAccessError):
        get_shared_note_with_auth(conn, note_id, login("x@other.org").id)
