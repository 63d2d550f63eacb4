# tests/test_api_accounts.py

from __future__ import annotations

from taskhub import config, db

from seed import insert_task, link_github_account


def test_health(client) -> None:
    body = client.get("/health").json()
    assert body["status"] == "ok"


# ------------------
# LINKED ACCOUNTS
# ------------------
def test_supported_types(client, user) -> None:
    types = client.get("/linked_accounts/supported_types/", headers=user.headers).json()
    assert {t["id"] for t in types} == {"google", "github"}
    github = next(t for t in types if t["id"] == "github")
    assert github == {"id": "github", "name": "Github", "logo": "/images/github.svg"}


def test_primary_login_cannot_be_unlinked(client, user) -> None:
    accounts = client.get("/linked_accounts/", headers=user.headers).json()
    assert len(accounts) == 1
    google = accounts[0]
    assert google["display_id"] == user.email
    assert google["is_unlinkable"] is False
    assert google["has_bad_token"] is False

    r = client.delete(f"/linked_accounts/{google['id']}/", headers=user.headers)
    assert r.status_code == 400
    assert r.json()["error"] == "account is not unlinkable"
    assert client.delete("/linked_accounts/missing/", headers=user.headers).status_code == 404


def test_bad_token_is_reported(client, user, conn) -> None:
    token_id = link_github_account(user.id)
    db.update(conn, "external_api_tokens", {"id": token_id}, {"is_bad_token": True})
    conn.commit()

    accounts = {a["id"]: a for a in client.get("/linked_accounts/", headers=user.headers).json()}
    assert accounts[token_id]["has_bad_token"] is True
    assert accounts[token_id]["display_id"] == "octo"


# ------------------
# VIEWS
# ------------------
def test_task_section_view(client, user) -> None:
    insert_task(user.id, title="second", id_ordering=2)
    insert_task(user.id, title="first", id_ordering=1)
    insert_task(user.id, title="done", id_ordering=3, is_completed=True)

    r = client.post(
        "/overview/views/",
        json={"type": "task_section", "task_section_id": config.DEFAULT_SECTION_ID},
        headers=user.headers,
    )
    assert r.status_code == 200

    views = client.get("/overview/views/", headers=user.headers).json()
    assert len(views) == 1
    assert views[0]["name"] == config.DEFAULT_SECTION_NAME
    assert [t["title"] for t in views[0]["view_items"]] == ["first", "second"]


def test_view_validation(client, user) -> None:
    def add(payload):
        return client.post("/overview/views/", json=payload, headers=user.headers)

    assert add({"type": "slack"}).status_code == 400
    assert add({"type": "task_section", "task_section_id": "missing"}).status_code == 400
    assert add({"type": "meeting_preparation"}).status_code == 200
    r = add({"type": "meeting_preparation"})
    assert r.status_code == 400
    assert r.json()["error"] == "view already exists"


def test_meeting_preparation_view(client, user) -> None:
    client.post("/overview/views/", json={"type": "meeting_preparation"}, headers=user.headers)
    view = client.get("/overview/views/", headers=user.headers).json()[0]
    assert view["name"] == "Meeting Preparation"
    assert view["is_linked"] is True
    assert view["view_items"] == []


def test_view_ordering_and_delete(client, user) -> None:
    ids = []
    for payload in (
        {"type": "meeting_preparation"},
        {"type": "task_section", "task_section_id": config.DEFAULT_SECTION_ID},
    ):
        ids.append(client.post("/overview/views/", json=payload, headers=user.headers).json()["id"])
    assert [v["id"] for v in client.get("/overview/views/", headers=user.headers).json()] == ids

    assert client.patch(f"/overview/views/{ids[1]}/", json={}, headers=user.headers).status_code == 400
    r = client.patch(f"/overview/views/{ids[1]}/", json={"id_ordering": 1}, headers=user.headers)
    assert r.status_code == 200
    views = client.get("/overview/views/", headers=user.headers).json()
    assert [v["id"] for v in views] == [ids[1], ids[0]]
    assert [v["id_ordering"] for v in views] == [1, 2]

    assert client.delete(f"/overview/views/{ids[0]}/", headers=user.headers).status_code == 200
    assert client.delete(f"/overview/views/{ids[0]}/", headers=user.headers).status_code == 404
    assert client.patch("/overview/views/missing/", json={"id_ordering": 1}, headers=user.headers).status_code == 404


# ------------------
# FEEDBACK / LOG EVENTS / TEMPLATES
# ------------------
def test_feedback(client, user, conn) -> None:
    assert client.post("/feedback/", json={}, headers=user.headers).status_code == 400
    assert client.post("/feedback/", json={"feedback": "love it"}, headers=user.headers).status_code == 201
    assert [f["feedback"] for f in db.find(conn, "feedback_items", user.id)] == ["love it"]


def test_log_events(client, user, conn) -> None:
    r = client.post("/log_events/", json={"event_type": 3}, headers=user.headers)
    assert r.status_code == 400
    assert r.json()["error"] == "invalid or missing 'event_type' parameter."

    assert client.post("/log_events/", json={"event_type": "opened_app"}, headers=user.headers).status_code == 201
    assert len(db.find(conn, "log_events", user.id, "event_type=?", ("opened_app",))) == 1


def test_recurring_task_templates(client, user) -> None:
    def create(**payload):
        return client.post("/recurring_task_templates/create/", json=payload, headers=user.headers)

    assert create(recurrence_rate="daily").status_code == 400
    assert create(title="Standup notes", recurrence_rate="hourly").status_code == 400
    assert create(title="Rent", recurrence_rate="monthly", day_to_create=40).status_code == 400
    assert create(title="Rent", recurrence_rate="monthly", id_task_section="missing").status_code == 400

    r = create(title="Standup notes", recurrence_rate="weekdays", time_of_day_seconds_to_create=9 * 3600)
    assert r.status_code == 200
    template_id = r.json()["template_id"]

    templates = client.get("/recurring_task_templates/v2/", headers=user.headers).json()
    assert [t["id"] for t in templates] == [template_id]
    assert templates[0]["id_task_section"] == config.DEFAULT_SECTION_ID
    assert templates[0]["is_enabled"] is True
    assert templates[0]["time_of_day_seconds_to_create"] == 9 * 3600
