# tests/test_api_pull_requests.py

from __future__ import annotations

import pytest

from taskhub import db
from taskhub.core.schemas import RequiredAction
from taskhub.external.github_pr import GithubPRSource
from taskhub.main import app
from taskhub.routes.pull_requests import get_github_source, sort_pull_requests

from fakes import FakeGithub, add_pull_details, github_pull, github_repo, github_routes
from seed import link_github_account


@pytest.fixture()
def github(client, user) -> FakeGithub:
    link_github_account(user.id)
    routes = github_routes(repos=[github_repo(10, "octo", "app")], pulls={"octo/app": [github_pull(100, 1)]})
    add_pull_details(routes, "octo/app", 1, reviews=[{"user": {"id": 2, "login": "rev"}, "state": "APPROVED"}])
    fake = FakeGithub(routes)
    app.dependency_overrides[get_github_source] = lambda: GithubPRSource(
        base_url="https://api.github.test/", transport=fake.transport(), max_workers=2
    )
    return fake


def test_pull_requests_grouped_by_repository(client, user, github) -> None:
    r = client.get("/pull_requests/", headers=user.headers)
    assert r.status_code == 200

    repositories = r.json()
    assert [repo["name"] for repo in repositories] == ["octo/app"]
    assert repositories[0]["id"] == "10"
    pr = repositories[0]["pull_requests"][0]
    assert pr["number"] == 1
    assert pr["status"] == {"text": RequiredAction.merge_pr.value, "priority": 6}
    assert pr["branch"] == "feature-1"
    assert pr["base_branch"] == "main"
    assert pr["source"]["name"] == "Github"


def test_closed_pull_request_is_marked_completed(client, user, github, conn) -> None:
    client.get("/pull_requests/", headers=user.headers)

    github.routes["/repos/octo/app/pulls"] = (200, [])
    assert client.get("/pull_requests/", headers=user.headers).json() == []

    row = db.find_one(conn, "pull_requests", {"user_id": user.id, "id_external": "100"})
    assert row["is_completed"] is True
    assert row["completed_at"]


def test_failed_sync_keeps_cached_pull_requests_open(client, user, github, conn) -> None:
    client.get("/pull_requests/", headers=user.headers)

    github.routes["/repos/octo/app/pulls"] = (500, {"message": "Server Error"})
    repositories = client.get("/pull_requests/", headers=user.headers).json()

    assert [pr["number"] for pr in repositories[0]["pull_requests"]] == [1]
    assert db.find_one(conn, "pull_requests", {"user_id": user.id, "id_external": "100"})["is_completed"] is False


def test_failed_pull_request_detail_keeps_it_open(client, user, github, conn) -> None:
    client.get("/pull_requests/", headers=user.headers)

    github.routes["/repos/octo/app/pulls/1/reviews"] = (500, {"message": "Server Error"})
    repositories = client.get("/pull_requests/", headers=user.headers).json()

    assert [pr["number"] for pr in repositories[0]["pull_requests"]] == [1]
    assert db.find_one(conn, "pull_requests", {"user_id": user.id, "id_external": "100"})["is_completed"] is False


def test_rate_limited_listing_keeps_pull_requests_open(client, user, github, conn) -> None:
    client.get("/pull_requests/", headers=user.headers)

    github.routes["/repos/octo/app/pulls"] = (403, {"message": "API rate limit exceeded for user ID 1."})
    repositories = client.get("/pull_requests/", headers=user.headers).json()

    assert [pr["number"] for pr in repositories[0]["pull_requests"]] == [1]
    assert db.find_one(conn, "pull_requests", {"user_id": user.id, "id_external": "100"})["is_completed"] is False


def test_other_repositories_still_close_missing_pull_requests(client, user, github, conn) -> None:
    github.routes["/user/repos"] = (200, [github_repo(10, "octo", "app"), github_repo(20, "octo", "lib")])
    github.routes["/repos/octo/lib/pulls"] = (200, [github_pull(200, 7)])
    add_pull_details(github.routes, "octo/lib", 7)
    client.get("/pull_requests/", headers=user.headers)

    github.routes["/repos/octo/app/pulls"] = (404, {"message": "Not Found"})
    github.routes["/repos/octo/lib/pulls"] = (200, [])
    client.get("/pull_requests/", headers=user.headers)

    assert db.find_one(conn, "pull_requests", {"user_id": user.id, "id_external": "100"})["is_completed"] is False
    assert db.find_one(conn, "pull_requests", {"user_id": user.id, "id_external": "200"})["is_completed"] is True


def test_without_github_account_nothing_is_fetched(client, user) -> None:
    fake = FakeGithub()
    app.dependency_overrides[get_github_source] = lambda: GithubPRSource(
        base_url="https://api.github.test/", transport=fake.transport()
    )
    assert client.get("/pull_requests/", headers=user.headers).json() == []
    assert fake.requests == []


def test_sort_by_action_then_recency() -> None:
    rows = [
        {"id": "old-merge", "required_action": "Merge PR", "last_updated_at": "2026-10-01T00:00:00+00:00"},
        {"id": "waiting", "required_action": "Waiting on Review", "last_updated_at": "2026-10-09T00:00:00+00:00"},
        {"id": "review", "required_action": "Review PR", "last_updated_at": "2026-09-01T00:00:00+00:00"},
        {"id": "new-merge", "required_action": "Merge PR", "last_updated_at": "2026-10-05T00:00:00+00:00"},
    ]
    assert [r["id"] for r in sort_pull_requests(rows)] == ["review", "new-merge", "old-merge", "waiting"]


# ------------------
# GITHUB VIEWS / UNLINKING
# ------------------
def test_github_view(client, user, github) -> None:
    r = client.post("/overview/views/", json={"type": "github", "github_id": "10"}, headers=user.headers)
    assert r.status_code == 400

    client.get("/pull_requests/", headers=user.headers)
    r = client.post("/overview/views/", json={"type": "github", "github_id": "10"}, headers=user.headers)
    assert r.status_code == 200

    view = client.get("/overview/views/", headers=user.headers).json()[0]
    assert view["name"] == "octo/app"
    assert view["is_linked"] is True
    assert [item["number"] for item in view["view_items"]] == [1]


def test_unlinking_github_removes_its_data(client, user, github, conn) -> None:
    client.get("/pull_requests/", headers=user.headers)
    accounts = client.get("/linked_accounts/", headers=user.headers).json()
    github_account = next(a for a in accounts if a["name"] == "Github")
    assert github_account["is_unlinkable"] is True

    assert client.delete(f"/linked_accounts/{github_account['id']}/", headers=user.headers).status_code == 200

    assert db.find(conn, "pull_requests", user.id) == []
    assert db.find(conn, "repositories", user.id) == []
    assert client.get("/pull_requests/", headers=user.headers).json() == []
