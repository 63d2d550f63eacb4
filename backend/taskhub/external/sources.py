from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import List, Optional

from .. import db
from ..core.schemas import CalendarEvent, PullRequest
from ..errors import TokenNotFoundError

# Task / item sources
TASK_SOURCE_ID_GT_TASK = "gt_task"
TASK_SOURCE_ID_GITHUB_PR = "github_pr"
TASK_SOURCE_ID_GCAL = "gcal"
TASK_SOURCE_ID_LINEAR = "linear_task"
TASK_SOURCE_ID_JIRA = "jira_task"
TASK_SOURCE_ID_SLACK = "slack_message"

# Linked account services
TASK_SERVICE_ID_GOOGLE = "google"
TASK_SERVICE_ID_GITHUB = "github"
TASK_SERVICE_ID_LINEAR = "linear"
TASK_SERVICE_ID_ATLASSIAN = "atlassian"
TASK_SERVICE_ID_SLACK = "slack"


@dataclass(frozen=True)
class SourceDetails:
    id: str
    name: str
    logo: str
    is_completable: bool = False
    is_creatable: bool = False
    can_be_shared: bool = False
    can_add_comment: bool = False


@dataclass(frozen=True)
class ServiceDetails:
    id: str
    name: str
    logo: str
    is_linkable: bool = False
    is_unlinkable: bool = True


_SOURCES = {
    TASK_SOURCE_ID_GT_TASK: SourceDetails(
        TASK_SOURCE_ID_GT_TASK, "General Task", "/images/generaltask.svg",
        is_completable=True, is_creatable=True, can_be_shared=True, can_add_comment=True,
    ),
    TASK_SOURCE_ID_GITHUB_PR: SourceDetails(
        TASK_SOURCE_ID_GITHUB_PR, "Github", "/images/github.svg", is_completable=True,
    ),
    TASK_SOURCE_ID_GCAL: SourceDetails(TASK_SOURCE_ID_GCAL, "Google Calendar", "/images/gcal.png"),
    TASK_SOURCE_ID_LINEAR: SourceDetails(
        TASK_SOURCE_ID_LINEAR, "Linear", "/images/linear.png", is_completable=True, can_add_comment=True,
    ),
    TASK_SOURCE_ID_JIRA: SourceDetails(TASK_SOURCE_ID_JIRA, "Jira", "/images/jira.svg", is_completable=True),
    TASK_SOURCE_ID_SLACK: SourceDetails(TASK_SOURCE_ID_SLACK, "Slack", "/images/slack.svg", is_completable=True),
}

SERVICES = {
    TASK_SERVICE_ID_GOOGLE: ServiceDetails(TASK_SERVICE_ID_GOOGLE, "Google", "/images/gmail.svg", is_linkable=True),
    TASK_SERVICE_ID_GITHUB: ServiceDetails(TASK_SERVICE_ID_GITHUB, "Github", "/images/github.svg", is_linkable=True),
    TASK_SERVICE_ID_LINEAR: ServiceDetails(TASK_SERVICE_ID_LINEAR, "Linear", "/images/linear.png"),
    TASK_SERVICE_ID_ATLASSIAN: ServiceDetails(TASK_SERVICE_ID_ATLASSIAN, "Atlassian", "/images/jira.svg"),
    TASK_SERVICE_ID_SLACK: ServiceDetails(TASK_SERVICE_ID_SLACK, "Slack", "/images/slack.svg"),
}


def get_source_details(source_id: str) -> SourceDetails:
    return _SOURCES[source_id]


@dataclass
class PullRequestResult:
    pull_requests: List[PullRequest] = field(default_factory=list)
    error: Optional[str] = None
    # True when the failure is expected (404 / rate limit) and was not logged
    suppressed: bool = False
    # external PR ids and repository ids that failed to fetch; their cached rows stay open
    skipped_pull_request_ids: List[str] = field(default_factory=list)
    skipped_repository_ids: List[str] = field(default_factory=list)


@dataclass
class CalendarResult:
    events: List[CalendarEvent] = field(default_factory=list)
    error: Optional[str] = None
    failed_calendars: List[str] = field(default_factory=list)


def get_external_token(conn: sqlite3.Connection, user_id: str, account_id: str, service_id: str) -> dict:
    token = db.find_one(
        conn,
        "external_api_tokens",
        {"user_id": user_id, "account_id": account_id, "service_id": service_id},
    )
    if token is None:
        raise TokenNotFoundError(f"no {service_id} token for account {account_id}")
    return token


def get_external_tokens(conn: sqlite3.Connection, user_id: str, service_id: str) -> List[dict]:
    return db.find(conn, "external_api_tokens", user_id, "service_id=?", (service_id,), order_by="created_at ASC")
