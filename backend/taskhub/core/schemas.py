from __future__ import annotations

from enum import Enum
from datetime import datetime
from typing import Dict, List, Optional, Literal

from pydantic import BaseModel, Field


class SharedAccess(str, Enum):
    public = "public"
    domain = "domain"
    meeting_attendees = "meeting_attendees"


class RequiredAction(str, Enum):
    # Keep sorted by priority; ACTION_ORDERING must list every member.
    review_pr = "Review PR"
    add_reviewers = "Add Reviewers"
    fix_failed_ci = "Fix Failed CI"
    address_comments = "Address Comments"
    fix_merge_conflicts = "Fix Merge Conflicts"
    waiting_on_ci = "Waiting on CI"
    merge_pr = "Merge PR"
    waiting_on_review = "Waiting on Review"
    waiting_on_author = "Waiting on Author"
    none_needed = "Not Actionable"


ACTION_ORDERING: Dict[str, int] = {action.value: i for i, action in enumerate(RequiredAction)}


CommentType = Literal["inline", "toplevel"]


class PullRequestComment(BaseModel):
    type: CommentType
    body: str = ""
    author: str = ""
    filepath: str = ""
    line_number_start: int = 0
    line_number_end: int = 0
    created_at: Optional[datetime] = None


class PullRequest(BaseModel):
    # id / id_ordering are set once the PR has been stored
    id: Optional[str] = None
    id_ordering: int = 0
    user_id: str
    id_external: str
    source_id: str
    source_account_id: str = ""
    title: str = ""
    body: str = ""
    deeplink: str = ""
    repository_id: str = ""
    repository_name: str = ""
    number: int = 0
    author: str = ""
    branch: str = ""
    base_branch: str = ""
    required_action: str = RequiredAction.none_needed.value
    comments: List[PullRequestComment] = []
    comment_count: int = 0
    commit_count: int = 0
    additions: int = 0
    deletions: int = 0
    created_at_external: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    last_fetched: Optional[datetime] = None
    is_completed: bool = False


class GithubPRData(BaseModel):
    requested_reviewers: int = 0
    is_mergeable: bool = False
    is_approved: bool = False
    have_requested_changes: bool = False
    checks_did_fail: bool = False
    checks_did_finish: bool = False
    is_owned_by_user: bool = False
    user_login: str = ""
    user_is_reviewer: bool = False


class CalendarInfo(BaseModel):
    calendar_id: str
    title: str = ""
    access_role: str = ""
    color_id: str = ""
    color_background: str = ""
    color_foreground: str = ""


class CalendarEvent(BaseModel):
    id: Optional[str] = None
    user_id: str
    id_external: str
    source_id: str
    source_account_id: str = ""
    calendar_id: str = ""
    title: str = ""
    body: str = ""
    location: str = ""
    deeplink: str = ""
    can_modify: bool = False
    call_url: str = ""
    call_platform: str = ""
    call_logo: str = ""
    color_id: str = ""
    attendee_emails: List[str] = []
    datetime_start: datetime
    datetime_end: datetime
    linked_task_id: Optional[str] = None
    linked_view_id: Optional[str] = None
    linked_source_id: Optional[str] = None


class EventCreate(BaseModel):
    account_id: str
    calendar_id: str = "primary"
    summary: str = ""
    description: str = ""
    datetime_start: datetime
    datetime_end: datetime
    attendee_emails: List[str] = []
    add_conference_call: bool = False
    linked_task_id: Optional[str] = None
    linked_view_id: Optional[str] = None


class EventModify(BaseModel):
    summary: Optional[str] = None
    description: Optional[str] = None
    datetime_start: Optional[datetime] = None
    datetime_end: Optional[datetime] = None

    def is_empty(self) -> bool:
        return all(v is None for v in self.model_dump().values())


class ExternalTaskStatus(BaseModel):
    external_id: str
    state: str = ""
    type: str = ""
    is_completed_status: bool = False
    color: str = ""


class ExternalTaskPriority(BaseModel):
    external_id: str
    name: str = ""
    priority_normalized: float = Field(0.0, ge=0.0)
    color: str = ""
    icon_url: str = ""
