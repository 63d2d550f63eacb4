"""
Github pull request sync.

One sync run fans out in three stages over a single thread pool:

    user / teams / repositories      (three requests in parallel)
      -> one task per repository     (upsert repo record, list open PRs)
        -> one task per pull request (conditional check, then details)

Repository tasks submit their PR tasks and return immediately, so nothing in the
pool ever blocks on another pool task. The calling thread joins every PR future
in submission order and writes the fresh ones back through `db.update_or_create`.
"""
from __future__ import annotations

import logging
import sqlite3
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Tuple

import httpx

from .. import config, db
from ..core.dates import http_date, now_utc, to_utc_iso
from ..core.schemas import GithubPRData, PullRequest, PullRequestComment, RequiredAction
from ..errors import GithubAPIError, TokenNotFoundError
from .sources import (
    TASK_SERVICE_ID_GITHUB,
    TASK_SOURCE_ID_GITHUB_PR,
    PullRequestResult,
    get_external_token,
)

logger = logging.getLogger(__name__)

STATE_APPROVED = "APPROVED"
STATE_CHANGES_REQUESTED = "CHANGES_REQUESTED"
STATE_COMMENTED = "COMMENTED"

CHECKS_STATUS_COMPLETED = "completed"
CHECKS_CONCLUSION_FAILURE = "failure"
CHECKS_CONCLUSION_TIMED_OUT = "timed_out"

COMMENT_TYPE_INLINE = "inline"
COMMENT_TYPE_TOPLEVEL = "toplevel"

_FETCH_ERRORS = (GithubAPIError, httpx.HTTPError, ValueError, KeyError)


@dataclass
class GithubPRRequestData:
    repository: dict
    pull_request: dict
    user: dict
    user_teams: list
    request_time: datetime


@dataclass
class ProcessRepositoryResult:
    # (request time, external PR id, pending PR info)
    pull_requests: List[Tuple[datetime, str, "Future[Optional[PullRequest]]"]] = field(default_factory=list)
    error: Optional[str] = None
    should_log: bool = False
    # the PR listing hit an expected error, so the repo's PRs are unknown
    skipped: bool = False


# ------------------
# ERROR HELPERS
# ------------------
def should_log_error(err: Exception) -> bool:
    if isinstance(err, GithubAPIError):
        if err.status_code in (404, 451) or err.is_rate_limited:
            return False
    return True


def handle_error_logging(err: Exception, user_id: str, msg: str) -> bool:
    should_log = should_log_error(err)
    if should_log:
        logger.error("%s: %s", msg, err)
    else:
        logger.debug("%s (expected): %s", msg, err)
    if isinstance(err, GithubAPIError) and err.is_rate_limited:
        db.log_event(user_id, "github_pr_rate_limited")
    return should_log


def _get_json(client: httpx.Client, path: str, params: Optional[dict] = None) -> Any:
    resp = client.get(path, params=params)
    if resp.status_code >= 400:
        try:
            message = (resp.json() or {}).get("message") or resp.reason_phrase
        except ValueError:
            message = resp.reason_phrase
        raise GithubAPIError(resp.status_code, message, str(resp.request.url))
    return resp.json()


# ------------------
# REVIEW / CHECK LOGIC
# ------------------
def user_is_owner(github_user: dict, pull_request: dict) -> bool:
    user_id = (github_user or {}).get("id")
    author_id = ((pull_request or {}).get("user") or {}).get("id")
    return user_id is not None and author_id is not None and user_id == author_id


def _team_ids(teams) -> set:
    return {t.get("id") for t in teams or [] if t.get("id") is not None}


def user_needs_to_submit_review(github_user: Optional[dict], reviewers: Optional[dict], user_teams: list) -> bool:
    if not github_user or reviewers is None:
        return False
    for reviewer in reviewers.get("users") or []:
        if reviewer.get("id") == github_user.get("id"):
            return True
    return bool(_team_ids(user_teams) & _team_ids(reviewers.get("teams")))


def user_is_reviewer(github_user: Optional[dict], pull_request: Optional[dict], reviews: list, user_teams: list) -> bool:
    # Github stops listing a user as requested reviewer once they submit a review,
    # so submitted reviews count too.
    if not pull_request or not github_user:
        return False
    user_id = github_user.get("id")
    for reviewer in pull_request.get("requested_reviewers") or []:
        if user_id is not None and reviewer.get("id") == user_id:
            return True
    if _team_ids(user_teams) & _team_ids(pull_request.get("requested_teams")):
        return True
    for review in reviews or []:
        if user_id == (review.get("user") or {}).get("id"):
            return True
    return False


def pull_request_is_approved(reviews: list) -> bool:
    return any(review.get("state") == STATE_APPROVED for review in reviews or [])


def reviewers_have_requested_changes(reviews: list) -> bool:
    most_recent = {}
    for review in reviews or []:
        state = review.get("state")
        # A comment after "changes requested" leaves the PR in that state
        if state == STATE_COMMENTED:
            continue
        most_recent[(review.get("user") or {}).get("login")] = state
    return STATE_CHANGES_REQUESTED in most_recent.values()


def checks_did_finish(check_runs: dict) -> bool:
    return all(run.get("status") == CHECKS_STATUS_COMPLETED for run in check_runs.get("check_runs") or [])


def checks_did_fail(check_runs: dict) -> bool:
    for run in check_runs.get("check_runs") or []:
        if run.get("status") == CHECKS_STATUS_COMPLETED and run.get("conclusion") in (
            CHECKS_CONCLUSION_FAILURE,
            CHECKS_CONCLUSION_TIMED_OUT,
        ):
            return True
    return False


def get_reviewer_count(reviews: list, reviewers: dict) -> int:
    submitted = sum(
        1
        for review in reviews or []
        if review.get("user") and review.get("state") in (STATE_APPROVED, STATE_CHANGES_REQUESTED)
    )
    return submitted + len(reviewers.get("users") or []) + len(reviewers.get("teams") or [])


def get_pull_request_required_action(data: GithubPRData) -> str:
    if data.is_owned_by_user:
        if data.requested_reviewers == 0:
            return RequiredAction.add_reviewers.value
        if data.checks_did_fail:
            return RequiredAction.fix_failed_ci.value
        if data.have_requested_changes:
            return RequiredAction.address_comments.value
        if not data.is_mergeable:
            return RequiredAction.fix_merge_conflicts.value
        if not data.checks_did_finish:
            return RequiredAction.waiting_on_ci.value
        if data.is_approved:
            return RequiredAction.merge_pr.value
        return RequiredAction.waiting_on_review.value
    if data.user_is_reviewer:
        return RequiredAction.review_pr.value
    return RequiredAction.waiting_on_author.value


def _review_body(review: dict) -> str:
    body = review.get("body") or ""
    if body:
        return body
    state = review.get("state")
    if state == STATE_APPROVED:
        return "(Approved changes)"
    if state == STATE_CHANGES_REQUESTED:
        return "(Requested changes)"
    return "(Reviewed changes)"


def _repo_path(repository: dict) -> str:
    owner = (repository.get("owner") or {}).get("login")
    if not owner or not repository.get("name"):
        raise ValueError("repository is missing owner or name")
    return f"repos/{owner}/{repository['name']}"


def get_comments(client: httpx.Client, repository: dict, pull_request: dict, reviews: list) -> List[PullRequestComment]:
    repo = _repo_path(repository)
    number = pull_request["number"]
    result: List[PullRequestComment] = []

    for comment in _get_json(client, f"{repo}/pulls/{number}/comments"):
        result.append(
            PullRequestComment(
                type=COMMENT_TYPE_INLINE,
                body=comment.get("body") or "",
                author=(comment.get("user") or {}).get("login") or "",
                filepath=comment.get("path") or "",
                line_number_start=comment.get("start_line") or 0,
                line_number_end=comment.get("line") or 0,
                created_at=comment.get("created_at"),
            )
        )
    for comment in _get_json(client, f"{repo}/issues/{number}/comments"):
        result.append(
            PullRequestComment(
                type=COMMENT_TYPE_TOPLEVEL,
                body=comment.get("body") or "",
                author=(comment.get("user") or {}).get("login") or "",
                created_at=comment.get("created_at"),
            )
        )
    for review in reviews:
        result.append(
            PullRequestComment(
                type=COMMENT_TYPE_TOPLEVEL,
                body=_review_body(review),
                author=(review.get("user") or {}).get("login") or "",
                created_at=review.get("submitted_at"),
            )
        )
    return result


def get_additions_deletions(client: httpx.Client, repository: dict, pull_request: dict) -> Tuple[int, int, int]:
    base = (pull_request.get("base") or {}).get("ref")
    head = (pull_request.get("head") or {}).get("ref")
    comparison = _get_json(client, f"{_repo_path(repository)}/compare/{base}...{head}")
    additions = sum(f.get("additions") or 0 for f in comparison.get("files") or [])
    deletions = sum(f.get("deletions") or 0 for f in comparison.get("files") or [])
    return additions, deletions, comparison.get("total_commits") or 0


# ------------------
# STORAGE
# ------------------
def _pull_request_from_row(row: dict) -> PullRequest:
    return PullRequest(**{k: row[k] for k in PullRequest.model_fields if row.get(k) is not None})


def _pull_request_fields(pr: PullRequest) -> dict:
    return {
        "source_account_id": pr.source_account_id,
        "title": pr.title,
        "body": pr.body,
        "deeplink": pr.deeplink,
        "repository_id": pr.repository_id,
        "repository_name": pr.repository_name,
        "number": pr.number,
        "author": pr.author,
        "branch": pr.branch,
        "base_branch": pr.base_branch,
        "required_action": pr.required_action,
        "comments": [c.model_dump(mode="json") for c in pr.comments],
        "comment_count": pr.comment_count,
        "commit_count": pr.commit_count,
        "additions": pr.additions,
        "deletions": pr.deletions,
        "created_at_external": to_utc_iso(pr.created_at_external),
        "last_updated_at": to_utc_iso(pr.last_updated_at),
        "last_fetched": to_utc_iso(pr.last_fetched),
        "is_completed": pr.is_completed,
        "completed_at": None,
        "updated_at": to_utc_iso(now_utc()),
    }


def _update_or_create_repository(user_id: str, account_id: str, repository: dict) -> None:
    conn = db.get_db()
    try:
        keys = {"repository_id": str(repository.get("id")), "user_id": user_id}
        fields = {
            "account_id": account_id,
            "full_name": repository.get("full_name"),
            "deeplink": repository.get("html_url"),
            "updated_at": to_utc_iso(now_utc()),
        }
        if db.update(conn, "repositories", keys, fields) == 0:
            db.insert(conn, "repositories", {**keys, **fields})
        conn.commit()
    finally:
        conn.close()


# ------------------
# SOURCE
# ------------------
class GithubPRSource:
    def __init__(
        self,
        base_url: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        max_workers: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = base_url or config.GITHUB_API_BASE_URL
        self.transport = transport
        self.max_workers = max_workers or config.SYNC_MAX_WORKERS
        self.timeout = timeout or config.EXTERNAL_TIMEOUT_SECONDS

    def _client(self, access_token: Optional[str]) -> httpx.Client:
        headers = {"Accept": "application/vnd.github+json"}
        if access_token:
            headers["Authorization"] = f"token {access_token}"
        return httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self.transport,
        )

    def get_pull_requests(self, user_id: str, account_id: str) -> PullRequestResult:
        db.log_event(user_id, "get_pull_requests")

        conn = db.get_db()
        try:
            token_row = get_external_token(conn, user_id, account_id, TASK_SERVICE_ID_GITHUB)
        except TokenNotFoundError:
            logger.error("failed to fetch Github API token for user %s", user_id)
            return PullRequestResult(error="failed to fetch Github API token")
        finally:
            conn.close()
        access_token = (token_row.get("token") or {}).get("access_token")

        with self._client(access_token) as client, ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="github-pr"
        ) as pool:
            user_future = pool.submit(_get_json, client, "user")
            teams_future = pool.submit(_get_json, client, "user/teams")
            repos_future = pool.submit(_get_json, client, "user/repos", {"sort": "pushed"})

            results = []
            for future, msg in (
                (user_future, "failed to fetch Github user"),
                (teams_future, "failed to fetch Github user teams"),
                (repos_future, "failed to fetch Github repos for user"),
            ):
                try:
                    results.append(future.result())
                except _FETCH_ERRORS as e:
                    should_log = handle_error_logging(e, user_id, msg)
                    return PullRequestResult(error=msg, suppressed=not should_log)
            github_user, user_teams, repositories = results
            if not github_user:
                return PullRequestResult(error="failed to fetch Github user")

            repo_futures = [
                pool.submit(
                    self._process_repository, client, pool, user_id, account_id, repository, github_user, user_teams
                )
                for repository in repositories
            ]

            error = None
            suppressed = True
            skipped_repository_ids: List[str] = []
            pr_futures: List[Tuple[datetime, str, Future]] = []
            for repository, future in zip(repositories, repo_futures):
                processed = future.result()
                if processed.error is not None:
                    error = "failed to process Github repo"
                    suppressed = suppressed and not processed.should_log
                    continue
                if processed.skipped:
                    skipped_repository_ids.append(str(repository.get("id")))
                pr_futures.extend(processed.pull_requests)

            pull_requests: List[PullRequest] = []
            skipped_pull_request_ids: List[str] = []
            conn = db.get_db()
            try:
                for request_time, id_external, future in pr_futures:
                    pull_request = future.result()
                    # None means that PR hit an error; keep going with the rest
                    if pull_request is None:
                        skipped_pull_request_ids.append(id_external)
                        continue

                    # cached and still open: nothing to write
                    if pull_request.id is not None and not pull_request.is_completed:
                        pull_requests.append(pull_request)
                        continue

                    pull_request.is_completed = False
                    pull_request.last_fetched = request_time
                    stored = db.update_or_create(
                        conn,
                        "pull_requests",
                        user_id,
                        pull_request.id_external,
                        pull_request.source_id,
                        _pull_request_fields(pull_request),
                    )
                    conn.commit()
                    pull_request.id = stored["id"]
                    pull_request.id_ordering = stored["id_ordering"] or 0
                    pull_requests.append(pull_request)
            except sqlite3.Error as e:
                logger.exception("failed to update or create pull request")
                return PullRequestResult(error=str(e))
            finally:
                conn.close()

        return PullRequestResult(
            pull_requests=pull_requests,
            error=error,
            suppressed=suppressed if error else False,
            skipped_pull_request_ids=skipped_pull_request_ids,
            skipped_repository_ids=skipped_repository_ids,
        )

    def _process_repository(
        self,
        client: httpx.Client,
        pool: ThreadPoolExecutor,
        user_id: str,
        account_id: str,
        repository: dict,
        github_user: dict,
        user_teams: list,
    ) -> ProcessRepositoryResult:
        try:
            _update_or_create_repository(user_id, account_id, repository)
        except sqlite3.Error as e:
            logger.exception("failed to update or create repository")
            return ProcessRepositoryResult(error=str(e), should_log=True)

        try:
            fetched = _get_json(client, f"{_repo_path(repository)}/pulls")
        except _FETCH_ERRORS as e:
            should_log = handle_error_logging(e, user_id, "failed to fetch Github PRs")
            if should_log:
                return ProcessRepositoryResult(error=str(e), should_log=True)
            # 404 / blocked / rate limited: nothing to show, but its cached PRs are not closed
            return ProcessRepositoryResult(skipped=True)
        db.log_event(user_id, "list_pull_requests")

        result = ProcessRepositoryResult()
        for pull_request in fetched:
            request_data = GithubPRRequestData(
                repository=repository,
                pull_request=pull_request,
                user=github_user,
                user_teams=user_teams,
                request_time=now_utc(),
            )
            future = pool.submit(self._get_pull_request_info, client, user_id, account_id, request_data)
            result.pull_requests.append((request_data.request_time, str(pull_request.get("id")), future))
        return result

    def _pull_request_has_been_modified(
        self, client: httpx.Client, user_id: str, request_data: GithubPRRequestData
    ) -> Tuple[bool, Optional[PullRequest]]:
        pull_request = request_data.pull_request

        conn = db.get_db()
        try:
            row = db.find_one_external(
                conn, "pull_requests", user_id, str(pull_request.get("id")), TASK_SOURCE_ID_GITHUB_PR
            )
        except sqlite3.Error:
            # if the DB read fails, fetch from Github
            logger.exception("unable to fetch pull request from db")
            return True, None
        finally:
            conn.close()
        if row is None:
            return True, None
        cached = _pull_request_from_row(row)

        # Github's list endpoints ignore conditional headers; ask the single-PR endpoint.
        headers = {}
        if cached.last_fetched is not None:
            headers["If-Modified-Since"] = http_date(cached.last_fetched)
        try:
            resp = client.get(
                f"{_repo_path(request_data.repository)}/pulls/{pull_request['number']}",
                headers=headers,
            )
        except httpx.HTTPError:
            logger.exception("error with github http request")
            return True, cached
        return resp.status_code != 304, cached

    def _get_pull_request_info(
        self, client: httpx.Client, user_id: str, account_id: str, request_data: GithubPRRequestData
    ) -> Optional[PullRequest]:
        db.log_event(user_id, "get_pull_request_info")

        has_been_modified, cached = self._pull_request_has_been_modified(client, user_id, request_data)
        if not has_been_modified:
            return cached

        repository = request_data.repository
        pull_request = request_data.pull_request
        github_user = request_data.user
        try:
            repo = _repo_path(repository)
            number = pull_request["number"]
            reviews = _get_json(client, f"{repo}/pulls/{number}/reviews")
            comments = get_comments(client, repository, pull_request, reviews)

            try:
                additions, deletions, commit_count = get_additions_deletions(client, repository, pull_request)
            except GithubAPIError as e:
                # Missing comparison (deleted branch): still show the PR, zeroed out
                if not e.is_not_found:
                    raise
                additions, deletions, commit_count = 0, 0, 0

            required_action = RequiredAction.none_needed.value
            is_owner = user_is_owner(github_user, pull_request)
            if is_owner or user_is_reviewer(github_user, pull_request, reviews, request_data.user_teams):
                reviewers = _get_json(client, f"{repo}/pulls/{number}/requested_reviewers")
                pull_request_full = _get_json(client, f"{repo}/pulls/{number}")
                head_sha = (pull_request.get("head") or {}).get("sha")
                check_runs = _get_json(client, f"{repo}/commits/{head_sha}/check-runs")

                required_action = get_pull_request_required_action(
                    GithubPRData(
                        requested_reviewers=get_reviewer_count(reviews, reviewers),
                        is_mergeable=bool(pull_request_full.get("mergeable")),
                        is_approved=pull_request_is_approved(reviews),
                        have_requested_changes=reviewers_have_requested_changes(reviews),
                        checks_did_fail=checks_did_fail(check_runs),
                        checks_did_finish=checks_did_finish(check_runs),
                        is_owned_by_user=is_owner,
                        user_login=github_user.get("login") or "",
                        user_is_reviewer=user_needs_to_submit_review(github_user, reviewers, request_data.user_teams),
                    )
                )
        except _FETCH_ERRORS as e:
            handle_error_logging(e, user_id, "failed to fetch Github PR details")
            return None

        return PullRequest(
            user_id=user_id,
            id_external=str(pull_request.get("id")),
            source_id=TASK_SOURCE_ID_GITHUB_PR,
            source_account_id=account_id,
            title=pull_request.get("title") or "",
            body=pull_request.get("body") or "",
            deeplink=pull_request.get("html_url") or "",
            repository_id=str(repository.get("id")),
            repository_name=repository.get("full_name") or "",
            number=number,
            author=(pull_request.get("user") or {}).get("login") or "",
            branch=(pull_request.get("head") or {}).get("ref") or "",
            base_branch=(pull_request.get("base") or {}).get("ref") or "",
            required_action=required_action,
            comments=comments,
            comment_count=len(comments),
            commit_count=commit_count,
            additions=additions,
            deletions=deletions,
            created_at_external=pull_request.get("created_at"),
            last_updated_at=pull_request.get("updated_at"),
        )
