import logging
import sqlite3
from typing import List, Sequence

from fastapi import APIRouter, Depends, Request

from .. import db
from ..core.dates import now_iso
from ..core.schemas import ACTION_ORDERING
from ..deps import require_user_id
from ..external.github_pr import GithubPRSource
from ..external.sources import TASK_SERVICE_ID_GITHUB, TASK_SOURCE_ID_GITHUB_PR, get_external_tokens, get_source_details

logger = logging.getLogger(__name__)

router = APIRouter()


def get_github_source() -> GithubPRSource:
    return GithubPRSource()


# ------------------
# HELPERS
# ------------------
def pull_request_result(row: dict) -> dict:
    source = get_source_details(row["source_id"])
    return {
        "id": row["id"],
        "title": row.get("title") or "",
        "number": row.get("number") or 0,
        "status": {
            "text": row.get("required_action") or "",
            "priority": ACTION_ORDERING.get(row.get("required_action"), len(ACTION_ORDERING)),
        },
        "author": row.get("author") or "",
        "num_comments": row.get("comment_count") or 0,
        "comments": row.get("comments") or [],
        "deeplink": row.get("deeplink") or "",
        "branch": row.get("branch") or "",
        "base_branch": row.get("base_branch") or "",
        "additions": row.get("additions") or 0,
        "deletions": row.get("deletions") or 0,
        "commit_count": row.get("commit_count") or 0,
        "created_at": row.get("created_at_external") or "",
        "updated_at": row.get("last_updated_at") or "",
        "source": {"name": source.name, "logo": source.logo},
    }


def sort_pull_requests(rows: List[dict]) -> List[dict]:
    # most urgent action first, then most recently updated
    rows = sorted(rows, key=lambda r: r.get("last_updated_at") or "", reverse=True)
    return sorted(rows, key=lambda r: ACTION_ORDERING.get(r.get("required_action"), len(ACTION_ORDERING)))


def mark_missing_pull_requests_completed(
    conn: sqlite3.Connection,
    user_id: str,
    account_id: str,
    kept_ids: List[str],
    skipped_external_ids: Sequence[str] = (),
    skipped_repository_ids: Sequence[str] = (),
) -> int:
    """
    A clean sync that no longer returns a cached open PR means it was merged or closed.
    PRs and repositories the sync could not fetch are left as they are.
    """
    sql = """
        UPDATE pull_requests SET is_completed=1, completed_at=?
        WHERE user_id=? AND source_id=? AND source_account_id=? AND is_completed=0
    """
    params = [now_iso(), user_id, TASK_SOURCE_ID_GITHUB_PR, account_id]
    for column, values in (
        ("id", kept_ids),
        ("id_external", skipped_external_ids),
        ("repository_id", skipped_repository_ids),
    ):
        if values:
            sql += f" AND {column} NOT IN ({', '.join('?' for _ in values)})"
            params.extend(values)
    return conn.execute(sql, params).rowcount


def repositories_with_pull_requests(conn: sqlite3.Connection, user_id: str) -> List[dict]:
    repositories = db.find(conn, "repositories", user_id, order_by="full_name ASC")
    open_prs = db.find(conn, "pull_requests", user_id, "is_completed=0")

    by_repository = {}
    for pr in open_prs:
        by_repository.setdefault(pr.get("repository_id"), []).append(pr)

    results = []
    for repository in repositories:
        prs = by_repository.get(repository["repository_id"])
        if not prs:
            continue
        results.append(
            {
                "id": repository["repository_id"],
                "name": repository.get("full_name") or "",
                "deeplink": repository.get("deeplink") or "",
                "pull_requests": [pull_request_result(pr) for pr in sort_pull_requests(prs)],
            }
        )
    return results


# ------------------
# PULL REQUEST ROUTES
# ------------------
@router.get("/pull_requests/")
def pull_requests_list(request: Request, source: GithubPRSource = Depends(get_github_source)):
    user_id = require_user_id(request)

    conn = db.get_db()
    tokens = get_external_tokens(conn, user_id, TASK_SERVICE_ID_GITHUB)
    conn.close()

    for token in tokens:
        account_id = token["account_id"]
        result = source.get_pull_requests(user_id, account_id)
        if result.error is not None:
            if not result.suppressed:
                logger.warning("github sync for account %s failed: %s", account_id, result.error)
            continue

        conn = db.get_db()
        try:
            closed = mark_missing_pull_requests_completed(
                conn,
                user_id,
                account_id,
                [pr.id for pr in result.pull_requests if pr.id],
                result.skipped_pull_request_ids,
                result.skipped_repository_ids,
            )
            conn.commit()
        finally:
            conn.close()
        if closed:
            logger.info("marked %d pull requests completed for account %s", closed, account_id)

    conn = db.get_db()
    try:
        return repositories_with_pull_requests(conn, user_id)
    finally:
        conn.close()
