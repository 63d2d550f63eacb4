import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from .. import db
from ..deps import require_user_id
from ..external.sources import (
    SERVICES,
    TASK_SERVICE_ID_GITHUB,
    TASK_SERVICE_ID_GOOGLE,
    TASK_SOURCE_ID_GCAL,
    TASK_SOURCE_ID_GITHUB_PR,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/linked_accounts/supported_types/")
def supported_account_types(request: Request):
    require_user_id(request)
    return [
        {
            "id": service.id,
            "name": service.name,
            "logo": service.logo,
        }
        for service in SERVICES.values()
        if service.is_linkable
    ]


@router.get("/linked_accounts/")
def linked_accounts_list(request: Request):
    user_id = require_user_id(request)
    conn = db.get_db()
    tokens = db.find(conn, "external_api_tokens", user_id, order_by="created_at ASC")
    conn.close()

    results = []
    for token in tokens:
        service = SERVICES.get(token["service_id"])
        if service is None:
            logger.warning("token %s has unknown service %s", token["id"], token["service_id"])
            continue
        results.append(
            {
                "id": token["id"],
                "display_id": token.get("display_id") or service.name,
                "name": service.name,
                "logo": service.logo,
                "is_unlinkable": service.is_unlinkable and not token.get("is_primary_login"),
                "has_bad_token": bool(token.get("is_bad_token")),
            }
        )
    return results


@router.delete("/linked_accounts/{account_id}/")
def linked_account_delete(account_id: str, request: Request):
    user_id = require_user_id(request)
    conn = db.get_db()
    try:
        token = db.find_one(conn, "external_api_tokens", {"id": account_id, "user_id": user_id})
        if token is None:
            return JSONResponse({"error": "account not found"}, status_code=404)

        service = SERVICES.get(token["service_id"])
        if token.get("is_primary_login") or service is None or not service.is_unlinkable:
            return JSONResponse({"error": "account is not unlinkable"}, status_code=400)

        external_account = token["account_id"]
        if token["service_id"] == TASK_SERVICE_ID_GITHUB:
            conn.execute(
                "DELETE FROM repositories WHERE user_id=? AND account_id=?",
                (user_id, external_account),
            )
            conn.execute(
                "DELETE FROM pull_requests WHERE user_id=? AND source_id=? AND source_account_id=?",
                (user_id, TASK_SOURCE_ID_GITHUB_PR, external_account),
            )
        elif token["service_id"] == TASK_SERVICE_ID_GOOGLE:
            conn.execute(
                "DELETE FROM calendar_accounts WHERE user_id=? AND source_id=? AND id_external=?",
                (user_id, TASK_SOURCE_ID_GCAL, external_account),
            )
            conn.execute(
                "DELETE FROM calendar_events WHERE user_id=? AND source_id=? AND source_account_id=?",
                (user_id, TASK_SOURCE_ID_GCAL, external_account),
            )

        conn.execute("DELETE FROM external_api_tokens WHERE id=?", (account_id,))
        conn.commit()
    finally:
        conn.close()
    logger.info("unlinked %s account %s", token["service_id"], external_account)
    return {}
