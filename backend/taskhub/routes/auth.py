import logging
import secrets
import sqlite3
import warnings

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2 import id_token

from .. import config, db
from ..core.dates import now_iso
from ..deps import bearer_token, require_user_id
from ..external.google_auth import oauth_flow, token_from_credentials
from ..external.sources import TASK_SERVICE_ID_GOOGLE

logger = logging.getLogger(__name__)

router = APIRouter()


# ------------------
# HELPERS
# ------------------
def issue_internal_token(conn: sqlite3.Connection, user_id: str) -> str:
    token = secrets.token_urlsafe(32)
    conn.execute(
        "INSERT INTO internal_api_tokens (token, user_id, created_at) VALUES (?, ?, ?)",
        (token, user_id, now_iso()),
    )
    return token


def complete_login(
    conn: sqlite3.Connection,
    google_id: str,
    email: str,
    name: str,
    token: dict,
    scopes: list,
) -> tuple:
    """
    Upsert the user and their primary Google account, then issue an internal API
    token. Returns (user_id, internal_token).
    """
    user = db.find_one(conn, "users", {"google_id": google_id})
    if user is None:
        user_id = db.insert(
            conn,
            "users",
            {"email": email, "name": name, "google_id": google_id, "created_at": now_iso()},
        )
    else:
        user_id = user["id"]
        db.update(conn, "users", {"id": user_id}, {"email": email, "name": name})

    keys = {"user_id": user_id, "service_id": TASK_SERVICE_ID_GOOGLE, "account_id": email}
    fields = {"display_id": email, "token": token, "scopes": scopes, "is_bad_token": False, "is_primary_login": True}
    if db.update(conn, "external_api_tokens", keys, fields) == 0:
        db.insert(conn, "external_api_tokens", {**keys, **fields, "created_at": now_iso()})

    return user_id, issue_internal_token(conn, user_id)


# ------------------
# AUTH ROUTES
# ------------------
@router.get("/login/")
def login(request: Request):
    flow = oauth_flow()
    auth_url, state = flow.authorization_url(
        access_type="offline",
        include_granted_scopes="true",
        prompt="consent",
    )
    request.session["oauth_state"] = state
    return RedirectResponse(auth_url)


@router.get("/login/callback/")
def login_callback(request: Request):
    state = request.session.get("oauth_state")
    if not state:
        return JSONResponse(
            {"error": "Missing OAuth state in session. Try /login/ again."},
            status_code=400,
        )

    flow = oauth_flow(state=state)
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", message=r"Scope has changed.*")
        flow.fetch_token(authorization_response=str(request.url))
    credentials = flow.credentials

    idinfo = id_token.verify_oauth2_token(
        credentials.id_token,
        GoogleRequest(),
        config.GOOGLE_CLIENT_ID,
        clock_skew_in_seconds=60,
    )
    email = idinfo.get("email")
    if not email:
        return JSONResponse({"error": "Google account has no email"}, status_code=400)

    conn = db.get_db()
    try:
        user_id, internal_token = complete_login(
            conn,
            google_id=idinfo.get("sub"),
            email=email,
            name=idinfo.get("name") or "",
            token=token_from_credentials(credentials),
            scopes=list(credentials.scopes or []),
        )
        conn.commit()
    finally:
        conn.close()
    logger.info("user %s logged in", user_id)

    request.session.pop("oauth_state", None)
    request.session["user"] = {"id": user_id, "email": email, "name": idinfo.get("name")}

    response = RedirectResponse(url=config.FRONTEND_URL)
    response.set_cookie("authToken", internal_token, samesite="lax")
    return response


@router.post("/logout/")
def logout(request: Request):
    require_user_id(request)
    token = bearer_token(request)
    if token:
        conn = db.get_db()
        conn.execute("DELETE FROM internal_api_tokens WHERE token=?", (token,))
        conn.commit()
        conn.close()
    request.session.pop("user", None)
    return {}


@router.get("/ping/")
def ping(request: Request):
    require_user_id(request)
    return "success"
