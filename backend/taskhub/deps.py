from typing import Optional

from fastapi import HTTPException, Request

from . import db


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_user_id(request: Request) -> Optional[str]:
    """User id from an internal API token, falling back to the login session."""
    token = bearer_token(request)
    if token:
        conn = db.get_db()
        try:
            row = db.find_one(conn, "internal_api_tokens", {"token": token})
        finally:
            conn.close()
        return row["user_id"] if row else None

    user = request.session.get("user")
    if user and user.get("id"):
        return user["id"]
    return None


def require_user_id(request: Request) -> str:
    user_id = get_user_id(request)
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user_id


def get_user(conn, user_id: str) -> dict:
    user = db.find_one(conn, "users", {"id": user_id})
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user
