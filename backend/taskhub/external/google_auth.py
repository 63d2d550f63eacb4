import logging
from datetime import timezone
from typing import Optional

from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from .. import config, db
from ..core.dates import parse_dt

logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"


def oauth_flow(state: Optional[str] = None) -> Flow:
    config.require_google_oauth()
    client_config = {
        "web": {
            "client_id": config.GOOGLE_CLIENT_ID,
            "client_secret": config.GOOGLE_CLIENT_SECRET,
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": TOKEN_URI,
        }
    }

    flow = Flow.from_client_config(
        client_config=client_config,
        scopes=config.SCOPES,
        state=state,
    )
    flow.redirect_uri = f"{config.BASE_URL}/login/callback/"
    return flow


def token_from_credentials(creds: Credentials) -> dict:
    return {
        "token": creds.token,
        "refresh_token": creds.refresh_token,
        "token_uri": creds.token_uri,
        "client_id": creds.client_id,
        "client_secret": creds.client_secret,
        "scopes": list(creds.scopes or []),
        "expiry": creds.expiry.isoformat() if creds.expiry else None,
    }


def credentials_from_token(token_row: dict) -> Credentials:
    """
    Rebuild Google credentials from a stored external_api_tokens row, refreshing
    (and persisting the new access token) when it has expired.
    """
    data = token_row.get("token") or {}

    creds = Credentials(
        token=data.get("token"),
        refresh_token=data.get("refresh_token"),
        token_uri=data.get("token_uri") or TOKEN_URI,
        client_id=data.get("client_id") or config.GOOGLE_CLIENT_ID,
        client_secret=data.get("client_secret") or config.GOOGLE_CLIENT_SECRET,
        scopes=data.get("scopes") or token_row.get("scopes"),
    )
    if data.get("expiry"):
        # google-auth compares against a naive UTC datetime
        creds.expiry = parse_dt(data["expiry"]).astimezone(timezone.utc).replace(tzinfo=None)

    if creds.expired and creds.refresh_token:
        creds.refresh(GoogleRequest())
        conn = db.get_db()
        try:
            db.update(
                conn,
                "external_api_tokens",
                {"id": token_row["id"]},
                {"token": {**data, **token_from_credentials(creds)}},
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("refreshed google token for account %s", token_row.get("account_id"))

    return creds
