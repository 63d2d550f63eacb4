"""
taskhub API: one inbox for tasks, calendar events, pull requests and notes.
"""

# ------------------
# Imports
# ------------------
import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from . import config, db
from .logging_setup import setup_logging
from .routes import (
    auth,
    calendars,
    events,
    linked_accounts,
    misc,
    notes,
    pull_requests,
    sections,
    tasks,
    views,
)

logger = logging.getLogger(__name__)

# Local OAuth callbacks run over plain http
os.environ.setdefault("OAUTHLIB_INSECURE_TRANSPORT", "1")


# ------------------
# APP + MIDDLEWARE
# ------------------
setup_logging(log_dir=config.LOG_DIR, console_level=config.LOG_LEVEL)

app = FastAPI(title="taskhub")
db.init_db()

app.add_middleware(
    SessionMiddleware,
    secret_key=config.SESSION_SECRET,
    same_site="lax",
    https_only=False,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------
# EXCEPTION HANDLER
# ------------------
@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse({"error": "internal server error"}, status_code=500)


# ------------------
# HEALTH
# ------------------
@app.get("/health")
def health():
    return {
        "status": "ok",
        "google_oauth_configured": bool(config.GOOGLE_CLIENT_ID and config.GOOGLE_CLIENT_SECRET),
        "github_api": config.GITHUB_API_BASE_URL,
    }


# ------------------
# ROUTES
# ------------------
for module in (auth, tasks, sections, notes, events, calendars, pull_requests, linked_accounts, views, misc):
    app.include_router(module.router)
