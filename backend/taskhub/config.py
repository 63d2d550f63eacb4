import os
from pathlib import Path

from dotenv import load_dotenv


# ------------------
# ENV / CONFIG
# ------------------
BASE_DIR = Path(__file__).resolve().parent.parent  # backend/

load_dotenv(BASE_DIR / ".env")

GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
BASE_URL = os.getenv("BASE_URL", "http://localhost:8000")
SESSION_SECRET = os.getenv("SESSION_SECRET", "dev-secret")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
    if o.strip()
]

DB_PATH = Path(os.getenv("TASKHUB_DB_PATH", str(BASE_DIR / "taskhub.db")))

# File logging only when LOG_DIR is set
LOG_DIR = os.getenv("LOG_DIR") or None
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

GITHUB_API_BASE_URL = os.getenv("GITHUB_API_BASE_URL", "https://api.github.com/")

# Applied to every single external request, not to a whole sync.
EXTERNAL_TIMEOUT_SECONDS = float(os.getenv("EXTERNAL_TIMEOUT_SECONDS", "30"))
SYNC_MAX_WORKERS = int(os.getenv("SYNC_MAX_WORKERS", "16"))

# Google login scopes. The calendar scope on its own grants multi-calendar access.
SCOPE_CALENDAR_MULTI = "https://www.googleapis.com/auth/calendar"
SCOPE_CALENDAR_EVENTS = "https://www.googleapis.com/auth/calendar.events"

SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    SCOPE_CALENDAR_EVENTS,
]

# Caps on list endpoints
MAX_COMPLETED_TASKS = 100
DEFAULT_SECTION_NAME = "Task Inbox"
DEFAULT_SECTION_ID = "000000000000000000000001"


def require_google_oauth() -> None:
    if not GOOGLE_CLIENT_ID or not GOOGLE_CLIENT_SECRET:
        raise RuntimeError("Missing GOOGLE_CLIENT_ID or GOOGLE_CLIENT_SECRET")
