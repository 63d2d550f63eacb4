from fastapi import APIRouter, Request

from .. import db
from ..deps import require_user_id
from ..external.google_calendar import (
    ACCESS_CONTROL_OWNER,
    ACCESS_CONTROL_WRITER,
    has_multi_calendar_scope,
    has_primary_calendar_scope,
)
from ..external.sources import TASK_SOURCE_ID_GCAL

router = APIRouter()


@router.get("/calendars/")
def calendars_list(request: Request):
    user_id = require_user_id(request)
    conn = db.get_db()
    accounts = db.find(conn, "calendar_accounts", user_id, "source_id=?", (TASK_SOURCE_ID_GCAL,))
    conn.close()

    results = []
    for account in accounts:
        calendars = [
            {
                "calendar_id": c.get("calendar_id"),
                "color_id": c.get("color_id") or "",
                "title": c.get("title") or "",
                "can_write": c.get("access_role") in (ACCESS_CONTROL_OWNER, ACCESS_CONTROL_WRITER),
                "access_role": c.get("access_role") or "",
                "color_background": c.get("color_background") or "",
                "color_foreground": c.get("color_foreground") or "",
            }
            for c in account.get("calendars") or []
        ]
        results.append(
            {
                "account_id": account["id_external"],
                "calendars": calendars,
                "has_multical_scopes": has_multi_calendar_scope(account.get("scopes")),
                "has_primary_calendar_scopes": has_primary_calendar_scope(account.get("scopes")),
            }
        )
    return results
