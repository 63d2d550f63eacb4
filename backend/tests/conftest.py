# tests/conftest.py

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from types import SimpleNamespace

# taskhub.main initializes a database on import; keep it out of the source tree
os.environ.setdefault("TASKHUB_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="taskhub-tests-"), "import.db"))

import pytest
from fastapi.testclient import TestClient

from taskhub import config, db
from taskhub.routes.auth import complete_login


@pytest.fixture(autouse=True)
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Fresh SQLite file per test; every get_db() call (worker threads too) opens it."""
    path = tmp_path / "taskhub.db"
    monkeypatch.setattr(config, "DB_PATH", path)
    db.init_db(path)
    return path


@pytest.fixture()
def conn(db_path: Path):
    c = db.get_db()
    yield c
    c.close()


@pytest.fixture()
def login(db_path: Path):
    """Log a user in the same way the Google callback does, without Google."""

    def _login(email: str = "user@example.com", scopes: list | None = None) -> SimpleNamespace:
        c = db.get_db()
        user_id, token = complete_login(
            c,
            google_id=f"google-{email}",
            email=email,
            name=email.split("@")[0],
            token={"token": "google-access", "refresh_token": "google-refresh"},
            scopes=scopes if scopes is not None else [config.SCOPE_CALENDAR_EVENTS],
        )
        c.commit()
        c.close()
        return SimpleNamespace(
            id=user_id,
            email=email,
            token=token,
            headers={"Authorization": f"Bearer {token}"},
        )

    return _login


@pytest.fixture()
def user(login) -> SimpleNamespace:
    return login()


@pytest.fixture()
def client(db_path: Path):
    from taskhub.main import app

    app.dependency_overrides.clear()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
