from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Optional

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mailadmin.api import create_app
from mailadmin.config import Settings
from mailadmin.database import Database, hash_password
from mailadmin.models import Role, User

PASSWORD = "correct-horse-battery"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(database_path=tmp_path / "mailadmin.sqlite3")


@pytest.fixture()
def database(settings: Settings) -> Database:
    db = Database(settings.database_path)
    db.initialize()
    return db


@pytest.fixture()
def make_user(database: Database) -> Callable[..., User]:
    def factory(
        username: str,
        role: Role = Role.CLIENT,
        *,
        password: str = PASSWORD,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_active: bool = True,
        domain_id: Optional[str] = None,
    ) -> User:
        return database.insert_user(
            username=username,
            password_hash=hash_password(password),
            email=email or f"{username}@example.com",
            role=role,
            first_name=first_name,
            last_name=last_name,
            domain_id=domain_id,
            is_active=is_active,
        )

    return factory


@pytest.fixture()
def app(settings: Settings, database: Database):
    return create_app(settings=settings, database=database)


@pytest.fixture()
def client(app) -> TestClient:
    with TestClient(app) as test_client:
        yield test_client


def login(client: TestClient, username: str, password: str = PASSWORD):
    response = client.post("/api/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture()
def login_as(client: TestClient) -> Callable[..., dict]:
    def _login(username: str, password: str = PASSWORD) -> dict:
        return login(client, username, password)

    return _login
