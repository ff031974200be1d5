from __future__ import annotations

import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from app.core.auth import decode_token
from app.core.config import get_settings
from app.main import app


@pytest.fixture(autouse=True)
def jwt_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _token(claims: dict) -> str:
    return jwt.encode(claims, "test-secret", algorithm="HS256")


def test_decode_token_reads_roles_and_permissions() -> None:
    user = decode_token(_token({"sub": "sales-7", "roles": ["sales"], "permissions": ["ticketing.quotations.send"]}))

    assert user.sub == "sales-7"
    assert user.roles == ["sales"]
    assert user.permissions == ["ticketing.quotations.send"]
    assert user.is_anonymous is False


def test_decode_token_accepts_scope_string() -> None:
    user = decode_token(_token({"sub": "sales-8", "scope": "ticketing.quotations.read ticketing.quotations.send"}))

    assert user.roles == ["user"]
    assert user.permissions == ["ticketing.quotations.read", "ticketing.quotations.send"]


def test_me_endpoint_uses_bearer_token() -> None:
    with TestClient(app) as client:
        response = client.get(
            "/me",
            headers={"Authorization": f"Bearer {_token({'sub': 'sales-9', 'roles': ['sales'], 'permissions': ['crm.opportunities.read']})}"},
        )

    assert response.status_code == 200
    assert response.json() == {"sub": "sales-9", "roles": ["sales"], "permissions": ["crm.opportunities.read"]}


def test_invalid_token_falls_back_to_guest(caplog: pytest.LogCaptureFixture) -> None:
    with TestClient(app) as client:
        response = client.get("/me", headers={"Authorization": "Bearer not-a-token"})

    assert response.status_code == 200
    assert response.json() == {"sub": "anonymous", "roles": ["guest"], "permissions": []}
    assert any(record.getMessage() == "auth.invalid_token" for record in caplog.records)


def test_request_log_names_the_authenticated_user(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    with TestClient(app) as client:
        client.get("/me", headers={"Authorization": f"Bearer {_token({'sub': 'sales-10', 'roles': ['sales']})}"})
        client.get("/me")

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert [getattr(record, "user_id", None) for record in records] == ["sales-10", None]
