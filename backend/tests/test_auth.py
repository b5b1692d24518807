from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

import app.auth as auth_module
from app.config import settings
from app.main import create_app

from conftest import CRON_SECRET


@pytest.fixture()
def auth_enabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "auth_enabled", True)
    monkeypatch.setattr(settings, "cognito_region", "us-east-1")
    monkeypatch.setattr(settings, "cognito_user_pool_id", "us-east-1_testpool")
    monkeypatch.setattr(settings, "cognito_app_client_id", "test-client-id")
    monkeypatch.setattr(settings, "cognito_issuer", "https://cognito-idp.us-east-1.amazonaws.com/us-east-1_testpool")


def _accept_token(monkeypatch: pytest.MonkeyPatch, claims: dict[str, object]) -> None:
    monkeypatch.setattr(auth_module, "decode_and_validate_cognito_token", lambda token: claims)


def test_protected_routes_require_bearer_token_when_auth_enabled(auth_enabled: None) -> None:
    with TestClient(create_app()) as client:
        for path in ("/jobs", "/api/jobs"):
            response = client.get(path)
            assert response.status_code == 401
            assert response.json()["detail"] == "Missing bearer token."


def test_protected_routes_accept_valid_bearer_token_when_auth_enabled(
    auth_enabled: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    _accept_token(monkeypatch, {"sub": "user-123", "token_use": "access", "client_id": "test-client-id"})
    with TestClient(create_app()) as client:
        for path in ("/jobs", "/api/jobs"):
            response = client.get(path, headers={"Authorization": "Bearer test-token"})
            assert response.status_code == 200
            assert response.json() == {"jobs": []}


def test_health_stays_public_when_auth_enabled(auth_enabled: None) -> None:
    with TestClient(create_app()) as client:
        assert client.get("/health").status_code == 200


def test_admin_routes_require_admin_group(auth_enabled: None, monkeypatch: pytest.MonkeyPatch) -> None:
    _accept_token(monkeypatch, {"sub": "user-123", "cognito:groups": ["analysts"]})
    with TestClient(create_app()) as client:
        response = client.get("/admin/monitor/status", headers={"Authorization": "Bearer test-token"})
    assert response.status_code == 403
    assert response.json()["detail"] == "Administrator access required."


def test_admin_routes_accept_admin_group(auth_enabled: None, monkeypatch: pytest.MonkeyPatch) -> None:
    _accept_token(monkeypatch, {"sub": "admin-1", "cognito:groups": ["admin"]})
    with TestClient(create_app()) as client:
        response = client.get("/api/admin/monitor/status", headers={"Authorization": "Bearer test-token"})
    assert response.status_code == 200
    assert response.json()["total_documents"] == 0


def test_current_user_id_falls_back_to_local_user() -> None:
    assert auth_module.current_user_id(None) == auth_module.LOCAL_USER_ID
    assert auth_module.current_user_id({"sub": "abc"}) == "abc"
    assert auth_module.current_user_id({"cognito:username": "jdoe"}) == "jdoe"


def test_cron_routes_require_shared_secret() -> None:
    with TestClient(create_app()) as client:
        missing = client.post("/cron/process-jobs")
        wrong = client.post("/cron/process-jobs", headers={"Authorization": "Bearer nope"})
        ok = client.post("/cron/process-jobs", headers={"Authorization": f"Bearer {CRON_SECRET}"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert wrong.json()["detail"] == "Invalid cron bearer token."
    assert ok.status_code == 200
    assert ok.json() == {"processed": False, "job": None}


def test_cron_routes_are_disabled_without_configured_secret() -> None:
    settings.cron_secret = ""
    with TestClient(create_app()) as client:
        response = client.post("/cron/poll", headers={"Authorization": "Bearer anything"})
    assert response.status_code == 503


def test_cron_routes_ignore_user_authentication(auth_enabled: None) -> None:
    with TestClient(create_app()) as client:
        response = client.post("/cron/process-jobs", headers={"Authorization": f"Bearer {CRON_SECRET}"})
    assert response.status_code == 200
