from fastapi.testclient import TestClient

from app.config import settings
from app.main import app
from app.version import APP_VERSION


def test_root_reports_service_and_version() -> None:
    with TestClient(app) as client:
        response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"service": "regbrief-backend", "status": "running", "version": APP_VERSION}


def test_health_endpoint() -> None:
    with TestClient(app) as client:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


def test_ready_endpoint_checks_database_and_storage() -> None:
    with TestClient(app) as client:
        response = client.get("/ready")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ready"
    assert payload["checks"]["db"]["ok"] is True
    assert payload["checks"]["storage"] == {"ok": True, "backend": "local"}


def test_ready_endpoint_reports_unsupported_storage_backend() -> None:
    settings.storage_backend = "ftp"
    with TestClient(app) as client:
        response = client.get("/ready")
    assert response.status_code == 503
    payload = response.json()
    assert payload["status"] == "not_ready"
    assert payload["checks"]["storage"]["ok"] is False
    assert "ftp" in payload["checks"]["storage"]["error"]
