"""Tests for app wiring and the health endpoint."""

import importlib

import pytest
from fastapi.testclient import TestClient

from config import settings
from error_monitoring import capture_error


@pytest.fixture
def app_module(tmp_path, monkeypatch):
    # the module builds a default app on import; keep its files out of the project
    monkeypatch.setattr(settings, "db_path", tmp_path / "default.db")
    monkeypatch.setattr(settings, "media_dir", tmp_path / "default-media")
    return importlib.import_module("app")


def test_health_reports_database_and_errors(app_module, db, tmp_path):
    capture_error(RuntimeError("model crashed"), "processing", {"memory_id": "m1"})
    application = app_module.create_app(db, tmp_path / "media")

    with TestClient(application) as client:
        response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["database"]["connection_test"] is True
    assert body["errors"]["errors_last_hour"] == 1
    assert body["recent_errors"][0]["component"] == "processing"
    assert body["recent_errors"][0]["message"] == "model crashed"
    assert (tmp_path / "media").is_dir()


def test_app_serves_memory_routes(app_module, db, tmp_path):
    application = app_module.create_app(db, tmp_path / "media")

    with TestClient(application) as client:
        created = client.post(
            "/api/memories",
            json={"local_id": "app-1", "memory_type": "moment", "input_text": "hello"},
        )
        feed = client.get("/api/memories").json()

    assert created.status_code == 200
    assert [m["id"] for m in feed["memories"]] == [created.json()["memory_id"]]
