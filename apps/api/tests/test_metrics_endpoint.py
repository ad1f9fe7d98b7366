from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def roles() -> list[str]:
    return [
        "system.metrics.read",
        "process.definitions.manage",
        "process.read",
        "process.execute",
    ]


@pytest.fixture()
def client(db_session: Session, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="11", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_process_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    definition = client.post(
        "/api/process/definitions",
        json={"name": "Metrics", "slug": f"metrics-{uuid.uuid4().hex[:8]}", "steps": [{"name": "One"}]},
    )
    assert definition.status_code == 201
    client.post(f"/api/process/definitions/{definition.json()['id']}/activate")

    execution = client.post("/api/process/executions", json={"definition_id": definition.json()["id"]})
    assert execution.status_code == 201
    advanced = client.post(f"/api/process/executions/{execution.json()['id']}/next", json={})
    assert advanced.status_code == 200
    stale = client.post(
        f"/api/process/executions/{execution.json()['id']}/next",
        json={"row_version": execution.json()["row_version"]},
    )
    assert stale.status_code == 409

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "process_events_total" in body
    assert "process_operation_duration_seconds" in body
    assert "process_operation_failures_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/process/executions/{id}/next"' in body
    assert 'event_type="EXECUTION_STARTED"' in body
    assert 'event_type="STEP_STARTED"' in body
    assert 'reason="process_execution_stale"' in body


def test_metrics_require_permission(client: TestClient, roles: list[str]) -> None:
    roles.remove("system.metrics.read")

    response = client.get("/metrics")

    assert response.status_code == 403


def test_metrics_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404
