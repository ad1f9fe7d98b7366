from __future__ import annotations

import os
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.otel import setup_inmemory_otel
from app.process import tasks


ALL_PERMISSIONS = [
    "process.definitions.manage",
    "process.read",
    "process.execute",
]


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("process-api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="7", roles=list(ALL_PERMISSIONS))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _start_execution(client: TestClient, correlation_id: str) -> dict:
    definition = client.post(
        "/api/process/definitions",
        json={"name": "Spans", "slug": f"spans-{uuid.uuid4().hex[:8]}", "steps": [{"name": "One"}]},
    )
    assert definition.status_code == 201
    client.post(f"/api/process/definitions/{definition.json()['id']}/activate")
    response = client.post(
        "/api/process/executions",
        json={"definition_id": definition.json()["id"]},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    _start_execution(client, "otel-corr-1")

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_operation_span_carries_execution_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    execution = _start_execution(client, "otel-corr-2")

    operation_spans = [span for span in span_exporter.get_finished_spans() if span.name == "process.start_execution"]
    assert operation_spans
    assert any(
        span.attributes.get("execution_id") == execution["id"]
        and span.attributes.get("correlation_id") == "otel-corr-2"
        for span in operation_spans
    )


def test_failed_operation_span_has_error_status(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    execution = _start_execution(client, "otel-corr-3")
    client.post(f"/api/process/executions/{execution['id']}/rollback", json={})
    span_exporter.clear()

    response = client.post(f"/api/process/executions/{execution['id']}/rollback", json={})
    assert response.status_code == 409

    (span,) = [span for span in span_exporter.get_finished_spans() if span.name == "process.rollback"]
    assert span.status.status_code == StatusCode.ERROR


def test_job_span_contains_execution_and_correlation(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    execution = _start_execution(client, "otel-job-corr-0")
    monkeypatch.setattr(tasks, "SessionLocal", lambda: db_session)
    monkeypatch.setattr(db_session, "close", lambda: None)

    tasks.advance_execution_task(execution_id=execution["id"], correlation_id="otel-job-corr-1")

    job_spans = [span for span in span_exporter.get_finished_spans() if span.name == "process.job.advance_execution"]
    assert job_spans
    assert any(
        span.attributes.get("execution_id") == execution["id"]
        and span.attributes.get("job_type") == "advance_execution"
        for span in job_spans
    )
    nested = [span for span in span_exporter.get_finished_spans() if span.name == "process.execute_next_step"]
    assert any(span.attributes.get("correlation_id") == "otel-job-corr-1" for span in nested)
