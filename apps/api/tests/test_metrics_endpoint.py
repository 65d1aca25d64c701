from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.config import get_settings
from leadflow.core.database import Base, get_db
from leadflow.crm.models import CRMAutomationRule, CRMLead, CRMPipelineStage, CRMPosition, CRMTeamMember
from leadflow.main import app


HEADERS = {"x-tenant-id": "tenant-a"}


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
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _sample(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


def _seed(session: Session) -> CRMLead:
    session.add_all(
        [
            CRMPipelineStage(name="Attempting Contact", display_name="Attempting Contact", order=1),
            CRMPipelineStage(name="Qualified", display_name="Qualified", order=2),
        ]
    )
    position = CRMPosition(tenant_id="tenant-a", title="Sales Agent", permission_set={})
    session.add(position)
    session.flush()
    session.add(CRMTeamMember(tenant_id="tenant-a", position_id=position.id, position_title="Sales Agent", name="Alice"))
    session.add(
        CRMAutomationRule(
            tenant_id="tenant-a",
            pipeline_stage="Qualified",
            rule_config={
                "tasks": [
                    {"title": "Call", "assign_to_role": "Sales Agent"},
                    {"title": "Legal review", "assign_to_role": "Lawyer"},
                ]
            },
        )
    )
    lead = CRMLead(tenant_id="tenant-a", pipeline_stage="Attempting Contact")
    session.add(lead)
    session.commit()
    return lead


def test_metrics_endpoint_exposes_automation_counters(client: TestClient, db_session: Session) -> None:
    lead = _seed(db_session)
    runs_before = _sample("pipeline_automation_runs_total", {"outcome": "succeeded"})
    created_before = _sample("pipeline_automation_tasks_created_total")
    skipped_before = _sample("pipeline_automation_templates_skipped_total", {"reason": "no_eligible_member"})
    rotation_before = _sample("round_robin_assignments_total", {"mode": "rotation"})

    moved = client.patch(f"/api/crm/leads/{lead.id}/pipeline-stage", json={"stage": "Qualified"}, headers=HEADERS)
    assert moved.status_code == 200

    assert _sample("pipeline_automation_runs_total", {"outcome": "succeeded"}) == runs_before + 1
    assert _sample("pipeline_automation_tasks_created_total") == created_before + 1
    assert _sample("pipeline_automation_templates_skipped_total", {"reason": "no_eligible_member"}) == skipped_before + 1
    assert _sample("round_robin_assignments_total", {"mode": "rotation"}) == rotation_before + 1

    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "pipeline_automation_runs_total" in response.text
    assert 'http_requests_total{method="PATCH",path="/api/crm/leads/{id}/pipeline-stage",status="200"}' in response.text


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404
