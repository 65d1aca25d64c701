from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.config import get_settings
from leadflow.core.database import Base, get_db
from leadflow.crm.models import CRMAutomationRule
from leadflow.main import app
from leadflow.models.audit import AuditLog


HEADERS = {"x-tenant-id": "tenant-a", "x-actor-id": "manager-1"}
OTHER_HEADERS = {"x-tenant-id": "tenant-b", "x-actor-id": "manager-2"}


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
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _rule_payload(stage: str = "Qualified", **overrides: object) -> dict:
    payload = {
        "pipeline_stage": stage,
        "rule_config": {
            "tasks": [
                {"title": "Confirm budget", "description": "Ask about budget", "assign_to_role": "Sales Agent"},
                {"title": "Send proposal", "assign_to_role": "Closer", "due_in_hours": 48},
            ]
        },
    }
    payload.update(overrides)
    return payload


def test_create_rule_stores_config_and_audits(client: TestClient, db_session: Session) -> None:
    response = client.post("/api/crm/automation-rules", json=_rule_payload(), headers=HEADERS)

    assert response.status_code == 201
    body = response.json()
    assert body["tenant_id"] == "tenant-a"
    assert body["is_active"] is True
    assert body["rule_config"]["tasks"][0] == {
        "title": "Confirm budget",
        "description": "Ask about budget",
        "assign_to_role": "Sales Agent",
    }
    assert body["rule_config"]["tasks"][1]["due_in_hours"] == 48

    audit_row = db_session.scalar(select(AuditLog).where(AuditLog.action == "automation_rule_created"))
    assert audit_row.entity_id == body["id"]
    assert audit_row.actor_id == "manager-1"
    assert audit_row.event_metadata == {"pipeline_stage": "Qualified", "task_count": 2}


@pytest.mark.parametrize(
    "rule_config",
    [
        {},
        {"tasks": []},
        {"tasks": [{"title": "No role"}]},
        {"tasks": [{"assign_to_role": "Sales Agent"}]},
        {"tasks": [{"title": "Bad due", "assign_to_role": "Sales Agent", "due_in_hours": 0}]},
    ],
)
def test_invalid_rule_config_is_rejected(client: TestClient, db_session: Session, rule_config: dict) -> None:
    response = client.post(
        "/api/crm/automation-rules",
        json={"pipeline_stage": "Qualified", "rule_config": rule_config},
        headers=HEADERS,
    )

    assert response.status_code == 422
    assert db_session.scalar(select(CRMAutomationRule.id)) is None


def test_rules_are_listed_per_tenant(client: TestClient) -> None:
    client.post("/api/crm/automation-rules", json=_rule_payload("Qualified"), headers=HEADERS)
    client.post("/api/crm/automation-rules", json=_rule_payload("Proposal"), headers=OTHER_HEADERS)

    mine = client.get("/api/crm/automation-rules", headers=HEADERS)
    theirs = client.get("/api/crm/automation-rules", headers=OTHER_HEADERS)

    assert [rule["pipeline_stage"] for rule in mine.json()] == ["Qualified"]
    assert [rule["pipeline_stage"] for rule in theirs.json()] == ["Proposal"]


def test_toggle_flips_active_flag(client: TestClient, db_session: Session) -> None:
    rule_id = client.post("/api/crm/automation-rules", json=_rule_payload(), headers=HEADERS).json()["id"]

    first = client.patch(f"/api/crm/automation-rules/{rule_id}/toggle", headers=HEADERS)
    second = client.patch(f"/api/crm/automation-rules/{rule_id}/toggle", headers=HEADERS)

    assert first.json()["is_active"] is False
    assert second.json()["is_active"] is True
    metadata = db_session.scalars(
        select(AuditLog.event_metadata).where(AuditLog.action == "automation_rule_updated").order_by(AuditLog.id)
    ).all()
    assert metadata == [{"is_active": False}, {"is_active": True}]


def test_update_replaces_config(client: TestClient) -> None:
    rule_id = client.post("/api/crm/automation-rules", json=_rule_payload(), headers=HEADERS).json()["id"]

    response = client.put(
        f"/api/crm/automation-rules/{rule_id}",
        json={"rule_config": {"tasks": [{"title": "Only task", "assign_to_role": "Closer"}]}},
        headers=HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["pipeline_stage"] == "Qualified"
    assert response.json()["rule_config"] == {"tasks": [{"title": "Only task", "description": "", "assign_to_role": "Closer"}]}


def test_delete_removes_rule_and_hides_it_from_other_tenants(client: TestClient, db_session: Session) -> None:
    rule_id = client.post("/api/crm/automation-rules", json=_rule_payload(), headers=HEADERS).json()["id"]

    foreign = client.delete(f"/api/crm/automation-rules/{rule_id}", headers=OTHER_HEADERS)
    assert foreign.status_code == 404
    assert foreign.json()["code"] == "crm_automation_rule_delete_failed"

    deleted = client.delete(f"/api/crm/automation-rules/{rule_id}", headers=HEADERS)
    assert deleted.status_code == 200
    assert deleted.json() == {"status": "deleted"}

    missing = client.get(f"/api/crm/automation-rules/{rule_id}", headers=HEADERS)
    assert missing.status_code == 404
    assert missing.json()["message"] == "Automation rule not found"
    assert db_session.scalar(select(AuditLog.id).where(AuditLog.action == "automation_rule_deleted")) is not None
