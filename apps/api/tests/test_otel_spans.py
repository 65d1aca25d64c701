from __future__ import annotations

from collections.abc import Generator
from typing import Any

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.config import get_settings
from leadflow.core.database import Base
from leadflow.crm.automation import PipelineAutomationOrchestrator, RuleMatcher
from leadflow.crm.models import CRMAutomationRule, CRMLead, CRMPosition, CRMTeamMember
from leadflow.otel import setup_inmemory_otel


TENANT = "tenant-a"


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
    exporter = setup_inmemory_otel("leadflow-api")
    exporter.clear()
    return exporter


def _seed(session: Session) -> CRMLead:
    position = CRMPosition(tenant_id=TENANT, title="Sales Agent", permission_set={})
    session.add(position)
    session.flush()
    session.add(CRMTeamMember(tenant_id=TENANT, position_id=position.id, position_title="Sales Agent", name="Alice"))
    session.add(
        CRMAutomationRule(
            tenant_id=TENANT,
            pipeline_stage="Qualified",
            rule_config={"tasks": [{"title": "Call", "assign_to_role": "Sales Agent"}]},
        )
    )
    lead = CRMLead(tenant_id=TENANT, pipeline_stage="Qualified")
    session.add(lead)
    session.commit()
    return lead


def _automation_spans(exporter: InMemorySpanExporter) -> list[Any]:
    return [span for span in exporter.get_finished_spans() if span.name == "pipeline_automation.execute"]


def test_automation_run_emits_span(db_session: Session, span_exporter: InMemorySpanExporter) -> None:
    lead = _seed(db_session)

    PipelineAutomationOrchestrator().run(db_session, lead.id, "Qualified", TENANT)

    spans = _automation_spans(span_exporter)
    assert len(spans) == 1
    attributes = spans[0].attributes
    assert attributes["lead_id"] == str(lead.id)
    assert attributes["stage"] == "Qualified"
    assert attributes["tenant_id"] == TENANT
    assert attributes["outcome"] == "succeeded"
    assert spans[0].status.status_code != StatusCode.ERROR


def test_failed_run_marks_span_as_error(db_session: Session, span_exporter: InMemorySpanExporter) -> None:
    class ExplodingMatcher(RuleMatcher):
        def find_active_rules(self, session: Session, tenant_id: str, stage: str) -> list:
            raise RuntimeError("boom")

    lead = _seed(db_session)

    outcome = PipelineAutomationOrchestrator(matcher=ExplodingMatcher()).run(db_session, lead.id, "Qualified", TENANT)

    assert outcome.status == "failed"
    spans = _automation_spans(span_exporter)
    assert len(spans) == 1
    assert spans[0].status.status_code == StatusCode.ERROR
    assert spans[0].attributes["outcome"] == "failed"
    assert any(event.name == "exception" for event in spans[0].events)
