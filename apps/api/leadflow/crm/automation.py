"""Pipeline stage automation.

When a lead enters a pipeline stage for the first time, every active rule the
tenant configured for that stage turns its task templates into tasks. Each
task goes to the next eligible member of the template's position in
round-robin order. The lead is reassigned to that member, the member is
notified, and an audit record is written.

The caller commits the stage change before invoking the engine. The engine
then runs in its own transaction and never raises: failures are rolled back,
logged, and reported as a ``failed`` outcome.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError
from sqlalchemy.orm import Session

from leadflow import events
from leadflow.context import reset_tenant_id, set_tenant_id
from leadflow.core.config import get_settings
from leadflow.crm.models import CRMLead, CRMTask, CRMTeamMember, utcnow
from leadflow.crm.repositories import (
    AutomationRuleRepository,
    LeadRepository,
    NotificationRepository,
    PositionRepository,
    StageVisitRepository,
    TaskRepository,
    TeamMemberRepository,
)
from leadflow.crm.schemas import RuleConfig, TaskTemplate
from leadflow.metrics import (
    observe_automation_run,
    observe_round_robin_assignment,
    observe_task_materialized,
    observe_template_skipped,
)
from leadflow.services.audit import write_audit_log
from leadflow.utils.business_time import business_date_for


logger = logging.getLogger("leadflow.crm.automation")
tracer = trace.get_tracer("leadflow.crm.automation")

OutcomeStatus = Literal["succeeded", "skipped", "failed"]


@dataclass
class AutomationOutcome:
    status: OutcomeStatus
    lead_id: uuid.UUID
    stage: str
    tenant_id: str
    reason: str | None = None
    task_ids: list[uuid.UUID] = field(default_factory=list)
    skipped_templates: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MatchedRule:
    id: uuid.UUID
    pipeline_stage: str
    templates: list[TaskTemplate]


@dataclass
class StageReentryGuard:
    visits: StageVisitRepository = StageVisitRepository()

    def has_visited(self, session: Session, lead_id: uuid.UUID, stage: str) -> bool:
        return self.visits.exists(session, lead_id, stage)

    def record_visit(
        self,
        session: Session,
        tenant_id: str,
        lead_id: uuid.UUID,
        stage: str,
        *,
        now: datetime | None = None,
    ) -> bool:
        return self.visits.insert_if_absent(session, tenant_id, lead_id, stage, business_date_for(now))


@dataclass
class RuleMatcher:
    rules: AutomationRuleRepository = AutomationRuleRepository()

    def find_active_rules(self, session: Session, tenant_id: str, stage: str) -> list[MatchedRule]:
        matched: list[MatchedRule] = []
        for row in self.rules.find_active(session, tenant_id, stage):
            try:
                config = RuleConfig.model_validate(row.rule_config)
            except ValidationError as exc:
                logger.warning(
                    "automation_rule_invalid",
                    extra={
                        "rule_id": str(row.id),
                        "stage": stage,
                        "tenant_id": tenant_id,
                        "error": str(exc),
                    },
                )
                continue
            matched.append(MatchedRule(id=row.id, pipeline_stage=row.pipeline_stage, templates=config.tasks))
        return matched


@dataclass
class RoundRobinAssignor:
    positions: PositionRepository = PositionRepository()
    members: TeamMemberRepository = TeamMemberRepository()

    def next_member(self, session: Session, tenant_id: str, position_title: str) -> CRMTeamMember | None:
        position = self.positions.find(session, tenant_id, position_title)
        if position is None:
            # Legacy data: members carry a free-text title but no position row.
            candidates = self.members.find_eligible_by_title(session, tenant_id, position_title)
            logger.info(
                "round_robin_position_missing",
                extra={"tenant_id": tenant_id, "position_title": position_title, "pool_size": len(candidates)},
            )
            if not candidates:
                return None
            observe_round_robin_assignment("fallback")
            return candidates[0]

        members = self.members.find_eligible(session, position.id)
        if not members:
            logger.info(
                "round_robin_no_eligible_members",
                extra={"tenant_id": tenant_id, "position_title": position_title},
            )
            return None

        index = self.positions.advance_cursor(session, position.id, len(members))
        selected = members[index]
        logger.debug(
            "round_robin_member_selected",
            extra={
                "tenant_id": tenant_id,
                "position_title": position_title,
                "member_id": str(selected.id),
                "cursor": index,
                "pool_size": len(members),
            },
        )
        observe_round_robin_assignment("rotation")
        return selected


@dataclass
class TaskMaterializer:
    assignor: RoundRobinAssignor = field(default_factory=RoundRobinAssignor)
    tasks: TaskRepository = TaskRepository()
    leads: LeadRepository = LeadRepository()
    notifications: NotificationRepository = NotificationRepository()

    def materialize(
        self,
        session: Session,
        lead: CRMLead,
        rule: MatchedRule,
        template: TaskTemplate,
        tenant_id: str,
        *,
        now: datetime | None = None,
    ) -> CRMTask | None:
        member = self.assignor.next_member(session, tenant_id, template.assignee_position_title)
        if member is None:
            logger.warning(
                "automation_task_skipped_no_assignee",
                extra={
                    "lead_id": str(lead.id),
                    "stage": rule.pipeline_stage,
                    "tenant_id": tenant_id,
                    "rule_id": str(rule.id),
                    "position_title": template.assignee_position_title,
                },
            )
            observe_template_skipped("no_eligible_member")
            return None

        due_in_hours = template.due_in_hours or get_settings().default_task_due_hours
        task = self.tasks.create(
            session,
            tenant_id=tenant_id,
            lead_id=lead.id,
            assigned_member_id=member.id,
            title=template.title,
            description=template.description,
            due_at=(now or utcnow()) + timedelta(hours=due_in_hours),
            pipeline_stage=rule.pipeline_stage,
            automation_rule_id=rule.id,
        )

        # Last writer wins: with several templates the lead ends up owned by
        # the assignee of the final materialized task.
        self.leads.set_assignee(session, lead, member.id)

        self.notifications.create(
            session,
            tenant_id=tenant_id,
            recipient_member_id=member.id,
            notification_type="task_assigned",
            title="New Task (Automated)",
            message=f"Automated task created: {template.title}",
            entity_type="task",
            entity_id=task.id,
        )
        write_audit_log(
            session,
            tenant_id,
            "task_assigned",
            "task",
            str(task.id),
            actor_id=str(member.id),
            actor_type="team_member",
            description=f"Automated task created: {template.title} for lead {lead.serial_number or lead.id}",
            metadata={
                "automation_rule_id": str(rule.id),
                "pipeline_stage": rule.pipeline_stage,
                "lead_id": str(lead.id),
            },
        )
        observe_task_materialized()
        logger.info(
            "automation_task_created",
            extra={
                "lead_id": str(lead.id),
                "stage": rule.pipeline_stage,
                "tenant_id": tenant_id,
                "rule_id": str(rule.id),
                "task_id": str(task.id),
                "member_id": str(member.id),
            },
        )
        return task


@dataclass
class PipelineAutomationOrchestrator:
    guard: StageReentryGuard = field(default_factory=StageReentryGuard)
    matcher: RuleMatcher = field(default_factory=RuleMatcher)
    materializer: TaskMaterializer = field(default_factory=TaskMaterializer)
    leads: LeadRepository = LeadRepository()

    def execute(self, session: Session, lead_id: uuid.UUID, new_stage: str, tenant_id: str) -> None:
        self.run(session, lead_id, new_stage, tenant_id)

    def run(self, session: Session, lead_id: uuid.UUID, new_stage: str, tenant_id: str) -> AutomationOutcome:
        started = time.perf_counter()
        outcome = AutomationOutcome(status="failed", lead_id=lead_id, stage=new_stage, tenant_id=tenant_id)
        token = set_tenant_id(tenant_id)
        with tracer.start_as_current_span("pipeline_automation.execute") as span:
            span.set_attribute("lead_id", str(lead_id))
            span.set_attribute("stage", new_stage)
            span.set_attribute("tenant_id", tenant_id)
            try:
                outcome = self._run(session, lead_id, new_stage, tenant_id)
                session.commit()
            except Exception as exc:
                session.rollback()
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)[:200]))
                logger.exception(
                    "pipeline_automation_failed",
                    extra={
                        "lead_id": str(lead_id),
                        "stage": new_stage,
                        "tenant_id": tenant_id,
                        "error": str(exc),
                    },
                )
                outcome = AutomationOutcome(
                    status="failed",
                    lead_id=lead_id,
                    stage=new_stage,
                    tenant_id=tenant_id,
                    reason=type(exc).__name__,
                )
            finally:
                span.set_attribute("outcome", outcome.status)
                observe_automation_run(outcome.status, time.perf_counter() - started)
                reset_tenant_id(token)

        if outcome.status == "succeeded":
            self._publish_completed(outcome)
        return outcome

    def _publish_completed(self, outcome: AutomationOutcome) -> None:
        # Tasks are already committed; a failing subscriber must not reach the caller.
        try:
            events.publish(
                events.build_envelope(
                    "crm.lead.automation_completed",
                    outcome.tenant_id,
                    {
                        "lead_id": str(outcome.lead_id),
                        "stage": outcome.stage,
                        "task_ids": [str(task_id) for task_id in outcome.task_ids],
                        "skipped_templates": list(outcome.skipped_templates),
                    },
                )
            )
        except Exception as exc:
            logger.exception(
                "pipeline_automation_event_failed",
                extra={
                    "lead_id": str(outcome.lead_id),
                    "stage": outcome.stage,
                    "tenant_id": outcome.tenant_id,
                    "error": str(exc),
                },
            )

    def _run(self, session: Session, lead_id: uuid.UUID, new_stage: str, tenant_id: str) -> AutomationOutcome:
        if not get_settings().pipeline_automation_enabled:
            return self._skipped(lead_id, new_stage, tenant_id, "automation_disabled")

        if self.guard.has_visited(session, lead_id, new_stage):
            return self._skipped(lead_id, new_stage, tenant_id, "stage_already_visited")

        lead = self.leads.get(session, tenant_id, lead_id)
        if lead is None:
            return self._skipped(lead_id, new_stage, tenant_id, "lead_not_found")

        if not self.guard.record_visit(session, tenant_id, lead_id, new_stage):
            return self._skipped(lead_id, new_stage, tenant_id, "stage_already_visited")

        rules = self.matcher.find_active_rules(session, tenant_id, new_stage)
        if not rules:
            return self._skipped(lead_id, new_stage, tenant_id, "no_active_rules")

        outcome = AutomationOutcome(status="succeeded", lead_id=lead_id, stage=new_stage, tenant_id=tenant_id)
        for rule in rules:
            for template in rule.templates:
                task = self.materializer.materialize(session, lead, rule, template, tenant_id)
                if task is None:
                    outcome.skipped_templates.append(template.title)
                else:
                    outcome.task_ids.append(task.id)

        logger.info(
            "pipeline_automation_completed",
            extra={
                "lead_id": str(lead_id),
                "stage": new_stage,
                "tenant_id": tenant_id,
                "outcome": outcome.status,
            },
        )
        return outcome

    def _skipped(self, lead_id: uuid.UUID, stage: str, tenant_id: str, reason: str) -> AutomationOutcome:
        logger.info(
            "pipeline_automation_skipped",
            extra={"lead_id": str(lead_id), "stage": stage, "tenant_id": tenant_id, "reason": reason},
        )
        return AutomationOutcome(status="skipped", lead_id=lead_id, stage=stage, tenant_id=tenant_id, reason=reason)


pipeline_automation = PipelineAutomationOrchestrator()


def execute_pipeline_automation(session: Session, lead_id: uuid.UUID, new_stage: str, tenant_id: str) -> None:
    pipeline_automation.execute(session, lead_id, new_stage, tenant_id)
