from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from leadflow import events
from leadflow.core.config import get_settings
from leadflow.crm import automation
from leadflow.crm.models import CRMAutomationRule, CRMLead, utcnow
from leadflow.crm.repositories import (
    AutomationRuleRepository,
    LeadRepository,
    NotificationRepository,
    PipelineStageRepository,
    StageVisitRepository,
    TaskRepository,
    TeamMemberRepository,
)
from leadflow.crm.schemas import (
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    LeadRead,
    PermissionSet,
    StageCompletionRead,
    TaskListPeriod,
    TaskRead,
)
from leadflow.services.audit import write_audit_log
from leadflow.utils.business_time import (
    BusinessWindow,
    business_day_bounds,
    business_month_bounds,
    date_range_with_cutover,
)


logger = logging.getLogger("leadflow.crm.service")


@dataclass
class Actor:
    tenant_id: str
    actor_id: str | None = None
    correlation_id: str | None = None


@dataclass(slots=True)
class LeadPipelineService:
    leads: LeadRepository = LeadRepository()
    stages: PipelineStageRepository = PipelineStageRepository()
    tasks: TaskRepository = TaskRepository()
    visits: StageVisitRepository = StageVisitRepository()
    members: TeamMemberRepository = TeamMemberRepository()

    def change_stage(self, session: Session, lead_id: uuid.UUID, stage_name: str, actor: Actor) -> LeadRead:
        lead = self._load_lead(session, lead_id, actor)
        target = self.stages.find(session, actor.tenant_id, stage_name)
        if target is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pipeline stage not found")

        previous_stage = lead.pipeline_stage
        if previous_stage and previous_stage != target.name:
            current = self.stages.find(session, actor.tenant_id, previous_stage)
            if current is not None and target.order < current.order:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Cannot move lead backwards in the pipeline. Leads can only progress forward.",
                )

        lead.pipeline_stage = target.name
        lead.updated_at = utcnow()
        session.flush()

        closed_tasks = 0
        if target.name in get_settings().terminal_pipeline_stages:
            closed_tasks = self.tasks.complete_pending_for_lead(session, lead.id)

        write_audit_log(
            session,
            actor.tenant_id,
            "pipeline_changed",
            "lead",
            str(lead.id),
            actor_id=actor.actor_id,
            actor_type="user" if actor.actor_id else "system",
            description=f"Lead moved to {target.display_name}",
            metadata={
                "previous_stage": previous_stage,
                "new_stage": target.name,
                "auto_completed_tasks": closed_tasks,
            },
        )
        session.commit()

        events.publish(
            events.build_envelope(
                "crm.lead.stage_changed",
                actor.tenant_id,
                {"lead_id": str(lead.id), "previous_stage": previous_stage, "new_stage": target.name},
                actor_id=actor.actor_id,
            )
        )
        logger.info(
            "lead_stage_changed",
            extra={"lead_id": str(lead.id), "stage": target.name, "tenant_id": actor.tenant_id},
        )

        automation.execute_pipeline_automation(session, lead.id, target.name, actor.tenant_id)
        session.refresh(lead)
        return LeadRead.model_validate(lead)

    def review_lead(self, session: Session, lead_id: uuid.UUID, actor: Actor) -> LeadRead:
        lead = self._load_lead(session, lead_id, actor)
        if lead.client_reviewed:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Lead already reviewed")

        stage = lead.pipeline_stage or get_settings().initial_pipeline_stage
        lead.client_reviewed = True
        lead.pipeline_stage = stage
        lead.updated_at = utcnow()
        write_audit_log(
            session,
            actor.tenant_id,
            "lead_reviewed",
            "lead",
            str(lead.id),
            actor_id=actor.actor_id,
            actor_type="user" if actor.actor_id else "system",
            description="Lead moved to pipeline",
            metadata={"new_stage": stage},
        )
        session.commit()

        automation.execute_pipeline_automation(session, lead.id, stage, actor.tenant_id)
        session.refresh(lead)
        return LeadRead.model_validate(lead)

    def reassign_stage(
        self,
        session: Session,
        lead_id: uuid.UUID,
        stage_name: str,
        actor: Actor,
        *,
        assign_to_member_id: uuid.UUID | None = None,
    ) -> LeadRead:
        """Send a lead back to a stage for rework.

        Pending tasks and the lead's whole visit history are dropped, so
        automation runs again for the target stage and for every stage the
        lead re-enters afterwards. When ``assign_to_member_id`` is given, the
        newest task of the target stage is handed to that member.
        """
        if stage_name in get_settings().terminal_pipeline_stages:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Cannot reassign a lead to a terminal stage",
            )
        lead = self._load_lead(session, lead_id, actor)
        target = self.stages.find(session, actor.tenant_id, stage_name)
        if target is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pipeline stage not found")
        if assign_to_member_id is not None:
            member = self.members.get(session, actor.tenant_id, assign_to_member_id)
            if member is None or member.status != "active":
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Team member not found")

        previous_stage = lead.pipeline_stage
        removed_tasks = self.tasks.delete_pending_for_lead(session, lead.id)
        cleared_visits = self.visits.purge_for_lead(session, lead.id)
        lead.pipeline_stage = target.name
        lead.updated_at = utcnow()
        session.flush()

        write_audit_log(
            session,
            actor.tenant_id,
            "pipeline_changed",
            "lead",
            str(lead.id),
            actor_id=actor.actor_id,
            actor_type="user" if actor.actor_id else "system",
            description=f"Lead reassigned to stage: {target.display_name}",
            metadata={
                "previous_stage": previous_stage,
                "new_stage": target.name,
                "reassignment": True,
                "assign_to_member_id": str(assign_to_member_id) if assign_to_member_id else None,
                "removed_tasks": removed_tasks,
                "cleared_visits": cleared_visits,
            },
        )
        session.commit()

        events.publish(
            events.build_envelope(
                "crm.lead.stage_reassigned",
                actor.tenant_id,
                {"lead_id": str(lead.id), "previous_stage": previous_stage, "new_stage": target.name},
                actor_id=actor.actor_id,
            )
        )
        logger.info(
            "lead_stage_reassigned",
            extra={"lead_id": str(lead.id), "stage": target.name, "tenant_id": actor.tenant_id},
        )

        automation.execute_pipeline_automation(session, lead.id, target.name, actor.tenant_id)

        if assign_to_member_id is not None:
            task = self.tasks.latest_for_stage(session, lead.id, target.name)
            if task is not None and task.status == "pending":
                task.assigned_member_id = assign_to_member_id
                self.leads.set_assignee(session, lead, assign_to_member_id)
                session.commit()

        session.refresh(lead)
        return LeadRead.model_validate(lead)

    def reset_stage_visit(self, session: Session, lead_id: uuid.UUID, stage_name: str, actor: Actor) -> int:
        """Forget that a lead entered a stage so the next entry runs automation again."""
        lead = self._load_lead(session, lead_id, actor)
        removed = self.visits.purge(session, lead.id, stage_name)
        if removed:
            write_audit_log(
                session,
                actor.tenant_id,
                "stage_visit_reset",
                "lead",
                str(lead.id),
                actor_id=actor.actor_id,
                actor_type="user" if actor.actor_id else "system",
                metadata={"stage": stage_name},
            )
        session.commit()
        return removed

    def _load_lead(self, session: Session, lead_id: uuid.UUID, actor: Actor) -> CRMLead:
        lead = self.leads.get(session, actor.tenant_id, lead_id)
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Lead not found")
        return lead


@dataclass(slots=True)
class AutomationRuleService:
    rules: AutomationRuleRepository = AutomationRuleRepository()

    def list_rules(self, session: Session, actor: Actor) -> list[AutomationRuleRead]:
        return [AutomationRuleRead.model_validate(row) for row in self.rules.list_for_tenant(session, actor.tenant_id)]

    def get_rule(self, session: Session, rule_id: uuid.UUID, actor: Actor) -> AutomationRuleRead:
        return AutomationRuleRead.model_validate(self._load_rule(session, rule_id, actor))

    def create_rule(self, session: Session, dto: AutomationRuleCreate, actor: Actor) -> AutomationRuleRead:
        rule = CRMAutomationRule(
            tenant_id=actor.tenant_id,
            pipeline_stage=dto.pipeline_stage.strip(),
            rule_config=dto.rule_config.model_dump(by_alias=True, exclude_none=True),
            is_active=dto.is_active,
        )
        session.add(rule)
        session.flush()

        write_audit_log(
            session,
            actor.tenant_id,
            "automation_rule_created",
            "automation_rule",
            str(rule.id),
            actor_id=actor.actor_id,
            actor_type="user" if actor.actor_id else "system",
            description=f"Created automation rule for stage: {rule.pipeline_stage}",
            metadata={"pipeline_stage": rule.pipeline_stage, "task_count": len(dto.rule_config.tasks)},
        )
        session.commit()
        session.refresh(rule)
        return AutomationRuleRead.model_validate(rule)

    def update_rule(
        self,
        session: Session,
        rule_id: uuid.UUID,
        dto: AutomationRuleUpdate,
        actor: Actor,
    ) -> AutomationRuleRead:
        rule = self._load_rule(session, rule_id, actor)
        changed: list[str] = []
        if dto.pipeline_stage is not None:
            rule.pipeline_stage = dto.pipeline_stage.strip()
            changed.append("pipeline_stage")
        if dto.rule_config is not None:
            rule.rule_config = dto.rule_config.model_dump(by_alias=True, exclude_none=True)
            changed.append("rule_config")
        if dto.is_active is not None:
            rule.is_active = dto.is_active
            changed.append("is_active")
        rule.updated_at = utcnow()
        session.flush()

        write_audit_log(
            session,
            actor.tenant_id,
            "automation_rule_updated",
            "automation_rule",
            str(rule.id),
            actor_id=actor.actor_id,
            actor_type="user" if actor.actor_id else "system",
            description=f"Updated automation rule for stage: {rule.pipeline_stage}",
            metadata={"changed_fields": changed},
        )
        session.commit()
        session.refresh(rule)
        return AutomationRuleRead.model_validate(rule)

    def toggle_rule(self, session: Session, rule_id: uuid.UUID, actor: Actor) -> AutomationRuleRead:
        rule = self._load_rule(session, rule_id, actor)
        rule.is_active = not rule.is_active
        rule.updated_at = utcnow()
        session.flush()

        write_audit_log(
            session,
            actor.tenant_id,
            "automation_rule_updated",
            "automation_rule",
            str(rule.id),
            actor_id=actor.actor_id,
            actor_type="user" if actor.actor_id else "system",
            description=(
                f"{'Activated' if rule.is_active else 'Deactivated'} automation rule for stage: {rule.pipeline_stage}"
            ),
            metadata={"is_active": rule.is_active},
        )
        session.commit()
        session.refresh(rule)
        return AutomationRuleRead.model_validate(rule)

    def delete_rule(self, session: Session, rule_id: uuid.UUID, actor: Actor) -> None:
        rule = self._load_rule(session, rule_id, actor)
        pipeline_stage = rule.pipeline_stage
        session.delete(rule)
        session.flush()

        write_audit_log(
            session,
            actor.tenant_id,
            "automation_rule_deleted",
            "automation_rule",
            str(rule_id),
            actor_id=actor.actor_id,
            actor_type="user" if actor.actor_id else "system",
            description=f"Deleted automation rule for stage: {pipeline_stage}",
            metadata={"pipeline_stage": pipeline_stage},
        )
        session.commit()

    def _load_rule(self, session: Session, rule_id: uuid.UUID, actor: Actor) -> CRMAutomationRule:
        rule = self.rules.get(session, actor.tenant_id, rule_id)
        if rule is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Automation rule not found")
        return rule


@dataclass(slots=True)
class TaskService:
    tasks: TaskRepository = TaskRepository()
    leads: LeadRepository = LeadRepository()
    members: TeamMemberRepository = TeamMemberRepository()
    notifications: NotificationRepository = NotificationRepository()

    def list_for_lead(
        self,
        session: Session,
        lead_id: uuid.UUID,
        actor: Actor,
        *,
        period: TaskListPeriod = "all",
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> list[TaskRead]:
        """List a lead's tasks, optionally limited to tasks created in a business window.

        An explicit ``from_date``/``to_date`` range wins over ``period``; a
        single bound means that one business day.
        """
        lead = self._load_lead(session, lead_id, actor)
        window = self._task_window(period, from_date, to_date)
        return [TaskRead.model_validate(row) for row in self.tasks.list_for_lead(session, lead.id, window)]

    @staticmethod
    def _task_window(period: TaskListPeriod, from_date: date | None, to_date: date | None) -> BusinessWindow | None:
        if from_date is not None or to_date is not None:
            start = from_date or to_date
            end = to_date or from_date
            try:
                return date_range_with_cutover(start, end)
            except ValueError as exc:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        if period == "today":
            return business_day_bounds()
        if period == "month":
            return business_month_bounds()
        return None

    def complete_task(self, session: Session, task_id: uuid.UUID, actor: Actor) -> TaskRead:
        task = self.tasks.get(session, actor.tenant_id, task_id)
        if task is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
        if task.status == "completed":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Task already completed")

        task.status = "completed"
        task.completed_at = utcnow()
        session.flush()
        write_audit_log(
            session,
            actor.tenant_id,
            "task_completed",
            "task",
            str(task.id),
            actor_id=actor.actor_id,
            actor_type="user" if actor.actor_id else "system",
            description=f"Task completed: {task.title}",
            metadata={"lead_id": str(task.lead_id), "pipeline_stage": task.pipeline_stage},
        )

        lead = self.leads.get(session, actor.tenant_id, task.lead_id)
        if lead is not None and lead.pipeline_stage:
            completion = self._stage_completion(session, lead)
            if completion.is_complete:
                self.notify_stage_complete(session, lead)
        session.commit()
        session.refresh(task)
        return TaskRead.model_validate(task)

    def get_stage_completion(self, session: Session, lead_id: uuid.UUID, actor: Actor) -> StageCompletionRead:
        lead = self._load_lead(session, lead_id, actor)
        if not lead.pipeline_stage:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Lead is not in the pipeline")
        return self._stage_completion(session, lead)

    def notify_stage_complete(self, session: Session, lead: CRMLead) -> int:
        """Tell every member with full pipeline access that the lead can move on."""
        lead_label = lead.company_name or lead.serial_number or str(lead.id)
        notified = 0
        for member in self.members.list_active_with_positions(session, lead.tenant_id):
            try:
                permissions = PermissionSet.model_validate(member.position.permission_set or {})
            except ValidationError as exc:
                logger.warning(
                    "member_permissions_invalid",
                    extra={"member_id": str(member.id), "tenant_id": lead.tenant_id, "error": str(exc)},
                )
                continue
            if not permissions.has("pipeline.full_access"):
                continue
            self.notifications.create(
                session,
                tenant_id=lead.tenant_id,
                recipient_member_id=member.id,
                notification_type="task_completed",
                title="Lead Ready to Progress",
                message=f"All tasks for {lead_label} in {lead.pipeline_stage} are complete.",
                entity_type="lead",
                entity_id=lead.id,
            )
            notified += 1

        logger.info(
            "stage_completion_notified",
            extra={"lead_id": str(lead.id), "stage": lead.pipeline_stage, "tenant_id": lead.tenant_id},
        )
        return notified

    def _stage_completion(self, session: Session, lead: CRMLead) -> StageCompletionRead:
        counts = self.tasks.count_by_status(session, lead.id, lead.pipeline_stage or "")
        pending = counts.get("pending", 0)
        completed = counts.get("completed", 0)
        total = sum(counts.values())
        return StageCompletionRead(
            lead_id=lead.id,
            pipeline_stage=lead.pipeline_stage or "",
            is_complete=total > 0 and pending == 0,
            pending_count=pending,
            completed_count=completed,
            total_count=total,
        )

    def _load_lead(self, session: Session, lead_id: uuid.UUID, actor: Actor) -> CRMLead:
        lead = self.leads.get(session, actor.tenant_id, lead_id)
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Lead not found")
        return lead
