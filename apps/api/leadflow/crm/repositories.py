from __future__ import annotations

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import Select, and_, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadflow.crm.models import (
    CRMAutomationRule,
    CRMLead,
    CRMNotification,
    CRMPipelineStage,
    CRMPosition,
    CRMStageVisit,
    CRMTask,
    CRMTeamMember,
    utcnow,
)
from leadflow.utils.business_time import BusinessWindow


class StageVisitRepository:
    def exists(self, session: Session, lead_id: uuid.UUID, stage: str) -> bool:
        stmt = select(CRMStageVisit.id).where(
            and_(CRMStageVisit.lead_id == lead_id, CRMStageVisit.stage == stage)
        )
        return session.scalar(stmt.limit(1)) is not None

    def insert_if_absent(
        self,
        session: Session,
        tenant_id: str,
        lead_id: uuid.UUID,
        stage: str,
        business_date: date,
    ) -> bool:
        """Record the first visit of a lead to a stage.

        Returns False when another transaction already recorded it; the unique
        constraint on (lead_id, stage) decides the winner. Must be the first
        write of the transaction: a conflict rolls the whole transaction back.
        """
        session.add(CRMStageVisit(tenant_id=tenant_id, lead_id=lead_id, stage=stage, business_date=business_date))
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            return False
        return True

    def purge(self, session: Session, lead_id: uuid.UUID, stage: str) -> int:
        result = session.execute(
            delete(CRMStageVisit).where(and_(CRMStageVisit.lead_id == lead_id, CRMStageVisit.stage == stage))
        )
        session.flush()
        return result.rowcount or 0

    def purge_for_lead(self, session: Session, lead_id: uuid.UUID) -> int:
        result = session.execute(delete(CRMStageVisit).where(CRMStageVisit.lead_id == lead_id))
        session.flush()
        return result.rowcount or 0


class AutomationRuleRepository:
    def find_active(self, session: Session, tenant_id: str, stage: str) -> list[CRMAutomationRule]:
        stmt: Select[tuple[CRMAutomationRule]] = select(CRMAutomationRule).where(
            and_(
                CRMAutomationRule.tenant_id == tenant_id,
                CRMAutomationRule.pipeline_stage == stage,
                CRMAutomationRule.is_active.is_(True),
            )
        )
        return list(session.scalars(stmt.order_by(CRMAutomationRule.created_at.asc())).all())

    def list_for_tenant(self, session: Session, tenant_id: str) -> list[CRMAutomationRule]:
        stmt = select(CRMAutomationRule).where(CRMAutomationRule.tenant_id == tenant_id)
        return list(session.scalars(stmt.order_by(CRMAutomationRule.created_at.desc())).all())

    def get(self, session: Session, tenant_id: str, rule_id: uuid.UUID) -> CRMAutomationRule | None:
        return session.scalar(
            select(CRMAutomationRule).where(
                and_(CRMAutomationRule.id == rule_id, CRMAutomationRule.tenant_id == tenant_id)
            )
        )


class PositionRepository:
    def find(self, session: Session, tenant_id: str, title: str) -> CRMPosition | None:
        return session.scalar(
            select(CRMPosition).where(
                and_(
                    CRMPosition.tenant_id == tenant_id,
                    CRMPosition.title == title,
                    CRMPosition.is_active.is_(True),
                )
            )
        )

    def advance_cursor(self, session: Session, position_id: uuid.UUID, pool_size: int) -> int:
        """Claim the next round-robin slot for a position.

        The position row is locked for the rest of the transaction so that two
        concurrent transitions cannot read the same cursor. Returns the slot
        index in ``[0, pool_size)`` and stores ``index + 1`` as the new cursor.
        """
        if pool_size <= 0:
            raise ValueError("pool_size must be positive")

        position = session.scalar(
            select(CRMPosition)
            .where(CRMPosition.id == position_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if position is None:
            raise LookupError(f"position {position_id} not found")

        index = position.last_assigned_index % pool_size
        position.last_assigned_index = index + 1
        session.flush()
        return index


class TeamMemberRepository:
    def get(self, session: Session, tenant_id: str, member_id: uuid.UUID) -> CRMTeamMember | None:
        return session.scalar(
            select(CRMTeamMember).where(and_(CRMTeamMember.id == member_id, CRMTeamMember.tenant_id == tenant_id))
        )

    def find_eligible(self, session: Session, position_id: uuid.UUID) -> list[CRMTeamMember]:
        stmt = select(CRMTeamMember).where(
            and_(
                CRMTeamMember.position_id == position_id,
                CRMTeamMember.status == "active",
                CRMTeamMember.is_available.is_(True),
            )
        )
        return list(session.scalars(stmt.order_by(CRMTeamMember.created_at.asc(), CRMTeamMember.id.asc())).all())

    def find_eligible_by_title(self, session: Session, tenant_id: str, title: str) -> list[CRMTeamMember]:
        stmt = select(CRMTeamMember).where(
            and_(
                CRMTeamMember.tenant_id == tenant_id,
                CRMTeamMember.position_title == title,
                CRMTeamMember.status == "active",
                CRMTeamMember.is_available.is_(True),
            )
        )
        return list(session.scalars(stmt.order_by(CRMTeamMember.created_at.asc(), CRMTeamMember.id.asc())).all())

    def list_active_with_positions(self, session: Session, tenant_id: str) -> list[CRMTeamMember]:
        stmt = (
            select(CRMTeamMember)
            .join(CRMPosition, CRMPosition.id == CRMTeamMember.position_id)
            .where(
                and_(
                    CRMTeamMember.tenant_id == tenant_id,
                    CRMTeamMember.status == "active",
                    CRMPosition.is_active.is_(True),
                )
            )
        )
        return list(session.scalars(stmt.order_by(CRMTeamMember.created_at.asc())).all())


class LeadRepository:
    def get(self, session: Session, tenant_id: str, lead_id: uuid.UUID) -> CRMLead | None:
        return session.scalar(
            select(CRMLead).where(and_(CRMLead.id == lead_id, CRMLead.tenant_id == tenant_id))
        )

    def set_assignee(self, session: Session, lead: CRMLead, member_id: uuid.UUID) -> None:
        lead.assigned_member_id = member_id
        lead.updated_at = utcnow()
        session.flush()


class PipelineStageRepository:
    def find(self, session: Session, tenant_id: str, name: str) -> CRMPipelineStage | None:
        """Resolve a stage definition, preferring the tenant's own over a shared one."""
        rows = session.scalars(
            select(CRMPipelineStage).where(
                and_(
                    CRMPipelineStage.name == name,
                    CRMPipelineStage.is_active.is_(True),
                    (CRMPipelineStage.tenant_id == tenant_id) | CRMPipelineStage.tenant_id.is_(None),
                )
            )
        ).all()
        for row in rows:
            if row.tenant_id == tenant_id:
                return row
        return rows[0] if rows else None


class TaskRepository:
    def create(
        self,
        session: Session,
        *,
        tenant_id: str,
        lead_id: uuid.UUID,
        assigned_member_id: uuid.UUID,
        title: str,
        description: str,
        due_at: datetime,
        pipeline_stage: str | None,
        automation_rule_id: uuid.UUID | None = None,
        created_by_type: str = "automation",
    ) -> CRMTask:
        task = CRMTask(
            tenant_id=tenant_id,
            lead_id=lead_id,
            assigned_member_id=assigned_member_id,
            automation_rule_id=automation_rule_id,
            pipeline_stage=pipeline_stage,
            created_by_type=created_by_type,
            title=title,
            description=description,
            due_at=due_at,
            status="pending",
        )
        session.add(task)
        session.flush()
        return task

    def get(self, session: Session, tenant_id: str, task_id: uuid.UUID) -> CRMTask | None:
        return session.scalar(select(CRMTask).where(and_(CRMTask.id == task_id, CRMTask.tenant_id == tenant_id)))

    def list_for_lead(
        self,
        session: Session,
        lead_id: uuid.UUID,
        window: BusinessWindow | None = None,
    ) -> list[CRMTask]:
        stmt = select(CRMTask).where(CRMTask.lead_id == lead_id)
        if window is not None:
            stmt = stmt.where(
                and_(
                    CRMTask.created_at >= window.start.astimezone(timezone.utc),
                    CRMTask.created_at < window.end.astimezone(timezone.utc),
                )
            )
        return list(session.scalars(stmt.order_by(CRMTask.created_at.asc())).all())

    def latest_for_stage(self, session: Session, lead_id: uuid.UUID, stage: str) -> CRMTask | None:
        return session.scalar(
            select(CRMTask)
            .where(and_(CRMTask.lead_id == lead_id, CRMTask.pipeline_stage == stage))
            .order_by(CRMTask.created_at.desc(), CRMTask.id.desc())
            .limit(1)
        )

    def delete_pending_for_lead(self, session: Session, lead_id: uuid.UUID) -> int:
        result = session.execute(
            delete(CRMTask).where(and_(CRMTask.lead_id == lead_id, CRMTask.status == "pending"))
        )
        session.flush()
        return result.rowcount or 0

    def count_by_status(self, session: Session, lead_id: uuid.UUID, stage: str) -> dict[str, int]:
        rows = session.execute(
            select(CRMTask.status, func.count(CRMTask.id))
            .where(and_(CRMTask.lead_id == lead_id, CRMTask.pipeline_stage == stage))
            .group_by(CRMTask.status)
        ).all()
        return {str(status): int(count) for status, count in rows}

    def complete_pending_for_lead(self, session: Session, lead_id: uuid.UUID) -> int:
        tasks = session.scalars(
            select(CRMTask).where(and_(CRMTask.lead_id == lead_id, CRMTask.status == "pending"))
        ).all()
        completed_at = utcnow()
        for task in tasks:
            task.status = "completed"
            task.completed_at = completed_at
        session.flush()
        return len(tasks)


class NotificationRepository:
    def create(
        self,
        session: Session,
        *,
        tenant_id: str,
        recipient_member_id: uuid.UUID,
        notification_type: str,
        title: str,
        message: str,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> CRMNotification:
        notification = CRMNotification(
            tenant_id=tenant_id,
            recipient_member_id=recipient_member_id,
            notification_type=notification_type,
            title=title,
            message=message,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        session.add(notification)
        session.flush()
        return notification
