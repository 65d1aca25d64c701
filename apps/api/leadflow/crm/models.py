from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from leadflow.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CRMPipelineStage(Base):
    __tablename__ = "crm_pipeline_stage"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # NULL tenant_id marks a stage shared by every tenant.
    tenant_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    order: Mapped[int] = mapped_column("stage_order", Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_crm_pipeline_stage_tenant_name"),
    )


class CRMPosition(Base):
    __tablename__ = "crm_position"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    # Round-robin cursor. Grows without bound; only its value modulo the pool size matters.
    last_assigned_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    permission_set: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    members: Mapped[list[CRMTeamMember]] = relationship("CRMTeamMember", back_populates="position")

    __table_args__ = (
        UniqueConstraint("tenant_id", "title", name="uq_crm_position_tenant_title"),
    )


class CRMTeamMember(Base):
    __tablename__ = "crm_team_member"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    position_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_position.id", ondelete="SET NULL"),
        nullable=True,
    )
    # Free-text title kept for members created before positions existed.
    position_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active", server_default="active")
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    position: Mapped[CRMPosition | None] = relationship("CRMPosition", back_populates="members")


class CRMLead(Base):
    __tablename__ = "crm_lead"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    serial_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    company_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_first_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_last_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    pipeline_stage: Mapped[str | None] = mapped_column(String(128), nullable=True)
    client_reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    assigned_member_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_team_member.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class CRMAutomationRule(Base):
    __tablename__ = "crm_automation_rule"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    pipeline_stage: Mapped[str] = mapped_column(String(128), nullable=False)
    rule_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class CRMTask(Base):
    __tablename__ = "crm_task"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_lead.id", ondelete="CASCADE"),
        nullable=False,
    )
    assigned_member_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_team_member.id", ondelete="RESTRICT"),
        nullable=False,
    )
    automation_rule_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    pipeline_stage: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_by_type: Mapped[str] = mapped_column(String(32), nullable=False, default="automation")
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", server_default="pending")
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class CRMNotification(Base):
    __tablename__ = "crm_notification"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    recipient_member_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class CRMStageVisit(Base):
    __tablename__ = "crm_stage_visit"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    lead_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    stage: Mapped[str] = mapped_column(String(128), nullable=False)
    business_date: Mapped[date] = mapped_column(Date(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("lead_id", "stage", name="uq_crm_stage_visit_lead_stage"),
    )


Index("ix_crm_pipeline_stage_tenant_active", CRMPipelineStage.tenant_id, CRMPipelineStage.is_active)
Index("ix_crm_team_member_eligible", CRMTeamMember.position_id, CRMTeamMember.status, CRMTeamMember.is_available)
Index("ix_crm_team_member_tenant_title", CRMTeamMember.tenant_id, CRMTeamMember.position_title)
Index("ix_crm_lead_tenant_stage", CRMLead.tenant_id, CRMLead.pipeline_stage)
Index("ix_crm_lead_assigned_member", CRMLead.assigned_member_id)
Index(
    "ix_crm_automation_rule_match",
    CRMAutomationRule.tenant_id,
    CRMAutomationRule.pipeline_stage,
    CRMAutomationRule.is_active,
)
Index("ix_crm_task_lead_stage_status", CRMTask.lead_id, CRMTask.pipeline_stage, CRMTask.status)
Index("ix_crm_task_assignment", CRMTask.assigned_member_id, CRMTask.status, CRMTask.due_at)
Index(
    "ix_crm_notification_recipient_read_created",
    CRMNotification.recipient_member_id,
    CRMNotification.is_read,
    CRMNotification.created_at,
)
