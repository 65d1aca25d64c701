from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


TaskStatus = Literal["pending", "completed"]
TaskListPeriod = Literal["all", "today", "month"]


class TaskTemplate(BaseModel):
    """One task a rule generates when a lead enters the rule's stage."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(min_length=1)
    description: str = ""
    assignee_position_title: str = Field(min_length=1, alias="assign_to_role")
    due_in_hours: int | None = Field(default=None, ge=1)

    @field_validator("description", mode="before")
    @classmethod
    def _none_description(cls, value: Any) -> Any:
        return "" if value is None else value


class RuleConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tasks: list[TaskTemplate] = Field(min_length=1)


class PipelinePermissions(BaseModel):
    view_pipeline: bool = False
    full_access: bool = False
    mark_closed: bool = False
    mark_dead: bool = False


class LeadPermissions(BaseModel):
    view_all: bool = False


class TaskPermissions(BaseModel):
    view_own: bool = False
    view_all: bool = False
    create: bool = False
    edit: bool = False
    delete: bool = False


class PermissionSet(BaseModel):
    """Named boolean capabilities attached to a position."""

    model_config = ConfigDict(extra="ignore")

    pipeline: PipelinePermissions = Field(default_factory=PipelinePermissions)
    leads: LeadPermissions = Field(default_factory=LeadPermissions)
    tasks: TaskPermissions = Field(default_factory=TaskPermissions)

    def has(self, path: str) -> bool:
        area_name, _, capability = path.partition(".")
        area = getattr(self, area_name, None)
        if not isinstance(area, BaseModel) or capability not in type(area).model_fields:
            return False
        return getattr(area, capability) is True


class AutomationRuleCreate(BaseModel):
    pipeline_stage: str = Field(min_length=1)
    rule_config: RuleConfig
    is_active: bool = True


class AutomationRuleUpdate(BaseModel):
    pipeline_stage: str | None = Field(default=None, min_length=1)
    rule_config: RuleConfig | None = None
    is_active: bool | None = None


class AutomationRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    pipeline_stage: str
    rule_config: dict[str, Any]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class PipelineStageChangeRequest(BaseModel):
    stage: str = Field(min_length=1)


class StageReassignRequest(BaseModel):
    stage: str = Field(min_length=1)
    assign_to_member_id: UUID | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    serial_number: str | None
    company_name: str | None
    contact_first_name: str | None
    contact_last_name: str | None
    pipeline_stage: str | None
    client_reviewed: bool
    assigned_member_id: UUID | None
    created_at: datetime
    updated_at: datetime


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    lead_id: UUID
    assigned_member_id: UUID
    automation_rule_id: UUID | None
    pipeline_stage: str | None
    created_by_type: str
    title: str
    description: str
    due_at: datetime
    status: TaskStatus
    completed_at: datetime | None
    created_at: datetime


class StageCompletionRead(BaseModel):
    lead_id: UUID
    pipeline_stage: str
    is_complete: bool
    pending_count: int
    completed_count: int
    total_count: int
