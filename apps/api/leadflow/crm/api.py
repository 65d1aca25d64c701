from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadflow.context import get_correlation_id
from leadflow.core.database import get_db
from leadflow.crm.schemas import (
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    LeadRead,
    PipelineStageChangeRequest,
    StageCompletionRead,
    StageReassignRequest,
    TaskListPeriod,
    TaskRead,
)
from leadflow.crm.service import Actor, AutomationRuleService, LeadPipelineService, TaskService

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
automation_rules_router = APIRouter(prefix="/api/crm", tags=["crm.automation_rules"])
tasks_router = APIRouter(prefix="/api/crm", tags=["crm.tasks"])
lead_pipeline_service = LeadPipelineService()
automation_rule_service = AutomationRuleService()
task_service = TaskService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_actor(request: Request) -> Actor:
    tenant_id = request.headers.get("x-tenant-id", "").strip()
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing x-tenant-id header")
    actor_id = request.headers.get("x-actor-id", "").strip() or None
    return Actor(
        tenant_id=tenant_id,
        actor_id=actor_id,
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )


@leads_router.patch("/leads/{lead_id}/pipeline-stage", response_model=LeadRead)
def change_pipeline_stage(
    request: Request,
    lead_id: uuid.UUID,
    dto: PipelineStageChangeRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_pipeline_service.change_stage(db, lead_id, dto.stage, actor)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_stage_change_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/review", response_model=LeadRead)
def review_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_pipeline_service.review_lead(db, lead_id, actor)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_review_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/reassign-stage", response_model=LeadRead)
def reassign_pipeline_stage(
    request: Request,
    lead_id: uuid.UUID,
    dto: StageReassignRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_pipeline_service.reassign_stage(
            db,
            lead_id,
            dto.stage,
            actor,
            assign_to_member_id=dto.assign_to_member_id,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_stage_reassign_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.delete("/leads/{lead_id}/stage-visits/{stage}", status_code=status.HTTP_200_OK, response_model=None)
def reset_stage_visit(
    request: Request,
    lead_id: uuid.UUID,
    stage: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> dict[str, Any] | JSONResponse:
    try:
        removed = lead_pipeline_service.reset_stage_visit(db, lead_id, stage, actor)
        return {"status": "reset" if removed else "not_found", "removed": removed}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_visit_reset_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}/stage-completion", response_model=StageCompletionRead)
def get_stage_completion(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> StageCompletionRead | JSONResponse:
    try:
        return task_service.get_stage_completion(db, lead_id, actor)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_completion_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}/tasks", response_model=list[TaskRead])
def list_lead_tasks(
    request: Request,
    lead_id: uuid.UUID,
    period: TaskListPeriod = "all",
    from_date: date | None = None,
    to_date: date | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[TaskRead] | JSONResponse:
    try:
        return task_service.list_for_lead(db, lead_id, actor, period=period, from_date=from_date, to_date=to_date)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.post("/tasks/{task_id}/complete", response_model=TaskRead)
def complete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> TaskRead | JSONResponse:
    try:
        return task_service.complete_task(db, task_id, actor)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_complete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@automation_rules_router.get("/automation-rules", response_model=list[AutomationRuleRead])
def list_automation_rules(
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[AutomationRuleRead] | JSONResponse:
    try:
        return automation_rule_service.list_rules(db, actor)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_automation_rule_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@automation_rules_router.get("/automation-rules/{rule_id}", response_model=AutomationRuleRead)
def get_automation_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> AutomationRuleRead | JSONResponse:
    try:
        return automation_rule_service.get_rule(db, rule_id, actor)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_automation_rule_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@automation_rules_router.post(
    "/automation-rules",
    response_model=AutomationRuleRead,
    status_code=status.HTTP_201_CREATED,
)
def create_automation_rule(
    request: Request,
    dto: AutomationRuleCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> AutomationRuleRead | JSONResponse:
    try:
        return automation_rule_service.create_rule(db, dto, actor)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_automation_rule_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@automation_rules_router.put("/automation-rules/{rule_id}", response_model=AutomationRuleRead)
def update_automation_rule(
    request: Request,
    rule_id: uuid.UUID,
    dto: AutomationRuleUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> AutomationRuleRead | JSONResponse:
    try:
        return automation_rule_service.update_rule(db, rule_id, dto, actor)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_automation_rule_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@automation_rules_router.patch("/automation-rules/{rule_id}/toggle", response_model=AutomationRuleRead)
def toggle_automation_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> AutomationRuleRead | JSONResponse:
    try:
        return automation_rule_service.toggle_rule(db, rule_id, actor)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_automation_rule_toggle_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@automation_rules_router.delete("/automation-rules/{rule_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_automation_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> dict[str, str] | JSONResponse:
    try:
        automation_rule_service.delete_rule(db, rule_id, actor)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_automation_rule_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
