from leadflow.models.audit import AuditLog
from leadflow.crm.models import (
	CRMAutomationRule,
	CRMLead,
	CRMNotification,
	CRMPipelineStage,
	CRMPosition,
	CRMStageVisit,
	CRMTask,
	CRMTeamMember,
)

__all__ = [
	"AuditLog",
	"CRMAutomationRule",
	"CRMLead",
	"CRMNotification",
	"CRMPipelineStage",
	"CRMPosition",
	"CRMStageVisit",
	"CRMTask",
	"CRMTeamMember",
]
