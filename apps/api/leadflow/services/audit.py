from typing import Any

from sqlalchemy.orm import Session

from leadflow.context import get_correlation_id
from leadflow.models.audit import AuditLog


def write_audit_log(
    db: Session,
    tenant_id: str,
    action: str,
    entity_type: str,
    entity_id: str,
    *,
    actor_id: str | None = None,
    actor_type: str = "system",
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditLog:
    event = AuditLog(
        tenant_id=tenant_id,
        actor_id=actor_id,
        actor_type=actor_type,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        description=description,
        event_metadata=metadata or {},
        correlation_id=get_correlation_id(),
    )
    db.add(event)
    db.flush()
    return event
