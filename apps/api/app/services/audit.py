import uuid
from typing import Any

from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.models.audit import AuditLog


def record_workspace_event(
    session: Session,
    *,
    workspace_id: uuid.UUID,
    actor_id: str,
    action: str,
    metadata: dict[str, Any] | None = None,
    entity_type: str = "workspace",
    entity_id: str | None = None,
) -> AuditLog:
    """Stage one audit row in the caller's transaction; events without an entity target the workspace."""
    entry = AuditLog(
        workspace_id=str(workspace_id),
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id or str(workspace_id),
        event_metadata=dict(metadata or {}),
        correlation_id=get_correlation_id(),
    )
    session.add(entry)
    session.flush()
    return entry
