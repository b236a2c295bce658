"""Audit trail for credit, payment and subscription actions."""

from typing import Any

from tradehub.core.logging import get_logger
from tradehub.models.audit_log import AuditLog

log = get_logger(__name__)


async def log_event(
    user_id: Any | None,
    event_type: str,
    entity_type: str,
    entity_id: Any | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append to audit_logs collection. Ids may be ObjectIds or strings; both are stored as strings."""
    await AuditLog(
        user_id=str(user_id) if user_id is not None else None,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        metadata=metadata or {},
    ).insert()
    log.debug("audit_event", event_type=event_type, entity_type=entity_type, entity_id=entity_id and str(entity_id))
