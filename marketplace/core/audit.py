"""Audit log for money movement and order settlement."""

from datetime import datetime
from typing import Any

from marketplace.core.clock import utcnow
from marketplace.models.audit_log import AuditLog
from marketplace.storage.base import MarketStore


async def log_event(
    store: MarketStore,
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    created_at: datetime | None = None,
) -> None:
    """Append to audit_logs collection. Services pass their own clock reading as `created_at`."""
    await store.insert_audit(
        AuditLog(
            user_id=user_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata or {},
            created_at=created_at or utcnow(),
        )
    )
