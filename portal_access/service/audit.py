from __future__ import annotations

from typing import Any, Dict, Optional

from portal_access.logging import get_logger
from portal_access.service.clock import Clock, SystemClock
from portal_access.service.store import PortalStore
from portal_access.storage.models import AuditEntry, new_id


class AuditRecorder:
    """Appends audit entries; a failed write is logged and never raised."""

    def __init__(self, store: PortalStore, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    def record(
        self,
        category: str,
        action: str,
        *,
        tenant_id: str,
        actor_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEntry]:
        entry = AuditEntry(
            id=new_id(),
            tenant_id=tenant_id,
            category=category,
            action=action,
            actor_id=actor_id,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=dict(metadata or {}),
            created_at=self.clock.now(),
        )
        try:
            return self.store.append_audit_entry(entry)
        except Exception as exc:
            self.logger.warning(
                "audit_write_failed",
                category=category,
                action=action,
                tenant_id=tenant_id,
                entity_id=entity_id,
                error=str(exc),
            )
            return None
