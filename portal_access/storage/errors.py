from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or reference rule is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ActiveLinkConflict(ConstraintViolation):
    """A live reusable link already exists for the (tenant, client, purpose) tuple."""

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        purpose: str,
        existing_link_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            "an active reusable magic link already exists",
            {
                "tenant_id": tenant_id,
                "client_id": client_id,
                "purpose": purpose,
                "existing_link_id": existing_link_id,
            },
        )
        self.existing_link_id = existing_link_id


__all__ = ["ConstraintViolation", "ActiveLinkConflict"]
