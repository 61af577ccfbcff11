from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Optional

from portal_access.config import MAX_CONFIGURABLE_EXPIRY_DAYS, Settings
from portal_access.service.errors import TenantNotFoundError, ValidationError
from portal_access.service.store import PortalStore
from portal_access.storage.models import TenantPortalConfig


class ExpiryPolicy:
    """Per-tenant link lifetimes and retention windows.

    Tenants without a stored configuration are unknown; global settings only
    seed the defaults of newly registered tenants.
    """

    def __init__(self, store: PortalStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def default_config(self, tenant_id: str) -> TenantPortalConfig:
        return TenantPortalConfig(
            tenant_id=tenant_id,
            default_expiry_days=self.settings.default_link_expiry_days,
            max_expiry_days=self.settings.max_link_expiry_days,
            auto_cleanup_days=self.settings.default_cleanup_days,
        )

    def tenant_config(self, tenant_id: str) -> TenantPortalConfig:
        config = self.store.get_portal_config(tenant_id)
        if config is None:
            raise TenantNotFoundError(tenant_id)
        return config

    def resolve_days(
        self,
        config: TenantPortalConfig,
        *,
        expiry_days: Optional[int] = None,
        expiry_hours: Optional[float] = None,
    ) -> int:
        """Explicit days win, then hours rounded up to whole days, then the tenant default."""
        if expiry_days is not None:
            if expiry_days < 1:
                raise ValidationError(
                    "expiry_days must be at least 1", detail={"expiry_days": expiry_days}
                )
            days = int(expiry_days)
        elif expiry_hours is not None:
            if expiry_hours <= 0:
                raise ValidationError(
                    "expiry_hours must be positive", detail={"expiry_hours": expiry_hours}
                )
            days = math.ceil(expiry_hours / 24)
        else:
            days = config.default_expiry_days
        return min(days, config.max_expiry_days)

    def link_expiry(self, now: datetime, config: TenantPortalConfig, days: int) -> datetime:
        """``min(now + days, now + max_expiry_days)``."""
        return now + timedelta(days=min(days, config.max_expiry_days))

    def retention_cutoff(self, now: datetime, config: TenantPortalConfig) -> datetime:
        return now - timedelta(days=config.auto_cleanup_days)

    def otp_cutoff(self, now: datetime) -> datetime:
        return now - timedelta(hours=self.settings.otp_retention_hours)

    @staticmethod
    def validate_config(config: TenantPortalConfig) -> None:
        limit = MAX_CONFIGURABLE_EXPIRY_DAYS
        if not 1 <= config.default_expiry_days <= limit:
            raise ValidationError(
                f"default_expiry_days must be between 1 and {limit}",
                detail={"default_expiry_days": config.default_expiry_days},
            )
        if config.max_expiry_days < config.default_expiry_days:
            raise ValidationError(
                "max_expiry_days must be greater than or equal to default_expiry_days",
                detail={
                    "default_expiry_days": config.default_expiry_days,
                    "max_expiry_days": config.max_expiry_days,
                },
            )
        if config.max_expiry_days > limit:
            raise ValidationError(
                f"max_expiry_days cannot exceed {limit}",
                detail={"max_expiry_days": config.max_expiry_days},
            )
        if config.auto_cleanup_days < 1:
            raise ValidationError(
                "auto_cleanup_days must be at least 1",
                detail={"auto_cleanup_days": config.auto_cleanup_days},
            )
