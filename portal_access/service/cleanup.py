"""Periodic retention sweep for portal links, sessions and one-time codes.

Each tenant is swept with its own ``auto_cleanup_days``; one-time codes are
purged after a fixed window for every tenant. A failing tenant is logged and
skipped so the rest of the sweep still runs. Ticks never overlap: a tick that
finds the previous sweep still running is skipped, and when Redis is
available the same holds across processes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, List, Optional

from portal_access.config import Settings
from portal_access.logging import get_logger
from portal_access.service.clock import Clock, SystemClock
from portal_access.service.expiry import ExpiryPolicy
from portal_access.service.store import PortalStore
from portal_access.storage.models import TenantPortalConfig, new_id

if TYPE_CHECKING:
    from portal_access.storage.redis_cache import RedisCache

logger = get_logger(__name__)

SWEEP_LOCK_NAME = "portal_cleanup"
MAX_BACKOFF_SECONDS = 3600


@dataclass
class CleanupReport:
    links_deleted: int = 0
    sessions_deleted: int = 0
    otps_deleted: int = 0
    tenants_swept: int = 0
    failed_tenants: List[str] = field(default_factory=list)
    skipped: bool = False

    def as_dict(self) -> dict:
        return {
            "links_deleted": self.links_deleted,
            "sessions_deleted": self.sessions_deleted,
            "otps_deleted": self.otps_deleted,
            "tenants_swept": self.tenants_swept,
            "failed_tenants": list(self.failed_tenants),
            "skipped": self.skipped,
        }


class CleanupScheduler:
    """Recurring cleanup task with a not-currently-running guard."""

    def __init__(
        self,
        store: PortalStore,
        policy: ExpiryPolicy,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        cache: Optional["RedisCache"] = None,
        interval_seconds: Optional[int] = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self.settings = settings
        self.clock = clock or SystemClock()
        self.cache = cache
        self.interval_seconds = interval_seconds or settings.cleanup_interval_seconds
        self._sweep_lock = asyncio.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[CleanupReport] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("cleanup_scheduler_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("cleanup_scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("cleanup_scheduler_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "cleanup_scheduler_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval_seconds * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "cleanup_scheduler_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue
            await asyncio.sleep(self.interval_seconds)

    async def run_once(
        self, tenant_ids: Optional[Iterable[str]] = None, *, force: bool = False
    ) -> CleanupReport:
        """Sweep the given tenants (all configured tenants by default).

        ``force`` sweeps tenants whose automatic cleanup is disabled, for
        manual triggers.
        """
        if self._sweep_lock.locked():
            logger.info("cleanup_sweep_skipped", reason="sweep_in_progress")
            return CleanupReport(skipped=True)

        async with self._sweep_lock:
            owner = new_id()
            if not await self._acquire_shared_lock(owner):
                logger.info("cleanup_sweep_skipped", reason="held_by_other_worker")
                return CleanupReport(skipped=True)
            try:
                # Store calls block; keep them off the event loop
                report = await asyncio.to_thread(self._sweep, tenant_ids, force=force)
            finally:
                await self._release_shared_lock(owner)

        self.last_report = report
        logger.info("cleanup_sweep_completed", **report.as_dict())
        return report

    async def _acquire_shared_lock(self, owner: str) -> bool:
        if self.cache is None:
            return True
        try:
            return await self.cache.acquire_lock(
                SWEEP_LOCK_NAME, owner, max(60, self.interval_seconds)
            )
        except Exception as exc:
            # Redis outage degrades to the in-process guard
            logger.warning("cleanup_lock_unavailable", error=str(exc))
            return True

    async def _release_shared_lock(self, owner: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.release_lock(SWEEP_LOCK_NAME, owner)
        except Exception as exc:
            logger.warning("cleanup_lock_release_failed", error=str(exc))

    def _sweep(self, tenant_ids: Optional[Iterable[str]], *, force: bool) -> CleanupReport:
        wanted = set(tenant_ids) if tenant_ids is not None else None
        configs = [
            cfg
            for cfg in self.store.list_portal_configs()
            if wanted is None or cfg.tenant_id in wanted
        ]
        report = CleanupReport()
        for config in configs:
            try:
                self._sweep_tenant(config, report, force=force)
            except Exception as exc:
                report.failed_tenants.append(config.tenant_id)
                logger.error(
                    "cleanup_tenant_failed",
                    tenant_id=config.tenant_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            report.tenants_swept += 1
        return report

    def _sweep_tenant(
        self, config: TenantPortalConfig, report: CleanupReport, *, force: bool
    ) -> None:
        now = self.clock.now()
        links = sessions = 0
        if config.auto_cleanup_enabled or force:
            cutoff = self.policy.retention_cutoff(now, config)
            links = self.store.delete_magic_links_expired_before(config.tenant_id, cutoff)
            sessions = self.store.delete_customer_sessions_expired_before(
                config.tenant_id, cutoff
            )
        otps = self.store.delete_otps_created_before(
            config.tenant_id, self.policy.otp_cutoff(now)
        )
        report.links_deleted += links
        report.sessions_deleted += sessions
        report.otps_deleted += otps
        if links or sessions or otps:
            logger.info(
                "cleanup_tenant_swept",
                tenant_id=config.tenant_id,
                links_deleted=links,
                sessions_deleted=sessions,
                otps_deleted=otps,
            )
