from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from portal_access.config import get_settings, reset_settings_cache
from portal_access.logging import get_logger
from portal_access.service.admin import PortalAdminService
from portal_access.service.audit import AuditRecorder
from portal_access.service.cleanup import CleanupScheduler
from portal_access.service.clock import SystemClock
from portal_access.service.expiry import ExpiryPolicy
from portal_access.service.links import LinkIssuer, LinkValidator
from portal_access.service.notifications import EmailService, Notifier, SmsSender
from portal_access.service.otp import OTPService
from portal_access.service.revocation import RevocationService
from portal_access.service.sessions import SessionManager
from portal_access.service.tokens import SessionTokenSigner, TokenGenerator
from portal_access.storage.memory import MemoryStore
from portal_access.storage.postgres import PostgresStore
from portal_access.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password of a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(
                    fs_root=self.settings.shared_fs_root
                    if self.settings.persist_memory_state
                    else None
                )
            else:
                self.store = PostgresStore(self.settings.database_url)
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for request throttling and the cleanup lock; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; request throttling and the "
                    "cleanup lock are process-local only."
                ),
                mode=fallback_mode,
            )

        self.clock = SystemClock()
        self.tokens = TokenGenerator()
        self.signer = SessionTokenSigner(
            self.settings.session_token_secret,
            issuer=self.settings.session_token_issuer,
            ttl_days=self.settings.session_token_ttl_days,
            clock=self.clock,
        )
        self.policy = ExpiryPolicy(self.store, self.settings)
        self.audit = AuditRecorder(self.store, self.clock)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.sms = SmsSender(
            self.settings.sms_gateway_url,
            api_token=self.settings.sms_gateway_token,
            timeout=self.settings.sms_timeout_seconds,
        )
        # Inline delivery under TEST_MODE keeps request/response assertions deterministic
        self.notifier = Notifier(self.email, self.sms, background=not self.settings.test_mode)
        self.sessions = SessionManager(
            self.store, self.signer, clock=self.clock, audit=self.audit
        )
        self.issuer = LinkIssuer(
            self.store,
            self.policy,
            self.tokens,
            self.settings,
            clock=self.clock,
            notifier=self.notifier,
            audit=self.audit,
        )
        self.validator = LinkValidator(
            self.store, self.sessions, clock=self.clock, audit=self.audit
        )
        self.otp = OTPService(
            self.store,
            self.sessions,
            self.tokens,
            self.settings,
            clock=self.clock,
            notifier=self.notifier,
            audit=self.audit,
        )
        self.revocation = RevocationService(self.store, clock=self.clock, audit=self.audit)
        self.cleanup = CleanupScheduler(
            self.store, self.policy, self.settings, clock=self.clock, cache=self.cache
        )
        self.admin = PortalAdminService(
            self.store,
            self.policy,
            self.issuer,
            self.revocation,
            self.cleanup,
            self.settings,
            clock=self.clock,
            notifier=self.notifier,
            audit=self.audit,
        )
        self._local_rate_limits: Dict[str, Tuple[float, float]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
            cleanup_enabled=self.settings.cleanup_enabled,
        )

    async def shutdown(self) -> None:
        await self.cleanup.stop()
        await self.notifier.drain()
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("redis_close_failed", error=str(exc))
        close = getattr(self.store, "close", None)
        if callable(close):
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            try:
                if loop is not None:
                    loop.create_task(runtime.cache.close())
                else:
                    asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.debug("redis_close_on_reset_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket throttle backed by Redis, with a process-local fallback."""
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = time.monotonic()
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, now - last_ts)
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
