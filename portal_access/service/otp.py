from __future__ import annotations

import hmac
from datetime import datetime, timedelta
from typing import Optional

from portal_access.config import Settings
from portal_access.logging import get_logger
from portal_access.service.audit import AuditRecorder
from portal_access.service.clock import Clock, SystemClock
from portal_access.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitedError,
    ValidationError,
)
from portal_access.service.notifications import Notifier
from portal_access.service.results import (
    OTP_MESSAGES,
    OTPRequestResult,
    OTPVerificationResult,
    Reason,
)
from portal_access.service.sessions import SessionManager
from portal_access.service.store import PortalStore
from portal_access.service.tokens import TokenGenerator
from portal_access.storage.models import CustomerSession, OTPVerification, VerificationMethod

DELIVERY_METHODS = {VerificationMethod.EMAIL.value, VerificationMethod.SMS.value}


class OTPService:
    """One-time codes that upgrade a session to full client visibility.

    Requests are capped per client inside a sliding window; the cap is checked
    and the code inserted in one store operation. A code locks after
    ``otp_max_attempts`` wrong guesses and stays unusable afterwards.
    """

    def __init__(
        self,
        store: PortalStore,
        sessions: SessionManager,
        tokens: TokenGenerator,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditRecorder] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.tokens = tokens
        self.settings = settings
        self.clock = clock or SystemClock()
        self.notifier = notifier
        self.audit = audit
        self.logger = get_logger(__name__)

    def _live_session(
        self, session_id: str, tenant_id: Optional[str]
    ) -> Optional[CustomerSession]:
        session = self.store.get_customer_session(session_id, tenant_id=tenant_id)
        if session is None or not session.is_live(self.clock.now()):
            return None
        return session

    def _default_target(self, session: CustomerSession, method: str) -> Optional[str]:
        sources = []
        if session.origin_magic_link_id:
            link = self.store.get_magic_link(
                session.origin_magic_link_id, tenant_id=session.tenant_id
            )
            if link is not None:
                sources.append(link)
        client = self.store.get_client(session.tenant_id, session.client_id)
        if client is not None:
            sources.append(client)
        for source in sources:
            value = source.email if method == VerificationMethod.EMAIL.value else source.phone
            if value:
                return value
        return None

    async def request_otp(
        self,
        tenant_id: str,
        client_id: str,
        session_id: str,
        method: str,
        target: Optional[str] = None,
    ) -> OTPRequestResult:
        if method not in DELIVERY_METHODS:
            raise ValidationError(
                "delivery method must be email or sms", detail={"method": method}
            )
        session = self._live_session(session_id, tenant_id)
        if session is None or session.client_id != client_id:
            raise AuthenticationError(
                "Invalid session. Please access your portal link again.",
                error_code="invalid_session",
            )
        if session.origin_magic_link_id:
            origin = self.store.get_magic_link(session.origin_magic_link_id, tenant_id=tenant_id)
            if origin is not None and not origin.allow_multi_job_access:
                raise ForbiddenError(
                    "This link does not allow access to other projects.",
                    detail={"magic_link_id": origin.id},
                )
        target = (target or "").strip() or self._default_target(session, method)
        if not target:
            raise ValidationError(
                f"no {method} address on file for this client", detail={"method": method}
            )

        now = self.clock.now()
        window = timedelta(seconds=self.settings.otp_rate_limit_window_seconds)
        otp = OTPVerification.new(
            code=self.tokens.otp_code(),
            tenant_id=tenant_id,
            client_id=client_id,
            customer_session_id=session.id,
            delivery_method=method,
            delivery_target=target,
            now=now,
            ttl_minutes=self.settings.otp_ttl_minutes,
            max_attempts=self.settings.otp_max_attempts,
        )
        created = self.store.create_otp_within_limit(
            otp, window_start=now - window, limit=self.settings.otp_rate_limit_count
        )
        if created is None:
            self.logger.warning(
                "otp_rate_limited",
                tenant_id=tenant_id,
                client_id=client_id,
                session_id=session.id,
            )
            raise RateLimitedError(
                OTP_MESSAGES[Reason.RATE_LIMITED],
                detail={"retry_after_seconds": int(window.total_seconds())},
            )

        self.logger.info(
            "otp_requested",
            otp_id=otp.id,
            tenant_id=tenant_id,
            client_id=client_id,
            session_id=session.id,
            method=method,
        )
        if self.audit:
            self.audit.record(
                "portal",
                "otp_requested",
                tenant_id=tenant_id,
                entity_type="otp_verification",
                entity_id=otp.id,
                metadata={"client_id": client_id, "method": method},
            )

        delivered: Optional[bool] = False
        if self.notifier:
            config = self.store.get_portal_config(tenant_id)
            # None while a background send is still in flight
            delivered = await self.notifier.send_otp(
                otp,
                config,
                ttl_minutes=self.settings.otp_ttl_minutes,
                on_done=lambda ok, error: self._record_delivery(otp.id, ok, error),
            )
        return OTPRequestResult(otp=otp, delivered=delivered)

    def _record_delivery(self, otp_id: str, ok: bool, error: Optional[str]) -> None:
        if ok:
            self.store.record_otp_delivery(otp_id, delivered_at=self.clock.now(), error=None)
            return
        self.logger.warning("otp_delivery_failed", otp_id=otp_id, error=error)
        self.store.record_otp_delivery(otp_id, delivered_at=None, error=error)

    @staticmethod
    def _check(otp: Optional[OTPVerification], now: datetime) -> Optional[Reason]:
        if otp is None:
            return Reason.INVALID_CODE
        if otp.is_expired(now):
            return Reason.EXPIRED
        if otp.is_consumed:
            return Reason.ALREADY_USED
        if otp.is_locked:
            return Reason.LOCKED
        return None

    def _failure(self, reason: Reason) -> OTPVerificationResult:
        if reason is Reason.LOCKED:
            return OTPVerificationResult.failure(reason, attempts_remaining=0)
        return OTPVerificationResult.failure(reason)

    async def verify_otp(
        self,
        code: str,
        session_id: str,
        ip_address: Optional[str] = None,
        *,
        tenant_id: Optional[str] = None,
    ) -> OTPVerificationResult:
        """Check ``code`` against the session's latest code.

        Attempt counting, locking and consumption are single guarded store
        writes, so parallel guesses cannot exceed ``max_attempts`` and a code
        is consumed at most once.
        """
        session = self._live_session(session_id, tenant_id)
        if session is None:
            return OTPVerificationResult.failure(Reason.SESSION_NOT_FOUND)

        otp = self.store.get_latest_otp_for_session(session.id)
        now = self.clock.now()
        reason = self._check(otp, now)
        if reason is not None:
            return self._failure(reason)

        supplied = (code or "").strip()
        if not hmac.compare_digest(otp.code.encode(), supplied.encode()):
            counted = self.store.record_otp_failure(otp.id, now)
            if counted is None:
                # Consumed or locked by a concurrent request
                current = self.store.get_latest_otp_for_session(session.id)
                return self._failure(self._check(current, now) or Reason.LOCKED)
            if counted.is_locked:
                self.logger.warning(
                    "otp_locked",
                    otp_id=counted.id,
                    session_id=session.id,
                    attempts=counted.attempt_count,
                )
            return OTPVerificationResult.failure(
                Reason.INVALID_CODE, attempts_remaining=counted.attempts_remaining
            )

        consumed = self.store.consume_otp(otp.id, now, ip_address)
        if consumed is None:
            current = self.store.get_latest_otp_for_session(session.id)
            return self._failure(self._check(current, now) or Reason.ALREADY_USED)
        verified = self.sessions.grant_full_scope(session, consumed.delivery_method, now=now)
        if verified is None:
            return OTPVerificationResult.failure(Reason.SESSION_NOT_FOUND)
        if self.audit:
            self.audit.record(
                "portal",
                "otp_verified",
                tenant_id=verified.tenant_id,
                entity_type="customer_session",
                entity_id=verified.id,
                metadata={"otp_id": consumed.id, "method": consumed.delivery_method},
            )
        return OTPVerificationResult(
            ok=True, attempts_remaining=consumed.attempts_remaining, session=verified
        )
