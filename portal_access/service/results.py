"""Typed outcomes returned by the portal services.

Validation failures are values, not exceptions: every outcome carries a
stable ``reason`` code and the message shown to the customer.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from portal_access.storage.models import CustomerSession, MagicLink, OTPVerification


class Reason(str, Enum):
    # link path
    INVALID_TOKEN = "invalid_token"
    EXPIRED = "expired"
    REVOKED = "revoked"
    ALREADY_USED = "already_used"
    # session path
    INVALID_SESSION = "invalid_session"
    SESSION_NOT_FOUND = "session_not_found"
    VERIFICATION_REQUIRED = "verification_required"
    # otp path
    INVALID_CODE = "invalid_code"
    LOCKED = "locked"
    RATE_LIMITED = "rate_limited"


LINK_MESSAGES = {
    Reason.INVALID_TOKEN: "This link is invalid or has expired.",
    Reason.EXPIRED: "This link has expired. Please request a new one.",
    Reason.REVOKED: "This link has been revoked.",
    Reason.ALREADY_USED: "This link has already been used.",
}

SESSION_MESSAGES = {
    Reason.INVALID_SESSION: "Invalid session. Please access your portal link again.",
    Reason.SESSION_NOT_FOUND: "Session not found. Please access your portal link again.",
    Reason.EXPIRED: "Your session has expired. Please access your portal link again.",
    Reason.REVOKED: "Your session is no longer valid.",
    Reason.VERIFICATION_REQUIRED: "Please verify your identity to view all of your projects.",
}

OTP_MESSAGES = {
    Reason.INVALID_CODE: "Invalid code.",
    Reason.EXPIRED: "Verification code has expired. Please request a new one.",
    Reason.ALREADY_USED: "This code has already been used.",
    Reason.LOCKED: "Too many failed attempts. Please request a new code.",
    Reason.RATE_LIMITED: "Too many verification codes requested. Please wait a few minutes and try again.",
    Reason.SESSION_NOT_FOUND: SESSION_MESSAGES[Reason.SESSION_NOT_FOUND],
}


def invalid_code_message(attempts_remaining: int) -> str:
    if attempts_remaining <= 0:
        return "Invalid code. No attempts remaining. Please request a new code."
    noun = "attempt" if attempts_remaining == 1 else "attempts"
    return f"Invalid code. {attempts_remaining} {noun} remaining."


class IssueStatus(str, Enum):
    CREATED = "created"
    REUSED = "reused"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class IssueOutcome:
    """Result of a link issuance: Created | Reused | Conflict."""

    status: IssueStatus
    record: Optional[MagicLink] = None
    url: Optional[str] = None
    attempts: int = 1

    @property
    def reused(self) -> bool:
        return self.status is IssueStatus.REUSED

    @property
    def token(self) -> Optional[str]:
        return self.record.token if self.record else None

    @property
    def expires_at(self):
        return self.record.expires_at if self.record else None


@dataclass(frozen=True)
class SessionAccess:
    session: CustomerSession
    created: bool


@dataclass(frozen=True)
class LinkValidation:
    ok: bool
    reason: Optional[Reason] = None
    message: Optional[str] = None
    link: Optional[MagicLink] = None
    access: Optional[SessionAccess] = None

    @classmethod
    def failure(cls, reason: Reason, link: Optional[MagicLink] = None) -> "LinkValidation":
        return cls(ok=False, reason=reason, message=LINK_MESSAGES[reason], link=link)

    @property
    def session(self) -> Optional[CustomerSession]:
        return self.access.session if self.access else None


@dataclass(frozen=True)
class SessionValidation:
    ok: bool
    reason: Optional[Reason] = None
    message: Optional[str] = None
    session: Optional[CustomerSession] = None

    @classmethod
    def failure(
        cls, reason: Reason, session: Optional[CustomerSession] = None
    ) -> "SessionValidation":
        return cls(ok=False, reason=reason, message=SESSION_MESSAGES[reason], session=session)


@dataclass(frozen=True)
class OTPRequestResult:
    """``delivered`` is None while the send is still queued in the background."""

    otp: OTPVerification
    delivered: Optional[bool]

    @property
    def code(self) -> str:
        return self.otp.code

    @property
    def expires_at(self):
        return self.otp.expires_at


@dataclass(frozen=True)
class OTPVerificationResult:
    ok: bool
    reason: Optional[Reason] = None
    message: Optional[str] = None
    attempts_remaining: Optional[int] = None
    session: Optional[CustomerSession] = None

    @classmethod
    def failure(
        cls, reason: Reason, *, attempts_remaining: Optional[int] = None
    ) -> "OTPVerificationResult":
        message = (
            invalid_code_message(attempts_remaining)
            if reason is Reason.INVALID_CODE and attempts_remaining is not None
            else OTP_MESSAGES[reason]
        )
        return cls(
            ok=False, reason=reason, message=message, attempts_remaining=attempts_remaining
        )
