from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from portal_access.api.schemas import (
    BulkExtendResponse,
    CleanupResponse,
    Envelope,
    ExpiryAnalyticsResponse,
    ExtendLinkRequest,
    IssueLinkRequest,
    IssueLinkResponse,
    LinkAccessResponse,
    LinkDetailResponse,
    LinkListResponse,
    LinkStatsResponse,
    LinkSummary,
    OTPRequestBody,
    OTPRequestResponse,
    OTPVerifyBody,
    OTPVerifyResponse,
    PortalSettingsResponse,
    PortalSettingsUpdate,
    RevokeAllResponse,
    SessionListResponse,
    SessionResponse,
    SessionSummary,
    StatisticsResponse,
)
from portal_access.logging import get_logger
from portal_access.service.results import Reason
from portal_access.service.runtime import check_rate_limit, get_runtime
from portal_access.storage.models import CustomerSession

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_REASON_STATUS = {
    Reason.INVALID_TOKEN: 401,
    Reason.EXPIRED: 410,
    Reason.REVOKED: 410,
    Reason.ALREADY_USED: 410,
    Reason.INVALID_SESSION: 401,
    Reason.SESSION_NOT_FOUND: 401,
    Reason.VERIFICATION_REQUIRED: 403,
    Reason.INVALID_CODE: 400,
    Reason.LOCKED: 423,
    Reason.RATE_LIMITED: 429,
}

# Session failures all mean "sign in again" to the portal client
_SESSION_REASON_STATUS = {
    Reason.INVALID_SESSION: 401,
    Reason.EXPIRED: 401,
    Reason.REVOKED: 401,
    Reason.VERIFICATION_REQUIRED: 403,
}


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    allowed, _remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after_seconds": reset_seconds},
        )


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_customer_session(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> CustomerSession:
    runtime = get_runtime()
    result = await runtime.sessions.validate_session(
        _bearer_token(authorization),
        _client_ip(request),
        request.headers.get("user-agent"),
    )
    if not result.ok:
        raise _http_error(
            result.reason.value,
            result.message,
            status_code=_SESSION_REASON_STATUS.get(result.reason, 401),
        )
    return result.session


@dataclass(frozen=True)
class AdminContext:
    tenant_id: str
    actor_id: Optional[str]


async def get_admin_context(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-ID"),
) -> AdminContext:
    runtime = get_runtime()
    expected = runtime.settings.admin_api_key
    if not expected:
        raise _http_error("forbidden", "admin access is disabled", status_code=403)
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        raise _http_error("unauthorized", "invalid admin key", status_code=401)
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise _http_error("validation_error", "X-Tenant-ID header is required", status_code=400)
    return AdminContext(tenant_id=tenant_id, actor_id=(x_actor_id or "").strip() or None)


# ----------------------------------------------------------------------
# customer portal
# ----------------------------------------------------------------------


@router.post("/portal/access/{token}", response_model=Envelope, tags=["portal"])
async def access_portal(request: Request, token: str = Path(..., min_length=1, max_length=512)):
    """Exchange a magic link token for a portal session.

    Failures carry the reason code (``invalid_token``, ``expired``, ``revoked``,
    ``already_used``) and a message suitable for the customer.
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"portal:access:{ip or 'unknown'}",
        runtime.settings.access_rate_limit_per_minute,
        60,
    )
    result = await runtime.validator.validate(token, ip, request.headers.get("user-agent"))
    if not result.ok:
        raise _http_error(
            result.reason.value, result.message, status_code=_REASON_STATUS[result.reason]
        )
    session = result.session
    return Envelope(
        status="ok",
        data=LinkAccessResponse(
            session_token=session.session_token,
            session_created=result.access.created,
            purpose=result.link.purpose,
            quote_id=result.link.quote_id,
            allow_multi_job_access=result.link.allow_multi_job_access,
            session=SessionResponse.from_session(session),
        ),
    )


@router.get("/portal/session", response_model=Envelope, tags=["portal"])
async def get_portal_session(session: CustomerSession = Depends(get_customer_session)):
    return Envelope(status="ok", data=SessionResponse.from_session(session))


@router.get("/portal/quotes", response_model=Envelope, tags=["portal"])
async def list_portal_quotes(
    all_projects: bool = Query(False),
    session: CustomerSession = Depends(get_customer_session),
):
    """Quote ids visible to the session; ``all_projects`` requires verification."""
    runtime = get_runtime()
    if all_projects:
        check = runtime.sessions.require_verified(session)
        if not check.ok:
            raise _http_error(
                check.reason.value, check.message, status_code=_REASON_STATUS[check.reason]
            )
    return Envelope(status="ok", data={"quote_ids": list(session.quote_ids)})


@router.post("/portal/otp/request", response_model=Envelope, tags=["portal"])
async def request_portal_otp(
    body: OTPRequestBody,
    session: CustomerSession = Depends(get_customer_session),
):
    runtime = get_runtime()
    result = await runtime.otp.request_otp(
        session.tenant_id, session.client_id, session.id, body.method, body.target
    )
    return Envelope(
        status="ok",
        data=OTPRequestResponse(
            method=result.otp.delivery_method,
            expires_at=result.expires_at,
            delivered=result.delivered,
        ),
    )


@router.post("/portal/otp/verify", response_model=Envelope, tags=["portal"])
async def verify_portal_otp(
    body: OTPVerifyBody,
    request: Request,
    session: CustomerSession = Depends(get_customer_session),
):
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"portal:otp_verify:{ip or 'unknown'}",
        runtime.settings.access_rate_limit_per_minute,
        60,
    )
    result = await runtime.otp.verify_otp(body.code, session.id, ip, tenant_id=session.tenant_id)
    if not result.ok:
        details = (
            {"attempts_remaining": result.attempts_remaining}
            if result.attempts_remaining is not None
            else None
        )
        raise _http_error(
            result.reason.value,
            result.message,
            status_code=_REASON_STATUS[result.reason],
            details=details,
        )
    return Envelope(
        status="ok",
        data=OTPVerifyResponse(
            verified=True,
            attempts_remaining=result.attempts_remaining,
            session=SessionResponse.from_session(result.session),
        ),
    )


# ----------------------------------------------------------------------
# contractor admin
# ----------------------------------------------------------------------


@router.post("/admin/portal/links", response_model=Envelope, status_code=201, tags=["admin"])
async def issue_portal_link(body: IssueLinkRequest, ctx: AdminContext = Depends(get_admin_context)):
    runtime = get_runtime()
    outcome = await runtime.admin.issue_link(
        ctx.tenant_id,
        body.client_id,
        purpose=body.purpose,
        quote_id=body.quote_id,
        email=body.email,
        phone=body.phone,
        expiry_days=body.expiry_days,
        expiry_hours=body.expiry_hours,
        is_single_use=body.is_single_use,
        allow_multi_job_access=body.allow_multi_job_access,
        metadata=body.metadata,
        send=body.send,
        actor_id=ctx.actor_id,
    )
    return Envelope(
        status="ok",
        data=IssueLinkResponse(
            link_id=outcome.record.id,
            url=outcome.url,
            token=outcome.token,
            expires_at=outcome.expires_at,
            reused=outcome.reused,
        ),
    )


@router.get("/admin/portal/links", response_model=Envelope, tags=["admin"])
async def list_portal_links(
    status: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    client_id: Optional[str] = Query(None, max_length=128),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    ctx: AdminContext = Depends(get_admin_context),
):
    runtime = get_runtime()
    listing, stats = runtime.admin.list_links(
        ctx.tenant_id, status=status, search=search, client_id=client_id, page=page, limit=limit
    )
    return Envelope(
        status="ok",
        data=LinkListResponse(
            items=[LinkSummary.from_view(view) for view in listing.items],
            total=listing.total,
            page=listing.page,
            limit=listing.limit,
            stats=LinkStatsResponse.from_stats(stats),
        ),
    )


@router.post("/admin/portal/links/bulk-extend", response_model=Envelope, tags=["admin"])
async def bulk_extend_portal_links(
    body: ExtendLinkRequest, ctx: AdminContext = Depends(get_admin_context)
):
    runtime = get_runtime()
    count = await runtime.admin.bulk_extend_expiring(
        ctx.tenant_id, body.days, actor_id=ctx.actor_id
    )
    return Envelope(status="ok", data=BulkExtendResponse(extended_count=count, days=body.days))


@router.get("/admin/portal/links/{link_id}", response_model=Envelope, tags=["admin"])
async def get_portal_link(link_id: str, ctx: AdminContext = Depends(get_admin_context)):
    runtime = get_runtime()
    detail = runtime.admin.get_link_detail(ctx.tenant_id, link_id)
    return Envelope(status="ok", data=LinkDetailResponse.from_detail(detail))


@router.post("/admin/portal/links/{link_id}/extend", response_model=Envelope, tags=["admin"])
async def extend_portal_link(
    link_id: str, body: ExtendLinkRequest, ctx: AdminContext = Depends(get_admin_context)
):
    runtime = get_runtime()
    view = await runtime.admin.extend_link(
        ctx.tenant_id, link_id, body.days, actor_id=ctx.actor_id
    )
    return Envelope(status="ok", data=LinkSummary.from_view(view))


@router.post("/admin/portal/links/{link_id}/regenerate", response_model=Envelope, tags=["admin"])
async def regenerate_portal_link(link_id: str, ctx: AdminContext = Depends(get_admin_context)):
    runtime = get_runtime()
    outcome = await runtime.admin.regenerate_link(ctx.tenant_id, link_id, actor_id=ctx.actor_id)
    return Envelope(
        status="ok",
        data=IssueLinkResponse(
            link_id=outcome.record.id,
            url=outcome.url,
            token=outcome.token,
            expires_at=outcome.expires_at,
            reused=outcome.reused,
        ),
    )


@router.post("/admin/portal/links/{link_id}/deactivate", response_model=Envelope, tags=["admin"])
async def deactivate_portal_link(link_id: str, ctx: AdminContext = Depends(get_admin_context)):
    runtime = get_runtime()
    link = await runtime.admin.deactivate_link(ctx.tenant_id, link_id, actor_id=ctx.actor_id)
    return Envelope(status="ok", data={"link_id": link.id, "revoked_at": link.revoked_at})


@router.get("/admin/portal/sessions", response_model=Envelope, tags=["admin"])
async def list_portal_sessions(
    status: Optional[str] = Query(None),
    client_id: Optional[str] = Query(None, max_length=128),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    ctx: AdminContext = Depends(get_admin_context),
):
    runtime = get_runtime()
    listing = runtime.admin.list_sessions(
        ctx.tenant_id, status=status, client_id=client_id, page=page, limit=limit
    )
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[SessionSummary.from_session(s) for s in listing.items],
            total=listing.total,
            page=listing.page,
            limit=listing.limit,
        ),
    )


@router.get("/admin/portal/sessions/{session_id}", response_model=Envelope, tags=["admin"])
async def get_portal_session_detail(
    session_id: str, ctx: AdminContext = Depends(get_admin_context)
):
    runtime = get_runtime()
    session = runtime.admin.get_session_detail(ctx.tenant_id, session_id)
    return Envelope(status="ok", data=SessionSummary.from_session(session))


@router.post(
    "/admin/portal/sessions/{session_id}/deactivate", response_model=Envelope, tags=["admin"]
)
async def deactivate_portal_session(
    session_id: str, ctx: AdminContext = Depends(get_admin_context)
):
    runtime = get_runtime()
    session = await runtime.admin.deactivate_session(
        ctx.tenant_id, session_id, actor_id=ctx.actor_id
    )
    return Envelope(
        status="ok", data={"session_id": session.id, "revoked_at": session.revoked_at}
    )


@router.post(
    "/admin/portal/clients/{client_id}/revoke-all", response_model=Envelope, tags=["admin"]
)
async def revoke_client_portal_access(
    client_id: str, ctx: AdminContext = Depends(get_admin_context)
):
    runtime = get_runtime()
    result = await runtime.admin.revoke_all_for_client(
        ctx.tenant_id, client_id, actor_id=ctx.actor_id
    )
    return Envelope(
        status="ok",
        data=RevokeAllResponse(
            client_id=result.client_id,
            sessions_revoked=result.sessions_revoked,
            links_revoked=result.links_revoked,
        ),
    )


@router.post("/admin/portal/cleanup", response_model=Envelope, tags=["admin"])
async def run_portal_cleanup(ctx: AdminContext = Depends(get_admin_context)):
    runtime = get_runtime()
    report = await runtime.admin.run_cleanup(ctx.tenant_id)
    return Envelope(status="ok", data=CleanupResponse(**report.as_dict()))


@router.get("/admin/portal/analytics/expiry", response_model=Envelope, tags=["admin"])
async def portal_expiry_analytics(ctx: AdminContext = Depends(get_admin_context)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=ExpiryAnalyticsResponse(**runtime.admin.expiry_analytics(ctx.tenant_id)),
    )


@router.get("/admin/portal/statistics", response_model=Envelope, tags=["admin"])
async def portal_statistics(ctx: AdminContext = Depends(get_admin_context)):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=StatisticsResponse(**runtime.admin.statistics(ctx.tenant_id))
    )


@router.get("/admin/portal/settings", response_model=Envelope, tags=["admin"])
async def get_portal_settings(ctx: AdminContext = Depends(get_admin_context)):
    runtime = get_runtime()
    config = runtime.admin.get_portal_settings(ctx.tenant_id)
    return Envelope(status="ok", data=PortalSettingsResponse.from_config(config))


@router.patch("/admin/portal/settings", response_model=Envelope, tags=["admin"])
async def update_portal_settings(
    body: PortalSettingsUpdate, ctx: AdminContext = Depends(get_admin_context)
):
    runtime = get_runtime()
    config = runtime.admin.update_portal_settings(
        ctx.tenant_id, body.model_dump(exclude_unset=True), actor_id=ctx.actor_id
    )
    return Envelope(status="ok", data=PortalSettingsResponse.from_config(config))
