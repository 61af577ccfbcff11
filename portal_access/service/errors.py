from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)

    Setup-path failures refine ``not_found`` into ``client_not_found`` and
    ``tenant_not_found`` so callers can tell the two apart.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credential missing or invalid (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ClientNotFoundError(NotFoundError):
    error_code = "client_not_found"

    def __init__(self, tenant_id: str, client_id: str) -> None:
        super().__init__(
            "client not found", detail={"tenant_id": tenant_id, "client_id": client_id}
        )


class TenantNotFoundError(NotFoundError):
    error_code = "tenant_not_found"

    def __init__(self, tenant_id: str) -> None:
        super().__init__("tenant not found", detail={"tenant_id": tenant_id})


class ConflictError(ServiceError):
    """Resource conflict that survived retries (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ClientNotFoundError",
    "TenantNotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
