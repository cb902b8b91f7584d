"""
Error taxonomy for the video job lifecycle.

Every error carries a stable ``code`` and an HTTP ``status_code`` so the
request layer can render it without inspecting message text.
"""
from typing import Any, Dict, Optional


class AppError(Exception):
    """Base class for errors that map to an API response."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, message: str = "Video not found", **kwargs):
        super().__init__(message, **kwargs)


class QuotaExceededError(AppError):
    status_code = 429
    code = "QUOTA_EXCEEDED"

    def __init__(self, used: int, limit: int, message: Optional[str] = None):
        super().__init__(
            message or f"Quota exceeded. You have used {used} of {limit} videos.",
            details={"current_usage": used, "limit": limit, "remaining": max(0, limit - used)},
        )
        self.used = used
        self.limit = limit


class SourceNotCompletedError(AppError):
    status_code = 409
    code = "SOURCE_NOT_COMPLETED"

    def __init__(self, message: str = "Source video must be completed before remixing", **kwargs):
        super().__init__(message, **kwargs)


class NotReadyError(AppError):
    status_code = 409
    code = "NOT_READY"

    def __init__(self, message: str = "Video is not ready for download yet", **kwargs):
        super().__init__(message, **kwargs)


class UpstreamError(AppError):
    """Wraps a failure of the video provider."""

    INVALID_PARAMETERS = "invalid_parameters"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    AUTHENTICATION_FAILED = "authentication_failed"

    _STATUS_BY_KIND = {
        INVALID_PARAMETERS: 400,
        RATE_LIMITED: 429,
        UNAVAILABLE: 502,
        AUTHENTICATION_FAILED: 502,
    }

    def __init__(self, kind: str, message: str, upstream_status: Optional[int] = None):
        super().__init__(message, code=f"UPSTREAM_{kind.upper()}")
        self.kind = kind
        self.upstream_status = upstream_status
        self.status_code = self._STATUS_BY_KIND.get(kind, 502)

    @property
    def transient(self) -> bool:
        return self.kind in (self.RATE_LIMITED, self.UNAVAILABLE)


class StoreError(AppError):
    status_code = 500
    code = "STORE_ERROR"
