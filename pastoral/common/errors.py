"""
Error taxonomy for the pastoral pipeline.

Item and organization errors are caught at their loop boundaries and
accumulated as strings; only whole-job failures propagate.
"""

from typing import Optional


class PastoralError(Exception):
    """Base class for pipeline errors."""
    pass


class AuthenticationError(PastoralError):
    """Bad or missing signature, token or session. Never retried automatically."""
    pass


class ValidationError(PastoralError):
    """Malformed event or payload. Fails the single item."""
    pass


class NotFoundError(PastoralError):
    """Referenced person, organization or leader is missing. Item is skipped."""
    pass


class PersistenceError(PastoralError):
    """Data-layer write failure. Aborts the current item's mutation."""
    pass


class UpstreamServiceError(PastoralError):
    """Model client or directory API failure. Triggers graceful degradation."""

    def __init__(self, message: str, code: str = "UPSTREAM_ERROR", status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code, "status": self.status}


_INCHURCH_STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    429: "RATE_LIMIT_EXCEEDED",
    500: "INTERNAL_SERVER_ERROR",
}


class InChurchError(UpstreamServiceError):
    """Error returned by the InChurch directory API."""

    @classmethod
    def from_status(cls, status: int, message: str = "") -> "InChurchError":
        code = _INCHURCH_STATUS_CODES.get(status, "HTTP_ERROR")
        return cls(message or f"InChurch API returned HTTP {status}", code=code, status=status)

    @property
    def is_retryable(self) -> bool:
        return self.status is None or self.status == 429 or self.status >= 500


class JobFailedError(PastoralError):
    """A whole orchestration run failed before or outside per-organization isolation."""

    def __init__(self, message: str, execution_time_ms: int = 0):
        super().__init__(message)
        self.execution_time_ms = execution_time_ms
