from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Optional

if TYPE_CHECKING:
    from authshield.storage.models import RateLimitResult


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - rate_limited (429)
    - account_locked (429)
    - server_error (500)
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
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        # Extra response headers, merged by the API error handler
        self.headers: Dict[str, str] = dict(headers or {})


class RuleNotFoundError(ServiceError):
    """A caller referenced a rate-limit rule that is not configured.

    A configuration bug; surfaced at startup by ``validate_rules``.
    """

    status_code = 500
    error_code = "server_error"

    def __init__(self, rule_name: str) -> None:
        super().__init__(
            f"Rate limit rule '{rule_name}' not found", detail={"rule": rule_name}
        )
        self.rule_name = rule_name


class _RetryableError(ServiceError):
    def __init__(self, message: str, *, retry_after_seconds: int, detail: Optional[dict] = None):
        super().__init__(
            message, detail={**(detail or {}), "retry_after": retry_after_seconds}
        )
        self.retry_after_seconds = retry_after_seconds


class RateLimitedError(_RetryableError):
    """Rate limit exceeded (429). Carries the denying ``result`` when known."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: int,
        detail: Optional[dict] = None,
        result: Optional["RateLimitResult"] = None,
    ):
        super().__init__(message, retry_after_seconds=retry_after_seconds, detail=detail)
        self.result = result


class AccountLockedError(_RetryableError):
    """Too many failed credential checks (429)."""

    status_code = 429
    error_code = "account_locked"


class CSRFInvalidError(ServiceError):
    """Missing, expired or mismatching CSRF token (403)."""

    status_code = 403
    error_code = "forbidden"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""

    status_code = 401
    error_code = "unauthorized"


class SessionNotFoundError(AuthenticationError):
    pass


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    pass


__all__ = [
    "ServiceError",
    "RuleNotFoundError",
    "RateLimitedError",
    "AccountLockedError",
    "CSRFInvalidError",
    "AuthenticationError",
    "SessionNotFoundError",
    "SessionExpiredError",
]
