from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code. Messages are safe to show to clients; internal detail belongs
    in logs, never in ``message``.
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
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NoCredentialError(AuthenticationError):
    """No bearer credential was presented."""
    error_code = "no_credential"

    def __init__(self, message: str = "authentication required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Token is malformed, expired, or its signature does not verify."""
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RoleMismatchError(AuthenticationError):
    """Credential prefix and the role embedded in the token disagree."""
    error_code = "role_mismatch"

    def __init__(self, message: str = "token role does not match credential", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PrincipalUnavailableError(AuthenticationError):
    """Principal does not exist, is disabled, or could not be loaded."""
    error_code = "principal_unavailable"

    def __init__(self, message: str = "account unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ChallengeExpiredError(ValidationError):
    """Human challenge is unknown, already used, or past its expiry."""
    error_code = "challenge_expired"

    def __init__(self, message: str = "captcha expired, request a new one", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ChallengeMismatchError(ValidationError):
    """Human challenge answer is missing or wrong."""
    error_code = "challenge_mismatch"

    def __init__(self, message: str = "captcha answer is incorrect", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class IPBlockedError(RateLimitedError):
    """Requests from this address are locked out until ``blocked_until``."""
    error_code = "ip_blocked"

    def __init__(
        self,
        blocked_until: datetime,
        remaining_minutes: int,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(
            message
            or f"address is blocked, try again in {remaining_minutes} minutes",
            detail={
                "blocked_until": blocked_until.isoformat(),
                "remaining_minutes": remaining_minutes,
            },
        )
        self.blocked_until = blocked_until
        self.remaining_minutes = remaining_minutes


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NoCredentialError",
    "InvalidTokenError",
    "RoleMismatchError",
    "PrincipalUnavailableError",
    "ChallengeExpiredError",
    "ChallengeMismatchError",
    "ForbiddenError",
    "RateLimitedError",
    "IPBlockedError",
]
