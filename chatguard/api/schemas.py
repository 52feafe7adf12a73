from __future__ import annotations

from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Stable error codes clients may branch on
_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "no_credential",
    "invalid_token",
    "role_mismatch",
    "principal_unavailable",
    "invalid_credentials",
    "forbidden",
    "not_found",
    "rate_limited",
    "ip_blocked",
    "validation_error",
    "challenge_expired",
    "challenge_mismatch",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CaptchaResponse(BaseModel):
    session_id: str
    captcha_image: str
    expires_in: int


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=128)
    password: str = Field(..., min_length=1, max_length=256)
    role: Literal["user", "customer_service", "admin"] = "user"
    captcha_answer: Optional[str] = Field(default=None, max_length=16)
    captcha_session_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("username must not be blank")
        return stripped


class PrincipalResponse(BaseModel):
    id: str
    role: str
    active: bool
    user: dict


class LoginResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    principal: PrincipalResponse


class AddressStatusResponse(BaseModel):
    address: str
    failed_attempts: int
    blocked: bool
    blocked_at: Optional[str] = None
    unblock_at: Optional[str] = None
    remaining_minutes: int = 0


class ClearAddressResponse(BaseModel):
    address: str
    cleared: bool
