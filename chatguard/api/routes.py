from __future__ import annotations

from ipaddress import ip_address
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from chatguard.api.schemas import (
    AddressStatusResponse,
    CaptchaResponse,
    ClearAddressResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    PrincipalResponse,
)
from chatguard.config import Settings
from chatguard.logging import get_logger
from chatguard.service.auth import Principal, ensure_role, role_allows
from chatguard.service.errors import ForbiddenError
from chatguard.service.runtime import check_rate_limit, get_runtime
from chatguard.storage.models import ROLE_ADMIN, ROLE_CUSTOMER_SERVICE, ROLE_USER

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

CAPTCHA_RATE_LIMIT = 30
CAPTCHA_RATE_WINDOW_SECONDS = 60


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


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key`` or raise a 429."""

    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None and limit > 0:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limited", key=key, reset_seconds=reset_seconds)
        raise _http_error(
            "rate_limited",
            "too many attempts, try again later",
            status_code=429,
            details={"retry_after_seconds": reset_seconds},
        )
    return info


def _valid_ip(candidate: Optional[str]) -> Optional[str]:
    if not candidate:
        return None
    candidate = candidate.strip()
    try:
        ip_address(candidate)
    except ValueError:
        return None
    return candidate


def client_address(request: Request, settings: Settings) -> str:
    """Address used for lockouts and rate limits.

    Forwarding headers are only honoured behind a trusted proxy; otherwise a
    client could pick a fresh address per request.
    """
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = _valid_ip(forwarded.split(",")[0])
            if first_hop:
                return first_hop
        real_ip = _valid_ip(request.headers.get("x-real-ip"))
        if real_ip:
            return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    return await runtime.authenticator.authenticate(authorization)


def require_roles(*required: str):
    """Dependency factory admitting principals allowed on any of ``required``."""

    async def _dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if len(required) == 1:
            return ensure_role(principal, required[0])
        if any(role_allows(principal, role) for role in required):
            return principal
        logger.warning(
            "role_forbidden",
            principal_id=principal.id,
            role=principal.role,
            required=list(required),
        )
        raise ForbiddenError("insufficient role")

    return _dependency


get_user = require_roles(ROLE_USER)
get_customer_service = require_roles(ROLE_CUSTOMER_SERVICE)
get_admin_user = require_roles(ROLE_ADMIN)


def _principal_response(principal: Principal) -> PrincipalResponse:
    return PrincipalResponse(**principal.to_dict())


@router.post("/auth/captcha", response_model=Envelope, tags=["auth"])
async def issue_captcha(request: Request, response: Response):
    """Issue a one-time captcha image bound to a fresh session id."""
    runtime = get_runtime()
    address = client_address(request, runtime.settings)
    await _enforce_rate_limit(
        runtime,
        f"captcha:{address}",
        CAPTCHA_RATE_LIMIT,
        CAPTCHA_RATE_WINDOW_SECONDS,
    )
    challenge = await runtime.challenges.issue()
    response.headers["Cache-Control"] = "no-store"
    return Envelope(
        status="ok",
        data=CaptchaResponse(
            session_id=challenge.session_id,
            captcha_image=challenge.image,
            expires_in=runtime.settings.captcha_ttl_seconds,
        ).model_dump(),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Password login for users, customer-service agents and admins.

    Raises:
        429: address locked out, or too many attempts from this address
        400: captcha missing, expired or wrong
        401: unknown login or wrong password (with attempts remaining)
    """
    runtime = get_runtime()
    address = client_address(request, runtime.settings)
    await runtime.login.ensure_not_blocked(address)
    await _enforce_rate_limit(
        runtime,
        f"login:{address}",
        runtime.settings.login_rate_limit,
        runtime.settings.login_rate_limit_window_seconds,
        response=response,
    )
    result = await runtime.login.login(
        address=address,
        role=body.role,
        username=body.username,
        password=body.password,
        captcha_session_id=body.captcha_session_id,
        captcha_answer=body.captcha_answer,
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            token=result.token, principal=_principal_response(result.principal)
        ).model_dump(),
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_user)):
    return Envelope(status="ok", data=_principal_response(principal).model_dump())


@router.get("/customer-service/me", response_model=Envelope, tags=["customer_service"])
async def customer_service_me(principal: Principal = Depends(get_customer_service)):
    return Envelope(status="ok", data=_principal_response(principal).model_dump())


@router.get("/admin/ip-blocks/{address}", response_model=Envelope, tags=["admin"])
async def get_ip_block(
    address: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    status = await runtime.failures.status(address)
    return Envelope(
        status="ok", data=AddressStatusResponse(**status.to_dict()).model_dump()
    )


@router.delete("/admin/ip-blocks/{address}", response_model=Envelope, tags=["admin"])
async def clear_ip_block(
    address: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    cleared = await runtime.failures.clear(address)
    logger.info("admin_ip_block_cleared", admin_id=principal.id, address=address, cleared=cleared)
    return Envelope(
        status="ok",
        data=ClearAddressResponse(address=address, cleared=cleared).model_dump(),
    )
