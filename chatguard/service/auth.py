from __future__ import annotations

import asyncio
import base64
import dataclasses
import hashlib
import hmac
import inspect
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

from chatguard.logging import get_logger
from chatguard.service.errors import (
    ForbiddenError,
    InvalidTokenError,
    NoCredentialError,
    PrincipalUnavailableError,
    RoleMismatchError,
)
from chatguard.storage.models import ROLE_ADMIN, ROLE_CUSTOMER_SERVICE, ROLE_USER

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialKind(str, Enum):
    USER = "user"
    CUSTOMER_SERVICE = "customer_service"
    ADMIN = "admin"
    UNTYPED = "untyped"


CREDENTIAL_PREFIXES: dict[CredentialKind, str] = {
    CredentialKind.USER: "U_",
    CredentialKind.CUSTOMER_SERVICE: "CS_",
    CredentialKind.ADMIN: "A_",
}

_KIND_ROLES = {
    CredentialKind.USER: ROLE_USER,
    CredentialKind.CUSTOMER_SERVICE: ROLE_CUSTOMER_SERVICE,
    CredentialKind.ADMIN: ROLE_ADMIN,
    CredentialKind.UNTYPED: ROLE_USER,
}


@dataclass(frozen=True)
class Credential:
    """A bearer credential split into its routing prefix and token body.

    The prefix only decides which store is consulted; the signed claims
    inside ``token`` are what is trusted.
    """

    kind: CredentialKind
    token: str

    @property
    def claimed_role(self) -> str:
        return _KIND_ROLES[self.kind]


def parse_credential(raw: str) -> Credential:
    for kind, prefix in CREDENTIAL_PREFIXES.items():
        if raw.startswith(prefix):
            return Credential(kind=kind, token=raw[len(prefix):])
    # Unprefixed tokens predate role prefixes and are user tokens
    return Credential(kind=CredentialKind.UNTYPED, token=raw)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class TokenCodec:
    """HS256 token encoding with issuer, audience and expiry checks."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 120,
        ttl_days: Optional[Dict[str, int]] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.secret = secret
        self.issuer = issuer
        self.audience = audience
        self.leeway = timedelta(seconds=leeway_seconds)
        self.ttl_days = ttl_days or {
            ROLE_USER: 30,
            ROLE_CUSTOMER_SERVICE: 7,
            ROLE_ADMIN: 7,
        }
        self._clock = clock or _utcnow

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> dict[str, Any]:
        """Verify ``token`` and return its claims or raise :class:`InvalidTokenError`."""

        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError() from None

        # Pin the algorithm so a crafted header cannot pick another one
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError() from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        # compare_digest rejects non-ASCII str; header values arrive as latin-1
        if not (payload_b64.isascii() and sig_b64.isascii()):
            raise InvalidTokenError()
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError() from None
        if not isinstance(payload, dict):
            raise InvalidTokenError()

        if payload.get("iss") != self.issuer:
            raise InvalidTokenError()
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise InvalidTokenError()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError() from None
        now_ts = self._clock().timestamp()
        if exp_ts <= now_ts - self.leeway.total_seconds():
            raise InvalidTokenError("token expired")
        if not payload.get("sub"):
            raise InvalidTokenError()
        return payload

    def issue(self, principal_id: str, role: str) -> str:
        """Mint a prefixed credential for ``principal_id`` acting as ``role``."""

        kind = next(k for k, r in _KIND_ROLES.items() if r == role)
        now = self._clock()
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": principal_id,
            "role": role,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(days=self.ttl_days[role])).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        return f"{CREDENTIAL_PREFIXES[kind]}{self.encode(payload)}"


@dataclass
class UserView:
    """User-shaped projection handed to handlers written for end users."""

    id: str
    role: str
    user_type: str
    is_admin: bool = False
    is_active: bool = True
    name: Optional[str] = None
    phone_number: Optional[str] = None
    avatar: Optional[str] = None
    status: Optional[str] = None
    service_stats: Optional[dict] = None
    last_active_time: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in dataclasses.asdict(self).items() if v is not None}


@dataclass
class Principal:
    id: str
    role: str
    active: bool = True
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def user_view(self) -> UserView:
        if self.role == ROLE_ADMIN:
            return UserView(
                id=self.id, role=ROLE_ADMIN, user_type="admin", is_admin=True
            )
        last_active = self.extra.get("last_active_time")
        if isinstance(last_active, datetime):
            last_active = last_active.isoformat()
        if self.role == ROLE_CUSTOMER_SERVICE:
            return UserView(
                id=self.id,
                role=ROLE_CUSTOMER_SERVICE,
                user_type="customerService",
                is_active=self.active,
                name=self.extra.get("name"),
                phone_number=self.extra.get("phone_number"),
                avatar=self.extra.get("avatar"),
                status=self.extra.get("status"),
                service_stats=self.extra.get("service_stats") or {},
                last_active_time=last_active,
            )
        return UserView(
            id=self.id,
            role=ROLE_USER,
            user_type="user",
            is_active=self.active,
            name=self.extra.get("name"),
            phone_number=self.extra.get("phone_number"),
            avatar=self.extra.get("avatar"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "active": self.active,
            "user": self.user_view.to_dict(),
        }


PrincipalRecord = Any
LookupResult = Union[Optional[PrincipalRecord], Awaitable[Optional[PrincipalRecord]]]


class PrincipalStore(Protocol):
    def load_user_by_id(self, user_id: str) -> LookupResult: ...

    def load_customer_service_by_id(self, agent_id: str) -> LookupResult: ...


def _record_fields(record: PrincipalRecord) -> dict[str, Any]:
    if isinstance(record, dict):
        return dict(record)
    if dataclasses.is_dataclass(record):
        return dataclasses.asdict(record)
    return dict(vars(record))


# Routes guarded for a role also admit the roles listed here
ROLE_ACCESS: dict[str, frozenset[str]] = {
    ROLE_USER: frozenset({ROLE_USER, ROLE_CUSTOMER_SERVICE, ROLE_ADMIN}),
    ROLE_CUSTOMER_SERVICE: frozenset({ROLE_CUSTOMER_SERVICE, ROLE_ADMIN}),
    ROLE_ADMIN: frozenset({ROLE_ADMIN}),
}


def role_allows(principal: Principal, required: str) -> bool:
    return principal.role in ROLE_ACCESS.get(required, frozenset({required}))


def ensure_role(principal: Principal, required: str) -> Principal:
    if not role_allows(principal, required):
        logger.warning(
            "role_forbidden", principal_id=principal.id, role=principal.role, required=required
        )
        raise ForbiddenError(f"{required} access required")
    return principal


class TokenAuthenticator:
    """Resolves an ``Authorization`` header to a live :class:`Principal`.

    Stages run in order and stop at the first failure: bearer extraction,
    prefix parsing, signature/claims verification, role agreement, then the
    principal lookup. Store lookups may be plain functions or coroutines;
    coroutines are bounded by ``lookup_timeout``.
    """

    def __init__(
        self,
        store: PrincipalStore,
        codec: TokenCodec,
        *,
        admin_record_check: bool = False,
        lookup_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.codec = codec
        self.admin_record_check = admin_record_check
        self.lookup_timeout = lookup_timeout

    async def authenticate(self, authorization: Optional[str]) -> Principal:
        raw = extract_bearer(authorization)
        if raw is None:
            raise NoCredentialError()
        credential = parse_credential(raw)
        claimed_role = credential.claimed_role

        claims = self.codec.decode(credential.token)
        token_role = claims.get("role")
        if token_role is not None and token_role != claimed_role:
            logger.warning(
                "token_role_mismatch",
                claimed_role=claimed_role,
                token_role=token_role,
                kind=credential.kind.value,
            )
            raise RoleMismatchError()

        principal_id = str(claims["sub"])
        if claimed_role == ROLE_ADMIN:
            return await self._resolve_admin(principal_id)
        if claimed_role == ROLE_CUSTOMER_SERVICE:
            loader = self.store.load_customer_service_by_id
        else:
            loader = self.store.load_user_by_id
        record = await self._lookup(loader, principal_id, claimed_role)
        return self._to_principal(record, principal_id, claimed_role)

    async def _resolve_admin(self, principal_id: str) -> Principal:
        loader = getattr(self.store, "load_admin_by_id", None)
        if not self.admin_record_check or loader is None:
            return Principal(id=principal_id, role=ROLE_ADMIN, active=True)
        record = await self._lookup(loader, principal_id, ROLE_ADMIN)
        return self._to_principal(record, principal_id, ROLE_ADMIN)

    async def _lookup(
        self,
        loader: Callable[[str], LookupResult],
        principal_id: str,
        role: str,
    ) -> PrincipalRecord:
        try:
            result = loader(principal_id)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=self.lookup_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "principal_lookup_timeout", principal_id=principal_id, role=role
            )
            raise PrincipalUnavailableError() from None
        except asyncio.CancelledError:
            task = asyncio.current_task()
            # Our own caller is being cancelled; let it unwind
            if task is not None and task.cancelling():
                raise
            logger.warning(
                "principal_lookup_cancelled", principal_id=principal_id, role=role
            )
            raise PrincipalUnavailableError() from None
        except Exception as exc:
            logger.error(
                "principal_lookup_failed",
                principal_id=principal_id,
                role=role,
                error=str(exc),
            )
            raise PrincipalUnavailableError() from exc
        if result is None:
            logger.info("principal_not_found", principal_id=principal_id, role=role)
            raise PrincipalUnavailableError()
        return result

    def _to_principal(
        self, record: PrincipalRecord, principal_id: str, role: str
    ) -> Principal:
        fields = _record_fields(record)
        fields.pop("id", None)
        fields.pop("_id", None)
        active = fields.pop("active", None)
        is_active = fields.pop("is_active", None)
        if active is None:
            active = True if is_active is None else is_active
        if fields.get("status") == "disabled":
            active = False
        if not active:
            logger.info("principal_inactive", principal_id=principal_id, role=role)
            raise PrincipalUnavailableError()
        return Principal(id=principal_id, role=role, active=True, extra=fields)
