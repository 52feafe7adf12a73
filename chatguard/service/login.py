from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from chatguard.logging import get_logger
from chatguard.service.auth import Principal, TokenAuthenticator, TokenCodec
from chatguard.service.challenge import ChallengeStore
from chatguard.service.errors import AuthenticationError, IPBlockedError
from chatguard.service.ip_block import FailureTracker
from chatguard.storage.memory import MemoryStore
from chatguard.storage.models import ROLE_CUSTOMER_SERVICE, ROLES, utcnow

logger = get_logger(__name__)


class LoginFailedError(AuthenticationError):
    """Wrong login identifier or password; carries the attempts left."""

    error_code = "invalid_credentials"

    def __init__(self, attempts_remaining: int) -> None:
        super().__init__(
            "invalid username or password",
            detail={"attempts_remaining": attempts_remaining},
        )
        self.attempts_remaining = attempts_remaining


@dataclass
class LoginResult:
    token: str
    principal: Principal


class LoginService:
    """Password login guarded by the human challenge and address lockout."""

    def __init__(
        self,
        store: MemoryStore,
        codec: TokenCodec,
        authenticator: TokenAuthenticator,
        challenges: ChallengeStore,
        failures: FailureTracker,
    ) -> None:
        self.store = store
        self.codec = codec
        self.authenticator = authenticator
        self.challenges = challenges
        self.failures = failures
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def save_password(self, principal_id: str, password: str) -> None:
        """Hash and save a new password for a principal."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(principal_id, pwd_hash, algo)

    def _verify_dummy(self, password: str) -> None:
        """Spend one argon2 verify so a miss costs as much as a wrong password."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            pass

    def verify_password(self, principal_id: str, password: str) -> bool:
        record = self.store.get_password_record(principal_id)
        if not record:
            logger.warning("password_record_missing", principal_id=principal_id)
            self._verify_dummy(password)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            logger.warning("password_algo_mismatch", principal_id=principal_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def ensure_not_blocked(self, address: str) -> None:
        decision = await self.failures.is_blocked(address)
        if decision.blocked:
            logger.warning(
                "login_rejected_blocked",
                address=address,
                remaining_minutes=decision.remaining_minutes,
            )
            raise IPBlockedError(decision.blocked_until, decision.remaining_minutes)

    async def login(
        self,
        *,
        address: str,
        role: str,
        username: str,
        password: str,
        captcha_session_id: Optional[str],
        captcha_answer: Optional[str],
    ) -> LoginResult:
        """Check the challenge, then the password, then mint a credential.

        The caller is expected to have run :meth:`ensure_not_blocked` first.
        A challenge failure is not counted against the address; a wrong
        identifier or password is, and may turn into a lockout.
        """
        await self.challenges.check(captcha_session_id, captcha_answer)

        record = self.store.find_by_login(role, username) if role in ROLES else None
        if record is None or not record.is_active:
            self._verify_dummy(password)
            verified = False
        else:
            verified = self.verify_password(record.id, password)
        if not verified:
            decision = await self.failures.record_failure(address)
            logger.warning(
                "login_failed",
                address=address,
                role=role,
                blocked=decision.blocked,
            )
            if decision.blocked:
                raise IPBlockedError(
                    decision.blocked_until or utcnow(), decision.lockout_minutes
                )
            raise LoginFailedError(decision.attempts_remaining)

        await self.failures.record_success(address)
        if role == ROLE_CUSTOMER_SERVICE:
            self.store.touch_customer_service(record.id, utcnow())
        token = self.codec.issue(record.id, role)
        principal = await self.authenticator.authenticate(f"Bearer {token}")
        logger.info("login_succeeded", principal_id=record.id, role=role)
        return LoginResult(token=token, principal=principal)
