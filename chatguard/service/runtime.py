from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from chatguard.config import get_settings, reset_settings_cache
from chatguard.logging import get_logger
from chatguard.service.auth import TokenAuthenticator, TokenCodec
from chatguard.service.challenge import ChallengeStore
from chatguard.service.ip_block import FailureTracker
from chatguard.service.login import LoginService
from chatguard.storage.memory import MemoryStore
from chatguard.storage.models import ROLE_ADMIN, ROLE_CUSTOMER_SERVICE, ROLE_USER
from chatguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None):
        self.settings = get_settings()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        try:
            self.store = MemoryStore(fs_root=self.settings.shared_fs_root)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for captcha records, address lockouts and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; captcha records, "
                    "address lockouts and rate limits are per-process only."
                ),
                mode=fallback_mode,
            )

        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            leeway_seconds=self.settings.token_leeway_seconds,
            ttl_days={
                ROLE_USER: self.settings.user_token_ttl_days,
                ROLE_CUSTOMER_SERVICE: self.settings.customer_service_token_ttl_days,
                ROLE_ADMIN: self.settings.admin_token_ttl_days,
            },
            clock=self.clock,
        )
        self.authenticator = TokenAuthenticator(
            self.store,
            self.codec,
            admin_record_check=self.settings.admin_record_check,
            lookup_timeout=self.settings.principal_lookup_timeout_seconds,
        )
        self.challenges = ChallengeStore(
            cache=self.cache,
            length=self.settings.captcha_length,
            ttl_seconds=self.settings.captcha_ttl_seconds,
            width=self.settings.captcha_width,
            height=self.settings.captcha_height,
            noise_lines=self.settings.captcha_noise_lines,
            clock=self.clock,
        )
        self.failures = FailureTracker(
            cache=self.cache,
            window_seconds=self.settings.failure_window_seconds,
            threshold=self.settings.failure_threshold,
            lockout_minutes=self.settings.lockout_minutes,
            clock=self.clock,
        )
        self.login = LoginService(
            self.store,
            self.codec,
            self.authenticator,
            self.challenges,
            self.failures,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            admin_record_check=self.settings.admin_record_check,
        )

    async def sweep_expired(self) -> int:
        """Run one pass of the periodic challenge and lockout sweeps."""

        removed = await self.challenges.sweep()
        removed += await self.failures.sweep()
        return removed


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    *, clock: Optional[Callable[[], datetime]] = None
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit that keeps working when Redis is unavailable.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key
        limit: Maximum requests per window (0 or less disables the limit)
        window_seconds: Window duration in seconds
        return_remaining: If True, return tuple of (allowed, remaining, reset_seconds)

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = runtime.clock()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = (
            int((cost - tokens) / refill_rate) if not allowed and refill_rate > 0 else 0
        )
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
