from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from chatguard.logging import get_logger
from chatguard.storage.models import IPBlockRecord, IPFailureRecord
from chatguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _remaining(unblock_at: datetime, now: datetime) -> tuple[int, int]:
    seconds = max(0.0, (unblock_at - now).total_seconds())
    return math.ceil(seconds), math.ceil(seconds / 60)


@dataclass(frozen=True)
class BlockDecision:
    blocked: bool
    remaining_seconds: int = 0
    remaining_minutes: int = 0
    blocked_until: Optional[datetime] = None


@dataclass(frozen=True)
class FailureDecision:
    blocked: bool
    attempts_remaining: int = 0
    lockout_minutes: int = 0
    blocked_until: Optional[datetime] = None


@dataclass(frozen=True)
class AddressStatus:
    address: str
    failed_attempts: int
    blocked: bool
    blocked_at: Optional[datetime] = None
    unblock_at: Optional[datetime] = None
    remaining_minutes: int = 0

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "failed_attempts": self.failed_attempts,
            "blocked": self.blocked,
            "blocked_at": self.blocked_at.isoformat() if self.blocked_at else None,
            "unblock_at": self.unblock_at.isoformat() if self.unblock_at else None,
            "remaining_minutes": self.remaining_minutes,
        }


class FailureTracker:
    """Per-address failed-login accounting with temporary lockouts.

    Failures are counted inside a rolling window that starts at the first
    failure; reaching ``threshold`` failures locks the address for
    ``lockout_minutes``. Tracking is by network address rather than account
    so that probing many accounts from one address is throttled as a whole.
    """

    def __init__(
        self,
        *,
        cache: Optional[RedisCache] = None,
        window_seconds: int = 3600,
        threshold: int = 3,
        lockout_minutes: int = 30,
        clock: Optional[Clock] = None,
    ) -> None:
        self.cache = cache
        self.window = timedelta(seconds=window_seconds)
        self.threshold = threshold
        self.lockout_minutes = lockout_minutes
        self.lockout = timedelta(minutes=lockout_minutes)
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._failures: Dict[str, IPFailureRecord] = {}
        self._blocks: Dict[str, IPBlockRecord] = {}

    async def is_blocked(self, address: str) -> BlockDecision:
        now = self._clock()
        if self.cache:
            found = await self.cache.check_address_block(address, now)
            if found is None:
                return BlockDecision(blocked=False)
            _, unblock_at = found
        else:
            with self._lock:
                block = self._blocks.get(address)
                if block is None:
                    return BlockDecision(blocked=False)
                if not block.is_live(now):
                    self._blocks.pop(address, None)
                    self._failures.pop(address, None)
                    logger.info("ip_unblocked", address=address, reason="expired")
                    return BlockDecision(blocked=False)
                unblock_at = block.unblock_at
        seconds, minutes = _remaining(unblock_at, now)
        return BlockDecision(
            blocked=True,
            remaining_seconds=seconds,
            remaining_minutes=minutes,
            blocked_until=unblock_at,
        )

    async def record_failure(self, address: str) -> FailureDecision:
        now = self._clock()
        if self.cache:
            state, count, _, unblock_at = await self.cache.record_address_failure(
                address,
                now,
                window_seconds=int(self.window.total_seconds()),
                threshold=self.threshold,
                lockout_seconds=int(self.lockout.total_seconds()),
            )
            if state == 1:
                return self._already_blocked(address, unblock_at, now)
            if state == 2:
                return self._newly_blocked(address, count, unblock_at)
            return self._counted(address, count)

        with self._lock:
            block = self._blocks.get(address)
            if block is not None:
                if block.is_live(now):
                    unblock_at = block.unblock_at
                    already_blocked = True
                else:
                    self._blocks.pop(address, None)
                    self._failures.pop(address, None)
                    already_blocked = False
            else:
                already_blocked = False

            if not already_blocked:
                record = self._failures.get(address)
                if record is None or now - record.window_start > self.window:
                    record = IPFailureRecord(
                        address=address, count=0, window_start=now, last_attempt=now
                    )
                record.count += 1
                record.last_attempt = now
                self._failures[address] = record
                count = record.count
                if count >= self.threshold:
                    unblock_at = now + self.lockout
                    self._blocks[address] = IPBlockRecord(
                        address=address,
                        blocked_at=now,
                        unblock_at=unblock_at,
                        attempts_at_block=count,
                    )

        if already_blocked:
            return self._already_blocked(address, unblock_at, now)
        if count >= self.threshold:
            return self._newly_blocked(address, count, unblock_at)
        return self._counted(address, count)

    def _counted(self, address: str, count: int) -> FailureDecision:
        remaining = max(0, self.threshold - count)
        logger.info("login_failure_recorded", address=address, count=count)
        return FailureDecision(blocked=False, attempts_remaining=remaining)

    def _newly_blocked(
        self, address: str, count: int, unblock_at: Optional[datetime]
    ) -> FailureDecision:
        logger.warning(
            "ip_blocked",
            address=address,
            attempts=count,
            unblock_at=unblock_at.isoformat() if unblock_at else None,
        )
        return FailureDecision(
            blocked=True,
            lockout_minutes=self.lockout_minutes,
            blocked_until=unblock_at,
        )

    def _already_blocked(
        self, address: str, unblock_at: Optional[datetime], now: datetime
    ) -> FailureDecision:
        minutes = _remaining(unblock_at, now)[1] if unblock_at else self.lockout_minutes
        logger.info("login_failure_while_blocked", address=address)
        return FailureDecision(
            blocked=True, lockout_minutes=minutes, blocked_until=unblock_at
        )

    async def record_success(self, address: str) -> None:
        """Forget the address's failure history; an active block stays."""

        if self.cache:
            await self.cache.clear_address_failures(address)
        else:
            with self._lock:
                self._failures.pop(address, None)
        logger.info("login_success_recorded", address=address)

    async def sweep(self) -> int:
        """Drop elapsed blocks and failure records outside the window.

        In-memory only; Redis keys carry their own expiry. Keys are
        snapshotted first and removed one at a time so request handlers are
        never held off for the whole pass.
        """
        if self.cache:
            return 0
        now = self._clock()
        with self._lock:
            block_keys = list(self._blocks.keys())
            failure_keys = list(self._failures.keys())

        removed = 0
        for address in block_keys:
            try:
                with self._lock:
                    block = self._blocks.get(address)
                    if block is not None and not block.is_live(now):
                        del self._blocks[address]
                        self._failures.pop(address, None)
                        removed += 1
            except Exception as exc:
                logger.warning("ip_block_sweep_skipped", address=address, error=str(exc))
        for address in failure_keys:
            try:
                with self._lock:
                    record = self._failures.get(address)
                    if record is not None and now - record.window_start > self.window:
                        del self._failures[address]
                        removed += 1
            except Exception as exc:
                logger.warning("ip_failure_sweep_skipped", address=address, error=str(exc))
        if removed:
            logger.info("ip_block_sweep", removed=removed)
        return removed

    async def status(self, address: str) -> AddressStatus:
        now = self._clock()
        if self.cache:
            failures, block = await self.cache.get_address_state(address)
            count = int(failures.get("count", 0) or 0)
            unblock_raw = block.get("unblock_at")
            blocked_at_raw = block.get("blocked_at")
            unblock_at = (
                datetime.fromtimestamp(int(unblock_raw) / 1000, tz=timezone.utc)
                if unblock_raw
                else None
            )
            blocked_at = (
                datetime.fromtimestamp(int(blocked_at_raw) / 1000, tz=timezone.utc)
                if blocked_at_raw
                else None
            )
        else:
            with self._lock:
                record = self._failures.get(address)
                block_record = self._blocks.get(address)
                count = record.count if record else 0
                blocked_at = block_record.blocked_at if block_record else None
                unblock_at = block_record.unblock_at if block_record else None
        blocked = unblock_at is not None and now < unblock_at
        return AddressStatus(
            address=address,
            failed_attempts=count,
            blocked=blocked,
            blocked_at=blocked_at if blocked else None,
            unblock_at=unblock_at if blocked else None,
            remaining_minutes=_remaining(unblock_at, now)[1] if blocked else 0,
        )

    async def clear(self, address: str) -> bool:
        """Lift a block and forget failures for ``address`` (operator action)."""

        if self.cache:
            cleared = await self.cache.clear_address(address)
        else:
            with self._lock:
                had_block = self._blocks.pop(address, None) is not None
                had_failures = self._failures.pop(address, None) is not None
            cleared = had_block or had_failures
        logger.info("ip_block_cleared", address=address, cleared=cleared)
        return cleared
