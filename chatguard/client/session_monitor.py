"""Client-side session lifetime tracking.

The monitor is a pure state machine driven by ``tick(now_ms)``; it never
reads the clock or schedules timers itself. :class:`SessionTicker` wires it
to an asyncio event loop for apps that want the periodic polling done for
them.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from chatguard.logging import get_logger

logger = get_logger(__name__)

SESSION_DURATION_MS = 5 * 60 * 60 * 1000
WARNING_THRESHOLD_MS = 30 * 60 * 1000
TICK_INTERVAL_MS = 60 * 1000
FORCED_LOGOUT_GRACE_MS = 3 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def format_remaining(remaining_ms: int) -> str:
    """Render a countdown as ``"2h 5m"`` or ``"29m"``."""

    remaining_ms = max(0, remaining_ms)
    hours = remaining_ms // (60 * 60 * 1000)
    minutes = (remaining_ms % (60 * 60 * 1000)) // (60 * 1000)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


class SessionState(str, Enum):
    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    LOGGED_OUT = "logged_out"


class SessionEvent(str, Enum):
    WARNING = "warning"
    EXPIRED = "expired"
    LOGGED_OUT = "logged_out"


@dataclass(frozen=True)
class SessionClock:
    login_time: int
    duration_ms: int = SESSION_DURATION_MS

    @property
    def expires_at(self) -> int:
        return self.login_time + self.duration_ms

    def remaining(self, now: int) -> int:
        return max(0, self.expires_at - now)


@dataclass(frozen=True)
class SessionStatus:
    state: SessionState
    login_time: int
    remaining_ms: int
    logout_at: Optional[int] = None
    events: tuple[SessionEvent, ...] = field(default_factory=tuple)

    @property
    def is_expiring_soon(self) -> bool:
        return self.state in (SessionState.EXPIRING_SOON, SessionState.EXPIRED)

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "loginTime": self.login_time,
            "remainingTime": self.remaining_ms,
            "remainingText": format_remaining(self.remaining_ms),
            "isExpiringSoon": self.is_expiring_soon,
            "logoutAt": self.logout_at,
        }


Listener = Callable[[SessionStatus], None]


class SessionLifecycleMonitor:
    """ACTIVE -> EXPIRING_SOON -> EXPIRED -> LOGGED_OUT.

    The expiry warning fires once per session. Once expired, a forced logout
    is due ``grace_ms`` later; an explicit :meth:`logout` before then cancels
    it. ``LOGGED_OUT`` is terminal until :meth:`extend` starts a new session.
    """

    def __init__(
        self,
        clock: SessionClock,
        *,
        warning_threshold_ms: int = WARNING_THRESHOLD_MS,
        grace_ms: int = FORCED_LOGOUT_GRACE_MS,
        on_warning: Optional[Listener] = None,
        on_expired: Optional[Listener] = None,
        on_logout: Optional[Listener] = None,
    ) -> None:
        self.clock = clock
        self.warning_threshold_ms = warning_threshold_ms
        self.grace_ms = grace_ms
        self.on_warning = on_warning
        self.on_expired = on_expired
        self.on_logout = on_logout
        self._state = SessionState.ACTIVE
        self._logout_at: Optional[int] = None
        self._last_remaining = clock.duration_ms
        self.logout_reason: Optional[str] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def logout_at(self) -> Optional[int]:
        return self._logout_at

    def _status(self, events: tuple[SessionEvent, ...] = ()) -> SessionStatus:
        return SessionStatus(
            state=self._state,
            login_time=self.clock.login_time,
            remaining_ms=self._last_remaining,
            logout_at=self._logout_at,
            events=events,
        )

    def _emit(self, listener: Optional[Listener], status: SessionStatus) -> None:
        if listener is not None:
            listener(status)

    def tick(self, now: int) -> SessionStatus:
        if self._state is SessionState.LOGGED_OUT:
            return self._status()

        self._last_remaining = self.clock.remaining(now)

        if self._state is SessionState.EXPIRED:
            if self._logout_at is not None and now >= self._logout_at:
                return self._finish_logout("expired")
            return self._status()

        if self._last_remaining <= 0:
            self._state = SessionState.EXPIRED
            self._logout_at = now + self.grace_ms
            status = self._status((SessionEvent.EXPIRED,))
            logger.info("session_expired", login_time=self.clock.login_time)
            self._emit(self.on_expired, status)
            return status

        if (
            self._state is SessionState.ACTIVE
            and self._last_remaining < self.warning_threshold_ms
        ):
            self._state = SessionState.EXPIRING_SOON
            status = self._status((SessionEvent.WARNING,))
            logger.info(
                "session_expiring_soon",
                remaining_ms=self._last_remaining,
                remaining=format_remaining(self._last_remaining),
            )
            self._emit(self.on_warning, status)
            return status

        return self._status()

    def force_logout(self) -> SessionStatus:
        """Complete a pending forced logout; no-op unless the session expired."""

        if self._state is not SessionState.EXPIRED:
            return self._status()
        return self._finish_logout("expired")

    def logout(self) -> SessionStatus:
        if self._state is SessionState.LOGGED_OUT:
            return self._status()
        return self._finish_logout("user")

    def _finish_logout(self, reason: str) -> SessionStatus:
        self._state = SessionState.LOGGED_OUT
        self._logout_at = None
        self.logout_reason = reason
        status = self._status((SessionEvent.LOGGED_OUT,))
        logger.info("session_logged_out", reason=reason)
        self._emit(self.on_logout, status)
        return status

    def extend(self, login_time: int) -> SessionStatus:
        """Restart the countdown from a refreshed login time.

        The server-side token refresh happens elsewhere; this only resets
        local state.
        """
        self.clock = SessionClock(login_time=login_time, duration_ms=self.clock.duration_ms)
        self._state = SessionState.ACTIVE
        self._logout_at = None
        self._last_remaining = self.clock.duration_ms
        self.logout_reason = None
        logger.info("session_extended", login_time=login_time)
        return self._status()


class SessionTicker:
    """Drives a monitor from an asyncio loop.

    Ticks every ``interval_seconds`` and, on expiry, schedules the forced
    logout with ``loop.call_later`` so it lands after the grace period even
    if the next tick is a minute away.
    """

    def __init__(
        self,
        monitor: SessionLifecycleMonitor,
        *,
        interval_seconds: float = TICK_INTERVAL_MS / 1000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.monitor = monitor
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._logout_handle: Optional[asyncio.TimerHandle] = None
        self._stopped = asyncio.Event()

    def _check(self) -> SessionStatus:
        status = self.monitor.tick(self._clock())
        if status.state is SessionState.EXPIRED and self._logout_handle is None:
            delay = max(0, (status.logout_at or self._clock()) - self._clock()) / 1000
            loop = asyncio.get_running_loop()
            self._logout_handle = loop.call_later(delay, self._force_logout)
        if status.state is SessionState.LOGGED_OUT:
            self._stopped.set()
        return status

    def _force_logout(self) -> None:
        self._logout_handle = None
        self.monitor.force_logout()
        self._stopped.set()

    async def run(self) -> None:
        while not self._stopped.is_set():
            self._check()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopped.clear()
            self._task = asyncio.create_task(self.run())
        return self._task

    def _cancel_pending_logout(self) -> None:
        if self._logout_handle is not None:
            self._logout_handle.cancel()
            self._logout_handle = None

    def logout(self) -> SessionStatus:
        """Explicit logout; cancels a forced logout that has not fired yet."""

        self._cancel_pending_logout()
        status = self.monitor.logout()
        self._stopped.set()
        return status

    async def stop(self) -> None:
        self._cancel_pending_logout()
        self._stopped.set()
        if self._task is not None:
            await self._task
            self._task = None
