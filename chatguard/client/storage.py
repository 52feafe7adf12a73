from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Optional, Protocol

from chatguard.client.session_monitor import (
    SESSION_DURATION_MS,
    SessionClock,
    SessionLifecycleMonitor,
)
from chatguard.logging import get_logger

logger = get_logger(__name__)


class SessionStorage(Protocol):
    """Device-local record of when the current session began."""

    def load(self) -> Optional[int]: ...

    def save(self, login_time: int) -> None: ...

    def clear(self) -> None: ...


def _parse_login_time(data: Any) -> Optional[int]:
    if not isinstance(data, dict):
        return None
    raw = data.get("loginTime")
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    if raw <= 0:
        return None
    return int(raw)


class MemorySessionStorage:
    def __init__(self, login_time: Optional[int] = None) -> None:
        self._lock = threading.Lock()
        self._login_time = login_time

    def load(self) -> Optional[int]:
        with self._lock:
            return self._login_time

    def save(self, login_time: int) -> None:
        with self._lock:
            self._login_time = login_time

    def clear(self) -> None:
        with self._lock:
            self._login_time = None


class FileSessionStorage:
    """Stores ``{"loginTime": <epoch ms>}`` as JSON at ``path``."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[int]:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("session_record_unreadable", path=str(self.path), error=str(exc))
            return None
        login_time = _parse_login_time(data)
        if login_time is None:
            logger.warning("session_record_invalid", path=str(self.path))
        return login_time

    def save(self, login_time: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({"loginTime": int(login_time)}))

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


def start_session(
    storage: SessionStorage,
    login_time: int,
    *,
    duration_ms: int = SESSION_DURATION_MS,
    **monitor_kwargs: Any,
) -> SessionLifecycleMonitor:
    storage.save(login_time)
    return SessionLifecycleMonitor(
        SessionClock(login_time=login_time, duration_ms=duration_ms), **monitor_kwargs
    )


def resume(
    storage: SessionStorage,
    *,
    duration_ms: int = SESSION_DURATION_MS,
    **monitor_kwargs: Any,
) -> Optional[SessionLifecycleMonitor]:
    """Rebuild a monitor from the stored login time, or ``None`` if there is none."""

    login_time = storage.load()
    if login_time is None:
        return None
    return SessionLifecycleMonitor(
        SessionClock(login_time=login_time, duration_ms=duration_ms), **monitor_kwargs
    )
