from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

ROLE_USER = "user"
ROLE_CUSTOMER_SERVICE = "customer_service"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_CUSTOMER_SERVICE, ROLE_ADMIN)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserRecord:
    id: str
    phone_number: str
    name: Optional[str] = None
    avatar: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class CustomerServiceRecord:
    id: str
    phone_number: str
    name: Optional[str] = None
    avatar: Optional[str] = None
    status: str = "offline"
    is_active: bool = True
    service_stats: Dict = field(default_factory=dict)
    last_active_time: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AdminRecord:
    id: str
    username: str
    name: Optional[str] = None
    level: str = "admin"
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ChallengeRecord:
    session_id: str
    expected_answer: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class IPFailureRecord:
    address: str
    count: int
    window_start: datetime
    last_attempt: datetime


@dataclass
class IPBlockRecord:
    address: str
    blocked_at: datetime
    unblock_at: datetime
    attempts_at_block: int

    def is_live(self, now: datetime) -> bool:
        return now < self.unblock_at
