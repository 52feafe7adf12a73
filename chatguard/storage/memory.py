from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from chatguard.logging import get_logger
from chatguard.storage.errors import ConstraintViolation
from chatguard.storage.models import (
    ROLE_ADMIN,
    ROLE_CUSTOMER_SERVICE,
    ROLE_USER,
    AdminRecord,
    CustomerServiceRecord,
    UserRecord,
    utcnow,
)

PrincipalRecord = Union[UserRecord, CustomerServiceRecord, AdminRecord]


class MemoryStore:
    """In-memory principal store persisted as JSON under ``fs_root/state``.

    Holds the three principal kinds side by side. Ids are uuid4 strings and
    therefore unique across kinds, which lets one credential table serve all
    of them.
    """

    def __init__(self, fs_root: str = "/tmp/chatguard") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserRecord] = {}
        self.customer_services: Dict[str, CustomerServiceRecord] = {}
        self.admins: Dict[str, AdminRecord] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        # RLock so helpers can be called while already holding the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "principals.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def create_user(
        self,
        phone_number: str,
        name: Optional[str] = None,
        *,
        avatar: Optional[str] = None,
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> UserRecord:
        with self._data_lock:
            if any(u.phone_number == phone_number for u in self.users.values()):
                raise ConstraintViolation(
                    "phone number already registered", {"field": "phone_number"}
                )
            user = UserRecord(
                id=str(uuid.uuid4()),
                phone_number=phone_number,
                name=name,
                avatar=avatar,
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def load_user_by_id(self, user_id: str) -> Optional[UserRecord]:
        with self._data_lock:
            return self.users.get(user_id)

    # customer service agents
    def create_customer_service(
        self,
        phone_number: str,
        name: Optional[str] = None,
        *,
        avatar: Optional[str] = None,
        is_active: bool = True,
        service_stats: Optional[Dict] = None,
    ) -> CustomerServiceRecord:
        with self._data_lock:
            if any(
                cs.phone_number == phone_number
                for cs in self.customer_services.values()
            ):
                raise ConstraintViolation(
                    "phone number already registered", {"field": "phone_number"}
                )
            agent = CustomerServiceRecord(
                id=str(uuid.uuid4()),
                phone_number=phone_number,
                name=name,
                avatar=avatar,
                is_active=is_active,
                service_stats=dict(service_stats or {}),
            )
            self.customer_services[agent.id] = agent
            self._persist_state()
            return agent

    def load_customer_service_by_id(
        self, agent_id: str
    ) -> Optional[CustomerServiceRecord]:
        with self._data_lock:
            return self.customer_services.get(agent_id)

    # admins
    def create_admin(
        self,
        username: str,
        name: Optional[str] = None,
        *,
        level: str = "admin",
        is_active: bool = True,
    ) -> AdminRecord:
        with self._data_lock:
            if any(a.username == username for a in self.admins.values()):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            admin = AdminRecord(
                id=str(uuid.uuid4()),
                username=username,
                name=name,
                level=level,
                is_active=is_active,
            )
            self.admins[admin.id] = admin
            self._persist_state()
            return admin

    def load_admin_by_id(self, admin_id: str) -> Optional[AdminRecord]:
        with self._data_lock:
            return self.admins.get(admin_id)

    def find_by_login(self, role: str, login: str) -> Optional[PrincipalRecord]:
        """Resolve the login identifier for ``role``.

        Users and agents sign in with their phone number, admins with their
        username.
        """
        with self._data_lock:
            if role == ROLE_USER:
                pool: List[PrincipalRecord] = list(self.users.values())
                return next((u for u in pool if u.phone_number == login), None)
            if role == ROLE_CUSTOMER_SERVICE:
                pool = list(self.customer_services.values())
                return next((c for c in pool if c.phone_number == login), None)
            if role == ROLE_ADMIN:
                pool = list(self.admins.values())
                return next((a for a in pool if a.username == login), None)
            return None

    def set_active(self, principal_id: str, is_active: bool) -> Optional[PrincipalRecord]:
        with self._data_lock:
            record = (
                self.users.get(principal_id)
                or self.customer_services.get(principal_id)
                or self.admins.get(principal_id)
            )
            if record is None:
                return None
            record.is_active = is_active
            self._persist_state()
            return record

    def touch_customer_service(self, agent_id: str, when: datetime) -> None:
        with self._data_lock:
            agent = self.customer_services.get(agent_id)
            if agent is None:
                return
            agent.last_active_time = when
            self._persist_state()

    # credentials
    def _has_principal(self, principal_id: str) -> bool:
        return (
            principal_id in self.users
            or principal_id in self.customer_services
            or principal_id in self.admins
        )

    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if not self._has_principal(principal_id):
                raise ConstraintViolation(
                    "principal not found for credentials",
                    {"principal_id": principal_id},
                )
            self.credentials[principal_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, principal_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(principal_id)

    # persistence
    def _persist_state(self) -> None:
        with self._data_lock:
            state = {
                "users": [self._serialize_user(u) for u in self.users.values()],
                "customer_services": [
                    self._serialize_customer_service(c)
                    for c in self.customer_services.values()
                ],
                "admins": [self._serialize_admin(a) for a in self.admins.values()],
                "credentials": [
                    {
                        "principal_id": principal_id,
                        "password_hash": creds[0],
                        "password_algo": creds[1],
                    }
                    for principal_id, creds in self.credentials.items()
                ],
            }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist principal state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("principal_state_corrupt", path=str(path), error=str(exc))
            return False
        with self._data_lock:
            self.users = {
                u["id"]: self._deserialize_user(u) for u in data.get("users", [])
            }
            self.customer_services = {
                c["id"]: self._deserialize_customer_service(c)
                for c in data.get("customer_services", [])
            }
            self.admins = {
                a["id"]: self._deserialize_admin(a) for a in data.get("admins", [])
            }
            self.credentials = {
                entry["principal_id"]: (
                    entry["password_hash"],
                    entry.get("password_algo", ""),
                )
                for entry in data.get("credentials", [])
            }
        return True

    def _serialize_user(self, user: UserRecord) -> dict:
        return {
            "id": user.id,
            "phone_number": user.phone_number,
            "name": user.name,
            "avatar": user.avatar,
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> UserRecord:
        return UserRecord(
            id=data["id"],
            phone_number=data["phone_number"],
            name=data.get("name"),
            avatar=data.get("avatar"),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data.get("created_at"))
            or utcnow(),
            meta=data.get("meta") or {},
        )

    def _serialize_customer_service(self, agent: CustomerServiceRecord) -> dict:
        return {
            "id": agent.id,
            "phone_number": agent.phone_number,
            "name": agent.name,
            "avatar": agent.avatar,
            "status": agent.status,
            "is_active": agent.is_active,
            "service_stats": agent.service_stats,
            "last_active_time": self._serialize_datetime(agent.last_active_time),
            "created_at": self._serialize_datetime(agent.created_at),
        }

    def _deserialize_customer_service(self, data: dict) -> CustomerServiceRecord:
        return CustomerServiceRecord(
            id=data["id"],
            phone_number=data["phone_number"],
            name=data.get("name"),
            avatar=data.get("avatar"),
            status=data.get("status", "offline"),
            is_active=data.get("is_active", True),
            service_stats=data.get("service_stats") or {},
            last_active_time=self._deserialize_datetime(data.get("last_active_time")),
            created_at=self._deserialize_datetime(data.get("created_at"))
            or utcnow(),
        )

    def _serialize_admin(self, admin: AdminRecord) -> dict:
        return {
            "id": admin.id,
            "username": admin.username,
            "name": admin.name,
            "level": admin.level,
            "is_active": admin.is_active,
            "created_at": self._serialize_datetime(admin.created_at),
        }

    def _deserialize_admin(self, data: dict) -> AdminRecord:
        return AdminRecord(
            id=data["id"],
            username=data["username"],
            name=data.get("name"),
            level=data.get("level", "admin"),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data.get("created_at"))
            or utcnow(),
        )
