from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from genesis_auth.logging import get_logger
from genesis_auth.storage.errors import ConstraintViolation
from genesis_auth.storage.models import (
    USER_MUTABLE_FIELDS,
    RefreshTokenRecord,
    User,
    new_id,
    normalize_email,
    utcnow,
)

_USER_DATETIME_FIELDS = (
    "email_verification_expires_at",
    "password_reset_expires_at",
    "password_changed_at",
    "locked_until",
    "last_login_at",
    "created_at",
    "updated_at",
)
_TOKEN_DATETIME_FIELDS = ("expires_at", "revoked_at", "created_at", "last_used_at")


class MemoryStore:
    """In-process credential store persisted to a JSON state file.

    Every read-modify-write runs under one re-entrant lock, which is what makes
    the conditional updates (``atomic_update_user``, ``atomic_revoke``,
    ``increment_failed_logins``) linearizable across threads.
    Returned objects are copies; mutate state only through store methods.
    """

    def __init__(self, fs_root: str = "/tmp/genesis-auth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> bool:
        return True

    # users
    def find_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def find_user_by_verification_hash(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.email_verification_token_hash == token_hash
                ),
                None,
            )
            return replace(user) if user else None

    def find_user_by_reset_hash(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.password_reset_token_hash == token_hash),
                None,
            )
            return replace(user) if user else None

    def insert_user(
        self,
        *,
        email: str,
        password_hash: str,
        name: str = "",
        role: str = "user",
        is_active: bool = True,
        is_email_verified: bool = False,
        email_verification_token_hash: Optional[str] = None,
        email_verification_expires_at: Optional[datetime] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=new_id(),
                email=normalized,
                password_hash=password_hash,
                name=name,
                role=role,
                is_active=is_active,
                is_email_verified=is_email_verified,
                email_verification_token_hash=email_verification_token_hash,
                email_verification_expires_at=email_verification_expires_at,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def atomic_update_user(
        self, user_id: str, predicate: Dict[str, Any], patch: Dict[str, Any]
    ) -> bool:
        """Apply ``patch`` only if every ``predicate`` field still holds its expected value."""
        unknown = set(patch) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return False
            for field_name, expected in predicate.items():
                if getattr(user, field_name) != expected:
                    return False
            for field_name, value in patch.items():
                setattr(user, field_name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def increment_failed_logins(
        self, user_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> Tuple[int, Optional[datetime]]:
        """Count a failed login; lock the account once ``threshold`` is reached.

        A lock that has already lapsed restarts the count at one.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return 0, None
            if user.locked_until is not None and user.locked_until <= now:
                user.failed_login_attempts = 0
                user.locked_until = None
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= threshold and user.locked_until is None:
                user.locked_until = lock_until
            user.updated_at = utcnow()
            self._persist_state()
            return user.failed_login_attempts, user.locked_until

    # refresh tokens
    def find_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = next(
                (r for r in self.refresh_tokens.values() if r.token_hash == token_hash),
                None,
            )
            return replace(record) if record else None

    def insert_refresh_token(
        self,
        *,
        token_hash: str,
        user_id: str,
        expires_at: datetime,
        token_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("refresh token user missing", {"user_id": user_id})
            if any(r.token_hash == token_hash for r in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})
            record = RefreshTokenRecord(
                id=token_id or new_id(),
                token_hash=token_hash,
                user_id=user_id,
                expires_at=expires_at,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            if record.id in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "id"})
            self.refresh_tokens[record.id] = record
            self._persist_state()
            return replace(record)

    def atomic_revoke(
        self,
        token_id: str,
        expected_revoked_state: bool = False,
        *,
        replaced_by: Optional[str] = None,
    ) -> bool:
        """Compare-and-set revocation; only one caller can win for a given record."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if record is None or record.is_revoked != expected_revoked_state:
                return False
            now = utcnow()
            record.is_revoked = True
            record.revoked_at = now
            record.last_used_at = now
            if replaced_by is not None:
                record.replaced_by = replaced_by
            self._persist_state()
            return True

    def touch_refresh_token(self, token_id: str) -> None:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if record is None:
                return
            record.last_used_at = utcnow()
            self._persist_state()

    def revoke_all_for_user(self, user_id: str) -> int:
        with self._data_lock:
            now = utcnow()
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.is_revoked:
                    record.is_revoked = True
                    record.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def list_refresh_tokens(
        self, user_id: str, *, active_only: bool = True, now: Optional[datetime] = None
    ) -> List[RefreshTokenRecord]:
        current = now or utcnow()
        with self._data_lock:
            records = [
                replace(r)
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and (not active_only or r.is_active(current))
            ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._data_lock:
            stale = [rid for rid, r in self.refresh_tokens.items() if r.expires_at <= current]
            for rid in stale:
                del self.refresh_tokens[rid]
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=f"{path.name}_", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            # readers only ever see the old file or the complete new one
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", error=str(exc), path=str(path))
            raise RuntimeError(
                f"in-memory store state at {path} is corrupt; restore or remove it before starting"
            ) from exc
        if not isinstance(data, dict):
            raise RuntimeError(f"in-memory store state at {path} is not a JSON object")
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            r["id"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        data = {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "name": user.name,
            "role": user.role,
            "is_active": user.is_active,
            "is_email_verified": user.is_email_verified,
            "email_verification_token_hash": user.email_verification_token_hash,
            "password_reset_token_hash": user.password_reset_token_hash,
            "failed_login_attempts": user.failed_login_attempts,
        }
        for field_name in _USER_DATETIME_FIELDS:
            data[field_name] = self._serialize_datetime(getattr(user, field_name))
        return data

    def _deserialize_user(self, data: dict) -> User:
        dates = {name: self._deserialize_datetime(data.get(name)) for name in _USER_DATETIME_FIELDS}
        return User(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            name=data.get("name", ""),
            role=data.get("role", "user"),
            is_active=data.get("is_active", True),
            is_email_verified=data.get("is_email_verified", False),
            email_verification_token_hash=data.get("email_verification_token_hash"),
            email_verification_expires_at=dates["email_verification_expires_at"],
            password_reset_token_hash=data.get("password_reset_token_hash"),
            password_reset_expires_at=dates["password_reset_expires_at"],
            password_changed_at=dates["password_changed_at"],
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            locked_until=dates["locked_until"],
            last_login_at=dates["last_login_at"],
            created_at=dates["created_at"] or utcnow(),
            updated_at=dates["updated_at"] or utcnow(),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        data = {
            "id": record.id,
            "token_hash": record.token_hash,
            "user_id": record.user_id,
            "is_revoked": record.is_revoked,
            "replaced_by": record.replaced_by,
            "user_agent": record.user_agent,
            "ip_address": record.ip_address,
        }
        for field_name in _TOKEN_DATETIME_FIELDS:
            data[field_name] = self._serialize_datetime(getattr(record, field_name))
        return data

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(data["id"]),
            token_hash=data["token_hash"],
            user_id=str(data["user_id"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_revoked=data.get("is_revoked", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            replaced_by=data.get("replaced_by"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
        )
