from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ROLES = ("user", "admin", "moderator")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    name: str = ""
    role: str = "user"
    is_active: bool = True
    is_email_verified: bool = False
    email_verification_token_hash: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    password_reset_token_hash: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public_view(self) -> Dict[str, Any]:
        """Outward projection: never carries hashes or lockout counters."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "is_active": self.is_active,
            "is_email_verified": self.is_email_verified,
            "last_login_at": self.last_login_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# Fields callers may patch through atomic_update_user
USER_MUTABLE_FIELDS = frozenset(
    {
        "name",
        "role",
        "is_active",
        "is_email_verified",
        "email_verification_token_hash",
        "email_verification_expires_at",
        "password_reset_token_hash",
        "password_reset_expires_at",
        "password_hash",
        "password_changed_at",
        "failed_login_attempts",
        "locked_until",
        "last_login_at",
    }
)


@dataclass
class RefreshTokenRecord:
    id: str
    token_hash: str
    user_id: str
    expires_at: datetime
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and self.expires_at > now

    def session_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "last_used_at": self.last_used_at,
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
        }
