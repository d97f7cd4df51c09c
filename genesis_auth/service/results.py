from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Business outcomes an auth operation can fail with."""

    DUPLICATE_EMAIL = "duplicate_email"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_INACTIVE = "account_inactive"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID = "token_invalid"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    INVALID_CURRENT_PASSWORD = "invalid_current_password"
    SERVICE_UNAVAILABLE = "service_unavailable"
    VALIDATION_FAILED = "validation_failed"
    USER_NOT_FOUND = "user_not_found"
    FORBIDDEN = "forbidden"


DEFAULT_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.DUPLICATE_EMAIL: "an account with this email already exists",
    ErrorKind.INVALID_CREDENTIALS: "invalid email or password",
    ErrorKind.ACCOUNT_LOCKED: "account temporarily locked due to too many failed login attempts",
    ErrorKind.ACCOUNT_INACTIVE: "account is deactivated",
    ErrorKind.EMAIL_NOT_VERIFIED: "email address has not been verified",
    ErrorKind.TOKEN_EXPIRED: "token expired",
    ErrorKind.TOKEN_INVALID: "invalid token",
    ErrorKind.INVALID_REFRESH_TOKEN: "invalid refresh token",
    ErrorKind.INVALID_OR_EXPIRED_TOKEN: "invalid or expired token",
    ErrorKind.INVALID_CURRENT_PASSWORD: "current password is incorrect",
    ErrorKind.SERVICE_UNAVAILABLE: "service temporarily unavailable",
    ErrorKind.VALIDATION_FAILED: "validation failed",
    ErrorKind.USER_NOT_FOUND: "user not found",
    ErrorKind.FORBIDDEN: "insufficient permissions",
}


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str = ""
    detail: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.message:
            object.__setattr__(self, "message", DEFAULT_MESSAGES[self.kind])

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]
