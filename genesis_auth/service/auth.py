from __future__ import annotations

import asyncio
import functools
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from genesis_auth.config import Settings
from genesis_auth.logging import get_logger, mask_email
from genesis_auth.service.email import EmailService
from genesis_auth.service.errors import ValidationError
from genesis_auth.service.lockout import LockoutPolicy
from genesis_auth.service.passwords import PasswordHasherService
from genesis_auth.service.results import Err, ErrorKind, Ok, Result
from genesis_auth.service.tokens import (
    TokenCodec,
    TokenExpiredError,
    TokenInvalidError,
    epoch_millis,
    hash_token,
)
from genesis_auth.storage.errors import ConstraintViolation, StoreUnavailable
from genesis_auth.storage.models import (
    RefreshTokenRecord,
    User,
    normalize_email,
    utcnow,
)
from genesis_auth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

GENERIC_RESET_MESSAGE = (
    "If an account with that email exists, a password reset link has been sent."
)
GENERIC_VERIFICATION_MESSAGE = (
    "If an unverified account with that email exists, a verification email has been sent."
)


class CredentialStore(Protocol):
    def find_user_by_email(self, email: str) -> Optional[User]: ...

    def find_user_by_id(self, user_id: str) -> Optional[User]: ...

    def find_user_by_verification_hash(self, token_hash: str) -> Optional[User]: ...

    def find_user_by_reset_hash(self, token_hash: str) -> Optional[User]: ...

    def insert_user(self, **fields: Any) -> User: ...

    def atomic_update_user(
        self, user_id: str, predicate: Dict[str, Any], patch: Dict[str, Any]
    ) -> bool: ...

    def increment_failed_logins(
        self, user_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> Tuple[int, Optional[datetime]]: ...

    def find_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def insert_refresh_token(self, **fields: Any) -> RefreshTokenRecord: ...

    def atomic_revoke(
        self,
        token_id: str,
        expected_revoked_state: bool = False,
        *,
        replaced_by: Optional[str] = None,
    ) -> bool: ...

    def touch_refresh_token(self, token_id: str) -> None: ...

    def revoke_all_for_user(self, user_id: str) -> int: ...

    def list_refresh_tokens(
        self, user_id: str, *, active_only: bool = True, now: Optional[datetime] = None
    ) -> List[RefreshTokenRecord]: ...

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...


class Mailer(Protocol):
    def send_verification_email(self, to_address: str, raw_token: str) -> bool: ...

    def send_password_reset_email(self, to_address: str, raw_token: str) -> bool: ...

    def send_password_changed_email(self, to_address: str) -> bool: ...


@dataclass(frozen=True)
class AuthTokens:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class AuthResult:
    user: User
    tokens: Optional[AuthTokens] = None
    verification_email_sent: Optional[bool] = None


@dataclass(frozen=True)
class MessageResult:
    message: str
    count: Optional[int] = None


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    email: str
    role: str
    jti: str
    expires_at: datetime


def _store_guard(func: Callable) -> Callable:
    """Turn a store timeout into ``Err(SERVICE_UNAVAILABLE)`` at the operation boundary."""

    @functools.wraps(func)
    async def wrapper(self: "AuthService", *args: Any, **kwargs: Any) -> Result:
        try:
            return await func(self, *args, **kwargs)
        except StoreUnavailable as exc:
            self.logger.error(
                "store_unavailable", operation=func.__name__, error=exc.message
            )
            return Err(ErrorKind.SERVICE_UNAVAILABLE)

    return wrapper


class AuthService:
    """Registration, login, token rotation, email verification and password reset.

    Business failures come back as ``Err`` values; only infrastructure faults
    (a corrupt password hash, an unexpected driver error) raise.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        mailer: Optional[Mailer] = None,
        hasher: Optional[PasswordHasherService] = None,
        codec: Optional[TokenCodec] = None,
        lockout: Optional[LockoutPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.clock = clock or utcnow
        self.mailer: Mailer = mailer or EmailService.from_settings(settings)
        self.hasher = hasher or PasswordHasherService.from_settings(settings)
        self.codec = codec or TokenCodec.from_settings(settings, clock=self.clock)
        self.lockout = lockout or LockoutPolicy.from_settings(settings)
        self.logger = logger

    def _now(self) -> datetime:
        return self.clock()

    @staticmethod
    def _new_one_time_token() -> Tuple[str, str]:
        """256-bit random token and the digest that gets stored in its place."""
        raw = secrets.token_hex(32)
        return raw, hash_token(raw)

    async def _send_mail(self, send: Callable[..., bool], *args: str, event: str, **context: Any) -> bool:
        try:
            sent = bool(await asyncio.to_thread(send, *args))
        except Exception as exc:
            self.logger.error(event, error_type=type(exc).__name__, error=str(exc), **context)
            return False
        if not sent:
            self.logger.error(event, **context)
        return sent

    def _sign_access(self, user: User) -> Tuple[str, datetime]:
        token, _jti, expires_at = self.codec.sign_access(
            user.id, {"email": user.email, "role": user.role}
        )
        return token, expires_at

    def _issue_tokens(
        self,
        user: User,
        *,
        refresh_jti: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthTokens:
        access_token, access_exp = self._sign_access(user)
        refresh_token, jti, refresh_exp = self.codec.sign_refresh(user.id, jti=refresh_jti)
        self.store.insert_refresh_token(
            token_hash=hash_token(refresh_token),
            user_id=user.id,
            expires_at=refresh_exp,
            token_id=jti,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        return AuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    async def _mark_refresh_revoked(self, jti: str, expires_at: datetime) -> None:
        if not self.cache:
            return
        ttl = max(int((expires_at - self._now()).total_seconds()), 1)
        try:
            await self.cache.mark_refresh_revoked(jti, ttl)
        except Exception as exc:
            self.logger.warning("cache_revoked_refresh_token_failed", jti=jti, error=str(exc))

    async def _is_refresh_revoked(self, jti: str) -> Optional[bool]:
        """Cached revocation marker for ``jti``; None when the cache could not answer."""
        if not self.cache:
            return False
        try:
            return await self.cache.is_refresh_revoked(jti)
        except Exception as exc:
            self.logger.warning("check_revoked_refresh_token_failed", jti=jti, error=str(exc))
            return None

    async def _is_access_denylisted(self, jti: str) -> bool:
        if not self.cache:
            return False
        try:
            return await self.cache.is_access_token_denylisted(jti)
        except Exception as exc:
            self.logger.warning("check_access_denylist_failed", jti=jti, error=str(exc))
            return False

    async def _denylist_access(self, context: Optional[AuthContext]) -> None:
        if not self.cache or context is None:
            return
        ttl = int((context.expires_at - self._now()).total_seconds())
        try:
            await self.cache.denylist_access_token(context.jti, ttl)
        except Exception as exc:
            self.logger.warning("denylist_access_token_failed", jti=context.jti, error=str(exc))

    # registration & login
    @_store_guard
    async def register(
        self,
        name: str,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Result:
        normalized = normalize_email(email)
        if self.store.find_user_by_email(normalized) is not None:
            self.logger.info("register_duplicate_email", email=mask_email(normalized))
            return Err(ErrorKind.DUPLICATE_EMAIL)
        try:
            password_hash = await asyncio.to_thread(self.hasher.hash, password)
        except ValidationError as exc:
            return Err(ErrorKind.VALIDATION_FAILED, exc.message, exc.detail)

        raw_token, token_hash = self._new_one_time_token()
        try:
            user = self.store.insert_user(
                email=normalized,
                password_hash=password_hash,
                name=(name or "").strip(),
                email_verification_token_hash=token_hash,
                email_verification_expires_at=self._now()
                + timedelta(hours=self.settings.email_verification_ttl_hours),
            )
        except ConstraintViolation:
            return Err(ErrorKind.DUPLICATE_EMAIL)

        tokens = None
        if self.settings.register_issues_tokens:
            tokens = self._issue_tokens(user, user_agent=user_agent, ip_address=ip_address)
        sent = await self._send_mail(
            self.mailer.send_verification_email,
            user.email,
            raw_token,
            event="verification_email_failed",
            user_id=user.id,
        )
        self.logger.info(
            "user_registered",
            user_id=user.id,
            tokens_issued=tokens is not None,
            verification_email_sent=sent,
        )
        return Ok(AuthResult(user=user, tokens=tokens, verification_email_sent=sent))

    @_store_guard
    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Result:
        user = self.store.find_user_by_email(normalize_email(email))
        if user is None:
            await asyncio.to_thread(self.hasher.dummy_verify, password)
            self.logger.info("login_failed", reason="unknown_email")
            return Err(ErrorKind.INVALID_CREDENTIALS)
        if not user.is_active:
            self.logger.info("login_rejected_inactive", user_id=user.id)
            return Err(ErrorKind.ACCOUNT_INACTIVE)

        now = self._now()
        state = self.lockout.evaluate(user, now)
        if state.locked:
            self.logger.warning(
                "login_rejected_locked",
                user_id=user.id,
                retry_after_seconds=state.remaining_seconds,
            )
            return Err(
                ErrorKind.ACCOUNT_LOCKED,
                detail={"retry_after_seconds": state.remaining_seconds},
            )

        if not await asyncio.to_thread(self.hasher.verify, password, user.password_hash):
            outcome = self.lockout.record_failure(self.store, user.id, now)
            if outcome.locked:
                self.logger.warning(
                    "account_locked",
                    user_id=user.id,
                    attempts=outcome.attempts,
                    locked_until=outcome.locked_until.isoformat() if outcome.locked_until else None,
                )
            else:
                self.logger.info("login_failed", user_id=user.id, attempts=outcome.attempts)
            return Err(ErrorKind.INVALID_CREDENTIALS)

        patch: Dict[str, Any] = {**self.lockout.reset_patch(), "last_login_at": now}
        if self.hasher.needs_rehash(user.password_hash):
            patch["password_hash"] = await asyncio.to_thread(
                self.hasher.hash, password, validate=False
            )
        self.store.atomic_update_user(user.id, {}, patch)

        if self.settings.require_verified_email_for_login and not user.is_email_verified:
            self.logger.info("login_rejected_unverified", user_id=user.id)
            return Err(ErrorKind.EMAIL_NOT_VERIFIED)

        tokens = self._issue_tokens(user, user_agent=user_agent, ip_address=ip_address)
        refreshed = self.store.find_user_by_id(user.id) or user
        self.logger.info("login_succeeded", user_id=user.id)
        return Ok(AuthResult(user=refreshed, tokens=tokens))

    # refresh tokens
    @_store_guard
    async def refresh(
        self,
        refresh_token: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Result:
        try:
            claims = self.codec.verify_refresh(refresh_token)
        except TokenExpiredError:
            return Err(ErrorKind.TOKEN_EXPIRED)
        except TokenInvalidError:
            return Err(ErrorKind.TOKEN_INVALID)

        revoked = await self._is_refresh_revoked(claims.jti)
        if revoked is None:
            # fail closed: an unanswerable revocation check forces re-login
            self.logger.warning(
                "refresh_rejected_revocation_check_unavailable", user_id=claims.user_id, jti=claims.jti
            )
            return Err(ErrorKind.INVALID_REFRESH_TOKEN)
        if revoked:
            self.logger.warning("refresh_token_reuse_detected", user_id=claims.user_id, jti=claims.jti)
            return Err(ErrorKind.INVALID_REFRESH_TOKEN)

        record = self.store.find_refresh_token(hash_token(refresh_token))
        now = self._now()
        if record is None or record.id != claims.jti or record.user_id != claims.user_id:
            return Err(ErrorKind.INVALID_REFRESH_TOKEN)
        if record.is_revoked:
            self.logger.warning(
                "refresh_token_reuse_detected",
                user_id=record.user_id,
                jti=record.id,
                replaced_by=record.replaced_by,
            )
            return Err(ErrorKind.INVALID_REFRESH_TOKEN)
        if record.expires_at <= now:
            return Err(ErrorKind.INVALID_REFRESH_TOKEN)

        user = self.store.find_user_by_id(record.user_id)
        if user is None:
            return Err(ErrorKind.INVALID_REFRESH_TOKEN)
        if not user.is_active:
            return Err(ErrorKind.ACCOUNT_INACTIVE)

        if not self.settings.refresh_rotation:
            self.store.touch_refresh_token(record.id)
            access_token, access_exp = self._sign_access(user)
            tokens = AuthTokens(
                access_token=access_token,
                refresh_token=refresh_token,
                access_expires_at=access_exp,
                refresh_expires_at=record.expires_at,
            )
            return Ok(AuthResult(user=user, tokens=tokens))

        successor_jti = str(uuid.uuid4())
        if not self.store.atomic_revoke(record.id, False, replaced_by=successor_jti):
            # another request rotated this token first
            self.logger.warning(
                "refresh_token_reuse_detected",
                user_id=record.user_id,
                jti=record.id,
                reason="concurrent_rotation",
            )
            return Err(ErrorKind.INVALID_REFRESH_TOKEN)
        await self._mark_refresh_revoked(record.id, record.expires_at)
        tokens = self._issue_tokens(
            user,
            refresh_jti=successor_jti,
            user_agent=user_agent or record.user_agent,
            ip_address=ip_address or record.ip_address,
        )
        self.logger.info("refresh_token_rotated", user_id=user.id, jti=record.id, replaced_by=successor_jti)
        return Ok(AuthResult(user=user, tokens=tokens))

    @_store_guard
    async def logout(
        self,
        user_id: str,
        refresh_token: Optional[str],
        *,
        context: Optional[AuthContext] = None,
    ) -> Result:
        """Revoke one refresh token. Unknown, foreign or already revoked tokens still succeed."""
        record = self.store.find_refresh_token(hash_token(refresh_token)) if refresh_token else None
        if record is not None and record.user_id == user_id:
            if self.store.atomic_revoke(record.id, False):
                self.logger.info("logout", user_id=user_id, jti=record.id)
            await self._mark_refresh_revoked(record.id, record.expires_at)
        await self._denylist_access(context)
        return Ok(MessageResult("logged out successfully"))

    @_store_guard
    async def logout_all(self, user_id: str, *, context: Optional[AuthContext] = None) -> Result:
        revoked = self.store.revoke_all_for_user(user_id)
        await self._denylist_access(context)
        self.logger.info("logout_all", user_id=user_id, sessions_revoked=revoked)
        return Ok(MessageResult("logged out from all devices", count=revoked))

    @_store_guard
    async def list_sessions(self, user_id: str) -> Result:
        return Ok(self.store.list_refresh_tokens(user_id, active_only=True, now=self._now()))

    # email verification
    @_store_guard
    async def verify_email(self, raw_token: str) -> Result:
        if not raw_token:
            return Err(ErrorKind.INVALID_OR_EXPIRED_TOKEN)
        token_hash = hash_token(raw_token)
        user = self.store.find_user_by_verification_hash(token_hash)
        now = self._now()
        if (
            user is None
            or user.email_verification_expires_at is None
            or user.email_verification_expires_at <= now
        ):
            self.logger.info("email_verification_invalid_token")
            return Err(ErrorKind.INVALID_OR_EXPIRED_TOKEN)
        verified = self.store.atomic_update_user(
            user.id,
            {"email_verification_token_hash": token_hash},
            {
                "is_email_verified": True,
                "email_verification_token_hash": None,
                "email_verification_expires_at": None,
            },
        )
        if not verified:
            return Err(ErrorKind.INVALID_OR_EXPIRED_TOKEN)
        self.logger.info("email_verified", user_id=user.id)
        return Ok(MessageResult("email verified successfully"))

    @_store_guard
    async def resend_verification(self, email: str) -> Result:
        user = self.store.find_user_by_email(normalize_email(email))
        if user is not None and user.is_active and not user.is_email_verified:
            raw_token, token_hash = self._new_one_time_token()
            self.store.atomic_update_user(
                user.id,
                {"is_email_verified": False},
                {
                    "email_verification_token_hash": token_hash,
                    "email_verification_expires_at": self._now()
                    + timedelta(hours=self.settings.email_verification_ttl_hours),
                },
            )
            await self._send_mail(
                self.mailer.send_verification_email,
                user.email,
                raw_token,
                event="verification_email_failed",
                user_id=user.id,
            )
        return Ok(MessageResult(GENERIC_VERIFICATION_MESSAGE))

    # password reset & change
    @_store_guard
    async def forgot_password(self, email: str) -> Result:
        user = self.store.find_user_by_email(normalize_email(email))
        if user is None or not user.is_active:
            self.logger.info("password_reset_requested", known_account=False)
            return Ok(MessageResult(GENERIC_RESET_MESSAGE))

        raw_token, token_hash = self._new_one_time_token()
        self.store.atomic_update_user(
            user.id,
            {},
            {
                "password_reset_token_hash": token_hash,
                "password_reset_expires_at": self._now()
                + timedelta(minutes=self.settings.password_reset_ttl_minutes),
            },
        )
        sent = await self._send_mail(
            self.mailer.send_password_reset_email,
            user.email,
            raw_token,
            event="password_reset_email_failed",
            user_id=user.id,
        )
        if not sent:
            # roll back only if no newer request replaced the token meanwhile
            self.store.atomic_update_user(
                user.id,
                {"password_reset_token_hash": token_hash},
                {"password_reset_token_hash": None, "password_reset_expires_at": None},
            )
        self.logger.info("password_reset_requested", known_account=True, user_id=user.id, sent=sent)
        return Ok(MessageResult(GENERIC_RESET_MESSAGE))

    @_store_guard
    async def reset_password(self, raw_token: str, new_password: str) -> Result:
        if not raw_token:
            return Err(ErrorKind.INVALID_OR_EXPIRED_TOKEN)
        token_hash = hash_token(raw_token)
        user = self.store.find_user_by_reset_hash(token_hash)
        now = self._now()
        if (
            user is None
            or user.password_reset_expires_at is None
            or user.password_reset_expires_at <= now
        ):
            self.logger.info("password_reset_invalid_token")
            return Err(ErrorKind.INVALID_OR_EXPIRED_TOKEN)
        try:
            new_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        except ValidationError as exc:
            return Err(ErrorKind.VALIDATION_FAILED, exc.message, exc.detail)

        updated = self.store.atomic_update_user(
            user.id,
            {"password_reset_token_hash": token_hash},
            {
                "password_hash": new_hash,
                "password_changed_at": now,
                "password_reset_token_hash": None,
                "password_reset_expires_at": None,
                **self.lockout.reset_patch(),
            },
        )
        if not updated:
            return Err(ErrorKind.INVALID_OR_EXPIRED_TOKEN)
        revoked = self.store.revoke_all_for_user(user.id)
        await self._send_mail(
            self.mailer.send_password_changed_email,
            user.email,
            event="password_changed_email_failed",
            user_id=user.id,
        )
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return Ok(MessageResult("password has been reset successfully"))

    @_store_guard
    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        context: Optional[AuthContext] = None,
    ) -> Result:
        user = self.store.find_user_by_id(user_id)
        if user is None:
            return Err(ErrorKind.USER_NOT_FOUND)
        if not await asyncio.to_thread(
            self.hasher.verify, current_password, user.password_hash
        ):
            self.logger.info("change_password_rejected", user_id=user.id)
            return Err(ErrorKind.INVALID_CURRENT_PASSWORD)
        if current_password == new_password:
            return Err(
                ErrorKind.VALIDATION_FAILED,
                "new password must differ from the current password",
                {"field": "new_password"},
            )
        try:
            new_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        except ValidationError as exc:
            return Err(ErrorKind.VALIDATION_FAILED, exc.message, exc.detail)

        updated = self.store.atomic_update_user(
            user.id,
            {"password_hash": user.password_hash},
            {"password_hash": new_hash, "password_changed_at": self._now()},
        )
        if not updated:
            return Err(ErrorKind.INVALID_CURRENT_PASSWORD)
        revoked = self.store.revoke_all_for_user(user.id)
        await self._denylist_access(context)
        await self._send_mail(
            self.mailer.send_password_changed_email,
            user.email,
            event="password_changed_email_failed",
            user_id=user.id,
        )
        self.logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)
        return Ok(MessageResult("password changed successfully"))

    # principal resolution
    @_store_guard
    async def authenticate(self, access_token: str) -> Result:
        try:
            claims = self.codec.verify_access(access_token)
        except TokenExpiredError:
            return Err(ErrorKind.TOKEN_EXPIRED)
        except TokenInvalidError:
            return Err(ErrorKind.TOKEN_INVALID)
        if await self._is_access_denylisted(claims.jti):
            return Err(ErrorKind.TOKEN_INVALID)
        user = self.store.find_user_by_id(claims.user_id)
        if user is None:
            return Err(ErrorKind.TOKEN_INVALID)
        if not user.is_active:
            return Err(ErrorKind.ACCOUNT_INACTIVE)
        if user.password_changed_at is not None and epoch_millis(claims.issued_at) < epoch_millis(
            user.password_changed_at
        ):
            return Err(ErrorKind.TOKEN_INVALID, "password changed, please log in again")
        return Ok(
            AuthContext(
                user_id=user.id,
                email=user.email,
                role=user.role,
                jti=claims.jti,
                expires_at=claims.expires_at,
            )
        )

    @_store_guard
    async def get_user(self, user_id: str) -> Result:
        user = self.store.find_user_by_id(user_id)
        if user is None:
            return Err(ErrorKind.USER_NOT_FOUND)
        return Ok(user)

    @_store_guard
    async def deactivate_user(self, actor: AuthContext, user_id: str) -> Result:
        if actor.role != "admin":
            return Err(ErrorKind.FORBIDDEN)
        if self.store.find_user_by_id(user_id) is None:
            return Err(ErrorKind.USER_NOT_FOUND)
        self.store.atomic_update_user(user_id, {}, {"is_active": False})
        revoked = self.store.revoke_all_for_user(user_id)
        self.logger.info(
            "user_deactivated", user_id=user_id, actor_id=actor.user_id, sessions_revoked=revoked
        )
        return Ok(self.store.find_user_by_id(user_id))

    @_store_guard
    async def purge_expired_tokens(self) -> Result:
        purged = self.store.purge_expired_refresh_tokens(self._now())
        if purged:
            self.logger.info("refresh_tokens_purged", count=purged)
        return Ok(MessageResult("expired refresh tokens purged", count=purged))
