from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from genesis_auth.config import Settings
from genesis_auth.logging import get_logger
from genesis_auth.storage.models import utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenError(Exception):
    """Base for token verification failures."""


class TokenExpiredError(TokenError):
    pass


class TokenInvalidError(TokenError):
    pass


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    role: str
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RefreshClaims:
    user_id: str
    jti: str
    issued_at: datetime
    expires_at: datetime


def hash_token(raw: str) -> str:
    """SHA-256 hex digest used wherever a token is persisted."""
    return hashlib.sha256(raw.encode("utf-8", "surrogatepass")).hexdigest()


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _from_ts(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def epoch_millis(dt: datetime) -> int:
    """Milliseconds since the epoch; naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // timedelta(milliseconds=1)


class TokenCodec:
    """HS256 JWT signing with separate access and refresh secrets.

    Pure: no I/O and no knowledge of revocation. Signature is checked before
    expiry, so a tampered expired token reports as invalid.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {ACCESS: access_secret.encode(), REFRESH: refresh_secret.encode()}
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], datetime] = utcnow
    ) -> "TokenCodec":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            clock=clock,
        )

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        digest = hmac.new(
            self._secrets[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode(self, payload: Dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _decode(self, token: str, token_type: str) -> Dict[str, Any]:
        if not isinstance(token, str):
            raise TokenInvalidError("token must be a string")
        if not token.isascii():
            raise TokenInvalidError("malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("malformed token") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, binascii.Error):
            raise TokenInvalidError("malformed header") from None
        # reject alg=none and anything else a forger might pick
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenInvalidError("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError("bad signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, binascii.Error):
            raise TokenInvalidError("malformed payload") from None
        if not isinstance(payload, dict):
            raise TokenInvalidError("malformed payload")

        if payload.get("token_type") != token_type:
            raise TokenInvalidError("wrong token type")
        if payload.get("iss") != self.issuer:
            raise TokenInvalidError("wrong issuer")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenInvalidError("wrong audience")

        for claim in ("sub", "iat", "exp", "jti"):
            if claim not in payload:
                raise TokenInvalidError(f"missing {claim}")
        try:
            exp_ts = int(payload["exp"])
            int(payload["iat"])
        except (TypeError, ValueError):
            raise TokenInvalidError("bad timestamp") from None
        if exp_ts <= self._clock().timestamp():
            raise TokenExpiredError("token expired")
        return payload

    def _base_claims(self, user_id: str, ttl: timedelta, jti: str, token_type: str) -> Dict[str, Any]:
        now = self._clock()
        iat = int(now.timestamp())
        return {
            "sub": user_id,
            "iat": iat,
            "exp": iat + int(ttl.total_seconds()),
            "iss": self.issuer,
            "aud": self.audience,
            "jti": jti,
            "token_type": token_type,
        }

    def sign_access(self, user_id: str, claims: Dict[str, Any]) -> Tuple[str, str, datetime]:
        """Return ``(token, jti, expires_at)`` for an access token carrying email and role."""
        jti = str(uuid.uuid4())
        payload = self._base_claims(user_id, self.access_ttl, jti, ACCESS)
        # millisecond issue time, ordered against password_changed_at
        payload["iat_ms"] = epoch_millis(self._clock())
        payload["email"] = claims.get("email")
        payload["role"] = claims.get("role", "user")
        return self._encode(payload, ACCESS), jti, _from_ts(payload["exp"])

    def sign_refresh(self, user_id: str, jti: Optional[str] = None) -> Tuple[str, str, datetime]:
        """Return ``(token, jti, expires_at)``; the jti doubles as the stored record id."""
        jti = jti or str(uuid.uuid4())
        payload = self._base_claims(user_id, self.refresh_ttl, jti, REFRESH)
        return self._encode(payload, REFRESH), jti, _from_ts(payload["exp"])

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._decode(token, ACCESS)
        issued_at = _from_ts(payload["iat"])
        if "iat_ms" in payload:
            try:
                issued_at = _EPOCH + timedelta(milliseconds=int(payload["iat_ms"]))
            except (TypeError, ValueError, OverflowError):
                raise TokenInvalidError("bad timestamp") from None
        return AccessClaims(
            user_id=str(payload["sub"]),
            email=payload.get("email") or "",
            role=payload.get("role") or "user",
            jti=str(payload["jti"]),
            issued_at=issued_at,
            expires_at=_from_ts(payload["exp"]),
        )

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self._decode(token, REFRESH)
        return RefreshClaims(
            user_id=str(payload["sub"]),
            jti=str(payload["jti"]),
            issued_at=_from_ts(payload["iat"]),
            expires_at=_from_ts(payload["exp"]),
        )
