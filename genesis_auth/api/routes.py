from __future__ import annotations

from typing import NoReturn, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from genesis_auth.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    EmailRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionListResponse,
    SessionResponse,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
)
from genesis_auth.config import get_settings
from genesis_auth.logging import get_logger
from genesis_auth.service.auth import AuthContext, AuthResult, AuthTokens, MessageResult
from genesis_auth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    LockedError,
    NotFoundError,
    RateLimitedError,
    ServiceError,
    ServiceUnavailableError,
    ValidationError,
)
from genesis_auth.service.results import Err, ErrorKind, Result
from genesis_auth.service.runtime import check_rate_limit, get_runtime
from genesis_auth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_BEARER_CHALLENGE = {"WWW-Authenticate": "Bearer"}


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


_KIND_TO_ERROR: dict[ErrorKind, type[ServiceError]] = {
    ErrorKind.DUPLICATE_EMAIL: ConflictError,
    ErrorKind.INVALID_CREDENTIALS: AuthenticationError,
    ErrorKind.ACCOUNT_LOCKED: LockedError,
    ErrorKind.ACCOUNT_INACTIVE: ForbiddenError,
    ErrorKind.EMAIL_NOT_VERIFIED: ForbiddenError,
    ErrorKind.TOKEN_EXPIRED: AuthenticationError,
    ErrorKind.TOKEN_INVALID: AuthenticationError,
    ErrorKind.INVALID_REFRESH_TOKEN: AuthenticationError,
    ErrorKind.INVALID_OR_EXPIRED_TOKEN: ValidationError,
    ErrorKind.INVALID_CURRENT_PASSWORD: AuthenticationError,
    ErrorKind.VALIDATION_FAILED: ValidationError,
    ErrorKind.USER_NOT_FOUND: NotFoundError,
    ErrorKind.FORBIDDEN: ForbiddenError,
    ErrorKind.SERVICE_UNAVAILABLE: ServiceUnavailableError,
}


def _raise_for(err: Err) -> NoReturn:
    """Translate a core ``Err`` into the matching service exception."""
    error_cls = _KIND_TO_ERROR[err.kind]
    headers: dict[str, str] = {}
    detail = dict(err.detail)
    if err.kind == ErrorKind.ACCOUNT_LOCKED:
        headers["Retry-After"] = str(detail.get("retry_after_seconds", 1))
    elif err.kind == ErrorKind.SERVICE_UNAVAILABLE:
        headers["Retry-After"] = "5"
    elif err.kind in (ErrorKind.TOKEN_EXPIRED, ErrorKind.TOKEN_INVALID):
        headers.update(_BEARER_CHALLENGE)
    raise error_cls(err.message, detail=detail or None, headers=headers)


def _unwrap(result: Result):
    if isinstance(result, Err):
        _raise_for(result)
    return result.value


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a token-bucket limit for ``key``; raises a 429 envelope when exhausted."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit, window_seconds=window_seconds)
        raise RateLimitedError(
            "rate limit exceeded",
            detail={"retry_after": max(1, reset_seconds)},
            headers={"Retry-After": str(max(1, reset_seconds))},
        )

    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(**user.public_view())


def _tokens_to_response(tokens: Optional[AuthTokens], access_ttl_minutes: int) -> Optional[TokenResponse]:
    if tokens is None:
        return None
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=access_ttl_minutes * 60,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _auth_envelope(result: AuthResult, access_ttl_minutes: int) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_to_response(result.user),
            tokens=_tokens_to_response(result.tokens, access_ttl_minutes),
            verification_email_sent=result.verification_email_sent,
        ),
    )


def _message_envelope(result: MessageResult) -> Envelope:
    return Envelope(
        status="ok", data=MessageResponse(message=result.message, count=result.count)
    )


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the bearer access token into the calling principal."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError(
            "missing or malformed bearer token", headers=dict(_BEARER_CHALLENGE)
        )
    runtime = get_runtime()
    return _unwrap(await runtime.auth.authenticate(token.strip()))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and send the email verification link.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
        429: If the rate limit for this client and email is exceeded
    """
    settings = get_settings()
    if not settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}:{body.email}",
        runtime.settings.register_rate_limit,
        runtime.settings.auth_rate_window_seconds,
        response=response,
    )
    result = _unwrap(
        await runtime.auth.register(
            body.name,
            body.email,
            body.password,
            user_agent=request.headers.get("user-agent"),
            ip_address=_client_ip(request),
        )
    )
    return _auth_envelope(result, runtime.settings.access_token_ttl_minutes)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Unknown emails and wrong passwords produce the same 401 body.

    Raises:
        401: If credentials are invalid
        403: If the account is deactivated or the email is unverified
        423: If the account is locked; ``Retry-After`` carries the remaining seconds
        429: If the rate limit for this client and email is exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}:{body.email}",
        runtime.settings.login_rate_limit,
        runtime.settings.auth_rate_window_seconds,
        response=response,
    )
    result = _unwrap(
        await runtime.auth.login(
            body.email,
            body.password,
            user_agent=request.headers.get("user-agent"),
            ip_address=_client_ip(request),
        )
    )
    return _auth_envelope(result, runtime.settings.access_token_ttl_minutes)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_ip(request)}",
        runtime.settings.refresh_rate_limit,
        runtime.settings.auth_rate_window_seconds,
        response=response,
    )
    result = _unwrap(
        await runtime.auth.refresh(
            body.refresh_token,
            user_agent=request.headers.get("user-agent"),
            ip_address=_client_ip(request),
        )
    )
    return _auth_envelope(result, runtime.settings.access_token_ttl_minutes)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, principal: AuthContext = Depends(get_auth_context)):
    """Revoke the given refresh token. Repeating the call is harmless."""
    runtime = get_runtime()
    result = _unwrap(
        await runtime.auth.logout(principal.user_id, body.refresh_token, context=principal)
    )
    return _message_envelope(result)


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    result = _unwrap(await runtime.auth.logout_all(principal.user_id, context=principal))
    return _message_envelope(result)


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    records = _unwrap(await runtime.auth.list_sessions(principal.user_id))
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[SessionResponse(**record.session_view()) for record in records]
        ),
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify_email:{_client_ip(request)}",
        runtime.settings.token_action_rate_limit,
        runtime.settings.auth_rate_window_seconds,
        response=response,
    )
    result = _unwrap(await runtime.auth.verify_email(body.token))
    return _message_envelope(result)


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend_verification:{body.email}",
        runtime.settings.email_rate_limit,
        runtime.settings.email_rate_window_seconds,
        response=response,
    )
    result = _unwrap(await runtime.auth.resend_verification(body.email))
    return _message_envelope(result)


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest, request: Request, response: Response):
    """Request a password reset link.

    The response is identical whether or not the email belongs to an account.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"forgot_password:{body.email}",
        runtime.settings.email_rate_limit,
        runtime.settings.email_rate_window_seconds,
        response=response,
    )
    result = _unwrap(await runtime.auth.forgot_password(body.email))
    return _message_envelope(result)


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    """Set a new password from a reset link; every refresh token of the account is revoked."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset_password:{_client_ip(request)}",
        runtime.settings.token_action_rate_limit,
        runtime.settings.auth_rate_window_seconds,
        response=response,
    )
    result = _unwrap(await runtime.auth.reset_password(body.token, body.new_password))
    return _message_envelope(result)


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"change_password:{principal.user_id}",
        runtime.settings.token_action_rate_limit,
        runtime.settings.auth_rate_window_seconds,
        response=response,
    )
    result = _unwrap(
        await runtime.auth.change_password(
            principal.user_id,
            body.current_password,
            body.new_password,
            context=principal,
        )
    )
    return _message_envelope(result)


@router.get("/me", response_model=Envelope, tags=["users"])
async def get_me(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    user = _unwrap(await runtime.auth.get_user(principal.user_id))
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/admin/users/{user_id}/deactivate", response_model=Envelope, tags=["admin"])
async def admin_deactivate_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_auth_context),
):
    """Deactivate an account and revoke all of its refresh tokens (admin only)."""
    runtime = get_runtime()
    user = _unwrap(await runtime.auth.deactivate_user(principal, user_id))
    return Envelope(status="ok", data=_user_to_response(user))
