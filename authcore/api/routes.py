from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Header, Request, Response

from authcore.api.schemas import (
    AuthResponse,
    Envelope,
    SessionListResponse,
    SessionResponse,
    TokenBody,
    TokenPairResponse,
    UserListResponse,
    UserResponse,
)
from authcore.logging import get_correlation_id, get_logger
from authcore.service.abuse import RateLimitDecision
from authcore.service.errors import (
    BadRequestError,
    ErrorKind,
    NotFoundError,
    Outcome,
    RateLimitedError,
    ServiceError,
)
from authcore.service.guards import ADMIN_ROLE, Principal, check_csrf, require_role
from authcore.service.requests import (
    LoginRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    VerifyEmailRequest,
)
from authcore.service.sessions import SessionView
from authcore.storage.models import TokenMeta, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

MAX_ID_LENGTH = 128
MAX_USER_AGENT_LENGTH = 512


def get_runtime(request: Request):
    return request.app.state.runtime


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _token_meta(request: Request) -> TokenMeta:
    user_agent = request.headers.get("user-agent")
    return TokenMeta(
        ip=request.client.host if request.client else None,
        user_agent=user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None,
    )


def _ok(data: Any) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return envelope


def _raise_failure(outcome: Outcome, *, status_code: Optional[int] = None) -> None:
    """Raise the HTTP error for a failed outcome; no-op on success."""
    if outcome.ok:
        return
    raise ServiceError.from_failure(outcome.failure, status_code=status_code)


def _require_id(value: str, name: str) -> str:
    cleaned = value.strip()
    if not cleaned or len(cleaned) > MAX_ID_LENGTH:
        raise BadRequestError(f"{name} required")
    return cleaned


def _rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(max(0, decision.remaining)),
        "X-RateLimit-Reset": str(decision.reset_seconds),
    }


def rate_limited(rule_name: str):
    """Build a dependency that spends one token from ``rule_name`` for the client address."""

    async def _enforce(request: Request, response: Response) -> RateLimitDecision:
        runtime = get_runtime(request)
        decision = await runtime.abuse.hit(rule_name, _client_ip(request))
        headers = _rate_limit_headers(decision)
        if not decision.allowed:
            headers["Retry-After"] = str(max(1, decision.reset_seconds))
            raise RateLimitedError("rate limit exceeded", headers=headers)
        response.headers.update(headers)
        return decision

    return _enforce


async def get_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> Principal:
    runtime = get_runtime(request)
    outcome = await runtime.auth.authenticate_bearer(authorization)
    if not outcome.ok:
        error = ServiceError.from_failure(outcome.failure)
        error.headers["WWW-Authenticate"] = "Bearer"
        raise error
    return outcome.value


async def get_admin_principal(principal: Principal = Depends(get_principal)) -> Principal:
    outcome = require_role(principal, ADMIN_ROLE)
    if not outcome.ok:
        logger.warning("admin_access_denied", user_id=principal.user_id)
    _raise_failure(outcome)
    return principal


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        role=user.role,
        email_verified=user.email_verified,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def _session_to_response(session: SessionView) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        created_at=session.created_at,
        expires_at=session.expires_at,
        ip=session.ip,
        user_agent=session.user_agent,
    )


def _apply_refresh_cookies(
    response: Response, settings, refresh_token: str, expires_at: datetime
) -> None:
    if not settings.enable_refresh_cookie:
        return
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        expires=expires_at,
        path="/",
    )
    # Readable by scripts so clients can echo it in the CSRF header
    response.set_cookie(
        settings.csrf_cookie_name,
        secrets.token_urlsafe(32),
        httponly=False,
        secure=settings.cookie_secure,
        samesite="strict",
        expires=expires_at,
        path="/",
    )


def _clear_refresh_cookies(response: Response, settings) -> None:
    if not settings.enable_refresh_cookie:
        return
    response.delete_cookie(settings.refresh_cookie_name, path="/")
    response.delete_cookie(settings.csrf_cookie_name, path="/")


def _resolve_refresh_token(request: Request, body: Optional[TokenBody]) -> tuple[Optional[str], bool]:
    """Return the refresh token and whether it came from the request body.

    Raises:
        CsrfError: cookie-carried token without a matching CSRF header
    """
    settings = get_runtime(request).settings
    if body is not None and body.refresh_token:
        return body.refresh_token, True
    if not settings.enable_refresh_cookie:
        return None, False
    cookie_token = request.cookies.get(settings.refresh_cookie_name)
    if not cookie_token:
        return None, False
    csrf = check_csrf(
        enabled=settings.enable_csrf_for_refresh,
        token_in_body=False,
        header_value=request.headers.get(settings.csrf_header_name),
        cookie_value=request.cookies.get(settings.csrf_cookie_name),
    )
    if not csrf.ok:
        logger.warning("csrf_check_failed", path=request.url.path)
    _raise_failure(csrf)
    return cookie_token, False


# -- auth ---------------------------------------------------------------


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(rate_limited("register"))],
)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and sign it in.

    Raises:
        400: invalid email, username or password
        409: email or username already registered
        429: rate limit exceeded for this client
    """
    runtime = get_runtime(request)
    outcome = await runtime.auth.register(body, _token_meta(request))
    _raise_failure(outcome)
    result = outcome.value
    _apply_refresh_cookies(
        response, runtime.settings, result.tokens.refresh_token, result.tokens.refresh_token_expires_at
    )
    return _ok(
        AuthResponse(
            user=_user_to_response(result.user),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            access_token_expires_at=result.tokens.access_token_expires_at,
            refresh_token_expires_at=result.tokens.refresh_token_expires_at,
            verify_token=result.verify_token,
        )
    )


@router.post(
    "/auth/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited("login"))],
)
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange email and password for an access token and a refresh token.

    Raises:
        401: unknown email or wrong password
        429: rate limit exceeded, or the email is locked out (LOGIN_LOCKED)
    """
    runtime = get_runtime(request)
    outcome = await runtime.auth.login(body, _token_meta(request))
    _raise_failure(outcome)
    result = outcome.value
    _apply_refresh_cookies(
        response, runtime.settings, result.tokens.refresh_token, result.tokens.refresh_token_expires_at
    )
    return _ok(
        AuthResponse(
            user=_user_to_response(result.user),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            access_token_expires_at=result.tokens.access_token_expires_at,
            refresh_token_expires_at=result.tokens.refresh_token_expires_at,
        )
    )


@router.post(
    "/auth/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited("refresh"))],
)
async def refresh_tokens(
    request: Request, response: Response, body: Optional[TokenBody] = Body(None)
):
    """Rotate a refresh token; the presented token stops working immediately.

    The token may come in the body or in the refresh cookie. Cookie-carried
    tokens require the CSRF header.

    Raises:
        400: token missing or malformed
        401: token unknown, expired, revoked or already used
        403: CSRF header missing or mismatched
        429: rate limit exceeded
    """
    runtime = get_runtime(request)
    token, _ = _resolve_refresh_token(request, body)
    outcome = await runtime.auth.refresh({"refresh_token": token}, _token_meta(request))
    _raise_failure(outcome, status_code=401 if _is_invalid_token(outcome) else None)
    pair = outcome.value
    _apply_refresh_cookies(
        response, runtime.settings, pair.refresh_token, pair.refresh_token_expires_at
    )
    return _ok(
        TokenPairResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            access_token_expires_at=pair.access_token_expires_at,
            refresh_token_expires_at=pair.refresh_token_expires_at,
        )
    )


def _is_invalid_token(outcome: Outcome) -> bool:
    return not outcome.ok and outcome.failure.kind == ErrorKind.INVALID_TOKEN


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response, body: Optional[TokenBody] = Body(None)):
    """Revoke the presented refresh token. Unknown or missing tokens still acknowledge.

    Raises:
        403: cookie-carried token without a matching CSRF header
    """
    runtime = get_runtime(request)
    token, _ = _resolve_refresh_token(request, body)
    if token:
        outcome = await runtime.auth.logout({"refresh_token": token})
        _raise_failure(outcome)
    _clear_refresh_cookies(response, runtime.settings)
    return _ok({"logged_out": True})


@router.post(
    "/auth/verify-email",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited("verify"))],
)
async def verify_email(body: VerifyEmailRequest, request: Request):
    runtime = get_runtime(request)
    outcome = await runtime.auth.verify_email(body)
    _raise_failure(outcome, status_code=400 if _is_invalid_token(outcome) else None)
    return _ok({"verified": True})


@router.post(
    "/auth/password/reset-request",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited("password"))],
)
async def request_password_reset(body: PasswordResetRequest, request: Request):
    """Start a password reset. The response never reveals whether the email exists."""
    runtime = get_runtime(request)
    outcome = await runtime.auth.request_password_reset(body)
    _raise_failure(outcome)
    data: dict[str, Any] = {"status": outcome.value.status}
    if runtime.settings.expose_tokens:
        data["reset_token"] = outcome.value.reset_token
    return _ok(data)


@router.post(
    "/auth/password/reset",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited("password"))],
)
async def reset_password(body: PasswordResetConfirm, request: Request):
    """Set a new password with a reset token; every session of the account is revoked.

    Raises:
        400: invalid payload, or the token is unknown, expired or already used
    """
    runtime = get_runtime(request)
    outcome = await runtime.auth.reset_password(body)
    _raise_failure(outcome, status_code=400 if _is_invalid_token(outcome) else None)
    return _ok({"reset": True})


# -- sessions -----------------------------------------------------------


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(request: Request, principal: Principal = Depends(get_principal)):
    runtime = get_runtime(request)
    sessions = runtime.sessions.list_sessions(principal.user_id)
    return _ok(SessionListResponse(sessions=[_session_to_response(s) for s in sessions]))


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str, request: Request, principal: Principal = Depends(get_principal)
):
    """Revoke one of the caller's own sessions.

    ``revoked`` is false when the session does not exist, is already revoked,
    or belongs to another account.
    """
    runtime = get_runtime(request)
    revoked = runtime.sessions.revoke_own_session(
        principal.user_id, _require_id(session_id, "session id")
    )
    return _ok({"revoked": revoked})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(request: Request, principal: Principal = Depends(get_principal)):
    runtime = get_runtime(request)
    user = runtime.store.get_user(principal.user_id)
    if user is None:
        raise NotFoundError("user not found")
    return _ok(_user_to_response(user))


# -- admin --------------------------------------------------------------


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    request: Request, principal: Principal = Depends(get_admin_principal)
):
    runtime = get_runtime(request)
    users = runtime.store.list_users(limit=runtime.settings.admin_session_page_size)
    return _ok(UserListResponse(users=[_user_to_response(u) for u in users]))


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    user_id: str, request: Request, principal: Principal = Depends(get_admin_principal)
):
    runtime = get_runtime(request)
    user = runtime.store.get_user(_require_id(user_id, "user id"))
    if user is None:
        raise NotFoundError("user not found")
    return _ok(_user_to_response(user))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str, request: Request, principal: Principal = Depends(get_admin_principal)
):
    """Delete an account together with all of its tokens.

    Raises:
        404: no such account
    """
    runtime = get_runtime(request)
    if not runtime.store.delete_user(_require_id(user_id, "user id")):
        raise NotFoundError("user not found")
    logger.info("admin_user_deleted", user_id=user_id, actor_id=principal.user_id)
    return _ok({"deleted": True})


@router.get("/admin/users/{user_id}/sessions", response_model=Envelope, tags=["admin"])
async def admin_list_sessions(
    user_id: str, request: Request, principal: Principal = Depends(get_admin_principal)
):
    runtime = get_runtime(request)
    sessions = runtime.sessions.admin_list_sessions(_require_id(user_id, "user id"))
    return _ok(SessionListResponse(sessions=[_session_to_response(s) for s in sessions]))


@router.delete("/admin/sessions/{session_id}", response_model=Envelope, tags=["admin"])
async def admin_revoke_session(
    session_id: str, request: Request, principal: Principal = Depends(get_admin_principal)
):
    runtime = get_runtime(request)
    revoked = runtime.sessions.admin_revoke_session(
        _require_id(session_id, "session id"), actor_id=principal.user_id
    )
    return _ok({"revoked": revoked})
