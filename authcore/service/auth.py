from __future__ import annotations

import hashlib
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Mapping, Optional, Protocol, Sequence, Tuple, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.abuse import AbuseControl
from authcore.service.email import Notifier
from authcore.service.errors import ErrorKind, Outcome
from authcore.service.guards import Principal, extract_bearer
from authcore.service.passwords import CredentialHasher
from authcore.service.requests import (
    LoginRequest,
    LogoutRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    VerifyEmailRequest,
)
from authcore.service.tokens import TokenCodec
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Token, TokenMeta, TokenType, User, utcnow

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


class AuthStore(Protocol):
    def create_account(self, user: User, tokens: Sequence[Token] = ()) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def find_user_by_email_or_username(
        self, email: str, username: Optional[str] = None
    ) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def update_password_hash(self, user_id: str, password_hash: str, now: datetime) -> bool: ...

    def delete_user(self, user_id: str) -> bool: ...

    def create_token(self, token: Token) -> Token: ...

    def get_token_by_hash(self, token_hash: str) -> Optional[Token]: ...

    def consume_token(
        self,
        token_hash: str,
        token_type: TokenType,
        now: datetime,
        *,
        password_hash: Optional[str] = None,
        mark_email_verified: bool = False,
    ) -> Optional[Token]: ...

    def revoke_refresh_token_by_hash(self, token_hash: str, now: datetime) -> bool: ...

    def revoke_token(
        self,
        token_id: str,
        now: datetime,
        *,
        user_id: Optional[str] = None,
        token_type: Optional[TokenType] = None,
    ) -> bool: ...

    def revoke_user_tokens(self, user_id: str, token_type: TokenType, now: datetime) -> int: ...

    def list_user_tokens(
        self, user_id: str, token_type: TokenType, now: datetime, *, limit: int = 50
    ) -> List[Token]: ...

    def delete_stale_tokens(self, cutoff: datetime) -> int: ...

    def check_health(self) -> bool: ...


@dataclass
class IssuedToken:
    """Plaintext opaque token; only its hash was persisted."""

    token: str
    expires_at: datetime
    token_id: str


@dataclass
class TokenPair:
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime


@dataclass
class RegisterResult:
    user: User
    tokens: TokenPair
    verify_token: Optional[str] = None


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair


@dataclass
class ResetRequestResult:
    status: str = "sent"
    reset_token: Optional[str] = None


def _format_validation_errors(exc: PydanticValidationError) -> list[dict[str, str]]:
    details = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ())) or "body"
        message = str(err.get("msg", "invalid value"))
        details.append({"field": field, "message": message.removeprefix("Value error, ")})
    return details


def coerce_request(model: Type[M], payload: Union[M, Mapping[str, Any], None]) -> Outcome[M]:
    """Validate raw input into ``model``; failures become VALIDATION_ERROR."""
    if isinstance(payload, model):
        return Outcome.success(payload)
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    if not isinstance(payload, Mapping):
        return Outcome.fail(ErrorKind.VALIDATION_ERROR, "request body must be an object")
    try:
        return Outcome.success(model.model_validate(dict(payload)))
    except PydanticValidationError as exc:
        return Outcome.fail(
            ErrorKind.VALIDATION_ERROR,
            "invalid request",
            details=_format_validation_errors(exc),
        )


def _email_digest(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()[:16]


class AuthService:
    """Registration, login, refresh rotation, logout and single-use token flows.

    Every operation validates its request first and returns an ``Outcome``;
    expected failures never raise. Storage errors other than uniqueness
    clashes propagate to the caller as internal failures.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        hasher: Optional[CredentialHasher] = None,
        codec: Optional[TokenCodec] = None,
        throttle: Optional[AbuseControl] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
        notify_executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow
        self.hasher = hasher or CredentialHasher.from_settings(settings)
        self.codec = codec or TokenCodec(settings, self._clock)
        self.throttle = throttle or AbuseControl(settings, clock=self._clock)
        self.notifier = notifier
        self._notify_executor = notify_executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="authcore-notify"
        )
        self.logger = logger
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)
        self.verify_ttl = timedelta(hours=settings.email_verify_ttl_hours)
        self.reset_ttl = timedelta(minutes=settings.password_reset_ttl_minutes)

    def _now(self) -> datetime:
        return self._clock()

    # -- helpers ----------------------------------------------------------

    def _mint_opaque(
        self,
        user_id: str,
        token_type: TokenType,
        ttl: timedelta,
        meta: Optional[TokenMeta] = None,
    ) -> Tuple[IssuedToken, Token]:
        """Generate a secret and the hashed record to persist for it."""
        secret = self.codec.generate_opaque()
        record = Token.new(
            user_id,
            token_type,
            self.codec.hash_opaque(secret),
            ttl,
            now=self._now(),
            ip=meta.ip if meta else None,
            user_agent=meta.user_agent if meta else None,
        )
        return IssuedToken(token=secret, expires_at=record.expires_at, token_id=record.id), record

    def _issue_opaque(
        self,
        user_id: str,
        token_type: TokenType,
        ttl: timedelta,
        meta: Optional[TokenMeta] = None,
    ) -> IssuedToken:
        issued, record = self._mint_opaque(user_id, token_type, ttl, meta)
        self.store.create_token(record)
        return issued

    def issue_refresh_token(self, user_id: str, meta: Optional[TokenMeta] = None) -> IssuedToken:
        """Mint a refresh token for ``user_id``; the plaintext is returned only here."""
        return self._issue_opaque(user_id, TokenType.REFRESH, self.refresh_ttl, meta)

    def _token_pair(self, user_id: str, meta: Optional[TokenMeta]) -> TokenPair:
        return self._with_access(user_id, self.issue_refresh_token(user_id, meta))

    def _with_access(self, user_id: str, refresh: IssuedToken) -> TokenPair:
        access, access_expires = self.codec.sign_access(user_id)
        return TokenPair(
            access_token=access,
            access_token_expires_at=access_expires,
            refresh_token=refresh.token,
            refresh_token_expires_at=refresh.expires_at,
        )

    def _dispatch(self, kind: str, send: Callable[[str, str], bool], to_email: str, token: str) -> None:
        """Hand a notification to the executor; failures are logged, never raised."""
        try:
            future = self._notify_executor.submit(send, to_email, token)
        except RuntimeError as exc:
            self.logger.warning("notification_dispatch_failed", notification=kind, error=str(exc))
            return

        def _report(done: Future) -> None:
            exc = done.exception()
            if exc is not None:
                self.logger.warning(
                    "notification_failed",
                    notification=kind,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            elif done.result() is False:
                self.logger.warning("notification_not_delivered", notification=kind)

        future.add_done_callback(_report)

    # -- operations -------------------------------------------------------

    async def register(
        self,
        request: Union[RegisterRequest, Mapping[str, Any]],
        meta: Optional[TokenMeta] = None,
    ) -> Outcome[RegisterResult]:
        parsed = coerce_request(RegisterRequest, request)
        if not parsed.ok:
            return Outcome(failure=parsed.failure)
        body = parsed.value
        if self.store.find_user_by_email_or_username(body.email, body.username):
            return Outcome.fail(ErrorKind.USER_EXISTS, "email or username already registered")
        user = User.new(
            body.email, self.hasher.hash(body.password), username=body.username, now=self._now()
        )
        verify, verify_record = self._mint_opaque(user.id, TokenType.EMAIL_VERIFY, self.verify_ttl)
        refresh, refresh_record = self._mint_opaque(user.id, TokenType.REFRESH, self.refresh_ttl, meta)
        try:
            user = self.store.create_account(user, [verify_record, refresh_record])
        except ConstraintViolation as exc:
            if not exc.is_account_conflict:
                raise
            return Outcome.fail(
                ErrorKind.USER_EXISTS, "email or username already registered", details=exc.detail
            )
        tokens = self._with_access(user.id, refresh)
        if self.notifier is not None:
            self._dispatch("email_verification", self.notifier.send_email_verification, user.email, verify.token)
        self.logger.info("user_registered", user_id=user.id)
        return Outcome.success(
            RegisterResult(
                user=user,
                tokens=tokens,
                verify_token=verify.token if self.settings.expose_tokens else None,
            )
        )

    async def login(
        self,
        request: Union[LoginRequest, Mapping[str, Any]],
        meta: Optional[TokenMeta] = None,
    ) -> Outcome[LoginResult]:
        parsed = coerce_request(LoginRequest, request)
        if not parsed.ok:
            return Outcome(failure=parsed.failure)
        body = parsed.value
        identifier = body.email
        retry_after = await self.throttle.lockout_remaining(identifier)
        if retry_after > 0:
            self.logger.warning("login_locked", email_hash=_email_digest(identifier), retry_after=retry_after)
            return Outcome.fail(
                ErrorKind.LOGIN_LOCKED,
                "too many failed login attempts",
                retry_after=retry_after,
            )
        user = self.store.get_user_by_email(identifier)
        if user is None:
            self.hasher.dummy_verify(body.password)
            verified = False
        else:
            verified = self.hasher.verify(user.password_hash, body.password)
        if not verified:
            await self.throttle.record_login_failure(identifier)
            self.logger.warning("login_failed", email_hash=_email_digest(identifier))
            return Outcome.fail(ErrorKind.INVALID_CREDENTIALS, "invalid email or password")
        await self.throttle.clear_login_failures(identifier)
        if self.hasher.needs_rehash(user.password_hash):
            self._rehash(user, body.password)
        tokens = self._token_pair(user.id, meta)
        self.logger.info("login_succeeded", user_id=user.id)
        return Outcome.success(LoginResult(user=user, tokens=tokens))

    def _rehash(self, user: User, password: str) -> None:
        self.store.update_password_hash(user.id, self.hasher.hash(password), self._now())
        self.logger.info("password_rehashed", user_id=user.id)

    async def refresh(
        self,
        request: Union[RefreshRequest, Mapping[str, Any]],
        meta: Optional[TokenMeta] = None,
    ) -> Outcome[TokenPair]:
        parsed = coerce_request(RefreshRequest, request)
        if not parsed.ok:
            return Outcome(failure=parsed.failure)
        consumed = self.store.consume_token(
            self.codec.hash_opaque(parsed.value.refresh_token), TokenType.REFRESH, self._now()
        )
        if consumed is None:
            self.logger.warning("refresh_token_rejected")
            return Outcome.fail(ErrorKind.INVALID_TOKEN, "invalid or expired refresh token")
        user = self.store.get_user(consumed.user_id)
        if user is None:
            return Outcome.fail(ErrorKind.INVALID_TOKEN, "invalid or expired refresh token")
        return Outcome.success(self._token_pair(user.id, meta))

    async def logout(self, request: Union[LogoutRequest, Mapping[str, Any]]) -> Outcome[bool]:
        """Revoke the presented refresh token; unknown tokens still acknowledge."""
        parsed = coerce_request(LogoutRequest, request)
        if not parsed.ok:
            return Outcome(failure=parsed.failure)
        revoked = self.store.revoke_refresh_token_by_hash(
            self.codec.hash_opaque(parsed.value.refresh_token), self._now()
        )
        if revoked:
            self.logger.info("logout_revoked_refresh_token")
        return Outcome.success(True)

    async def verify_email(
        self, request: Union[VerifyEmailRequest, Mapping[str, Any]]
    ) -> Outcome[bool]:
        parsed = coerce_request(VerifyEmailRequest, request)
        if not parsed.ok:
            return Outcome(failure=parsed.failure)
        consumed = self.store.consume_token(
            self.codec.hash_opaque(parsed.value.token),
            TokenType.EMAIL_VERIFY,
            self._now(),
            mark_email_verified=True,
        )
        if consumed is None:
            self.logger.warning("email_verification_invalid_token")
            return Outcome.fail(ErrorKind.INVALID_TOKEN, "invalid or expired verification token")
        self.logger.info("email_verified", user_id=consumed.user_id)
        return Outcome.success(True)

    async def request_password_reset(
        self, request: Union[PasswordResetRequest, Mapping[str, Any]]
    ) -> Outcome[ResetRequestResult]:
        parsed = coerce_request(PasswordResetRequest, request)
        if not parsed.ok:
            return Outcome(failure=parsed.failure)
        email = parsed.value.email
        user = self.store.get_user_by_email(email)
        result = ResetRequestResult()
        if user is None:
            self.logger.info("password_reset_requested_unknown", email_hash=_email_digest(email))
            return Outcome.success(result)
        issued = self._issue_opaque(user.id, TokenType.PASSWORD_RESET, self.reset_ttl)
        if self.notifier is not None:
            self._dispatch("password_reset", self.notifier.send_password_reset, user.email, issued.token)
        if self.settings.expose_tokens:
            result.reset_token = issued.token
        self.logger.info("password_reset_requested", user_id=user.id)
        return Outcome.success(result)

    async def reset_password(
        self, request: Union[PasswordResetConfirm, Mapping[str, Any]]
    ) -> Outcome[bool]:
        parsed = coerce_request(PasswordResetConfirm, request)
        if not parsed.ok:
            return Outcome(failure=parsed.failure)
        body = parsed.value
        token_hash = self.codec.hash_opaque(body.token)
        # Skip the expensive hash when the token cannot possibly be consumed
        candidate = self.store.get_token_by_hash(token_hash)
        now = self._now()
        if candidate is None or not candidate.is_consumable(now, TokenType.PASSWORD_RESET):
            self.logger.warning("password_reset_invalid_token")
            return Outcome.fail(ErrorKind.INVALID_TOKEN, "invalid or expired reset token")
        consumed = self.store.consume_token(
            token_hash,
            TokenType.PASSWORD_RESET,
            now,
            password_hash=self.hasher.hash(body.new_password),
        )
        if consumed is None:
            self.logger.warning("password_reset_invalid_token")
            return Outcome.fail(ErrorKind.INVALID_TOKEN, "invalid or expired reset token")
        revoked = self.store.revoke_user_tokens(consumed.user_id, TokenType.REFRESH, now)
        user = self.store.get_user(consumed.user_id)
        if user is not None:
            await self.throttle.clear_login_failures(user.email)
        self.logger.info("password_reset_completed", user_id=consumed.user_id, sessions_revoked=revoked)
        return Outcome.success(True)

    async def authenticate_bearer(self, authorization: Optional[str]) -> Outcome[Principal]:
        token = extract_bearer(authorization)
        if not token:
            return Outcome.fail(ErrorKind.UNAUTHORIZED, "missing bearer token")
        verified = self.codec.verify_access(token)
        if not verified.ok:
            return Outcome.fail(ErrorKind.UNAUTHORIZED, "invalid or expired access token")
        user = self.store.get_user(verified.value)
        if user is None:
            return Outcome.fail(ErrorKind.UNAUTHORIZED, "account no longer exists")
        return Outcome.success(Principal(user_id=user.id, role=user.role, email=user.email))

    def close(self) -> None:
        self._notify_executor.shutdown(wait=False)
