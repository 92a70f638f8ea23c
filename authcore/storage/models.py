from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenType(str, Enum):
    """Kinds of opaque tokens; only the hash of each is ever stored."""

    REFRESH = "REFRESH"
    EMAIL_VERIFY = "EMAIL_VERIFY"
    PASSWORD_RESET = "PASSWORD_RESET"


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    username: Optional[str] = None
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    email_verified_at: Optional[datetime] = None

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        username: str | None = None,
        role: str = "user",
        now: datetime | None = None,
    ) -> "User":
        ts = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            username=username,
            role=role,
            created_at=ts,
            updated_at=ts,
        )


@dataclass
class Token:
    """Persisted record of an opaque token.

    A token may be consumed while ``revoked`` is false, ``used_at`` is unset and
    ``expires_at`` lies strictly in the future. Consumption is terminal.
    """

    id: str
    user_id: str
    type: TokenType
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked: bool = False
    used_at: Optional[datetime] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_type: TokenType,
        token_hash: str,
        ttl: timedelta,
        *,
        now: datetime | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> "Token":
        ts = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            type=TokenType(token_type),
            token_hash=token_hash,
            expires_at=ts + ttl,
            created_at=ts,
            ip=ip,
            user_agent=user_agent,
        )

    def is_consumable(self, now: datetime, token_type: TokenType | None = None) -> bool:
        if token_type is not None and self.type != token_type:
            return False
        return not self.revoked and self.used_at is None and self.expires_at > now


@dataclass
class TokenMeta:
    """Client details recorded on refresh tokens."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None
