from __future__ import annotations

import copy
import json
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Token, TokenType, User, utcnow


class MemoryStore:
    """In-process account and token store with optional JSON persistence.

    Every read and write holds ``_data_lock``; multi-record mutations run inside
    ``_transaction`` so a failure part-way restores the previous state.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tokens: Dict[str, Token] = {}
        self._token_ids_by_hash: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        with self._data_lock:
            users = copy.deepcopy(self.users)
            tokens = copy.deepcopy(self.tokens)
            index = dict(self._token_ids_by_hash)
            try:
                yield
                self._persist_state()
            except BaseException:
                self.users = users
                self.tokens = tokens
                self._token_ids_by_hash = index
                raise

    # -- accounts ---------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        username: Optional[str] = None,
        role: str = "user",
        now: Optional[datetime] = None,
    ) -> User:
        return self.create_account(
            User.new(email, password_hash, username=username, role=role, now=now)
        )

    def create_account(self, user: User, tokens: Sequence[Token] = ()) -> User:
        """Insert ``user`` and its initial tokens; either all land or none do."""
        with self._transaction():
            if any(existing.email == user.email for existing in self.users.values()):
                raise ConstraintViolation("email")
            if user.username and any(
                existing.username == user.username for existing in self.users.values()
            ):
                raise ConstraintViolation("username")
            self.users[user.id] = user
            for token in tokens:
                self._insert_token(token)
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def find_user_by_email_or_username(
        self, email: str, username: Optional[str] = None
    ) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email == email or (username and user.username == username):
                    return user
            return None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            users = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return users[:limit]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._transaction():
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = utcnow()
            return user

    def update_password_hash(self, user_id: str, password_hash: str, now: datetime) -> bool:
        with self._transaction():
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.updated_at = now
            return True

    def delete_user(self, user_id: str) -> bool:
        with self._transaction():
            if self.users.pop(user_id, None) is None:
                return False
            for token in [t for t in self.tokens.values() if t.user_id == user_id]:
                self._drop_token(token)
            return True

    # -- tokens -----------------------------------------------------------

    def create_token(self, token: Token) -> Token:
        with self._transaction():
            self._insert_token(token)
            return token

    def _insert_token(self, token: Token) -> None:
        if token.user_id not in self.users:
            raise ConstraintViolation("user_id", "user does not exist")
        if token.token_hash in self._token_ids_by_hash:
            raise ConstraintViolation("token_hash")
        self.tokens[token.id] = token
        self._token_ids_by_hash[token.token_hash] = token.id

    def get_token_by_hash(self, token_hash: str) -> Optional[Token]:
        with self._data_lock:
            token_id = self._token_ids_by_hash.get(token_hash)
            return self.tokens.get(token_id) if token_id else None

    def consume_token(
        self,
        token_hash: str,
        token_type: TokenType,
        now: datetime,
        *,
        password_hash: Optional[str] = None,
        mark_email_verified: bool = False,
    ) -> Optional[Token]:
        """Mark a consumable token used and apply its account update atomically.

        Returns the consumed token, or ``None`` when no currently valid token of
        ``token_type`` matches. Only one concurrent caller can win.
        """
        with self._transaction():
            token = self.get_token_by_hash(token_hash)
            if token is None or not token.is_consumable(now, token_type):
                return None
            token.used_at = now
            token.revoked = True
            if password_hash is not None or mark_email_verified:
                self._apply_user_update(
                    token.user_id,
                    now,
                    password_hash=password_hash,
                    mark_email_verified=mark_email_verified,
                )
            return copy.copy(token)

    def _apply_user_update(
        self,
        user_id: str,
        now: datetime,
        *,
        password_hash: Optional[str] = None,
        mark_email_verified: bool = False,
    ) -> None:
        user = self.users.get(user_id)
        if user is None:
            raise ConstraintViolation("user_id", "user does not exist")
        if password_hash is not None:
            user.password_hash = password_hash
        if mark_email_verified and user.email_verified_at is None:
            user.email_verified_at = now
        user.updated_at = now

    def revoke_refresh_token_by_hash(self, token_hash: str, now: datetime) -> bool:
        with self._transaction():
            token = self.get_token_by_hash(token_hash)
            if token is None or token.type != TokenType.REFRESH or token.revoked:
                return False
            token.revoked = True
            token.used_at = now
            return True

    def revoke_token(
        self,
        token_id: str,
        now: datetime,
        *,
        user_id: Optional[str] = None,
        token_type: Optional[TokenType] = None,
    ) -> bool:
        with self._transaction():
            token = self.tokens.get(token_id)
            if token is None or token.revoked:
                return False
            if user_id is not None and token.user_id != user_id:
                return False
            if token_type is not None and token.type != token_type:
                return False
            token.revoked = True
            token.used_at = token.used_at or now
            return True

    def revoke_user_tokens(self, user_id: str, token_type: TokenType, now: datetime) -> int:
        with self._transaction():
            count = 0
            for token in self.tokens.values():
                if token.user_id == user_id and token.type == token_type and not token.revoked:
                    token.revoked = True
                    token.used_at = token.used_at or now
                    count += 1
            return count

    def list_user_tokens(
        self, user_id: str, token_type: TokenType, now: datetime, *, limit: int = 50
    ) -> List[Token]:
        with self._data_lock:
            matches = [
                copy.copy(t)
                for t in self.tokens.values()
                if t.user_id == user_id
                and t.type == token_type
                and not t.revoked
                and t.expires_at > now
            ]
            matches.sort(key=lambda t: t.created_at, reverse=True)
            return matches[:limit]

    def delete_stale_tokens(self, cutoff: datetime) -> int:
        """Delete tokens expired before ``cutoff`` or consumed/revoked before it."""
        with self._transaction():
            stale = [
                t
                for t in self.tokens.values()
                if t.expires_at <= cutoff
                or (t.revoked and t.used_at is not None and t.used_at <= cutoff)
            ]
            for token in stale:
                self._drop_token(token)
            return len(stale)

    def _drop_token(self, token: Token) -> None:
        self.tokens.pop(token.id, None)
        self._token_ids_by_hash.pop(token.token_hash, None)

    def check_health(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # -- persistence ------------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "role": user.role,
            "password_hash": user.password_hash,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "email_verified_at": self._serialize_datetime(user.email_verified_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            password_hash=data["password_hash"],
            username=data.get("username"),
            role=data.get("role", "user"),
            created_at=self._deserialize_datetime(data["created_at"]) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
            email_verified_at=self._deserialize_datetime(data.get("email_verified_at")),
        )

    def _serialize_token(self, token: Token) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "type": token.type.value,
            "token_hash": token.token_hash,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
            "revoked": token.revoked,
            "used_at": self._serialize_datetime(token.used_at),
            "ip": token.ip,
            "user_agent": token.user_agent,
        }

    def _deserialize_token(self, data: dict) -> Token:
        return Token(
            id=data["id"],
            user_id=data["user_id"],
            type=TokenType(data["type"]),
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            revoked=bool(data.get("revoked", False)),
            used_at=self._deserialize_datetime(data.get("used_at")),
            ip=data.get("ip"),
            user_agent=data.get("user_agent"),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.tokens = {t["id"]: self._deserialize_token(t) for t in data.get("tokens", [])}
        self._token_ids_by_hash = {t.token_hash: t.id for t in self.tokens.values()}
        self.logger.info(
            "memory_store_loaded", users=len(self.users), tokens=len(self.tokens)
        )
        return True
