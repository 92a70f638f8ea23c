from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Token, TokenType, User, utcnow

_SCHEMA_DDL = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        password_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        email_verified_at TIMESTAMPTZ,
        CONSTRAINT app_user_email_key UNIQUE (email),
        CONSTRAINT app_user_username_key UNIQUE (username)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        type TEXT NOT NULL CHECK (type IN ('REFRESH', 'EMAIL_VERIFY', 'PASSWORD_RESET')),
        token_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked BOOLEAN NOT NULL DEFAULT false,
        used_at TIMESTAMPTZ,
        ip TEXT,
        user_agent TEXT,
        CONSTRAINT auth_token_hash_key UNIQUE (token_hash)
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_user_type_idx ON auth_token (user_id, type, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS auth_token_expires_idx ON auth_token (expires_at)",
)

_CONSTRAINT_FIELDS = {
    "app_user_email_key": "email",
    "app_user_username_key": "username",
    "auth_token_hash_key": "token_hash",
}


class PostgresStore:
    """Postgres-backed account and token store using a psycopg connection pool.

    Each public method runs in its own transaction; the pool connection
    context commits on success and rolls back when the block raises.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the account and token tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_DDL:
                conn.execute(statement)

    @staticmethod
    def _constraint_error(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(exc.diag, "constraint_name", None) or ""
        field = _CONSTRAINT_FIELDS.get(constraint, "unknown")
        return ConstraintViolation(field, constraint=constraint or None)

    @contextmanager
    def _write_errors(self) -> Iterator[None]:
        try:
            yield
        except errors.UniqueViolation as exc:
            raise self._constraint_error(exc) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user_id", "user does not exist") from exc

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            username=row.get("username"),
            role=row.get("role") or "user",
            password_hash=row["password_hash"],
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
            email_verified_at=row.get("email_verified_at"),
        )

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> Token:
        return Token(
            id=row["id"],
            user_id=row["user_id"],
            type=TokenType(row["type"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            revoked=bool(row["revoked"]),
            used_at=row.get("used_at"),
            ip=row.get("ip"),
            user_agent=row.get("user_agent"),
        )

    # users
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
        """Insert ``user`` and its initial tokens in a single transaction."""
        with self._write_errors():
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, role, password_hash, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.username,
                        user.role,
                        user.password_hash,
                        user.created_at,
                        user.updated_at,
                    ),
                )
                for token in tokens:
                    self._insert_token(conn, token)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._row_to_user(row) if row else None

    def find_user_by_email_or_username(
        self, email: str, username: Optional[str] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s OR (%s::text IS NOT NULL AND username = %s) LIMIT 1",
                (email, username, username),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = %s WHERE id = %s RETURNING *",
                (role, utcnow(), user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_password_hash(self, user_id: str, password_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = %s WHERE id = %s",
                (password_hash, now, user_id),
            )
            return cur.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    # tokens
    def create_token(self, token: Token) -> Token:
        with self._write_errors():
            with self._connect() as conn:
                self._insert_token(conn, token)
        return token

    @staticmethod
    def _insert_token(conn, token: Token) -> None:
        conn.execute(
            """
            INSERT INTO auth_token (id, user_id, type, token_hash, expires_at, created_at, revoked, used_at, ip, user_agent)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.user_id,
                token.type.value,
                token.token_hash,
                token.expires_at,
                token.created_at,
                token.revoked,
                token.used_at,
                token.ip,
                token.user_agent,
            ),
        )

    def get_token_by_hash(self, token_hash: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def consume_token(
        self,
        token_hash: str,
        token_type: TokenType,
        now: datetime,
        *,
        password_hash: Optional[str] = None,
        mark_email_verified: bool = False,
    ) -> Optional[Token]:
        """Consume a valid token and apply the account update in one transaction.

        The conditional UPDATE lets only one concurrent caller match the row.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_token
                SET revoked = true, used_at = %s
                WHERE token_hash = %s
                  AND type = %s
                  AND revoked = false
                  AND used_at IS NULL
                  AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, TokenType(token_type).value, now),
            ).fetchone()
            if not row:
                return None
            if password_hash is not None or mark_email_verified:
                cur = conn.execute(
                    """
                    UPDATE app_user
                    SET password_hash = COALESCE(%s, password_hash),
                        email_verified_at = CASE WHEN %s THEN COALESCE(email_verified_at, %s) ELSE email_verified_at END,
                        updated_at = %s
                    WHERE id = %s
                    """,
                    (password_hash, mark_email_verified, now, now, row["user_id"]),
                )
                if cur.rowcount == 0:
                    raise ConstraintViolation("user_id", "user does not exist")
        return self._row_to_token(row)

    def revoke_refresh_token_by_hash(self, token_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_token SET revoked = true, used_at = %s
                WHERE token_hash = %s AND type = 'REFRESH' AND revoked = false
                """,
                (now, token_hash),
            )
            return cur.rowcount > 0

    def revoke_token(
        self,
        token_id: str,
        now: datetime,
        *,
        user_id: Optional[str] = None,
        token_type: Optional[TokenType] = None,
    ) -> bool:
        clauses = ["id = %s", "revoked = false"]
        params: list[Any] = [now, token_id]
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if token_type is not None:
            clauses.append("type = %s")
            params.append(TokenType(token_type).value)
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_token SET revoked = true, used_at = COALESCE(used_at, %s) WHERE "
                + " AND ".join(clauses),
                params,
            )
            return cur.rowcount > 0

    def revoke_user_tokens(self, user_id: str, token_type: TokenType, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_token SET revoked = true, used_at = COALESCE(used_at, %s)
                WHERE user_id = %s AND type = %s AND revoked = false
                """,
                (now, user_id, TokenType(token_type).value),
            )
            return cur.rowcount

    def list_user_tokens(
        self, user_id: str, token_type: TokenType, now: datetime, *, limit: int = 50
    ) -> List[Token]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_token
                WHERE user_id = %s AND type = %s AND revoked = false AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (user_id, TokenType(token_type).value, now, limit),
            ).fetchall()
        return [self._row_to_token(row) for row in rows]

    def delete_stale_tokens(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM auth_token
                WHERE expires_at <= %s
                   OR (revoked = true AND used_at IS NOT NULL AND used_at <= %s)
                """,
                (cutoff, cutoff),
            )
            return cur.rowcount

    def check_health(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()
