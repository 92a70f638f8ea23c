from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from authcore.logging import get_logger
from authcore.storage.models import Token, TokenType, utcnow

logger = get_logger(__name__)


@dataclass
class SessionView:
    id: str
    created_at: datetime
    expires_at: datetime
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_token(cls, token: Token) -> "SessionView":
        return cls(
            id=token.id,
            created_at=token.created_at,
            expires_at=token.expires_at,
            ip=token.ip,
            user_agent=token.user_agent,
        )


class SessionManager:
    """Lists and revokes refresh-token-backed sessions.

    A session is a non-revoked, unexpired REFRESH token. Role checks for the
    admin operations happen in the HTTP layer.
    """

    def __init__(
        self,
        store,
        *,
        page_size: int = 50,
        admin_page_size: int = 100,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.page_size = page_size
        self.admin_page_size = admin_page_size
        self._clock = clock or utcnow

    def _list(self, user_id: str, limit: int) -> List[SessionView]:
        tokens = self.store.list_user_tokens(user_id, TokenType.REFRESH, self._clock(), limit=limit)
        return [SessionView.from_token(token) for token in tokens]

    def list_sessions(self, user_id: str) -> List[SessionView]:
        return self._list(user_id, self.page_size)

    def revoke_own_session(self, user_id: str, session_id: str) -> bool:
        """Revoke ``session_id`` only when it belongs to ``user_id``."""
        revoked = self.store.revoke_token(
            session_id, self._clock(), user_id=user_id, token_type=TokenType.REFRESH
        )
        logger.info("session_revoked", user_id=user_id, session_id=session_id, revoked=revoked)
        return revoked

    def admin_list_sessions(self, user_id: str) -> List[SessionView]:
        return self._list(user_id, self.admin_page_size)

    def admin_revoke_session(self, session_id: str, *, actor_id: Optional[str] = None) -> bool:
        revoked = self.store.revoke_token(session_id, self._clock(), token_type=TokenType.REFRESH)
        logger.info(
            "admin_session_revoked", session_id=session_id, actor_id=actor_id, revoked=revoked
        )
        return revoked

    def revoke_all_sessions(self, user_id: str) -> int:
        return self.store.revoke_user_tokens(user_id, TokenType.REFRESH, self._clock())
