from __future__ import annotations

import base64
import hmac
from dataclasses import dataclass
from typing import Optional, Tuple

from authcore.logging import get_logger
from authcore.service.errors import ErrorKind, Outcome

logger = get_logger(__name__)

ADMIN_ROLE = "admin"


@dataclass
class Principal:
    """Authenticated caller resolved from a bearer token."""

    user_id: str
    role: str
    email: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, credentials = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credentials = credentials.strip()
    return credentials or None


def parse_basic_credentials(header: Optional[str]) -> Optional[Tuple[str, str]]:
    if not header:
        return None
    scheme, _, encoded = header.strip().partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except ValueError:
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return username, password


def check_basic_auth(
    header: Optional[str],
    *,
    username: Optional[str],
    password: Optional[str],
) -> Outcome[str]:
    """Validate operator basic credentials; unconfigured credentials reject everyone."""
    if not username or not password:
        return Outcome.fail(ErrorKind.UNAUTHORIZED, "operator credentials not configured")
    supplied = parse_basic_credentials(header)
    if supplied is None:
        return Outcome.fail(ErrorKind.UNAUTHORIZED, "basic authentication required")
    # Evaluate both comparisons so timing does not reveal which part matched
    user_ok = hmac.compare_digest(supplied[0].encode(), username.encode())
    pass_ok = hmac.compare_digest(supplied[1].encode(), password.encode())
    if not (user_ok and pass_ok):
        logger.warning("basic_auth_failed")
        return Outcome.fail(ErrorKind.UNAUTHORIZED, "invalid credentials")
    return Outcome.success(supplied[0])


def require_role(principal: Principal, *roles: str) -> Outcome[Principal]:
    if principal.role not in roles:
        return Outcome.fail(ErrorKind.FORBIDDEN, "insufficient role")
    return Outcome.success(principal)


def check_csrf(
    *,
    enabled: bool,
    token_in_body: bool,
    header_value: Optional[str],
    cookie_value: Optional[str],
) -> Outcome[None]:
    """Double-submit check for cookie-carried refresh tokens.

    Skipped when disabled or when the refresh token came in the request body.
    """
    if not enabled or token_in_body:
        return Outcome.success(None)
    if not header_value or not cookie_value:
        return Outcome.fail(ErrorKind.CSRF_INVALID, "CSRF token missing")
    if not hmac.compare_digest(header_value.encode(), cookie_value.encode()):
        return Outcome.fail(ErrorKind.CSRF_INVALID, "CSRF token mismatch")
    return Outcome.success(None)
