from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import ErrorKind, Outcome
from authcore.storage.models import utcnow

logger = get_logger(__name__)

Clock = Callable[[], datetime]

ACCESS_TOKEN_TYPE = "access"


class TokenCodec:
    """Signs HS256 access tokens and mints/hashes opaque tokens.

    Access tokens are never persisted. Opaque tokens are random hex strings;
    only their SHA-256 digest is stored, so lookups hash the presented value.
    """

    def __init__(self, settings: Settings, clock: Optional[Clock] = None) -> None:
        self.settings = settings
        self._clock = clock or utcnow
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, binascii.Error):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict):
            return None
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, binascii.Error) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        return payload

    def sign_access(self, user_id: str) -> tuple[str, datetime]:
        now = self._clock()
        expires_at = now + self.access_ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "typ": ACCESS_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), expires_at

    def verify_access(self, token: str) -> Outcome[str]:
        """Return the subject of a valid access token."""
        payload = self._decode_jwt(token)
        if payload is None or payload.get("typ") != ACCESS_TOKEN_TYPE:
            return Outcome.fail(ErrorKind.INVALID_TOKEN, "invalid access token")
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or exp <= self._clock().timestamp():
            return Outcome.fail(ErrorKind.INVALID_TOKEN, "access token expired")
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            return Outcome.fail(ErrorKind.INVALID_TOKEN, "invalid access token")
        return Outcome.success(subject)

    def generate_opaque(self, nbytes: Optional[int] = None) -> str:
        return secrets.token_hex(nbytes or self.settings.opaque_token_bytes)

    @staticmethod
    def hash_opaque(secret: str) -> str:
        return hashlib.sha256(secret.encode("utf-8")).hexdigest()
