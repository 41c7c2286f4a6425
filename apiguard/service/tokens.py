"""HS256 bearer tokens for access and refresh flows.

Access and refresh tokens are structurally identical JWTs. They differ in the
``type`` claim and in the secret that signs them; ``verify`` checks both, so a
token of one kind is never accepted where the other is expected.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Optional

from apiguard.config import Settings
from apiguard.logging import get_logger
from apiguard.service.errors import InvalidTokenError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

DEFAULT_EXPIRES_IN = 900

_DURATION = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(expr: Optional[str], default: int = DEFAULT_EXPIRES_IN) -> int:
    """Convert ``"15m"``-style expressions to seconds; anything else gives ``default``."""
    match = _DURATION.match((expr or "").strip())
    if not match:
        return default
    amount, unit = match.groups()
    return int(amount) * _UNIT_SECONDS[unit]


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


class TokenCodec:
    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        access_expires_in: str = "15m",
        refresh_expires_in: str = "7d",
        remember_me_expires_in: str = "30d",
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {ACCESS: access_secret.encode(), REFRESH: refresh_secret.encode()}
        self.access_ttl = parse_duration(access_expires_in)
        self.refresh_ttl = parse_duration(refresh_expires_in, default=7 * 86400)
        self.remember_me_ttl = parse_duration(remember_me_expires_in, default=30 * 86400)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            settings.jwt_refresh_secret,
            access_expires_in=settings.jwt_expires_in,
            refresh_expires_in=settings.jwt_refresh_expires_in,
            remember_me_expires_in=settings.jwt_remember_me_expires_in,
        )

    @property
    def expires_in(self) -> int:
        """Access-token lifetime in whole seconds, as reported to clients."""
        return self.access_ttl

    def refresh_lifetime(self, remember_me: bool = False) -> int:
        return self.remember_me_ttl if remember_me else self.refresh_ttl

    def issue_access(self, user_id: str, email: str, session_id: Optional[str] = None) -> str:
        claims: dict[str, Any] = {"sub": user_id, "email": email, "type": ACCESS}
        if session_id:
            claims["sid"] = session_id
        return self._sign(claims, ACCESS, self.access_ttl)

    def issue_refresh(
        self,
        user_id: str,
        email: str,
        jti: str,
        session_id: Optional[str] = None,
        *,
        remember_me: bool = False,
    ) -> str:
        claims: dict[str, Any] = {"sub": user_id, "email": email, "type": REFRESH, "jti": jti}
        if session_id:
            claims["sid"] = session_id
        return self._sign(claims, REFRESH, self.refresh_lifetime(remember_me))

    def verify(self, token: str, expected_type: str) -> dict[str, Any]:
        """Return the claims of a valid token of ``expected_type``.

        Raises:
            InvalidTokenError: bad structure, algorithm, signature, expiry, or type
        """
        secret = self._secrets.get(expected_type)
        if secret is None:
            raise ValueError(f"unknown token type: {expected_type}")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError("malformed token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("malformed token")
        # pin the algorithm so a crafted header cannot downgrade verification
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidTokenError("unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )
        # compare bytes; str comparison raises on non-ASCII input
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogateescape")
        ):
            raise InvalidTokenError("invalid token signature")

        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("malformed token")
        if not isinstance(claims, dict):
            raise InvalidTokenError("malformed token")

        try:
            exp = float(claims["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("token has no expiry")
        if exp <= time.time():
            raise InvalidTokenError("token expired")

        if claims.get("type") != expected_type:
            logger.warning(
                "jwt_type_mismatch", expected=expected_type, actual=claims.get("type")
            )
            raise InvalidTokenError("wrong token type")
        if not claims.get("sub"):
            raise InvalidTokenError("token has no subject")
        return claims

    def _sign(self, claims: dict[str, Any], token_type: str, ttl_seconds: int) -> str:
        now = int(time.time())
        payload = {**claims, "iat": now, "exp": now + ttl_seconds}
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._secrets[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)
