from __future__ import annotations

import hashlib
import uuid
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol, Tuple, TypeVar

from apiguard.logging import get_logger
from apiguard.service.errors import AuthenticationError, InvalidTokenError
from apiguard.service.tokens import REFRESH, TokenCodec, TokenPair
from apiguard.storage.models import Session, SessionState, User, utcnow

logger = get_logger(__name__)

T = TypeVar("T")

REUSE_MESSAGE = "session invalid — all sessions revoked for security"


class SessionStore(Protocol):
    def atomic(self, work: Callable[[], T]) -> T: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_session(
        self,
        user_id: str,
        token_hash: str,
        ttl_seconds: int,
        *,
        session_id: Optional[str] = None,
        token_family: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        remember_me: bool = False,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_token_hash(
        self, token_hash: str, *, for_update: bool = False
    ) -> Optional[Session]: ...

    def list_sessions(self, user_id: str) -> List[Session]: ...

    def revoke_session(self, session_id: str, revoked_at: Any = None) -> bool: ...

    def revoke_user_sessions(self, user_id: str, revoked_at: Any = None) -> int: ...


def hash_token(raw: str) -> str:
    """SHA-256 hex digest; the only form in which bearer secrets are stored."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class _Outcome(str, Enum):
    ROTATED = "rotated"
    REUSED = "reused"
    EXPIRED = "expired"
    INACTIVE = "inactive"


class SessionLedger:
    """Refresh-token sessions: issuance, single-use rotation, and revocation.

    A session is Active until it is revoked (logout, rotation, mass revoke) or
    its expiry passes; neither terminal state can be left. Presenting a refresh
    token whose session is unknown or already revoked is treated as theft and
    revokes every Active session of the user.
    """

    def __init__(self, store: SessionStore, codec: TokenCodec) -> None:
        self.store = store
        self.codec = codec

    def open(
        self,
        user: User,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        remember_me: bool = False,
        token_family: Optional[str] = None,
    ) -> Tuple[Session, TokenPair]:
        """Persist a new session and return it with its freshly signed pair."""
        session_id = str(uuid.uuid4())
        refresh_token = self.codec.issue_refresh(
            user.id, user.email, str(uuid.uuid4()), session_id, remember_me=remember_me
        )
        access_token = self.codec.issue_access(user.id, user.email, session_id)
        session = self.store.create_session(
            user.id,
            hash_token(refresh_token),
            self.codec.refresh_lifetime(remember_me),
            session_id=session_id,
            token_family=token_family,
            ip_addr=ip_addr,
            user_agent=user_agent,
            remember_me=remember_me,
        )
        logger.info(
            "session_opened",
            user_id=user.id,
            session_id=session.id,
            family=session.token_family,
            remember_me=remember_me,
        )
        return session, TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.codec.expires_in,
        )

    def redeem(
        self,
        raw_refresh_token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Session, TokenPair]:
        """Exchange a refresh token for a new pair, exactly once.

        Raises:
            AuthenticationError: invalid token, expired session, inactive user,
                or reuse (after all of the user's sessions were revoked)
        """
        try:
            claims = self.codec.verify(raw_refresh_token, REFRESH)
        except InvalidTokenError as exc:
            logger.info("refresh_token_rejected", reason=exc.message)
            raise AuthenticationError("invalid refresh token")

        token_hash = hash_token(raw_refresh_token)

        def _rotate() -> Tuple[_Outcome, Any]:
            now = utcnow()
            session = self.store.get_session_by_token_hash(token_hash, for_update=True)
            if session is None:
                revoked = self.store.revoke_user_sessions(claims["sub"], now)
                return _Outcome.REUSED, (claims["sub"], revoked, "unknown")
            state = session.state(now)
            if state == SessionState.REVOKED:
                revoked = self.store.revoke_user_sessions(session.user_id, now)
                return _Outcome.REUSED, (session.user_id, revoked, "revoked")
            if state == SessionState.EXPIRED:
                return _Outcome.EXPIRED, session
            user = self.store.get_user(session.user_id)
            if user is None or not user.is_active:
                return _Outcome.INACTIVE, session
            self.store.revoke_session(session.id, now)
            if ip_addr and session.ip_addr and ip_addr != session.ip_addr:
                # advisory only; rotation proceeds
                logger.warning(
                    "refresh_ip_drift",
                    user_id=user.id,
                    session_id=session.id,
                    previous_ip=session.ip_addr,
                    current_ip=ip_addr,
                )
            return _Outcome.ROTATED, self.open(
                user,
                ip_addr=ip_addr,
                user_agent=user_agent,
                remember_me=session.remember_me,
                token_family=session.token_family,
            )

        # mass revocation commits before the failure is raised
        outcome, payload = self.store.atomic(_rotate)

        if outcome == _Outcome.REUSED:
            user_id, revoked, reason = payload
            logger.warning(
                "session_reuse_detected",
                user_id=user_id,
                reason=reason,
                sessions_revoked=revoked,
                ip_addr=ip_addr,
            )
            raise AuthenticationError(REUSE_MESSAGE)
        if outcome == _Outcome.EXPIRED:
            logger.info("session_expired", session_id=payload.id, user_id=payload.user_id)
            raise AuthenticationError("session expired")
        if outcome == _Outcome.INACTIVE:
            logger.warning("refresh_for_inactive_user", user_id=payload.user_id)
            raise AuthenticationError("invalid refresh token")
        new_session, pair = payload
        logger.info(
            "session_rotated",
            user_id=new_session.user_id,
            session_id=new_session.id,
            family=new_session.token_family,
        )
        return new_session, pair

    def revoke_all(self, user_id: str) -> int:
        revoked = self.store.revoke_user_sessions(user_id, utcnow())
        logger.info("sessions_revoked_all", user_id=user_id, count=revoked)
        return revoked

    def revoke_one(self, session_id: str, user_id: Optional[str] = None) -> bool:
        """Revoke one session; with ``user_id``, only if the user owns it."""
        if user_id is not None:
            session = self.store.get_session(session_id)
            if session is None or session.user_id != user_id:
                return False
        revoked = self.store.revoke_session(session_id, utcnow())
        if revoked:
            logger.info("session_revoked", session_id=session_id)
        return revoked

    def active_sessions(self, user_id: str) -> List[Session]:
        now = utcnow()
        return [
            s for s in self.store.list_sessions(user_id) if s.state(now) == SessionState.ACTIVE
        ]
