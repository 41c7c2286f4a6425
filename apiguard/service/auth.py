from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, List, Optional, Protocol, Tuple, TypeVar

from apiguard.config import Settings
from apiguard.logging import get_logger
from apiguard.service.audit import AuditAction, record_audit
from apiguard.service.email import NotificationDispatcher
from apiguard.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    InvalidTokenError,
    NotFoundError,
)
from apiguard.service.passwords import CredentialHasher
from apiguard.service.sessions import SessionLedger, hash_token
from apiguard.service.tokens import ACCESS, TokenCodec, TokenPair
from apiguard.service.workspaces import create_owned_workspace
from apiguard.storage.errors import ConstraintViolation
from apiguard.storage.models import (
    AuditEvent,
    Role,
    Session,
    User,
    UserStatus,
    Workspace,
    WorkspaceMember,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

INVALID_CREDENTIALS = "Invalid credentials"
FORGOT_PASSWORD_MESSAGE = "If your email exists, you will receive a password reset link"


class AuthStore(Protocol):
    def atomic(self, work: Callable[[], T]) -> T: ...

    def create_user(
        self,
        email: str,
        full_name: str,
        password_hash: Optional[str] = None,
        *,
        status: UserStatus = UserStatus.ACTIVE,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_verification_token(self, token_hash: str) -> Optional[User]: ...

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def list_user_workspaces(self, user_id: str) -> List[Tuple[Workspace, WorkspaceMember]]: ...

    def record_audit_event(self, action: str, **kwargs: Any) -> AuditEvent: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    session_id: Optional[str] = None


@dataclass
class AuthResult:
    user: User
    session: Session
    tokens: TokenPair
    workspace: Optional[Workspace] = None


class AuthService:
    """Registration, login, token refresh, and password lifecycle flows.

    Credential failures that could reveal whether an account exists always
    surface as the same ``Invalid credentials`` error; password reset requests
    always get the same reply.
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: CredentialHasher,
        codec: TokenCodec,
        ledger: SessionLedger,
        notifier: NotificationDispatcher,
        settings: Settings,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.codec = codec
        self.ledger = ledger
        self.notifier = notifier
        self.settings = settings
        self.logger = logger

    def _one_time_token(self, ttl_hours: int) -> Tuple[str, str, Any]:
        token = str(uuid.uuid4())
        return token, hash_token(token), utcnow() + timedelta(hours=ttl_hours)

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify_password(self, password: str, digest: Optional[str]) -> bool:
        return await asyncio.to_thread(self.hasher.verify, password, digest)

    def _owned_workspace(self, user_id: str) -> Optional[Workspace]:
        for workspace, _member in self.store.list_user_workspaces(user_id):
            if workspace.owner_id == user_id:
                return workspace
        return None

    async def flush_notifications(self) -> None:
        await self.notifier.flush()

    # ------------------------------------------------------------------
    # registration and login
    # ------------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        full_name: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        normalized = email.strip().lower()
        if self.store.get_user_by_email(normalized):
            raise ConflictError("Email already registered")
        password_hash = await self._hash_password(password)
        token, token_hash, token_expires = self._one_time_token(
            self.settings.verification_token_ttl_hours
        )

        def _create() -> Tuple[User, Workspace]:
            user = self.store.create_user(normalized, full_name, password_hash)
            user = self.store.update_user(
                user.id,
                verification_token_hash=token_hash,
                verification_expires_at=token_expires,
            )
            workspace, _owner = create_owned_workspace(
                self.store, user.id, f"{full_name}'s Workspace"
            )
            return user, workspace

        try:
            user, workspace = self.store.atomic(_create)
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise ConflictError("Email already registered")
            raise
        session, tokens = self.ledger.open(
            user, ip_addr=ip_addr, user_agent=user_agent
        )
        self.notifier.dispatch("send_email_verification", user.email, token)
        self.logger.info("user_registered", user_id=user.id, workspace_id=workspace.id)
        return AuthResult(user=user, session=session, tokens=tokens, workspace=workspace)

    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user = self.store.get_user_by_email(email)
        if user is None or not user.is_active or not user.password_hash:
            # same cost as a real check so response timing does not leak the account
            await self._verify_password(password, None)
            reason = "unknown_email" if user is None else (
                "inactive" if not user.is_active else "no_password"
            )
            self.logger.info("login_failed", reason=reason, ip_addr=ip_addr)
            raise AuthenticationError(INVALID_CREDENTIALS)

        if not await self._verify_password(password, user.password_hash):
            record_audit(
                self.store,
                AuditAction.LOGIN_FAILED,
                user_id=user.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                detail={"reason": "invalid_password"},
            )
            self.logger.info("login_failed", reason="invalid_password", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)

        if self.hasher.needs_rehash(user.password_hash):
            self.store.update_user(user.id, password_hash=await self._hash_password(password))
            self.logger.info("password_rehashed", user_id=user.id)

        session, tokens = self.ledger.open(
            user, ip_addr=ip_addr, user_agent=user_agent, remember_me=remember_me
        )
        user = self.store.update_user(
            user.id, last_login_at=utcnow(), last_login_ip=ip_addr
        ) or user
        record_audit(
            self.store,
            AuditAction.LOGIN_SUCCESS,
            user_id=user.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            detail={"remember_me": remember_me},
        )
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return AuthResult(
            user=user,
            session=session,
            tokens=tokens,
            workspace=self._owned_workspace(user.id),
        )

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------

    async def refresh_token(
        self,
        raw_token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        _session, tokens = self.ledger.redeem(raw_token, ip_addr=ip_addr, user_agent=user_agent)
        return tokens

    async def logout(self, session_id: Optional[str], user_id: str) -> bool:
        if not session_id:
            return False
        return self.ledger.revoke_one(session_id, user_id=user_id)

    async def logout_all(self, user_id: str, *, ip_addr: Optional[str] = None) -> int:
        revoked = self.ledger.revoke_all(user_id)
        record_audit(
            self.store,
            AuditAction.LOGOUT_ALL,
            user_id=user_id,
            ip_addr=ip_addr,
            detail={"sessions_revoked": revoked},
        )
        return revoked

    # ------------------------------------------------------------------
    # email verification
    # ------------------------------------------------------------------

    async def verify_email(self, token: Optional[str]) -> str:
        user = self.store.get_user_by_verification_token(hash_token(token)) if token else None
        if user is None:
            raise BadRequestError("Invalid verification token")
        if user.verification_expires_at is None or utcnow() >= user.verification_expires_at:
            raise BadRequestError("Verification token expired")
        self.store.update_user(
            user.id,
            email_verified=True,
            verification_token_hash=None,
            verification_expires_at=None,
        )
        record_audit(self.store, AuditAction.EMAIL_VERIFIED, user_id=user.id)
        self.logger.info("email_verified", user_id=user.id)
        return "Email verified successfully"

    async def resend_verification(self, user_id: str) -> str:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.email_verified:
            raise BadRequestError("Email already verified")
        token, token_hash, token_expires = self._one_time_token(
            self.settings.verification_token_ttl_hours
        )
        self.store.update_user(
            user.id,
            verification_token_hash=token_hash,
            verification_expires_at=token_expires,
        )
        self.notifier.dispatch("send_email_verification", user.email, token)
        return "Verification email sent"

    # ------------------------------------------------------------------
    # password lifecycle
    # ------------------------------------------------------------------

    async def forgot_password(self, email: str) -> str:
        user = self.store.get_user_by_email(email)
        if user is not None and user.is_active:
            token, token_hash, token_expires = self._one_time_token(
                self.settings.reset_token_ttl_hours
            )
            self.store.update_user(
                user.id, reset_token_hash=token_hash, reset_expires_at=token_expires
            )
            self.notifier.dispatch("send_password_reset", user.email, token)
            self.logger.info("password_reset_requested", user_id=user.id)
        else:
            self.logger.info("password_reset_requested_unknown")
        return FORGOT_PASSWORD_MESSAGE

    def _replace_password(self, user_id: str, password_hash: str) -> int:
        """Store the new hash and revoke every Active session as one unit."""

        def _apply() -> int:
            self.store.update_user(
                user_id,
                password_hash=password_hash,
                reset_token_hash=None,
                reset_expires_at=None,
            )
            return self.ledger.revoke_all(user_id)

        return self.store.atomic(_apply)

    async def reset_password(self, token: Optional[str], new_password: str) -> str:
        user = self.store.get_user_by_reset_token(hash_token(token)) if token else None
        if user is None:
            raise BadRequestError("Invalid reset token")
        if user.reset_expires_at is None or utcnow() >= user.reset_expires_at:
            raise BadRequestError("Reset token expired")
        password_hash = await self._hash_password(new_password)
        revoked = self._replace_password(user.id, password_hash)
        self.notifier.dispatch("send_password_changed", user.email)
        record_audit(
            self.store,
            AuditAction.PASSWORD_RESET,
            user_id=user.id,
            detail={"sessions_revoked": revoked},
        )
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return "Password reset successfully"

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> str:
        user = self.store.get_user(user_id)
        if user is None or not user.password_hash:
            raise NotFoundError("User not found")
        if not await self._verify_password(current_password, user.password_hash):
            raise BadRequestError("Current password is incorrect")
        password_hash = await self._hash_password(new_password)
        revoked = self._replace_password(user.id, password_hash)
        self.notifier.dispatch("send_password_changed", user.email)
        record_audit(
            self.store,
            AuditAction.PASSWORD_CHANGED,
            user_id=user.id,
            detail={"sessions_revoked": revoked},
        )
        self.logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)
        return "Password changed successfully"

    # ------------------------------------------------------------------
    # identity
    # ------------------------------------------------------------------

    async def get_profile(self, user_id: str) -> dict[str, Any]:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        workspaces = []
        for workspace, member in self.store.list_user_workspaces(user.id):
            is_owner = workspace.owner_id == user.id
            workspaces.append(
                {
                    "id": workspace.id,
                    "name": workspace.name,
                    "slug": workspace.slug,
                    "plan": workspace.plan,
                    "role": (Role.OWNER if is_owner else member.role).value,
                    "is_owner": is_owner,
                }
            )
        return {
            "id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "email_verified": user.email_verified,
            "is_active": user.is_active,
            "last_login_at": user.last_login_at,
            "created_at": user.created_at,
            "workspaces": workspaces,
        }

    async def update_profile(
        self,
        user_id: str,
        *,
        full_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        """Change display name and/or e-mail. A new e-mail must be verified again."""
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found")
        fields: dict[str, Any] = {}
        if full_name is not None and full_name != user.full_name:
            fields["full_name"] = full_name
        new_email = email.strip().lower() if email else None
        token = None
        if new_email and new_email != user.email:
            if self.store.get_user_by_email(new_email):
                raise ConflictError("Email already in use")
            token, token_hash, token_expires = self._one_time_token(
                self.settings.verification_token_ttl_hours
            )
            fields.update(
                email=new_email,
                email_verified=False,
                verification_token_hash=token_hash,
                verification_expires_at=token_expires,
            )
        if not fields:
            return user
        try:
            updated = self.store.update_user(user.id, **fields)
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise ConflictError("Email already in use")
            raise
        if token is not None:
            self.notifier.dispatch("send_email_verification", updated.email, token)
        record_audit(
            self.store,
            AuditAction.PROFILE_UPDATED,
            user_id=user.id,
            detail={"fields": sorted(k for k in fields if not k.startswith("verification_"))},
        )
        self.logger.info("profile_updated", user_id=user.id, email_changed=token is not None)
        return updated

    async def deactivate_account(self, user_id: str, *, ip_addr: Optional[str] = None) -> int:
        """Soft-deactivate the account and revoke every Active session as one unit."""
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found")

        def _apply() -> int:
            self.store.update_user(user.id, status=UserStatus.DEACTIVATED)
            return self.ledger.revoke_all(user.id)

        revoked = self.store.atomic(_apply)
        record_audit(
            self.store,
            AuditAction.ACCOUNT_DEACTIVATED,
            user_id=user.id,
            ip_addr=ip_addr,
            detail={"sessions_revoked": revoked},
        )
        self.logger.info("account_deactivated", user_id=user.id, sessions_revoked=revoked)
        return revoked

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Resolve an ``Authorization: Bearer`` header carrying an access token."""
        token = self._extract_bearer(authorization)
        if not token:
            return None
        try:
            claims = self.codec.verify(token, ACCESS)
        except InvalidTokenError as exc:
            self.logger.info("access_token_rejected", reason=exc.message)
            return None
        return AuthContext(
            user_id=claims["sub"],
            email=claims.get("email", ""),
            session_id=claims.get("sid"),
        )
