from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    ACTIVE = "active"
    DEACTIVATED = "deactivated"


class WorkspaceStatus(str, Enum):
    ACTIVE = "active"
    DELETED = "deleted"


class SessionState(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class InvitationState(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class Role(str, Enum):
    """Workspace roles, totally ordered by ``rank``."""

    OWNER = "owner"
    ADMIN = "admin"
    DEVELOPER = "developer"
    VIEWER = "viewer"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]


_ROLE_RANK = {Role.OWNER: 3, Role.ADMIN: 2, Role.DEVELOPER: 1, Role.VIEWER: 0}

OWNER_ONLY: FrozenSet[Role] = frozenset({Role.OWNER})
ADMIN_ROLES: FrozenSet[Role] = frozenset({Role.OWNER, Role.ADMIN})
DEVELOPER_ROLES: FrozenSet[Role] = frozenset({Role.OWNER, Role.ADMIN, Role.DEVELOPER})
MEMBER_ROLES: FrozenSet[Role] = frozenset(Role)


@dataclass
class User:
    id: str
    email: str
    full_name: str
    password_hash: Optional[str] = None
    email_verified: bool = False
    status: UserStatus = UserStatus.ACTIVE
    verification_token_hash: Optional[str] = None
    verification_expires_at: Optional[datetime] = None
    reset_token_hash: Optional[str] = None
    reset_expires_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


@dataclass
class Session:
    id: str
    user_id: str
    token_hash: str
    token_family: str
    created_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ttl_seconds: int,
        *,
        session_id: str | None = None,
        token_family: str | None = None,
        ip_addr: str | None = None,
        user_agent: str | None = None,
        remember_me: bool = False,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            token_family=token_family or str(uuid.uuid4()),
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            ip_addr=ip_addr,
            user_agent=user_agent,
            remember_me=remember_me,
        )

    def state(self, now: datetime | None = None) -> SessionState:
        if self.revoked_at is not None:
            return SessionState.REVOKED
        if (now or utcnow()) >= self.expires_at:
            return SessionState.EXPIRED
        return SessionState.ACTIVE


@dataclass
class Workspace:
    id: str
    name: str
    slug: str
    owner_id: str
    plan: str = "free"
    status: WorkspaceStatus = WorkspaceStatus.ACTIVE
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_deleted(self) -> bool:
        return self.status == WorkspaceStatus.DELETED


@dataclass
class WorkspaceMember:
    id: str
    workspace_id: str
    user_id: str
    role: Role
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class WorkspaceInvitation:
    id: str
    workspace_id: str
    email: str
    role: Role
    token_hash: str
    invited_by: str
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def state(self, now: datetime | None = None) -> InvitationState:
        if self.accepted_at is not None:
            return InvitationState.ACCEPTED
        if self.declined_at is not None:
            return InvitationState.DECLINED
        if (now or utcnow()) >= self.expires_at:
            return InvitationState.EXPIRED
        return InvitationState.PENDING


@dataclass
class AuditEvent:
    id: str
    action: str
    user_id: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    detail: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
