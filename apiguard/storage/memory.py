from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from apiguard.logging import get_logger
from apiguard.storage.errors import ConstraintViolation
from apiguard.storage.models import (
    AuditEvent,
    Role,
    Session,
    SessionState,
    User,
    UserStatus,
    Workspace,
    WorkspaceInvitation,
    WorkspaceMember,
    WorkspaceStatus,
    utcnow,
)

T = TypeVar("T")

_USER_FIELDS = frozenset(
    {
        "email",
        "full_name",
        "password_hash",
        "email_verified",
        "status",
        "verification_token_hash",
        "verification_expires_at",
        "reset_token_hash",
        "reset_expires_at",
        "last_login_at",
        "last_login_ip",
    }
)
_WORKSPACE_FIELDS = frozenset({"name", "slug", "owner_id", "plan", "status", "deleted_at"})
_INVITATION_FIELDS = frozenset({"accepted_at", "declined_at", "expires_at"})


class MemoryStore:
    """In-memory backing store for tests and local development.

    Every public method holds ``_data_lock``; ``atomic`` holds it for the whole
    unit of work and restores a snapshot when the work raises.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.workspaces: Dict[str, Workspace] = {}
        self.members: Dict[str, WorkspaceMember] = {}
        self.invitations: Dict[str, WorkspaceInvitation] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so nested store calls inside atomic() re-enter
        self._data_lock = threading.RLock()
        self._atomic_depth = 0

    # ------------------------------------------------------------------
    # unit of work
    # ------------------------------------------------------------------

    def _snapshot(self) -> Tuple[Any, ...]:
        return copy.deepcopy(
            (
                self.users,
                self.sessions,
                self.workspaces,
                self.members,
                self.invitations,
                self.audit_events,
            )
        )

    def _restore(self, snapshot: Tuple[Any, ...]) -> None:
        (
            self.users,
            self.sessions,
            self.workspaces,
            self.members,
            self.invitations,
            self.audit_events,
        ) = snapshot

    def atomic(self, work: Callable[[], T]) -> T:
        """Run ``work`` all-or-nothing; nested calls join the outer unit."""
        with self._data_lock:
            if self._atomic_depth:
                return work()
            snapshot = self._snapshot()
            self._atomic_depth += 1
            try:
                return work()
            except BaseException:
                self._restore(snapshot)
                self.logger.debug("memory_store_rolled_back")
                raise
            finally:
                self._atomic_depth -= 1

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------

    def create_user(
        self,
        email: str,
        full_name: str,
        password_hash: Optional[str] = None,
        *,
        status: UserStatus = UserStatus.ACTIVE,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                full_name=full_name,
                password_hash=password_hash,
                status=status,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return user
        return None

    def get_user_by_verification_token(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.verification_token_hash == token_hash:
                    return user
        return None

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.reset_token_hash == token_hash:
                    return user
        return None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in fields:
                fields["email"] = fields["email"].strip().lower()
                if any(
                    other.id != user_id and other.email == fields["email"]
                    for other in self.users.values()
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            updated = replace(user, **fields, updated_at=utcnow())
            self.users[user_id] = updated
            return updated

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------

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
    ) -> Session:
        session = Session.new(
            user_id,
            token_hash,
            ttl_seconds,
            session_id=session_id,
            token_family=token_family,
            ip_addr=ip_addr,
            user_agent=user_agent,
            remember_me=remember_me,
        )
        with self._data_lock:
            if any(s.token_hash == token_hash for s in self.sessions.values()):
                raise ConstraintViolation(
                    "refresh token hash already exists", {"field": "token_hash"}
                )
            self.sessions[session.id] = session
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def get_session_by_token_hash(
        self, token_hash: str, *, for_update: bool = False
    ) -> Optional[Session]:
        # for_update is implied: callers run inside atomic(), which holds the lock
        with self._data_lock:
            for session in self.sessions.values():
                if session.token_hash == token_hash:
                    return session
        return None

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return sorted(
                (s for s in self.sessions.values() if s.user_id == user_id),
                key=lambda s: s.created_at,
            )

    def revoke_session(self, session_id: str, revoked_at: Optional[datetime] = None) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or session.revoked_at is not None:
                return False
            self.sessions[session_id] = replace(session, revoked_at=revoked_at or utcnow())
            return True

    def revoke_user_sessions(self, user_id: str, revoked_at: Optional[datetime] = None) -> int:
        now = revoked_at or utcnow()
        count = 0
        with self._data_lock:
            for session_id, session in list(self.sessions.items()):
                if session.user_id != user_id:
                    continue
                if session.state(now) != SessionState.ACTIVE:
                    continue
                self.sessions[session_id] = replace(session, revoked_at=now)
                count += 1
        return count

    def purge_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [
                sid
                for sid, session in self.sessions.items()
                if session.state(now) != SessionState.ACTIVE
            ]
            for sid in stale:
                del self.sessions[sid]
        return len(stale)

    # ------------------------------------------------------------------
    # workspaces and membership
    # ------------------------------------------------------------------

    def create_workspace(
        self, name: str, slug: str, owner_id: str, *, plan: str = "free"
    ) -> Workspace:
        with self._data_lock:
            if any(ws.slug == slug for ws in self.workspaces.values()):
                raise ConstraintViolation("workspace slug already exists", {"field": "slug"})
            workspace = Workspace(
                id=str(uuid.uuid4()), name=name, slug=slug, owner_id=owner_id, plan=plan
            )
            self.workspaces[workspace.id] = workspace
            return workspace

    def get_workspace(
        self, workspace_id: str, *, for_update: bool = False
    ) -> Optional[Workspace]:
        with self._data_lock:
            return self.workspaces.get(workspace_id)

    def get_workspace_by_slug(self, slug: str) -> Optional[Workspace]:
        with self._data_lock:
            for workspace in self.workspaces.values():
                if workspace.slug == slug:
                    return workspace
        return None

    def update_workspace(self, workspace_id: str, **fields: Any) -> Optional[Workspace]:
        unknown = set(fields) - _WORKSPACE_FIELDS
        if unknown:
            raise ValueError(f"unknown workspace fields: {sorted(unknown)}")
        with self._data_lock:
            workspace = self.workspaces.get(workspace_id)
            if not workspace:
                return None
            slug = fields.get("slug")
            if slug and any(
                ws.slug == slug and ws.id != workspace_id for ws in self.workspaces.values()
            ):
                raise ConstraintViolation("workspace slug already exists", {"field": "slug"})
            updated = replace(workspace, **fields, updated_at=utcnow())
            self.workspaces[workspace_id] = updated
            return updated

    def list_user_workspaces(self, user_id: str) -> List[Tuple[Workspace, WorkspaceMember]]:
        """Active workspaces the user belongs to, oldest first."""
        with self._data_lock:
            pairs = []
            for member in self.members.values():
                if member.user_id != user_id:
                    continue
                workspace = self.workspaces.get(member.workspace_id)
                if workspace and workspace.status == WorkspaceStatus.ACTIVE:
                    pairs.append((workspace, member))
            return sorted(pairs, key=lambda pair: pair[0].created_at)

    def _check_single_owner(self, workspace_id: str, member_id: Optional[str]) -> None:
        for other in self.members.values():
            if (
                other.workspace_id == workspace_id
                and other.role == Role.OWNER
                and other.id != member_id
            ):
                raise ConstraintViolation(
                    "workspace already has an owner", {"field": "role"}
                )

    def add_member(self, workspace_id: str, user_id: str, role: Role) -> WorkspaceMember:
        with self._data_lock:
            if self.get_membership(workspace_id, user_id):
                raise ConstraintViolation("user is already a member", {"field": "user_id"})
            if role == Role.OWNER:
                self._check_single_owner(workspace_id, None)
            member = WorkspaceMember(
                id=str(uuid.uuid4()), workspace_id=workspace_id, user_id=user_id, role=role
            )
            self.members[member.id] = member
            return member

    def get_member(self, member_id: str) -> Optional[WorkspaceMember]:
        with self._data_lock:
            return self.members.get(member_id)

    def get_membership(
        self, workspace_id: str, user_id: str, *, for_update: bool = False
    ) -> Optional[WorkspaceMember]:
        with self._data_lock:
            for member in self.members.values():
                if member.workspace_id == workspace_id and member.user_id == user_id:
                    return member
        return None

    def list_members(self, workspace_id: str) -> List[WorkspaceMember]:
        with self._data_lock:
            return sorted(
                (m for m in self.members.values() if m.workspace_id == workspace_id),
                key=lambda m: m.created_at,
            )

    def set_member_role(self, member_id: str, role: Role) -> Optional[WorkspaceMember]:
        with self._data_lock:
            member = self.members.get(member_id)
            if not member:
                return None
            if role == Role.OWNER:
                self._check_single_owner(member.workspace_id, member_id)
            updated = replace(member, role=role, updated_at=utcnow())
            self.members[member_id] = updated
            return updated

    def delete_member(self, member_id: str) -> bool:
        with self._data_lock:
            return self.members.pop(member_id, None) is not None

    # ------------------------------------------------------------------
    # invitations
    # ------------------------------------------------------------------

    def create_invitation(
        self,
        workspace_id: str,
        email: str,
        role: Role,
        token_hash: str,
        invited_by: str,
        expires_at: datetime,
    ) -> WorkspaceInvitation:
        invitation = WorkspaceInvitation(
            id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            email=email.strip().lower(),
            role=role,
            token_hash=token_hash,
            invited_by=invited_by,
            expires_at=expires_at,
        )
        with self._data_lock:
            self.invitations[invitation.id] = invitation
            return invitation

    def get_invitation(self, invitation_id: str) -> Optional[WorkspaceInvitation]:
        with self._data_lock:
            return self.invitations.get(invitation_id)

    def get_invitation_by_token(self, token_hash: str) -> Optional[WorkspaceInvitation]:
        with self._data_lock:
            for invitation in self.invitations.values():
                if invitation.token_hash == token_hash:
                    return invitation
        return None

    def list_invitations(self, workspace_id: str) -> List[WorkspaceInvitation]:
        with self._data_lock:
            return sorted(
                (i for i in self.invitations.values() if i.workspace_id == workspace_id),
                key=lambda i: i.created_at,
            )

    def update_invitation(self, invitation_id: str, **fields: Any) -> Optional[WorkspaceInvitation]:
        unknown = set(fields) - _INVITATION_FIELDS
        if unknown:
            raise ValueError(f"unknown invitation fields: {sorted(unknown)}")
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if not invitation:
                return None
            updated = replace(invitation, **fields)
            self.invitations[invitation_id] = updated
            return updated

    def delete_invitation(self, invitation_id: str) -> bool:
        with self._data_lock:
            return self.invitations.pop(invitation_id, None) is not None

    # ------------------------------------------------------------------
    # audit
    # ------------------------------------------------------------------

    def record_audit_event(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        detail: Optional[Dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            id=str(uuid.uuid4()),
            action=action,
            user_id=user_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            detail=dict(detail) if detail else None,
        )
        with self._data_lock:
            self.audit_events.append(event)
        return event

    def list_audit_events(
        self, user_id: Optional[str] = None, action: Optional[str] = None
    ) -> List[AuditEvent]:
        with self._data_lock:
            return [
                e
                for e in self.audit_events
                if (user_id is None or e.user_id == user_id)
                and (action is None or e.action == action)
            ]

    def purge_audit_events(self, older_than: datetime) -> int:
        with self._data_lock:
            kept = [e for e in self.audit_events if e.created_at >= older_than]
            removed = len(self.audit_events) - len(kept)
            self.audit_events = kept
        return removed

    def close(self) -> None:
        return None
