from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Collection, List, Optional, Protocol, Tuple, TypeVar

from apiguard.logging import get_logger
from apiguard.service.audit import AuditAction, record_audit
from apiguard.service.email import NotificationDispatcher
from apiguard.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from apiguard.service.sessions import hash_token
from apiguard.storage.errors import ConstraintViolation
from apiguard.storage.models import (
    ADMIN_ROLES,
    MEMBER_ROLES,
    OWNER_ONLY,
    InvitationState,
    Role,
    User,
    Workspace,
    WorkspaceInvitation,
    WorkspaceMember,
    WorkspaceStatus,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

_SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")


class WorkspaceStore(Protocol):
    def atomic(self, work: Callable[[], T]) -> T: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_workspace(
        self, name: str, slug: str, owner_id: str, *, plan: str = "free"
    ) -> Workspace: ...

    def get_workspace(
        self, workspace_id: str, *, for_update: bool = False
    ) -> Optional[Workspace]: ...

    def get_workspace_by_slug(self, slug: str) -> Optional[Workspace]: ...

    def update_workspace(self, workspace_id: str, **fields) -> Optional[Workspace]: ...

    def list_user_workspaces(self, user_id: str) -> List[Tuple[Workspace, WorkspaceMember]]: ...

    def add_member(self, workspace_id: str, user_id: str, role: Role) -> WorkspaceMember: ...

    def get_member(self, member_id: str) -> Optional[WorkspaceMember]: ...

    def get_membership(
        self, workspace_id: str, user_id: str, *, for_update: bool = False
    ) -> Optional[WorkspaceMember]: ...

    def list_members(self, workspace_id: str) -> List[WorkspaceMember]: ...

    def set_member_role(self, member_id: str, role: Role) -> Optional[WorkspaceMember]: ...

    def delete_member(self, member_id: str) -> bool: ...

    def create_invitation(
        self,
        workspace_id: str,
        email: str,
        role: Role,
        token_hash: str,
        invited_by: str,
        expires_at: datetime,
    ) -> WorkspaceInvitation: ...

    def get_invitation(self, invitation_id: str) -> Optional[WorkspaceInvitation]: ...

    def get_invitation_by_token(self, token_hash: str) -> Optional[WorkspaceInvitation]: ...

    def list_invitations(self, workspace_id: str) -> List[WorkspaceInvitation]: ...

    def update_invitation(self, invitation_id: str, **fields) -> Optional[WorkspaceInvitation]: ...

    def delete_invitation(self, invitation_id: str) -> bool: ...


def slugify(name: str) -> str:
    """URL-safe slug from ``name`` with a random suffix for global uniqueness."""
    base = _SLUG_SEPARATORS.sub("-", name.lower()).strip("-") or "workspace"
    return f"{base[:48]}-{uuid.uuid4().hex[:8]}"


def create_owned_workspace(
    store: WorkspaceStore,
    owner_id: str,
    name: str,
    *,
    slug: Optional[str] = None,
    plan: str = "free",
) -> Tuple[Workspace, WorkspaceMember]:
    """Create a workspace and its OWNER membership as one unit of work."""

    def _create() -> Tuple[Workspace, WorkspaceMember]:
        workspace = store.create_workspace(name, slug or slugify(name), owner_id, plan=plan)
        member = store.add_member(workspace.id, owner_id, Role.OWNER)
        return workspace, member

    return store.atomic(_create)


def _role_names(roles: Collection[Role]) -> List[str]:
    return [role.value for role in sorted(roles, key=lambda r: r.rank, reverse=True)]


@dataclass
class Membership:
    """Resolved access of one user to one workspace."""

    workspace: Workspace
    user_id: str
    role: Role
    member: Optional[WorkspaceMember] = None

    @property
    def is_owner(self) -> bool:
        return self.workspace.owner_id == self.user_id


@dataclass
class MemberProfile:
    id: str
    user_id: str
    email: str
    full_name: str
    role: Role
    joined_at: datetime


class WorkspaceService:
    """Workspace RBAC and the membership mutations that must keep one owner.

    Every public operation resolves the caller's role with ``authorize`` before
    touching state.
    """

    def __init__(
        self,
        store: WorkspaceStore,
        notifier: NotificationDispatcher,
        *,
        invitation_ttl_days: int = 7,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.invitation_ttl = timedelta(days=invitation_ttl_days)

    # ------------------------------------------------------------------
    # role resolution
    # ------------------------------------------------------------------

    def _load_workspace(self, workspace_id: str) -> Workspace:
        workspace = self.store.get_workspace(workspace_id)
        if workspace is None or workspace.is_deleted:
            raise NotFoundError("Workspace not found")
        return workspace

    def authorize(
        self, workspace_id: str, user_id: str, required: Collection[Role] = MEMBER_ROLES
    ) -> Membership:
        """Resolve the caller's role and check it against ``required``.

        Raises:
            NotFoundError: workspace missing or soft-deleted
            ForbiddenError: caller is not a member, or holds a role outside ``required``
        """
        workspace = self._load_workspace(workspace_id)
        member = self.store.get_membership(workspace.id, user_id)
        if workspace.owner_id == user_id:
            role = Role.OWNER
        elif member is None:
            raise ForbiddenError("not a member of this workspace")
        else:
            role = member.role
        if role not in required:
            needed = _role_names(required)
            logger.info(
                "workspace_access_denied",
                workspace_id=workspace.id,
                user_id=user_id,
                role=role.value,
                required=needed,
            )
            raise ForbiddenError(
                f"requires one of [{', '.join(needed)}]; your role is {role.value}",
                detail={"required_roles": needed, "actual_role": role.value},
            )
        return Membership(workspace=workspace, user_id=user_id, role=role, member=member)

    # ------------------------------------------------------------------
    # workspaces
    # ------------------------------------------------------------------

    def create_workspace(
        self, user_id: str, name: str, *, slug: Optional[str] = None
    ) -> Tuple[Workspace, WorkspaceMember]:
        if slug and self.store.get_workspace_by_slug(slug):
            raise ConflictError("Workspace slug already taken")
        try:
            workspace, member = create_owned_workspace(self.store, user_id, name, slug=slug)
        except ConstraintViolation as exc:
            raise ConflictError("Workspace slug already taken", detail=exc.detail)
        logger.info("workspace_created", workspace_id=workspace.id, owner_id=user_id)
        return workspace, member

    def list_workspaces(self, user_id: str) -> List[Tuple[Workspace, Role]]:
        result = []
        for workspace, member in self.store.list_user_workspaces(user_id):
            role = Role.OWNER if workspace.owner_id == user_id else member.role
            result.append((workspace, role))
        return result

    def get_workspace(self, workspace_id: str, user_id: str) -> Membership:
        return self.authorize(workspace_id, user_id, MEMBER_ROLES)

    def get_workspace_by_slug(self, slug: str, user_id: str) -> Membership:
        workspace = self.store.get_workspace_by_slug(slug)
        if workspace is None or workspace.is_deleted:
            raise NotFoundError("Workspace not found")
        return self.authorize(workspace.id, user_id, MEMBER_ROLES)

    def update_workspace(
        self,
        workspace_id: str,
        user_id: str,
        *,
        name: Optional[str] = None,
        slug: Optional[str] = None,
    ) -> Workspace:
        membership = self.authorize(workspace_id, user_id, ADMIN_ROLES)
        fields = {}
        if name is not None:
            fields["name"] = name
        if slug is not None and slug != membership.workspace.slug:
            fields["slug"] = slug
        if not fields:
            return membership.workspace
        try:
            updated = self.store.update_workspace(workspace_id, **fields)
        except ConstraintViolation as exc:
            raise ConflictError("Workspace slug already taken", detail=exc.detail)
        logger.info("workspace_updated", workspace_id=workspace_id, fields=sorted(fields))
        return updated

    def delete_workspace(self, workspace_id: str, user_id: str) -> Workspace:
        self.authorize(workspace_id, user_id, OWNER_ONLY)
        deleted = self.store.update_workspace(
            workspace_id, status=WorkspaceStatus.DELETED, deleted_at=utcnow()
        )
        record_audit(
            self.store,
            AuditAction.WORKSPACE_DELETED,
            user_id=user_id,
            detail={"workspace_id": workspace_id},
        )
        logger.info("workspace_deleted", workspace_id=workspace_id, user_id=user_id)
        return deleted

    # ------------------------------------------------------------------
    # members
    # ------------------------------------------------------------------

    def list_members(self, workspace_id: str, user_id: str) -> List[MemberProfile]:
        self.authorize(workspace_id, user_id, MEMBER_ROLES)
        profiles = []
        for member in self.store.list_members(workspace_id):
            user = self.store.get_user(member.user_id)
            profiles.append(
                MemberProfile(
                    id=member.id,
                    user_id=member.user_id,
                    email=user.email if user else "",
                    full_name=user.full_name if user else "",
                    role=member.role,
                    joined_at=member.created_at,
                )
            )
        return profiles

    def _member_in(self, workspace_id: str, member_id: str) -> WorkspaceMember:
        member = self.store.get_member(member_id)
        if member is None or member.workspace_id != workspace_id:
            raise NotFoundError("Member not found")
        return member

    def update_member_role(
        self, workspace_id: str, member_id: str, actor_id: str, role: Role
    ) -> WorkspaceMember:
        membership = self.authorize(workspace_id, actor_id, OWNER_ONLY)
        role = Role(role)
        if role == Role.OWNER:
            raise BadRequestError("Cannot assign the owner role; transfer ownership instead")
        member = self._member_in(workspace_id, member_id)
        if member.user_id == membership.workspace.owner_id:
            raise BadRequestError("Cannot change the role of the workspace owner")
        updated = self.store.set_member_role(member.id, role)
        logger.info(
            "member_role_updated",
            workspace_id=workspace_id,
            member_id=member_id,
            previous_role=member.role.value,
            role=role.value,
        )
        return updated

    def remove_member(self, workspace_id: str, member_id: str, actor_id: str) -> None:
        membership = self.authorize(workspace_id, actor_id, ADMIN_ROLES)
        member = self._member_in(workspace_id, member_id)
        if member.user_id == membership.workspace.owner_id:
            raise BadRequestError("Cannot remove the workspace owner")
        # lateral purge guard: admins may not remove each other
        if membership.role == Role.ADMIN and member.role == Role.ADMIN:
            raise ForbiddenError("Only the owner can remove an admin")
        self.store.delete_member(member.id)
        logger.info(
            "member_removed", workspace_id=workspace_id, member_id=member_id, actor_id=actor_id
        )

    def leave_workspace(self, workspace_id: str, user_id: str) -> None:
        membership = self.authorize(workspace_id, user_id, MEMBER_ROLES)
        if membership.is_owner:
            raise BadRequestError(
                "Owner cannot leave the workspace; transfer ownership or delete it first"
            )
        self.store.delete_member(membership.member.id)
        logger.info("member_left", workspace_id=workspace_id, user_id=user_id)

    def transfer_ownership(
        self, workspace_id: str, actor_id: str, new_owner_id: str
    ) -> Workspace:
        membership = self.authorize(workspace_id, actor_id, OWNER_ONLY)
        previous_owner_id = membership.workspace.owner_id
        if new_owner_id == previous_owner_id:
            raise BadRequestError("User is already the workspace owner")
        target = self.store.get_membership(workspace_id, new_owner_id)
        if target is None:
            raise BadRequestError("New owner must be a member of the workspace")

        def _swap() -> Workspace:
            current = self.store.get_workspace(workspace_id, for_update=True)
            if current is None or current.is_deleted:
                raise NotFoundError("Workspace not found")
            if current.owner_id != previous_owner_id:
                raise ConflictError("Workspace ownership changed concurrently")
            # re-read under the lock; the target may have been removed since the check above
            target = self.store.get_membership(workspace_id, new_owner_id, for_update=True)
            if target is None:
                raise BadRequestError("New owner must be a member of the workspace")
            workspace = self.store.update_workspace(workspace_id, owner_id=new_owner_id)
            # demote first so the single-owner constraint holds at every step
            previous = self.store.get_membership(workspace_id, previous_owner_id, for_update=True)
            if previous is None:
                self.store.add_member(workspace_id, previous_owner_id, Role.ADMIN)
            else:
                self.store.set_member_role(previous.id, Role.ADMIN)
            if self.store.set_member_role(target.id, Role.OWNER) is None:
                raise BadRequestError("New owner must be a member of the workspace")
            return workspace

        try:
            workspace = self.store.atomic(_swap)
        except ConstraintViolation as exc:
            raise ConflictError("Workspace ownership changed concurrently", detail=exc.detail)
        record_audit(
            self.store,
            AuditAction.OWNERSHIP_TRANSFERRED,
            user_id=actor_id,
            detail={"workspace_id": workspace_id, "new_owner_id": new_owner_id},
        )
        logger.info(
            "ownership_transferred",
            workspace_id=workspace_id,
            previous_owner_id=previous_owner_id,
            new_owner_id=new_owner_id,
        )
        return workspace

    # ------------------------------------------------------------------
    # invitations
    # ------------------------------------------------------------------

    def invite_member(
        self, workspace_id: str, actor_id: str, email: str, role: Role
    ) -> Tuple[WorkspaceInvitation, str]:
        """Create a pending invitation and dispatch its token by email.

        Returns the invitation and the raw token; only the token's hash is stored.
        """
        membership = self.authorize(workspace_id, actor_id, ADMIN_ROLES)
        role = Role(role)
        if role == Role.OWNER:
            raise BadRequestError("Cannot invite as owner")
        target_email = email.strip().lower()
        token = str(uuid.uuid4())

        def _create() -> WorkspaceInvitation:
            now = utcnow()
            invitee = self.store.get_user_by_email(target_email)
            if invitee and (
                invitee.id == membership.workspace.owner_id
                or self.store.get_membership(workspace_id, invitee.id)
            ):
                raise ConflictError("User is already a member")
            for existing in self.store.list_invitations(workspace_id):
                if existing.email == target_email and existing.state(now) == InvitationState.PENDING:
                    raise ConflictError("Invitation already pending")
            return self.store.create_invitation(
                workspace_id,
                target_email,
                role,
                hash_token(token),
                actor_id,
                now + self.invitation_ttl,
            )

        invitation = self.store.atomic(_create)
        inviter = self.store.get_user(actor_id)
        self.notifier.dispatch(
            "send_workspace_invitation",
            target_email,
            token,
            workspace_name=membership.workspace.name,
            inviter_name=inviter.full_name if inviter else "A teammate",
            role=role.value,
        )
        logger.info(
            "invitation_created",
            workspace_id=workspace_id,
            invitation_id=invitation.id,
            role=role.value,
        )
        return invitation, token

    def list_invitations(self, workspace_id: str, actor_id: str) -> List[WorkspaceInvitation]:
        self.authorize(workspace_id, actor_id, ADMIN_ROLES)
        now = utcnow()
        return [
            inv
            for inv in self.store.list_invitations(workspace_id)
            if inv.state(now) == InvitationState.PENDING
        ]

    def cancel_invitation(self, workspace_id: str, invitation_id: str, actor_id: str) -> None:
        self.authorize(workspace_id, actor_id, ADMIN_ROLES)
        invitation = self.store.get_invitation(invitation_id)
        if invitation is None or invitation.workspace_id != workspace_id:
            raise NotFoundError("Invitation not found")
        self.store.delete_invitation(invitation.id)
        logger.info("invitation_cancelled", workspace_id=workspace_id, invitation_id=invitation_id)

    def _redeemable(self, token: str, user_id: str) -> Tuple[WorkspaceInvitation, User]:
        invitation = self.store.get_invitation_by_token(hash_token(token)) if token else None
        if invitation is None:
            raise BadRequestError("Invalid invitation token")
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.email.lower() != invitation.email.lower():
            logger.warning(
                "invitation_email_mismatch", invitation_id=invitation.id, user_id=user_id
            )
            raise ForbiddenError("Invitation was issued to a different email")
        self._check_pending(invitation)
        return invitation, user

    @staticmethod
    def _check_pending(invitation: WorkspaceInvitation) -> None:
        state = invitation.state()
        if state == InvitationState.ACCEPTED:
            raise BadRequestError("Invitation already accepted")
        if state == InvitationState.DECLINED:
            raise BadRequestError("Invitation already declined")
        if state == InvitationState.EXPIRED:
            raise BadRequestError("Invitation has expired")

    def accept_invitation(self, token: str, user_id: str) -> WorkspaceMember:
        invitation, user = self._redeemable(token, user_id)
        self._load_workspace(invitation.workspace_id)

        def _accept() -> WorkspaceMember:
            current = self.store.get_invitation(invitation.id)
            if current is None:
                raise BadRequestError("Invalid invitation token")
            self._check_pending(current)
            workspace = self.store.get_workspace(current.workspace_id, for_update=True)
            if workspace is None or workspace.is_deleted:
                raise NotFoundError("Workspace not found")
            if workspace.owner_id == user.id or self.store.get_membership(
                workspace.id, user.id, for_update=True
            ):
                raise ConflictError("User is already a member")
            member = self.store.add_member(workspace.id, user.id, current.role)
            self.store.update_invitation(current.id, accepted_at=utcnow())
            return member

        try:
            member = self.store.atomic(_accept)
        except ConstraintViolation as exc:
            raise ConflictError("User is already a member", detail=exc.detail)
        logger.info(
            "invitation_accepted",
            workspace_id=member.workspace_id,
            invitation_id=invitation.id,
            user_id=user.id,
            role=member.role.value,
        )
        return member

    def decline_invitation(self, token: str, user_id: str) -> WorkspaceInvitation:
        invitation, user = self._redeemable(token, user_id)

        def _decline() -> WorkspaceInvitation:
            current = self.store.get_invitation(invitation.id)
            if current is None:
                raise BadRequestError("Invalid invitation token")
            self._check_pending(current)
            return self.store.update_invitation(current.id, declined_at=utcnow())

        declined = self.store.atomic(_decline)
        logger.info("invitation_declined", invitation_id=invitation.id, user_id=user.id)
        return declined
