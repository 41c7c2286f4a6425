from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response

from apiguard.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    CreateWorkspaceRequest,
    Envelope,
    ForgotPasswordRequest,
    InvitationResponse,
    InviteMemberRequest,
    LoginRequest,
    MemberResponse,
    MessageResponse,
    ProfileResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    TransferOwnershipRequest,
    UpdateMemberRoleRequest,
    UpdateProfileRequest,
    UpdateWorkspaceRequest,
    UserResponse,
    WorkspaceResponse,
)
from apiguard.logging import bind_principal, get_logger
from apiguard.service.auth import AuthContext, AuthResult
from apiguard.service.runtime import check_rate_limit, get_runtime
from apiguard.service.tokens import TokenPair
from apiguard.service.workspaces import MemberProfile
from apiguard.storage.models import Role, User, Workspace, WorkspaceInvitation

logger = get_logger(__name__)

router = APIRouter()


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @property
    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        response.headers.update(self.headers)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key``; raise a 429 envelope when the bucket is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], limit=limit)
        headers = {**info.headers, "Retry-After": str(info.reset_seconds)}
        raise _http_error(
            "rate_limited", "Too many requests, please try again later", 429, headers=headers
        )
    return info


def _client_ip(request: Request) -> Optional[str]:
    """Address used for rate limits and audit records.

    ``X-Forwarded-For`` is only honoured when the socket peer is a configured
    trusted proxy; the client is then the right-most hop that is not a proxy.
    """
    peer = request.client.host if request.client else None
    trusted = set(get_runtime().settings.trusted_proxies)
    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded or peer not in trusted:
        return peer
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return peer


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid or missing access token", status_code=401)
    bind_principal(ctx.user_id, ctx.session_id)
    return ctx


def _user_payload(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        email_verified=user.email_verified,
        is_active=user.is_active,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


def _tokens_payload(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(**tokens.as_dict())


def _workspace_payload(workspace: Workspace, role: Optional[Role] = None) -> WorkspaceResponse:
    return WorkspaceResponse(
        id=workspace.id,
        name=workspace.name,
        slug=workspace.slug,
        plan=workspace.plan,
        owner_id=workspace.owner_id,
        role=role.value if role else None,
        created_at=workspace.created_at,
    )


def _auth_payload(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=_user_payload(result.user),
        tokens=_tokens_payload(result.tokens),
        workspace=_workspace_payload(result.workspace, Role.OWNER) if result.workspace else None,
    )


def _member_payload(profile: MemberProfile) -> MemberResponse:
    return MemberResponse(
        id=profile.id,
        user_id=profile.user_id,
        email=profile.email,
        full_name=profile.full_name,
        role=profile.role.value,
        joined_at=profile.joined_at,
    )


def _invitation_payload(invitation: WorkspaceInvitation) -> InvitationResponse:
    return InvitationResponse(
        id=invitation.id,
        workspace_id=invitation.workspace_id,
        email=invitation.email,
        role=invitation.role.value,
        invited_by=invitation.invited_by,
        expires_at=invitation.expires_at,
        created_at=invitation.created_at,
    )


def _message(text: str) -> Envelope:
    return Envelope(status="ok", data=MessageResponse(message=text))


# ----------------------------------------------------------------------
# auth
# ----------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account, its default workspace, and a first session.

    Raises:
        409: If the email is already registered
        429: If the per-IP registration limit is exceeded
    """
    runtime = get_runtime()
    ip_addr = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"register:{ip_addr}",
        runtime.settings.register_rate_limit,
        runtime.settings.register_rate_limit_window_seconds,
        response=response,
    )
    result = await runtime.auth.register(
        body.email,
        body.password,
        body.full_name,
        ip_addr=ip_addr,
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: Invalid credentials, with one message for every failure cause
        429: If the per-IP login limit is exceeded
    """
    runtime = get_runtime()
    ip_addr = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{ip_addr}",
        runtime.settings.login_rate_limit,
        runtime.settings.login_rate_limit_window_seconds,
        response=response,
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        ip_addr=ip_addr,
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, request: Request):
    """Rotate a refresh token. A reused token revokes every session of its user."""
    runtime = get_runtime()
    tokens = await runtime.auth.refresh_token(
        body.refresh_token,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_tokens_payload(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.session_id, principal.user_id)
    return _message("Logged out successfully")


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal.user_id, ip_addr=_client_ip(request))
    return Envelope(
        status="ok",
        data={"message": "Logged out from all devices", "sessions_revoked": revoked},
    )


@router.get("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(token: Optional[str] = Query(None, max_length=128)):
    runtime = get_runtime()
    return _message(await runtime.auth.verify_email(token))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return _message(await runtime.auth.resend_verification(principal.user_id))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request, response: Response):
    """Request a reset link; the reply is identical whether or not the email exists."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"forgot-password:{_client_ip(request)}",
        runtime.settings.forgot_password_rate_limit,
        runtime.settings.forgot_password_rate_limit_window_seconds,
        response=response,
    )
    return _message(await runtime.auth.forgot_password(body.email))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    return _message(await runtime.auth.reset_password(body.token, body.new_password))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    """Change the password and sign out every device, including this one."""
    runtime = get_runtime()
    message = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return _message(message)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    profile = await runtime.auth.get_profile(principal.user_id)
    return Envelope(status="ok", data=ProfileResponse(**profile))


# ----------------------------------------------------------------------
# users
# ----------------------------------------------------------------------


@router.put("/users/me", response_model=Envelope, tags=["users"])
async def update_me(body: UpdateProfileRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.update_profile(
        principal.user_id, full_name=body.full_name, email=body.email
    )
    return Envelope(status="ok", data=_user_payload(user))


@router.delete("/users/me", response_model=Envelope, tags=["users"])
async def deactivate_me(request: Request, principal: AuthContext = Depends(get_user)):
    """Deactivate the caller's account and revoke all of its sessions."""
    runtime = get_runtime()
    revoked = await runtime.auth.deactivate_account(
        principal.user_id, ip_addr=_client_ip(request)
    )
    return Envelope(
        status="ok",
        data={"message": "Account deactivated", "sessions_revoked": revoked},
    )


# ----------------------------------------------------------------------
# workspaces
# ----------------------------------------------------------------------


@router.post("/workspaces", response_model=Envelope, status_code=201, tags=["workspaces"])
async def create_workspace(
    body: CreateWorkspaceRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    workspace, _member = runtime.workspaces.create_workspace(
        principal.user_id, body.name, slug=body.slug
    )
    return Envelope(status="ok", data=_workspace_payload(workspace, Role.OWNER))


@router.get("/workspaces", response_model=Envelope, tags=["workspaces"])
async def list_workspaces(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    items = runtime.workspaces.list_workspaces(principal.user_id)
    return Envelope(
        status="ok",
        data={"items": [_workspace_payload(ws, role) for ws, role in items]},
    )


@router.get("/workspaces/slug/{slug}", response_model=Envelope, tags=["workspaces"])
async def get_workspace_by_slug(slug: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    membership = runtime.workspaces.get_workspace_by_slug(slug, principal.user_id)
    return Envelope(status="ok", data=_workspace_payload(membership.workspace, membership.role))


@router.get("/workspaces/{workspace_id}", response_model=Envelope, tags=["workspaces"])
async def get_workspace(workspace_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    membership = runtime.workspaces.get_workspace(workspace_id, principal.user_id)
    return Envelope(status="ok", data=_workspace_payload(membership.workspace, membership.role))


@router.put("/workspaces/{workspace_id}", response_model=Envelope, tags=["workspaces"])
async def update_workspace(
    workspace_id: str,
    body: UpdateWorkspaceRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    workspace = runtime.workspaces.update_workspace(
        workspace_id, principal.user_id, name=body.name, slug=body.slug
    )
    return Envelope(status="ok", data=_workspace_payload(workspace))


@router.delete("/workspaces/{workspace_id}", response_model=Envelope, tags=["workspaces"])
async def delete_workspace(workspace_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.workspaces.delete_workspace(workspace_id, principal.user_id)
    return _message("Workspace deleted successfully")


@router.get("/workspaces/{workspace_id}/members", response_model=Envelope, tags=["workspaces"])
async def list_members(workspace_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    members = runtime.workspaces.list_members(workspace_id, principal.user_id)
    return Envelope(status="ok", data={"items": [_member_payload(m) for m in members]})


@router.post(
    "/workspaces/{workspace_id}/members/invite",
    response_model=Envelope,
    status_code=201,
    tags=["workspaces"],
)
async def invite_member(
    workspace_id: str,
    body: InviteMemberRequest,
    principal: AuthContext = Depends(get_user),
):
    """Invite by email. The token is only delivered to the invitee, never returned."""
    runtime = get_runtime()
    invitation, _token = runtime.workspaces.invite_member(
        workspace_id, principal.user_id, body.email, body.role
    )
    return Envelope(status="ok", data=_invitation_payload(invitation))


@router.put(
    "/workspaces/{workspace_id}/members/{member_id}/role",
    response_model=Envelope,
    tags=["workspaces"],
)
async def update_member_role(
    workspace_id: str,
    member_id: str,
    body: UpdateMemberRoleRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    member = runtime.workspaces.update_member_role(
        workspace_id, member_id, principal.user_id, body.role
    )
    return Envelope(
        status="ok",
        data={"id": member.id, "user_id": member.user_id, "role": member.role.value},
    )


@router.delete(
    "/workspaces/{workspace_id}/members/{member_id}",
    response_model=Envelope,
    tags=["workspaces"],
)
async def remove_member(
    workspace_id: str, member_id: str, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    runtime.workspaces.remove_member(workspace_id, member_id, principal.user_id)
    return _message("Member removed successfully")


@router.post("/workspaces/{workspace_id}/leave", response_model=Envelope, tags=["workspaces"])
async def leave_workspace(workspace_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.workspaces.leave_workspace(workspace_id, principal.user_id)
    return _message("Left workspace successfully")


@router.post(
    "/workspaces/{workspace_id}/transfer-ownership",
    response_model=Envelope,
    tags=["workspaces"],
)
async def transfer_ownership(
    workspace_id: str,
    body: TransferOwnershipRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    workspace = runtime.workspaces.transfer_ownership(
        workspace_id, principal.user_id, body.new_owner_id
    )
    return Envelope(status="ok", data=_workspace_payload(workspace, Role.ADMIN))


@router.get(
    "/workspaces/{workspace_id}/invitations", response_model=Envelope, tags=["workspaces"]
)
async def list_invitations(workspace_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    invitations = runtime.workspaces.list_invitations(workspace_id, principal.user_id)
    return Envelope(status="ok", data={"items": [_invitation_payload(i) for i in invitations]})


@router.delete(
    "/workspaces/{workspace_id}/invitations/{invitation_id}",
    response_model=Envelope,
    tags=["workspaces"],
)
async def cancel_invitation(
    workspace_id: str, invitation_id: str, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    runtime.workspaces.cancel_invitation(workspace_id, invitation_id, principal.user_id)
    return _message("Invitation cancelled successfully")


# ----------------------------------------------------------------------
# invitations
# ----------------------------------------------------------------------


@router.post("/invitations/accept", response_model=Envelope, tags=["invitations"])
async def accept_invitation(
    token: str = Query(..., max_length=128), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    member = runtime.workspaces.accept_invitation(token, principal.user_id)
    return Envelope(
        status="ok",
        data={
            "message": "Invitation accepted successfully",
            "workspace_id": member.workspace_id,
            "role": member.role.value,
        },
    )


@router.post("/invitations/decline", response_model=Envelope, tags=["invitations"])
async def decline_invitation(
    token: str = Query(..., max_length=128), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    runtime.workspaces.decline_invitation(token, principal.user_id)
    return _message("Invitation declined")
