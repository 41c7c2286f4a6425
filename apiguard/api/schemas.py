from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from apiguard.logging import get_request_id
from apiguard.storage.models import Role

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_request_id() or str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_PASSWORD_SPECIALS = "@$!%*?&"


def _validate_password_strength(value: str) -> str:
    """8-128 characters with a lowercase, an uppercase, a digit and one of ``@$!%*?&``."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not (
        any(c.islower() for c in value)
        and any(c.isupper() for c in value)
        and any(c.isdigit() for c in value)
        and any(c in _PASSWORD_SPECIALS for c in value)
    ):
        raise ValueError(
            "password must contain uppercase, lowercase, number and special character"
        )
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ----------------------------------------------------------------------
# auth requests
# ----------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    email: str
    password: str
    full_name: str = Field(..., alias="fullName", min_length=2, max_length=255)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("full_name")
    @classmethod
    def _strip_full_name(cls, value: str) -> str:
        stripped = _normalize_unicode(value).strip()
        if len(stripped) < 2:
            raise ValueError("full name must be at least 2 characters")
        return stripped


class LoginRequest(_CamelModel):
    email: str
    password: str = Field(..., max_length=128)
    remember_me: bool = Field(default=False, alias="rememberMe")

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(_CamelModel):
    refresh_token: str = Field(..., alias="refreshToken", max_length=2048)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(_CamelModel):
    token: str = Field(..., max_length=128)
    new_password: str = Field(..., alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(..., alias="currentPassword", max_length=128)
    new_password: str = Field(..., alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


# ----------------------------------------------------------------------
# workspace requests
# ----------------------------------------------------------------------

_SLUG_PATTERN = r"^[a-z0-9]+(?:-[a-z0-9]+)*$"


class UpdateProfileRequest(_CamelModel):
    full_name: Optional[str] = Field(default=None, alias="fullName", max_length=100)
    email: Optional[str] = None

    @field_validator("full_name")
    @classmethod
    def _strip_full_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        stripped = _normalize_unicode(value).strip()
        if len(stripped) < 2:
            raise ValueError("full name must be at least 2 characters")
        return stripped

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else value


class CreateWorkspaceRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    slug: Optional[str] = Field(default=None, min_length=3, max_length=64, pattern=_SLUG_PATTERN)


class UpdateWorkspaceRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=255)
    slug: Optional[str] = Field(default=None, min_length=3, max_length=64, pattern=_SLUG_PATTERN)


class InviteMemberRequest(BaseModel):
    email: str
    role: Role = Role.DEVELOPER

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("role")
    @classmethod
    def _reject_owner(cls, value: Role) -> Role:
        if value == Role.OWNER:
            raise ValueError("cannot invite as owner")
        return value


class UpdateMemberRoleRequest(BaseModel):
    role: Role


class TransferOwnershipRequest(_CamelModel):
    new_owner_id: str = Field(..., alias="newOwnerId", max_length=64)


# ----------------------------------------------------------------------
# responses
# ----------------------------------------------------------------------


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: str
    email_verified: bool
    is_active: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class WorkspaceResponse(BaseModel):
    id: str
    name: str
    slug: str
    plan: str
    owner_id: str
    role: Optional[str] = None
    created_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: TokenResponse
    workspace: Optional[WorkspaceResponse] = None


class ProfileWorkspace(BaseModel):
    id: str
    name: str
    slug: str
    plan: str
    role: str
    is_owner: bool


class ProfileResponse(UserResponse):
    workspaces: List[ProfileWorkspace] = Field(default_factory=list)


class MemberResponse(BaseModel):
    id: str
    user_id: str
    email: str
    full_name: str
    role: str
    joined_at: datetime


class InvitationResponse(BaseModel):
    id: str
    workspace_id: str
    email: str
    role: str
    invited_by: str
    expires_at: datetime
    created_at: datetime


class MessageResponse(BaseModel):
    message: str
