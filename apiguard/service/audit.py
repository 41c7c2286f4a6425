"""Audit trail helpers shared by the auth and workspace services."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional, Protocol

from apiguard.logging import get_logger
from apiguard.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditAction(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT_ALL = "LOGOUT_ALL"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_RESET = "PASSWORD_RESET"
    PROFILE_UPDATED = "PROFILE_UPDATED"
    ACCOUNT_DEACTIVATED = "ACCOUNT_DEACTIVATED"
    OWNERSHIP_TRANSFERRED = "OWNERSHIP_TRANSFERRED"
    WORKSPACE_DELETED = "WORKSPACE_DELETED"


class AuditStore(Protocol):
    def record_audit_event(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        detail: Optional[Dict] = None,
    ) -> AuditEvent: ...


def record_audit(
    store: AuditStore,
    action: AuditAction,
    *,
    user_id: Optional[str] = None,
    ip_addr: Optional[str] = None,
    user_agent: Optional[str] = None,
    detail: Optional[Dict[str, Any]] = None,
) -> Optional[AuditEvent]:
    """Persist an audit event; a storage failure is logged and never fails the caller."""
    try:
        return store.record_audit_event(
            action.value,
            user_id=user_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            detail=detail,
        )
    except Exception as exc:
        logger.error(
            "audit_record_failed",
            action=action.value,
            user_id=user_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return None
