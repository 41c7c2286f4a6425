from __future__ import annotations

import contextlib
import json
import uuid
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

from psycopg import Connection, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from apiguard.logging import get_logger
from apiguard.storage.errors import ConstraintViolation
from apiguard.storage.models import (
    AuditEvent,
    Role,
    Session,
    User,
    UserStatus,
    Workspace,
    WorkspaceInvitation,
    WorkspaceMember,
    WorkspaceStatus,
    utcnow,
)

T = TypeVar("T")

# Connection bound to the unit of work running in the current context
_active_conn: ContextVar[Optional[Connection]] = ContextVar(
    "apiguard_pg_conn", default=None
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        full_name TEXT NOT NULL,
        password_hash TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        status TEXT NOT NULL DEFAULT 'active',
        verification_token_hash TEXT,
        verification_expires_at TIMESTAMPTZ,
        reset_token_hash TEXT,
        reset_expires_at TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        last_login_ip TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email))",
    "CREATE INDEX IF NOT EXISTS app_user_verification_idx ON app_user (verification_token_hash)",
    "CREATE INDEX IF NOT EXISTS app_user_reset_idx ON app_user (reset_token_hash)",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        token_hash TEXT NOT NULL UNIQUE,
        token_family TEXT NOT NULL,
        ip_addr TEXT,
        user_agent TEXT,
        remember_me BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS workspace (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE,
        owner_id TEXT NOT NULL REFERENCES app_user(id),
        plan TEXT NOT NULL DEFAULT 'free',
        status TEXT NOT NULL DEFAULT 'active',
        deleted_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workspace_member (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL REFERENCES workspace(id),
        user_id TEXT NOT NULL REFERENCES app_user(id),
        role TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (workspace_id, user_id)
    )
    """,
    # at most one owner row per workspace
    """
    CREATE UNIQUE INDEX IF NOT EXISTS workspace_member_single_owner
    ON workspace_member (workspace_id) WHERE role = 'owner'
    """,
    """
    CREATE TABLE IF NOT EXISTS workspace_invitation (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL REFERENCES workspace(id),
        email TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role <> 'owner'),
        token_hash TEXT NOT NULL UNIQUE,
        invited_by TEXT NOT NULL REFERENCES app_user(id),
        expires_at TIMESTAMPTZ NOT NULL,
        accepted_at TIMESTAMPTZ,
        declined_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        action TEXT NOT NULL,
        ip_addr TEXT,
        user_agent TEXT,
        detail JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_event_created_idx ON audit_event (created_at)",
]

_USER_COLUMNS = frozenset(
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
_WORKSPACE_COLUMNS = frozenset({"name", "slug", "owner_id", "plan", "status", "deleted_at"})
_INVITATION_COLUMNS = frozenset({"accepted_at", "declined_at", "expires_at"})


def _db_value(value: Any) -> Any:
    if isinstance(value, (UserStatus, WorkspaceStatus, Role)):
        return value.value
    return value


def _set_clause(fields: Dict[str, Any], allowed: frozenset) -> Tuple[str, List[Any]]:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"unknown columns: {sorted(unknown)}")
    names = sorted(fields)
    # column names come from the whitelist above, never from callers' values
    clause = ", ".join(f"{name} = %s" for name in names)
    return clause, [_db_value(fields[name]) for name in names]


class PostgresStore:
    """Postgres-backed store; ``atomic`` binds one transaction per unit of work."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Connection]:
        active = _active_conn.get()
        if active is not None:
            yield active
            return
        with self.pool.connection() as conn:
            yield conn

    def _ensure_schema(self) -> None:
        """Create tables and indexes that are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def atomic(self, work: Callable[[], T]) -> T:
        """Run ``work`` inside one transaction; nested calls join it."""
        if _active_conn.get() is not None:
            return work()
        with self.pool.connection() as conn:
            token = _active_conn.set(conn)
            try:
                with conn.transaction():
                    return work()
            finally:
                _active_conn.reset(token)

    def close(self) -> None:
        self.pool.close()

    # ------------------------------------------------------------------
    # row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            full_name=row["full_name"],
            password_hash=row.get("password_hash"),
            email_verified=bool(row.get("email_verified")),
            status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
            verification_token_hash=row.get("verification_token_hash"),
            verification_expires_at=row.get("verification_expires_at"),
            reset_token_hash=row.get("reset_token_hash"),
            reset_expires_at=row.get("reset_expires_at"),
            last_login_at=row.get("last_login_at"),
            last_login_ip=row.get("last_login_ip"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            token_hash=row["token_hash"],
            token_family=row["token_family"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            remember_me=bool(row.get("remember_me")),
            revoked_at=row.get("revoked_at"),
        )

    @staticmethod
    def _row_to_workspace(row: Dict[str, Any]) -> Workspace:
        return Workspace(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            owner_id=row["owner_id"],
            plan=row.get("plan") or "free",
            status=WorkspaceStatus(row.get("status") or WorkspaceStatus.ACTIVE.value),
            deleted_at=row.get("deleted_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_member(row: Dict[str, Any], prefix: str = "") -> WorkspaceMember:
        return WorkspaceMember(
            id=row[f"{prefix}id"],
            workspace_id=row[f"{prefix}workspace_id"],
            user_id=row[f"{prefix}user_id"],
            role=Role(row[f"{prefix}role"]),
            created_at=row[f"{prefix}created_at"],
            updated_at=row[f"{prefix}updated_at"],
        )

    @staticmethod
    def _row_to_invitation(row: Dict[str, Any]) -> WorkspaceInvitation:
        return WorkspaceInvitation(
            id=row["id"],
            workspace_id=row["workspace_id"],
            email=row["email"],
            role=Role(row["role"]),
            token_hash=row["token_hash"],
            invited_by=row["invited_by"],
            expires_at=row["expires_at"],
            accepted_at=row.get("accepted_at"),
            declined_at=row.get("declined_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_audit(row: Dict[str, Any]) -> AuditEvent:
        detail = row.get("detail")
        if isinstance(detail, str):
            detail = json.loads(detail)
        return AuditEvent(
            id=row["id"],
            action=row["action"],
            user_id=row.get("user_id"),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            detail=detail,
            created_at=row["created_at"],
        )

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
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, full_name, password_hash, status)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalized, full_name, password_hash, status.value),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s",
                (email.strip().lower(),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_verification_token(self, token_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE verification_token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE reset_token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        clause, params = _set_clause(fields, _USER_COLUMNS)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {clause}, updated_at = now() WHERE id = %s RETURNING *",
                    (*params, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row) if row else None

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
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, token_hash, token_family, ip_addr, user_agent,
                        remember_me, created_at, expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_hash,
                        session.token_family,
                        session.ip_addr,
                        session.user_agent,
                        session.remember_me,
                        session.created_at,
                        session.expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token hash already exists", {"field": "token_hash"}
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_token_hash(
        self, token_hash: str, *, for_update: bool = False
    ) -> Optional[Session]:
        query = "SELECT * FROM auth_session WHERE token_hash = %s"
        if for_update:
            query += " FOR UPDATE"
        with self._connect() as conn:
            row = conn.execute(query, (token_hash,)).fetchone()
        return self._row_to_session(row) if row else None

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def revoke_session(self, session_id: str, revoked_at: Optional[datetime] = None) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s
                WHERE id = %s AND revoked_at IS NULL
                """,
                (revoked_at or utcnow(), session_id),
            )
            return cur.rowcount > 0

    def revoke_user_sessions(self, user_id: str, revoked_at: Optional[datetime] = None) -> int:
        now = revoked_at or utcnow()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (now, user_id, now),
            )
            return cur.rowcount

    def purge_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE revoked_at IS NOT NULL OR expires_at <= %s",
                (now or utcnow(),),
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # workspaces and membership
    # ------------------------------------------------------------------

    def create_workspace(
        self, name: str, slug: str, owner_id: str, *, plan: str = "free"
    ) -> Workspace:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO workspace (id, name, slug, owner_id, plan)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), name, slug, owner_id, plan),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("workspace slug already exists", {"field": "slug"})
        return self._row_to_workspace(row)

    def get_workspace(
        self, workspace_id: str, *, for_update: bool = False
    ) -> Optional[Workspace]:
        query = "SELECT * FROM workspace WHERE id = %s"
        if for_update:
            query += " FOR UPDATE"
        with self._connect() as conn:
            row = conn.execute(query, (workspace_id,)).fetchone()
        return self._row_to_workspace(row) if row else None

    def get_workspace_by_slug(self, slug: str) -> Optional[Workspace]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM workspace WHERE slug = %s", (slug,)).fetchone()
        return self._row_to_workspace(row) if row else None

    def update_workspace(self, workspace_id: str, **fields: Any) -> Optional[Workspace]:
        clause, params = _set_clause(fields, _WORKSPACE_COLUMNS)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE workspace SET {clause}, updated_at = now() WHERE id = %s RETURNING *",
                    (*params, workspace_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("workspace slug already exists", {"field": "slug"})
        return self._row_to_workspace(row) if row else None

    def list_user_workspaces(self, user_id: str) -> List[Tuple[Workspace, WorkspaceMember]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT w.*, m.id AS m_id, m.workspace_id AS m_workspace_id,
                       m.user_id AS m_user_id, m.role AS m_role,
                       m.created_at AS m_created_at, m.updated_at AS m_updated_at
                FROM workspace_member m
                JOIN workspace w ON w.id = m.workspace_id
                WHERE m.user_id = %s AND w.status = 'active'
                ORDER BY w.created_at
                """,
                (user_id,),
            ).fetchall()
        return [
            (self._row_to_workspace(row), self._row_to_member(row, prefix="m_"))
            for row in rows
        ]

    def add_member(self, workspace_id: str, user_id: str, role: Role) -> WorkspaceMember:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO workspace_member (id, workspace_id, user_id, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), workspace_id, user_id, role.value),
                ).fetchone()
        except errors.UniqueViolation as exc:
            if "single_owner" in str(exc):
                raise ConstraintViolation("workspace already has an owner", {"field": "role"})
            raise ConstraintViolation("user is already a member", {"field": "user_id"})
        return self._row_to_member(row)

    def get_member(self, member_id: str) -> Optional[WorkspaceMember]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workspace_member WHERE id = %s", (member_id,)
            ).fetchone()
        return self._row_to_member(row) if row else None

    def get_membership(
        self, workspace_id: str, user_id: str, *, for_update: bool = False
    ) -> Optional[WorkspaceMember]:
        query = "SELECT * FROM workspace_member WHERE workspace_id = %s AND user_id = %s"
        if for_update:
            query += " FOR UPDATE"
        with self._connect() as conn:
            row = conn.execute(query, (workspace_id, user_id)).fetchone()
        return self._row_to_member(row) if row else None

    def list_members(self, workspace_id: str) -> List[WorkspaceMember]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM workspace_member WHERE workspace_id = %s ORDER BY created_at",
                (workspace_id,),
            ).fetchall()
        return [self._row_to_member(row) for row in rows]

    def set_member_role(self, member_id: str, role: Role) -> Optional[WorkspaceMember]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE workspace_member SET role = %s, updated_at = now()
                    WHERE id = %s RETURNING *
                    """,
                    (role.value, member_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("workspace already has an owner", {"field": "role"})
        return self._row_to_member(row) if row else None

    def delete_member(self, member_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM workspace_member WHERE id = %s", (member_id,))
            return cur.rowcount > 0

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO workspace_invitation (
                    id, workspace_id, email, role, token_hash, invited_by, expires_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    workspace_id,
                    email.strip().lower(),
                    role.value,
                    token_hash,
                    invited_by,
                    expires_at,
                ),
            ).fetchone()
        return self._row_to_invitation(row)

    def get_invitation(self, invitation_id: str) -> Optional[WorkspaceInvitation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workspace_invitation WHERE id = %s", (invitation_id,)
            ).fetchone()
        return self._row_to_invitation(row) if row else None

    def get_invitation_by_token(self, token_hash: str) -> Optional[WorkspaceInvitation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workspace_invitation WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_invitation(row) if row else None

    def list_invitations(self, workspace_id: str) -> List[WorkspaceInvitation]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM workspace_invitation
                WHERE workspace_id = %s ORDER BY created_at
                """,
                (workspace_id,),
            ).fetchall()
        return [self._row_to_invitation(row) for row in rows]

    def update_invitation(self, invitation_id: str, **fields: Any) -> Optional[WorkspaceInvitation]:
        clause, params = _set_clause(fields, _INVITATION_COLUMNS)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE workspace_invitation SET {clause} WHERE id = %s RETURNING *",
                (*params, invitation_id),
            ).fetchone()
        return self._row_to_invitation(row) if row else None

    def delete_invitation(self, invitation_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM workspace_invitation WHERE id = %s", (invitation_id,)
            )
            return cur.rowcount > 0

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_event (id, user_id, action, ip_addr, user_agent, detail)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    user_id,
                    action,
                    ip_addr,
                    user_agent,
                    json.dumps(detail) if detail else None,
                ),
            ).fetchone()
        return self._row_to_audit(row)

    def list_audit_events(
        self, user_id: Optional[str] = None, action: Optional[str] = None
    ) -> List[AuditEvent]:
        clauses, params = [], []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_event {where} ORDER BY created_at", params
            ).fetchall()
        return [self._row_to_audit(row) for row in rows]

    def purge_audit_events(self, older_than: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM audit_event WHERE created_at < %s", (older_than,)
            )
            return cur.rowcount
