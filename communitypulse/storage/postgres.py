from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from communitypulse.logging import get_logger
from communitypulse.storage.errors import ConstraintViolation
from communitypulse.storage.models import (
    Comment,
    Issue,
    Notification,
    Tenant,
    User,
    new_id,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS community (
        id TEXT PRIMARY KEY,
        key TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        contact_email TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        settings JSONB NOT NULL DEFAULT '{}'::jsonb,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_by TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'tenant_member',
        tenant_id TEXT REFERENCES community(id),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        apartment_number TEXT NOT NULL DEFAULT '',
        phone TEXT NOT NULL DEFAULT '',
        avatar TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notification (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        tenant_id TEXT REFERENCES community(id),
        type TEXT NOT NULL,
        message TEXT NOT NULL,
        link TEXT NOT NULL,
        created_by TEXT REFERENCES app_user(id),
        is_read BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS notification_unread_idx
        ON notification (user_id, is_read, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS issue (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES community(id),
        created_by TEXT NOT NULL REFERENCES app_user(id),
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        category TEXT NOT NULL DEFAULT 'other',
        status TEXT NOT NULL DEFAULT 'open',
        assigned_to TEXT REFERENCES app_user(id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS issue_comment (
        id TEXT PRIMARY KEY,
        issue_id TEXT NOT NULL REFERENCES issue(id) ON DELETE CASCADE,
        tenant_id TEXT NOT NULL REFERENCES community(id),
        author_id TEXT NOT NULL REFERENCES app_user(id),
        content TEXT NOT NULL,
        is_status_update BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for communities, users, notifications and issues."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the tables this store reads and writes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ----------------------------------------------------------

    @staticmethod
    def _tenant_from_row(row: Dict[str, Any]) -> Tenant:
        settings = row.get("settings") or {}
        if isinstance(settings, str):
            settings = json.loads(settings)
        return Tenant(
            id=str(row["id"]),
            key=row["key"],
            name=row["name"],
            contact_email=row.get("contact_email") or "",
            description=row.get("description") or "",
            settings=settings,
            is_active=row.get("is_active", True),
            created_by=row.get("created_by"),
            created_at=row.get("created_at", datetime.utcnow()),
        )

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name") or "",
            role=row.get("role", "tenant_member"),
            tenant_id=row.get("tenant_id"),
            is_active=row.get("is_active", True),
            apartment_number=row.get("apartment_number") or "",
            phone=row.get("phone") or "",
            avatar=row.get("avatar") or "",
            created_at=row.get("created_at", datetime.utcnow()),
        )

    @staticmethod
    def _notification_from_row(row: Dict[str, Any]) -> Notification:
        return Notification(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            tenant_id=row.get("tenant_id"),
            type=row["type"],
            message=row["message"],
            link=row["link"],
            created_by=row.get("created_by"),
            is_read=bool(row.get("is_read", False)),
            created_at=row.get("created_at", datetime.utcnow()),
        )

    @staticmethod
    def _issue_from_row(row: Dict[str, Any]) -> Issue:
        return Issue(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            created_by=str(row["created_by"]),
            title=row["title"],
            description=row.get("description") or "",
            category=row.get("category", "other"),
            status=row.get("status", "open"),
            assigned_to=row.get("assigned_to"),
            created_at=row.get("created_at", datetime.utcnow()),
            updated_at=row.get("updated_at", datetime.utcnow()),
        )

    @staticmethod
    def _comment_from_row(row: Dict[str, Any]) -> Comment:
        return Comment(
            id=str(row["id"]),
            issue_id=str(row["issue_id"]),
            tenant_id=str(row["tenant_id"]),
            author_id=str(row["author_id"]),
            content=row["content"],
            is_status_update=bool(row.get("is_status_update", False)),
            created_at=row.get("created_at", datetime.utcnow()),
        )

    # -- tenants --------------------------------------------------------------

    def create_tenant(
        self,
        key: str,
        name: str,
        *,
        contact_email: str = "",
        description: str = "",
        settings: Optional[Dict] = None,
        created_by: Optional[str] = None,
    ) -> Tenant:
        tenant_id = new_id()
        normalized = key.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO community (id, key, name, contact_email, description, settings, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        tenant_id,
                        normalized,
                        name,
                        contact_email,
                        description,
                        json.dumps(settings or {}),
                        created_by,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("subdomain already exists", {"field": "key"})
        return self._tenant_from_row(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM community WHERE id = %s", (tenant_id,)
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    def get_tenant_by_key(self, key: str, *, active_only: bool = True) -> Optional[Tenant]:
        normalized = (key or "").strip().lower()
        query = "SELECT * FROM community WHERE key = %s"
        if active_only:
            query += " AND is_active"
        with self._connect() as conn:
            row = conn.execute(query, (normalized,)).fetchone()
        return self._tenant_from_row(row) if row else None

    def list_tenants(self, *, include_inactive: bool = True) -> List[Tenant]:
        query = "SELECT * FROM community"
        if not include_inactive:
            query += " WHERE is_active"
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._tenant_from_row(row) for row in rows]

    def set_tenant_active(self, tenant_id: str, is_active: bool) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE community SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, tenant_id),
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    def update_tenant_settings(self, tenant_id: str, settings: Dict) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE community SET settings = %s WHERE id = %s RETURNING *",
                (json.dumps(settings), tenant_id),
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    # -- users ----------------------------------------------------------------

    def create_user(
        self,
        email: str,
        name: str,
        *,
        tenant_id: Optional[str] = None,
        role: str = "tenant_member",
        is_active: bool = True,
        apartment_number: str = "",
        phone: str = "",
    ) -> User:
        user_id = new_id()
        normalized = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role, tenant_id, is_active, apartment_number, phone)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalized,
                        name,
                        role,
                        tenant_id,
                        is_active,
                        apartment_number,
                        phone,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "tenant not found for user", {"tenant_id": tenant_id}
            )
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s",
                ((email or "").strip().lower(),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(
        self, tenant_id: Optional[str] = None, *, role: Optional[str] = None, limit: int = 100
    ) -> List[User]:
        clauses: List[str] = []
        params: List[Any] = []
        if tenant_id:
            clauses.append("tenant_id = %s")
            params.append(tenant_id)
        if role:
            clauses.append("role = %s")
            params.append(role)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM app_user{where} ORDER BY created_at DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def list_members(
        self,
        tenant_id: str,
        *,
        role: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[User], int]:
        """Members of one community ordered by role then name, plus the unpaged total."""
        clauses = ["tenant_id = %s"]
        params: List[Any] = [tenant_id]
        if role:
            clauses.append("role = %s")
            params.append(role)
        needle = (search or "").strip()
        if needle:
            clauses.append(
                "(name ILIKE %s OR email ILIKE %s OR apartment_number ILIKE %s)"
            )
            pattern = f"%{needle}%"
            params.extend([pattern, pattern, pattern])
        where = " AND ".join(clauses)
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM app_user WHERE {where}", tuple(params)
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM app_user WHERE {where} ORDER BY role, lower(name) LIMIT %s OFFSET %s",
                tuple(params + [limit, offset]),
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return [self._user_from_row(row) for row in rows], total

    def count_users(self, tenant_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM app_user WHERE tenant_id = %s",
                (tenant_id,),
            ).fetchone()
        return int(row["total"]) if row else 0

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        apartment_number: Optional[str] = None,
        phone: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Optional[User]:
        updates = {
            "name": name,
            "apartment_number": apartment_number,
            "phone": phone,
            "avatar": avatar,
        }
        fields = [(column, value) for column, value in updates.items() if value is not None]
        if not fields:
            return self.get_user(user_id)
        assignments = ", ".join(f"{column} = %s" for column, _ in fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                tuple(value for _, value in fields) + (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_tenant(self, user_id: str, tenant_id: Optional[str]) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE app_user SET tenant_id = %s, updated_at = now() WHERE id = %s RETURNING *",
                    (tenant_id, user_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "tenant not found for user", {"tenant_id": tenant_id}
            )
        return self._user_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (user_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    last_updated_at = now()
                """,
                (user_id, password_hash, password_algo),
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # -- notifications --------------------------------------------------------

    def create_notification(
        self,
        user_id: str,
        *,
        tenant_id: Optional[str],
        type: str,
        message: str,
        link: str,
        created_by: Optional[str] = None,
    ) -> Notification:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO notification (id, user_id, tenant_id, type, message, link, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), user_id, tenant_id, type, message, link, created_by),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for notification", {"user_id": user_id}
            )
        return self._notification_from_row(row)

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM notification WHERE id = %s", (notification_id,)
            ).fetchone()
        return self._notification_from_row(row) if row else None

    def list_unread_notifications(self, user_id: str, limit: int = 20) -> List[Notification]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM notification
                WHERE user_id = %s AND NOT is_read
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [self._notification_from_row(row) for row in rows]

    def count_unread_notifications(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM notification WHERE user_id = %s AND NOT is_read",
                (user_id,),
            ).fetchone()
        return int(row["total"]) if row else 0

    def mark_notification_read(
        self, notification_id: str, user_id: str
    ) -> Optional[Notification]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE notification SET is_read = TRUE
                WHERE id = %s AND user_id = %s
                RETURNING *
                """,
                (notification_id, user_id),
            ).fetchone()
        return self._notification_from_row(row) if row else None

    def mark_all_notifications_read(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE notification SET is_read = TRUE WHERE user_id = %s AND NOT is_read",
                (user_id,),
            )
            return max(cur.rowcount, 0)

    # -- issues and comments --------------------------------------------------

    def create_issue(
        self,
        tenant_id: str,
        created_by: str,
        *,
        title: str,
        description: str,
        category: str = "other",
    ) -> Issue:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO issue (id, tenant_id, created_by, title, description, category)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), tenant_id, created_by, title, description, category),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "tenant not found for issue", {"tenant_id": tenant_id}
            )
        return self._issue_from_row(row)

    def get_issue(self, issue_id: str, tenant_id: Optional[str] = None) -> Optional[Issue]:
        with self._connect() as conn:
            if tenant_id:
                row = conn.execute(
                    "SELECT * FROM issue WHERE id = %s AND tenant_id = %s",
                    (issue_id, tenant_id),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM issue WHERE id = %s", (issue_id,)
                ).fetchone()
        return self._issue_from_row(row) if row else None

    def list_issues(
        self, tenant_id: str, *, status: Optional[str] = None, limit: int = 50
    ) -> List[Issue]:
        with self._connect() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM issue WHERE tenant_id = %s AND status = %s ORDER BY created_at DESC LIMIT %s",
                    (tenant_id, status, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM issue WHERE tenant_id = %s ORDER BY created_at DESC LIMIT %s",
                    (tenant_id, limit),
                ).fetchall()
        return [self._issue_from_row(row) for row in rows]

    def count_issues(self, tenant_id: str, *, status: Optional[str] = None) -> int:
        with self._connect() as conn:
            if status:
                row = conn.execute(
                    "SELECT COUNT(*) AS total FROM issue WHERE tenant_id = %s AND status = %s",
                    (tenant_id, status),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS total FROM issue WHERE tenant_id = %s",
                    (tenant_id,),
                ).fetchone()
        return int(row["total"]) if row else 0

    def update_issue(
        self,
        issue_id: str,
        *,
        status: Optional[str] = None,
        assigned_to: Optional[str] = None,
    ) -> Optional[Issue]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE issue
                SET status = COALESCE(%s, status),
                    assigned_to = COALESCE(%s, assigned_to),
                    updated_at = clock_timestamp()
                WHERE id = %s
                RETURNING *
                """,
                (status, assigned_to, issue_id),
            ).fetchone()
        return self._issue_from_row(row) if row else None

    def create_comment(
        self,
        issue_id: str,
        author_id: str,
        content: str,
        *,
        is_status_update: bool = False,
    ) -> Comment:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO issue_comment (id, issue_id, tenant_id, author_id, content, is_status_update)
                SELECT %s, i.id, i.tenant_id, %s, %s, %s FROM issue i WHERE i.id = %s
                RETURNING *
                """,
                (new_id(), author_id, content, is_status_update, issue_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation(
                "issue not found for comment", {"issue_id": issue_id}
            )
        return self._comment_from_row(row)

    def list_comments(self, issue_id: str) -> List[Comment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM issue_comment WHERE issue_id = %s ORDER BY created_at ASC",
                (issue_id,),
            ).fetchall()
        return [self._comment_from_row(row) for row in rows]

    def platform_stats(self, open_statuses: Iterable[str]) -> Dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM community) AS communities,
                    (SELECT COUNT(*) FROM app_user) AS users,
                    (SELECT COUNT(*) FROM issue) AS issues,
                    (SELECT COUNT(*) FROM issue WHERE status = ANY(%s)) AS open_issues
                """,
                (list(open_statuses),),
            ).fetchone()
        return {key: int(row[key]) for key in ("communities", "users", "issues", "open_issues")}
