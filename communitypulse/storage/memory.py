from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

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


class MemoryStore:
    """In-memory backing store with a JSON snapshot under ``fs_root/state``."""

    def __init__(self, fs_root: str = "/tmp/communitypulse") -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.notifications: Dict[str, Notification] = {}
        self.issues: Dict[str, Issue] = {}
        self.comments: Dict[str, List[Comment]] = {}
        # RLock so store methods can call each other while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def verify_connection(self) -> None:
        self._state_path()

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
        normalized = key.strip().lower()
        with self._data_lock:
            if any(t.key == normalized for t in self.tenants.values()):
                raise ConstraintViolation("subdomain already exists", {"field": "key"})
            tenant = Tenant(
                id=new_id(),
                key=normalized,
                name=name,
                contact_email=contact_email,
                description=description,
                settings=dict(settings or {}),
                created_by=created_by,
            )
            self.tenants[tenant.id] = tenant
            self._persist_state()
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def get_tenant_by_key(self, key: str, *, active_only: bool = True) -> Optional[Tenant]:
        normalized = (key or "").strip().lower()
        with self._data_lock:
            for tenant in self.tenants.values():
                if tenant.key == normalized and (tenant.is_active or not active_only):
                    return tenant
            return None

    def list_tenants(self, *, include_inactive: bool = True) -> List[Tenant]:
        with self._data_lock:
            results = [
                t for t in self.tenants.values() if include_inactive or t.is_active
            ]
            return sorted(reversed(results), key=lambda t: t.created_at, reverse=True)

    def set_tenant_active(self, tenant_id: str, is_active: bool) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.is_active = is_active
            self._persist_state()
            return tenant

    def update_tenant_settings(self, tenant_id: str, settings: Dict) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.settings = dict(settings)
            self._persist_state()
            return tenant

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
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if tenant_id is not None and tenant_id not in self.tenants:
                raise ConstraintViolation(
                    "tenant not found for user", {"tenant_id": tenant_id}
                )
            user = User(
                id=new_id(),
                email=normalized,
                name=name,
                role=role,
                tenant_id=tenant_id,
                is_active=is_active,
                apartment_number=apartment_number,
                phone=phone,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = (email or "").strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def list_users(
        self, tenant_id: Optional[str] = None, *, role: Optional[str] = None, limit: int = 100
    ) -> List[User]:
        with self._data_lock:
            results = [
                u
                for u in self.users.values()
                if (not tenant_id or u.tenant_id == tenant_id)
                and (not role or u.role == role)
            ]
            return sorted(reversed(results), key=lambda u: u.created_at, reverse=True)[:limit]

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
        needle = (search or "").strip().lower()
        with self._data_lock:
            results = [
                u
                for u in self.users.values()
                if u.tenant_id == tenant_id
                and (not role or u.role == role)
                and (
                    not needle
                    or needle in u.name.lower()
                    or needle in u.email
                    or needle in u.apartment_number.lower()
                )
            ]
            results.sort(key=lambda u: (u.role, u.name.lower()))
            return results[offset : offset + limit], len(results)

    def count_users(self, tenant_id: str) -> int:
        with self._data_lock:
            return sum(1 for u in self.users.values() if u.tenant_id == tenant_id)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return user

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def update_user_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        apartment_number: Optional[str] = None,
        phone: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if name is not None:
                user.name = name
            if apartment_number is not None:
                user.apartment_number = apartment_number
            if phone is not None:
                user.phone = phone
            if avatar is not None:
                user.avatar = avatar
            self._persist_state()
            return user

    def set_user_tenant(self, user_id: str, tenant_id: Optional[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if tenant_id is not None and tenant_id not in self.tenants:
                raise ConstraintViolation(
                    "tenant not found for user", {"tenant_id": tenant_id}
                )
            user.tenant_id = tenant_id
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

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
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for notification", {"user_id": user_id}
                )
            notification = Notification(
                id=new_id(),
                user_id=user_id,
                tenant_id=tenant_id,
                type=type,
                message=message,
                link=link,
                created_by=created_by,
            )
            self.notifications[notification.id] = notification
            self._persist_state()
            return notification

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        with self._data_lock:
            return self.notifications.get(notification_id)

    def list_unread_notifications(self, user_id: str, limit: int = 20) -> List[Notification]:
        with self._data_lock:
            results = [
                n
                for n in self.notifications.values()
                if n.user_id == user_id and not n.is_read
            ]
            # Reversed insertion order breaks created_at ties newest-first
            return sorted(reversed(results), key=lambda n: n.created_at, reverse=True)[:limit]

    def count_unread_notifications(self, user_id: str) -> int:
        with self._data_lock:
            return sum(
                1
                for n in self.notifications.values()
                if n.user_id == user_id and not n.is_read
            )

    def mark_notification_read(
        self, notification_id: str, user_id: str
    ) -> Optional[Notification]:
        with self._data_lock:
            notification = self.notifications.get(notification_id)
            if not notification or notification.user_id != user_id:
                return None
            if not notification.is_read:
                notification.is_read = True
                self._persist_state()
            return notification

    def mark_all_notifications_read(self, user_id: str) -> int:
        with self._data_lock:
            updated = 0
            for notification in self.notifications.values():
                if notification.user_id == user_id and not notification.is_read:
                    notification.is_read = True
                    updated += 1
            if updated:
                self._persist_state()
            return updated

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
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation(
                    "tenant not found for issue", {"tenant_id": tenant_id}
                )
            issue = Issue(
                id=new_id(),
                tenant_id=tenant_id,
                created_by=created_by,
                title=title,
                description=description,
                category=category,
            )
            self.issues[issue.id] = issue
            self._persist_state()
            return issue

    def get_issue(self, issue_id: str, tenant_id: Optional[str] = None) -> Optional[Issue]:
        with self._data_lock:
            issue = self.issues.get(issue_id)
            if issue and tenant_id and issue.tenant_id != tenant_id:
                return None
            return issue

    def list_issues(
        self, tenant_id: str, *, status: Optional[str] = None, limit: int = 50
    ) -> List[Issue]:
        with self._data_lock:
            results = [
                i
                for i in self.issues.values()
                if i.tenant_id == tenant_id and (not status or i.status == status)
            ]
            return sorted(reversed(results), key=lambda i: i.created_at, reverse=True)[:limit]

    def count_issues(self, tenant_id: str, *, status: Optional[str] = None) -> int:
        with self._data_lock:
            return sum(
                1
                for i in self.issues.values()
                if i.tenant_id == tenant_id and (not status or i.status == status)
            )

    def update_issue(
        self,
        issue_id: str,
        *,
        status: Optional[str] = None,
        assigned_to: Optional[str] = None,
    ) -> Optional[Issue]:
        with self._data_lock:
            issue = self.issues.get(issue_id)
            if not issue:
                return None
            if status is not None:
                issue.status = status
            if assigned_to is not None:
                issue.assigned_to = assigned_to
            issue.updated_at = datetime.utcnow()
            self._persist_state()
            return issue

    def create_comment(
        self,
        issue_id: str,
        author_id: str,
        content: str,
        *,
        is_status_update: bool = False,
    ) -> Comment:
        with self._data_lock:
            issue = self.issues.get(issue_id)
            if not issue:
                raise ConstraintViolation(
                    "issue not found for comment", {"issue_id": issue_id}
                )
            comment = Comment(
                id=new_id(),
                issue_id=issue_id,
                tenant_id=issue.tenant_id,
                author_id=author_id,
                content=content,
                is_status_update=is_status_update,
            )
            self.comments.setdefault(issue_id, []).append(comment)
            self._persist_state()
            return comment

    def list_comments(self, issue_id: str) -> List[Comment]:
        with self._data_lock:
            return list(self.comments.get(issue_id, []))

    # -- persistence ----------------------------------------------------------

    def platform_stats(self, open_statuses: Iterable[str]) -> Dict[str, int]:
        open_set = set(open_statuses)
        with self._data_lock:
            return {
                "communities": len(self.tenants),
                "users": len(self.users),
                "issues": len(self.issues),
                "open_issues": sum(1 for i in self.issues.values() if i.status in open_set),
            }

    def reset(self) -> None:
        """Drop every record and rewrite the snapshot; used between test runs."""
        with self._data_lock:
            self.tenants.clear()
            self.users.clear()
            self.credentials.clear()
            self.notifications.clear()
            self.issues.clear()
            self.comments.clear()
            self._persist_state()

    def _persist_state(self) -> None:
        state = {
            "tenants": [self._serialize_tenant(t) for t in self.tenants.values()],
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "notifications": [
                self._serialize_notification(n) for n in self.notifications.values()
            ],
            "issues": [self._serialize_issue(i) for i in self.issues.values()],
            "comments": [
                self._serialize_comment(c)
                for comments in self.comments.values()
                for c in comments
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.tenants = {
            t["id"]: self._deserialize_tenant(t) for t in data.get("tenants", [])
        }
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.notifications = {
            n["id"]: self._deserialize_notification(n)
            for n in data.get("notifications", [])
        }
        self.issues = {
            i["id"]: self._deserialize_issue(i) for i in data.get("issues", [])
        }
        self.comments = {}
        for comment_data in data.get("comments", []):
            comment = self._deserialize_comment(comment_data)
            self.comments.setdefault(comment.issue_id, []).append(comment)
        for comments in self.comments.values():
            comments.sort(key=lambda c: c.created_at)
        return True

    def _serialize_tenant(self, tenant: Tenant) -> dict:
        return {
            "id": tenant.id,
            "key": tenant.key,
            "name": tenant.name,
            "contact_email": tenant.contact_email,
            "description": tenant.description,
            "settings": tenant.settings,
            "is_active": tenant.is_active,
            "created_by": tenant.created_by,
            "created_at": self._serialize_datetime(tenant.created_at),
        }

    def _deserialize_tenant(self, data: dict) -> Tenant:
        return Tenant(
            id=str(data["id"]),
            key=data["key"],
            name=data.get("name", data["key"]),
            contact_email=data.get("contact_email", ""),
            description=data.get("description", ""),
            settings=data.get("settings") or {},
            is_active=data.get("is_active", True),
            created_by=data.get("created_by"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "tenant_id": user.tenant_id,
            "is_active": user.is_active,
            "apartment_number": user.apartment_number,
            "phone": user.phone,
            "avatar": user.avatar,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            role=data.get("role", "tenant_member"),
            tenant_id=data.get("tenant_id"),
            is_active=data.get("is_active", True),
            apartment_number=data.get("apartment_number", ""),
            phone=data.get("phone", ""),
            avatar=data.get("avatar", ""),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_notification(self, notification: Notification) -> dict:
        return {
            "id": notification.id,
            "user_id": notification.user_id,
            "tenant_id": notification.tenant_id,
            "type": notification.type,
            "message": notification.message,
            "link": notification.link,
            "created_by": notification.created_by,
            "is_read": notification.is_read,
            "created_at": self._serialize_datetime(notification.created_at),
        }

    def _deserialize_notification(self, data: dict) -> Notification:
        return Notification(
            id=str(data["id"]),
            user_id=data["user_id"],
            tenant_id=data.get("tenant_id"),
            type=data["type"],
            message=data["message"],
            link=data["link"],
            created_by=data.get("created_by"),
            is_read=data.get("is_read", False),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_issue(self, issue: Issue) -> dict:
        return {
            "id": issue.id,
            "tenant_id": issue.tenant_id,
            "created_by": issue.created_by,
            "title": issue.title,
            "description": issue.description,
            "category": issue.category,
            "status": issue.status,
            "assigned_to": issue.assigned_to,
            "created_at": self._serialize_datetime(issue.created_at),
            "updated_at": self._serialize_datetime(issue.updated_at),
        }

    def _deserialize_issue(self, data: dict) -> Issue:
        return Issue(
            id=str(data["id"]),
            tenant_id=data["tenant_id"],
            created_by=data["created_by"],
            title=data["title"],
            description=data.get("description", ""),
            category=data.get("category", "other"),
            status=data.get("status", "open"),
            assigned_to=data.get("assigned_to"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )

    def _serialize_comment(self, comment: Comment) -> dict:
        return {
            "id": comment.id,
            "issue_id": comment.issue_id,
            "tenant_id": comment.tenant_id,
            "author_id": comment.author_id,
            "content": comment.content,
            "is_status_update": comment.is_status_update,
            "created_at": self._serialize_datetime(comment.created_at),
        }

    def _deserialize_comment(self, data: dict) -> Comment:
        return Comment(
            id=str(data["id"]),
            issue_id=data["issue_id"],
            tenant_id=data["tenant_id"],
            author_id=data["author_id"],
            content=data["content"],
            is_status_update=data.get("is_status_update", False),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
