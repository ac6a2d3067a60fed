from __future__ import annotations

from typing import Any, Dict, List, Optional

from communitypulse.logging import get_logger
from communitypulse.service.authz import Role
from communitypulse.service.errors import NotFoundError, ValidationError
from communitypulse.service.notifications import NotificationService, NotificationType
from communitypulse.service.realtime import ConnectionRegistry, community_room, issue_room
from communitypulse.storage.models import Comment, Issue, Tenant, User

logger = get_logger(__name__)

ISSUE_STATUSES = ("open", "acknowledged", "in_progress", "resolved")
OPEN_ISSUE_STATUSES = ("open", "acknowledged", "in_progress")
ISSUE_CATEGORIES = (
    "maintenance",
    "security",
    "cleanliness",
    "noise",
    "parking",
    "amenities",
    "other",
)

ISSUE_CREATED_EVENT = "issue:created"
ISSUE_UPDATED_EVENT = "issue:update"
COMMENT_CREATED_EVENT = "comment:new"


def serialize_issue(issue: Issue) -> Dict[str, Any]:
    return {
        "id": issue.id,
        "tenant_id": issue.tenant_id,
        "created_by": issue.created_by,
        "title": issue.title,
        "description": issue.description,
        "category": issue.category,
        "status": issue.status,
        "assigned_to": issue.assigned_to,
        "created_at": issue.created_at.isoformat(),
        "updated_at": issue.updated_at.isoformat(),
    }


def serialize_comment(comment: Comment, author: Optional[User] = None) -> Dict[str, Any]:
    return {
        "id": comment.id,
        "issue_id": comment.issue_id,
        "tenant_id": comment.tenant_id,
        "author": {
            "id": comment.author_id,
            "name": author.name if author else None,
            "avatar": author.avatar if author else None,
        },
        "content": comment.content,
        "is_status_update": comment.is_status_update,
        "created_at": comment.created_at.isoformat(),
    }


def _issue_link(issue_id: str) -> str:
    return f"/issues/{issue_id}"


class IssueService:
    """Issue and comment writes that produce realtime events and notifications."""

    def __init__(
        self,
        store,
        registry: ConnectionRegistry,
        notifications: NotificationService,
    ) -> None:
        self.store = store
        self.registry = registry
        self.notifications = notifications

    def _get(self, issue_id: str, tenant: Tenant) -> Issue:
        issue = self.store.get_issue(issue_id, tenant.id)
        if issue is None:
            raise NotFoundError("Issue not found", reason="issue_not_found")
        return issue

    def _publish(self, room: str, event: str, data: Dict[str, Any]) -> None:
        try:
            self.registry.publish(room, event, data)
        except Exception as exc:
            logger.warning("realtime_publish_failed", room=room, event_name=event, error=str(exc))

    def create(
        self,
        actor: User,
        tenant: Tenant,
        *,
        title: str,
        description: str,
        category: str = "other",
    ) -> Dict[str, Any]:
        if category not in ISSUE_CATEGORIES:
            raise ValidationError(
                f"category must be one of {', '.join(ISSUE_CATEGORIES)}",
                reason="invalid_category",
                detail={"field": "category"},
            )
        issue = self.store.create_issue(
            tenant.id,
            actor.id,
            title=title,
            description=description,
            category=category,
        )
        payload = serialize_issue(issue)
        self._publish(community_room(tenant.id), ISSUE_CREATED_EVENT, payload)

        admins = self.store.list_users(tenant.id, role=Role.TENANT_ADMIN.value, limit=1000)
        for admin in admins:
            if admin.id == actor.id or not admin.is_active:
                continue
            self.notifications.dispatch(
                admin.id,
                type=NotificationType.NEW_ISSUE_IN_COMMUNITY,
                message=f"New issue reported: {issue.title}"[:500],
                link=_issue_link(issue.id),
                tenant_id=tenant.id,
                created_by=actor.id,
            )
        logger.info("issue_created", issue_id=issue.id, tenant_id=tenant.id)
        return payload

    def get(self, issue_id: str, tenant: Tenant) -> Dict[str, Any]:
        return serialize_issue(self._get(issue_id, tenant))

    def list(self, tenant: Tenant, *, status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        if status and status not in ISSUE_STATUSES:
            raise ValidationError("invalid status filter", reason="invalid_status")
        return [
            serialize_issue(i) for i in self.store.list_issues(tenant.id, status=status, limit=limit)
        ]

    def update_status(
        self,
        actor: User,
        tenant: Tenant,
        issue_id: str,
        *,
        status: str,
        assigned_to: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Dict[str, Any]:
        if status not in ISSUE_STATUSES:
            raise ValidationError(
                f"status must be one of {', '.join(ISSUE_STATUSES)}",
                reason="invalid_status",
                detail={"field": "status"},
            )
        issue = self._get(issue_id, tenant)
        previous_assignee = issue.assigned_to
        if assigned_to:
            assignee = self.store.get_user(assigned_to)
            if assignee is None or assignee.tenant_id != tenant.id:
                raise ValidationError(
                    "assignee must belong to this community",
                    reason="invalid_assignee",
                    detail={"field": "assigned_to"},
                )
        updated = self.store.update_issue(issue.id, status=status, assigned_to=assigned_to)
        if updated is None:
            raise NotFoundError("Issue not found", reason="issue_not_found")
        if note:
            self.store.create_comment(updated.id, actor.id, note, is_status_update=True)

        payload = serialize_issue(updated)
        self._publish(issue_room(updated.id), ISSUE_UPDATED_EVENT, payload)

        if updated.created_by != actor.id:
            self.notifications.dispatch(
                updated.created_by,
                type=NotificationType.STATUS_UPDATE,
                message=f'Your issue "{updated.title}" is now {status.replace("_", " ")}'[:500],
                link=_issue_link(updated.id),
                tenant_id=tenant.id,
                created_by=actor.id,
            )
        if assigned_to and assigned_to != previous_assignee and assigned_to != actor.id:
            self.notifications.dispatch(
                assigned_to,
                type=NotificationType.ASSIGNED_TO_YOU,
                message=f"You have been assigned: {updated.title}"[:500],
                link=_issue_link(updated.id),
                tenant_id=tenant.id,
                created_by=actor.id,
            )
        logger.info("issue_status_updated", issue_id=updated.id, status=status)
        return payload

    def add_comment(
        self, actor: User, tenant: Tenant, issue_id: str, *, content: str
    ) -> Dict[str, Any]:
        issue = self._get(issue_id, tenant)
        comment = self.store.create_comment(issue.id, actor.id, content)
        payload = serialize_comment(comment, actor)
        self._publish(issue_room(issue.id), COMMENT_CREATED_EVENT, payload)

        if issue.created_by != actor.id:
            self.notifications.dispatch(
                issue.created_by,
                type=NotificationType.NEW_COMMENT,
                message=f"{actor.name} commented on: {issue.title}"[:500],
                link=_issue_link(issue.id),
                tenant_id=tenant.id,
                created_by=actor.id,
            )
        return payload

    def list_comments(self, issue_id: str, tenant: Tenant) -> List[Dict[str, Any]]:
        issue = self._get(issue_id, tenant)
        comments = self.store.list_comments(issue.id)
        authors: Dict[str, Optional[User]] = {}
        for comment in comments:
            if comment.author_id not in authors:
                authors[comment.author_id] = self.store.get_user(comment.author_id)
        return [serialize_comment(c, authors.get(c.author_id)) for c in comments]


__all__ = [
    "COMMENT_CREATED_EVENT",
    "ISSUE_CATEGORIES",
    "ISSUE_CREATED_EVENT",
    "ISSUE_STATUSES",
    "OPEN_ISSUE_STATUSES",
    "ISSUE_UPDATED_EVENT",
    "IssueService",
    "serialize_comment",
    "serialize_issue",
]
