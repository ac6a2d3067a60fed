from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from communitypulse.logging import get_logger
from communitypulse.service.errors import NotFoundError, ServerError, ValidationError
from communitypulse.service.realtime import ConnectionRegistry, personal_room
from communitypulse.storage.models import Notification, User

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 500
NOTIFICATION_EVENT = "notification:new"


class NotificationType(str, Enum):
    STATUS_UPDATE = "STATUS_UPDATE"
    NEW_COMMENT = "NEW_COMMENT"
    ASSIGNED_TO_YOU = "ASSIGNED_TO_YOU"
    NEW_ISSUE_IN_COMMUNITY = "NEW_ISSUE_IN_COMMUNITY"


class NotificationStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_notification(
        self,
        user_id: str,
        *,
        tenant_id: Optional[str],
        type: str,
        message: str,
        link: str,
        created_by: Optional[str] = None,
    ) -> Notification: ...

    def get_notification(self, notification_id: str) -> Optional[Notification]: ...

    def list_unread_notifications(self, user_id: str, limit: int = 20) -> List[Notification]: ...

    def count_unread_notifications(self, user_id: str) -> int: ...

    def mark_notification_read(
        self, notification_id: str, user_id: str
    ) -> Optional[Notification]: ...

    def mark_all_notifications_read(self, user_id: str) -> int: ...


class NotificationService:
    """Persists notifications, then fans them out to the target's personal room.

    Write and publish are two sequential steps: the record is inserted and
    read back before anything is pushed, so a client that polls right after a
    live event always finds it. Calls are not deduplicated.
    """

    def __init__(
        self,
        store: NotificationStore,
        registry: ConnectionRegistry,
        *,
        page_size: int = 20,
    ) -> None:
        self.store = store
        self.registry = registry
        self.page_size = page_size

    def serialize(self, notification: Notification) -> Dict[str, Any]:
        created_by = None
        if notification.created_by:
            actor = self.store.get_user(notification.created_by)
            created_by = (
                {"id": actor.id, "name": actor.name, "avatar": actor.avatar}
                if actor
                else {"id": notification.created_by, "name": None, "avatar": None}
            )
        return {
            "id": notification.id,
            "user_id": notification.user_id,
            "tenant_id": notification.tenant_id,
            "type": notification.type,
            "message": notification.message,
            "link": notification.link,
            "created_by": created_by,
            "is_read": notification.is_read,
            "created_at": notification.created_at.isoformat(),
        }

    def dispatch(
        self,
        user_id: str,
        *,
        type: NotificationType,
        message: str,
        link: str,
        tenant_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not isinstance(type, NotificationType):
            type = NotificationType(type)
        if not message or len(message) > MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"message must be 1-{MAX_MESSAGE_LENGTH} characters",
                reason="invalid_message",
                detail={"field": "message"},
            )
        if not link:
            raise ValidationError("link is required", reason="link_required", detail={"field": "link"})

        # 1. durable write; failures propagate and nothing is published
        created = self.store.create_notification(
            user_id,
            tenant_id=tenant_id,
            type=type.value,
            message=message,
            link=link,
            created_by=created_by,
        )
        # 2. read back so the pushed shape matches what a poll returns
        persisted = self.store.get_notification(created.id)
        if persisted is None:
            raise ServerError("notification not readable after insert")
        payload = self.serialize(persisted)

        # 3. best-effort fan-out; the stored record is the durability boundary
        try:
            delivered = self.registry.publish(personal_room(user_id), NOTIFICATION_EVENT, payload)
        except Exception as exc:
            logger.warning(
                "notification_publish_failed",
                notification_id=persisted.id,
                user_id=user_id,
                error=str(exc),
            )
            delivered = 0
        logger.info(
            "notification_dispatched",
            notification_id=persisted.id,
            user_id=user_id,
            type=type.value,
            delivered=delivered,
        )
        return payload

    def list_unread(self, user_id: str, *, limit: Optional[int] = None) -> Dict[str, Any]:
        records = self.store.list_unread_notifications(user_id, limit or self.page_size)
        return {
            "notifications": [self.serialize(n) for n in records],
            "unread_count": self.store.count_unread_notifications(user_id),
        }

    def mark_read(self, notification_id: str, user_id: str) -> Dict[str, Any]:
        updated = self.store.mark_notification_read(notification_id, user_id)
        if updated is None:
            raise NotFoundError("Notification not found", reason="notification_not_found")
        return self.serialize(updated)

    def mark_all_read(self, user_id: str) -> int:
        updated = self.store.mark_all_notifications_read(user_id)
        logger.info("notifications_marked_read", user_id=user_id, updated=updated)
        return updated


__all__ = [
    "MAX_MESSAGE_LENGTH",
    "NOTIFICATION_EVENT",
    "NotificationService",
    "NotificationStore",
    "NotificationType",
]
