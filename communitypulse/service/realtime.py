from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set

from communitypulse.logging import get_logger
from communitypulse.service.authz import is_operator, may_act_in_tenant
from communitypulse.service.errors import (
    AuthorizationError,
    InfrastructureError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from communitypulse.storage.models import Issue, Tenant, User

logger = get_logger(__name__)

JOIN_USER = "join:user"
JOIN_COMMUNITY = "join:community"
JOIN_ISSUE = "join:issue"
JOIN_TYPES = (JOIN_USER, JOIN_COMMUNITY, JOIN_ISSUE)

# Frames held for a client that is not reading; later ones are dropped
MAX_PENDING_MESSAGES = 256


def personal_room(user_id: str) -> str:
    return f"user:{user_id}"


def community_room(tenant_id: str) -> str:
    return f"community:{tenant_id}"


def issue_room(issue_id: str) -> str:
    return f"issue:{issue_id}"


@dataclass
class Connection:
    """One live socket; anonymous to the registry until it joins rooms."""

    id: str
    principal_id: str
    queue: asyncio.Queue
    loop: asyncio.AbstractEventLoop
    rooms: Set[str] = field(default_factory=set)

    def deliver(self, message: Dict[str, Any]) -> None:
        # Scheduling onto the owning loop keeps per-connection FIFO order even
        # when publishers run on worker threads.
        self.loop.call_soon_threadsafe(self._enqueue, message)

    def _enqueue(self, message: Dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                "realtime_delivery_dropped",
                connection_id=self.id,
                event_name=message.get("event"),
                reason="queue_full",
            )


class ConnectionRegistry:
    """Process-wide map of live connections to the rooms they joined.

    Owned by the realtime transport and handed by reference to publishers.
    Membership is never persisted and never inferred from authentication.
    Delivery is best-effort and at-most-once per connection per publish.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, Set[str]] = {}

    def connect(
        self,
        principal_id: str,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        queue: Optional[asyncio.Queue] = None,
    ) -> Connection:
        conn = Connection(
            id=str(uuid.uuid4()),
            principal_id=principal_id,
            queue=queue if queue is not None else asyncio.Queue(maxsize=MAX_PENDING_MESSAGES),
            loop=loop or asyncio.get_running_loop(),
        )
        with self._lock:
            self._connections[conn.id] = conn
        logger.info("realtime_connected", connection_id=conn.id, user_id=principal_id)
        return conn

    def join(self, connection_id: str, room: str) -> bool:
        """Add membership; returns False when already joined."""
        with self._lock:
            conn = self._connections.get(connection_id)
            if conn is None:
                raise NotFoundError("connection not found", reason="connection_not_found")
            if room in conn.rooms:
                return False
            conn.rooms.add(room)
            self._rooms.setdefault(room, set()).add(connection_id)
        logger.debug("realtime_joined", connection_id=connection_id, room=room)
        return True

    def disconnect(self, connection_id: str) -> None:
        with self._lock:
            conn = self._connections.pop(connection_id, None)
            if conn is None:
                return
            for room in conn.rooms:
                members = self._rooms.get(room)
                if members is None:
                    continue
                members.discard(connection_id)
                if not members:
                    self._rooms.pop(room, None)
            rooms = len(conn.rooms)
            conn.rooms = set()
        logger.info("realtime_disconnected", connection_id=connection_id, rooms=rooms)

    def members(self, room: str) -> List[str]:
        with self._lock:
            return sorted(self._rooms.get(room, ()))

    def rooms_for(self, connection_id: str) -> Set[str]:
        with self._lock:
            conn = self._connections.get(connection_id)
            return set(conn.rooms) if conn else set()

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def publish(self, room: str, event: str, data: Any) -> int:
        """Fan ``event`` out to every connection currently in ``room``.

        Returns the number of connections the message was handed to. A
        connection whose loop has closed is skipped; there is no retry.
        """
        message = {"event": event, "data": data}
        with self._lock:
            targets = [
                self._connections[cid]
                for cid in self._rooms.get(room, ())
                if cid in self._connections
            ]
        delivered = 0
        for conn in targets:
            try:
                conn.deliver(message)
            except RuntimeError as exc:
                logger.warning(
                    "realtime_delivery_dropped",
                    connection_id=conn.id,
                    room=room,
                    event_name=event,
                    error=str(exc),
                )
                continue
            delivered += 1
        logger.debug("realtime_published", room=room, event_name=event, delivered=delivered)
        return delivered


class RoomStore(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_issue(self, issue_id: str, tenant_id: Optional[str] = None) -> Optional[Issue]: ...


class JoinPolicy:
    """Decides which room a join request maps to and whether it is allowed."""

    def __init__(self, store: RoomStore) -> None:
        self.store = store

    def _lookup(self, fetch, target_id: str):
        try:
            return fetch(target_id)
        except ServiceError:
            raise
        except Exception as exc:
            logger.error("realtime_room_lookup_failed", target_id=target_id, error=str(exc))
            raise InfrastructureError("room store unavailable") from exc

    def room_for(self, principal: User, join_type: str, target_id: Optional[str]) -> str:
        if join_type not in JOIN_TYPES:
            raise ValidationError(
                f"unsupported message type: {join_type}", reason="unsupported_message"
            )
        if not target_id:
            raise ValidationError("room id is required", reason="room_id_required")
        target_id = str(target_id)

        if join_type == JOIN_USER:
            if target_id != principal.id:
                raise AuthorizationError(
                    "cannot join another user's room", reason="personal_room_forbidden"
                )
            return personal_room(target_id)

        if join_type == JOIN_COMMUNITY:
            tenant = self._lookup(self.store.get_tenant, target_id)
            if tenant is None or not tenant.is_active:
                raise NotFoundError("Community not found", reason="tenant_not_found")
            if not is_operator(principal) and principal.tenant_id != tenant.id:
                raise AuthorizationError(
                    "not a member of this community", reason="tenant_membership_required"
                )
            return community_room(tenant.id)

        issue = self._lookup(self.store.get_issue, target_id)
        if issue is None:
            raise NotFoundError("Issue not found", reason="issue_not_found")
        tenant = self._lookup(self.store.get_tenant, issue.tenant_id)
        if tenant is None or not tenant.is_active or not may_act_in_tenant(principal, tenant):
            # Issues of other tenants are reported as absent rather than forbidden
            raise NotFoundError("Issue not found", reason="issue_not_found")
        return issue_room(issue.id)


__all__ = [
    "Connection",
    "ConnectionRegistry",
    "JoinPolicy",
    "JOIN_COMMUNITY",
    "JOIN_ISSUE",
    "JOIN_TYPES",
    "JOIN_USER",
    "MAX_PENDING_MESSAGES",
    "community_room",
    "issue_room",
    "personal_room",
]
