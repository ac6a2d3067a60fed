"""Tests for the connection registry and the room join policy."""

import asyncio

import pytest

from communitypulse.service.errors import (
    AuthorizationError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)
from communitypulse.service.realtime import (
    JOIN_COMMUNITY,
    JOIN_ISSUE,
    JOIN_USER,
    MAX_PENDING_MESSAGES,
    ConnectionRegistry,
    JoinPolicy,
    community_room,
    issue_room,
    personal_room,
)
from communitypulse.storage.memory import MemoryStore


async def _drain(queue: asyncio.Queue) -> list:
    # Deliveries are scheduled with call_soon_threadsafe; let them land first
    await asyncio.sleep(0)
    messages = []
    while not queue.empty():
        messages.append(queue.get_nowait())
    return messages


class TestRegistry:
    """Membership bookkeeping and fan-out."""

    async def test_connection_starts_with_no_rooms(self):
        registry = ConnectionRegistry()
        conn = registry.connect("user-1")
        assert registry.rooms_for(conn.id) == set()
        assert registry.publish(personal_room("user-1"), "notification:new", {}) == 0
        assert await _drain(conn.queue) == []

    async def test_issue_room_fan_out_reaches_each_member_once(self):
        registry = ConnectionRegistry()
        first = registry.connect("user-1")
        second = registry.connect("user-2")
        outsider = registry.connect("user-3")
        room = issue_room("issue-1")
        registry.join(first.id, room)
        registry.join(second.id, room)

        delivered = registry.publish(room, "comment:new", {"id": "c-1"})

        assert delivered == 2
        expected = [{"event": "comment:new", "data": {"id": "c-1"}}]
        assert await _drain(first.queue) == expected
        assert await _drain(second.queue) == expected
        assert await _drain(outsider.queue) == []

    async def test_join_twice_keeps_single_membership(self):
        registry = ConnectionRegistry()
        conn = registry.connect("user-1")
        room = community_room("t-1")
        assert registry.join(conn.id, room) is True
        assert registry.join(conn.id, room) is False

        registry.publish(room, "issue:created", {"id": "i-1"})
        assert len(await _drain(conn.queue)) == 1

    async def test_connection_holds_many_rooms(self):
        registry = ConnectionRegistry()
        conn = registry.connect("user-1")
        rooms = {personal_room("user-1"), community_room("t-1"), issue_room("i-1"), issue_room("i-2")}
        for room in rooms:
            registry.join(conn.id, room)
        assert registry.rooms_for(conn.id) == rooms

    async def test_disconnect_drops_every_membership(self):
        registry = ConnectionRegistry()
        conn = registry.connect("user-1")
        registry.join(conn.id, personal_room("user-1"))
        registry.join(conn.id, issue_room("i-1"))

        registry.disconnect(conn.id)

        assert registry.members(personal_room("user-1")) == []
        assert registry.members(issue_room("i-1")) == []
        assert registry.connection_count() == 0
        assert registry.publish(issue_room("i-1"), "comment:new", {}) == 0

    async def test_reconnect_does_not_resume_memberships(self):
        registry = ConnectionRegistry()
        old = registry.connect("user-1")
        registry.join(old.id, personal_room("user-1"))
        registry.disconnect(old.id)

        new = registry.connect("user-1")
        assert registry.rooms_for(new.id) == set()

    async def test_join_unknown_connection(self):
        registry = ConnectionRegistry()
        with pytest.raises(NotFoundError):
            registry.join("missing", personal_room("user-1"))

    async def test_order_preserved_within_room(self):
        registry = ConnectionRegistry()
        conn = registry.connect("user-1")
        room = personal_room("user-1")
        registry.join(conn.id, room)
        for n in range(5):
            registry.publish(room, "notification:new", {"n": n})
        messages = await _drain(conn.queue)
        assert [m["data"]["n"] for m in messages] == [0, 1, 2, 3, 4]

    async def test_closed_loop_is_skipped(self):
        registry = ConnectionRegistry()
        dead_loop = asyncio.new_event_loop()
        dead_loop.close()
        dead = registry.connect("user-1", loop=dead_loop, queue=asyncio.Queue())
        live = registry.connect("user-2")
        room = community_room("t-1")
        registry.join(dead.id, room)
        registry.join(live.id, room)

        assert registry.publish(room, "issue:created", {}) == 1
        assert len(await _drain(live.queue)) == 1


    async def test_default_queue_is_bounded(self):
        registry = ConnectionRegistry()
        conn = registry.connect("user-1")
        assert conn.queue.maxsize == MAX_PENDING_MESSAGES

    async def test_full_queue_drops_newest_and_keeps_connection(self):
        registry = ConnectionRegistry()
        slow = registry.connect("user-1", queue=asyncio.Queue(maxsize=2))
        room = personal_room("user-1")
        registry.join(slow.id, room)
        for n in range(4):
            registry.publish(room, "notification:new", {"n": n})

        messages = await _drain(slow.queue)
        assert [m["data"]["n"] for m in messages] == [0, 1]
        assert registry.rooms_for(slow.id) == {room}

        registry.publish(room, "notification:new", {"n": 4})
        assert [m["data"]["n"] for m in await _drain(slow.queue)] == [4]


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def policy(store):
    return JoinPolicy(store)


@pytest.fixture
def world(store):
    maple = store.create_tenant("maple", "Maple Court")
    oak = store.create_tenant("oak", "Oak Gardens")
    resident = store.create_user("res@example.com", "Resident", tenant_id=maple.id)
    neighbour = store.create_user("nb@example.com", "Neighbour", tenant_id=oak.id)
    operator = store.create_user("ops@example.com", "Ops", role="platform_operator")
    maple_issue = store.create_issue(maple.id, resident.id, title="Leak", description="Kitchen")
    oak_issue = store.create_issue(oak.id, neighbour.id, title="Gate", description="Stuck")
    return {
        "maple": maple,
        "oak": oak,
        "resident": resident,
        "operator": operator,
        "maple_issue": maple_issue,
        "oak_issue": oak_issue,
    }


class TestJoinPolicy:
    """Which rooms a principal may enter."""

    def test_own_personal_room(self, policy, world):
        resident = world["resident"]
        assert policy.room_for(resident, JOIN_USER, resident.id) == personal_room(resident.id)

    def test_foreign_personal_room_denied(self, policy, world):
        with pytest.raises(AuthorizationError) as exc_info:
            policy.room_for(world["resident"], JOIN_USER, world["operator"].id)
        assert exc_info.value.reason == "personal_room_forbidden"

    def test_own_community_room(self, policy, world):
        room = policy.room_for(world["resident"], JOIN_COMMUNITY, world["maple"].id)
        assert room == community_room(world["maple"].id)

    def test_foreign_community_room_denied(self, policy, world):
        with pytest.raises(AuthorizationError) as exc_info:
            policy.room_for(world["resident"], JOIN_COMMUNITY, world["oak"].id)
        assert exc_info.value.reason == "tenant_membership_required"

    def test_operator_joins_any_active_community(self, policy, world):
        assert policy.room_for(world["operator"], JOIN_COMMUNITY, world["oak"].id) == community_room(world["oak"].id)

    def test_inactive_community_not_found(self, policy, world, store):
        store.set_tenant_active(world["maple"].id, False)
        with pytest.raises(NotFoundError):
            policy.room_for(world["resident"], JOIN_COMMUNITY, world["maple"].id)

    def test_issue_room_in_own_tenant(self, policy, world):
        issue = world["maple_issue"]
        assert policy.room_for(world["resident"], JOIN_ISSUE, issue.id) == issue_room(issue.id)

    def test_issue_room_in_foreign_tenant_reads_as_missing(self, policy, world):
        with pytest.raises(NotFoundError) as exc_info:
            policy.room_for(world["resident"], JOIN_ISSUE, world["oak_issue"].id)
        assert exc_info.value.reason == "issue_not_found"

    def test_unsupported_type(self, policy, world):
        with pytest.raises(ValidationError) as exc_info:
            policy.room_for(world["resident"], "join:everything", "x")
        assert exc_info.value.reason == "unsupported_message"

    def test_missing_id(self, policy, world):
        with pytest.raises(ValidationError):
            policy.room_for(world["resident"], JOIN_ISSUE, None)

    @pytest.mark.parametrize("method,join_type", [("get_tenant", JOIN_COMMUNITY), ("get_issue", JOIN_ISSUE)])
    def test_store_failure_is_infrastructure_error(self, policy, world, store, monkeypatch, method, join_type):
        def unavailable(*args, **kwargs):
            raise RuntimeError("connection refused")

        monkeypatch.setattr(store, method, unavailable)
        target = world["maple"].id if join_type == JOIN_COMMUNITY else world["maple_issue"].id
        with pytest.raises(InfrastructureError) as exc_info:
            policy.room_for(world["resident"], join_type, target)
        assert exc_info.value.reason == "infrastructure_unavailable"
