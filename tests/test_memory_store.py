"""Tests for the in-memory store and its JSON snapshot."""

import pytest

from communitypulse.storage.errors import ConstraintViolation
from communitypulse.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


class TestTenants:
    def test_key_is_unique_and_case_insensitive(self, store):
        store.create_tenant("Maple", "Maple Court")
        with pytest.raises(ConstraintViolation):
            store.create_tenant("maple", "Another Maple")
        assert store.get_tenant_by_key("MAPLE").name == "Maple Court"

    def test_inactive_tenant_hidden_from_active_lookup(self, store):
        tenant = store.create_tenant("oak", "Oak Gardens")
        store.set_tenant_active(tenant.id, False)
        assert store.get_tenant_by_key("oak") is None
        assert store.get_tenant_by_key("oak", active_only=False).id == tenant.id
        assert [t.id for t in store.list_tenants(include_inactive=False)] == []


class TestUsers:
    def test_email_unique_after_normalization(self, store):
        store.create_user("Alice@Example.com", "Alice")
        with pytest.raises(ConstraintViolation):
            store.create_user("alice@example.com ", "Alice Again")

    def test_user_requires_existing_tenant(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_user("bob@example.com", "Bob", tenant_id="missing")

    def test_list_users_filters_by_tenant_and_role(self, store):
        maple = store.create_tenant("maple", "Maple Court")
        store.create_user("a@example.com", "A", tenant_id=maple.id)
        admin = store.create_user("b@example.com", "B", tenant_id=maple.id, role="tenant_admin")
        store.create_user("c@example.com", "C")
        assert store.count_users(maple.id) == 2
        assert [u.id for u in store.list_users(maple.id, role="tenant_admin")] == [admin.id]


    def test_list_members_orders_searches_and_pages(self, store):
        maple = store.create_tenant("maple", "Maple Court")
        oak = store.create_tenant("oak", "Oak Gardens")
        store.create_user("zoe@example.com", "Zoe", tenant_id=maple.id, apartment_number="4B")
        store.create_user("adam@example.com", "adam", tenant_id=maple.id)
        store.create_user("boss@example.com", "Boss", tenant_id=maple.id, role="tenant_admin")
        store.create_user("other@example.com", "Other", tenant_id=oak.id)

        members, total = store.list_members(maple.id)
        assert total == 3
        assert [m.name for m in members] == ["Boss", "adam", "Zoe"]

        found, total = store.list_members(maple.id, search="4b")
        assert (total, [m.name for m in found]) == (1, ["Zoe"])

        page, total = store.list_members(maple.id, limit=2, offset=2)
        assert (total, [m.name for m in page]) == (3, ["Zoe"])

    def test_profile_update_keeps_omitted_fields(self, store):
        user = store.create_user("a@example.com", "A", phone="123")
        updated = store.update_user_profile(user.id, name="Alice", avatar="https://img/a.png")
        assert (updated.name, updated.phone, updated.avatar) == ("Alice", "123", "https://img/a.png")
        assert store.update_user_profile("missing", name="x") is None

    def test_set_user_tenant(self, store):
        maple = store.create_tenant("maple", "Maple Court")
        user = store.create_user("a@example.com", "A")
        assert store.set_user_tenant(user.id, maple.id).tenant_id == maple.id
        with pytest.raises(ConstraintViolation):
            store.set_user_tenant(user.id, "missing")
        assert store.set_user_tenant(user.id, None).tenant_id is None

    def test_platform_stats(self, store):
        maple = store.create_tenant("maple", "Maple Court")
        user = store.create_user("a@example.com", "A", tenant_id=maple.id)
        store.create_issue(maple.id, user.id, title="Leak", description="Sink")
        resolved = store.create_issue(maple.id, user.id, title="Gate", description="Stuck")
        store.update_issue(resolved.id, status="resolved")
        assert store.platform_stats(("open", "acknowledged", "in_progress")) == {
            "communities": 1,
            "users": 1,
            "issues": 2,
            "open_issues": 1,
        }

    def test_tenant_settings_replaced(self, store):
        maple = store.create_tenant("maple", "Maple Court", settings={"logo": "a"})
        assert store.update_tenant_settings(maple.id, {"logo": "b"}).settings == {"logo": "b"}
        assert store.update_tenant_settings("missing", {}) is None


class TestSnapshot:
    """State survives a restart from the same filesystem root."""

    def test_reload_restores_records(self, tmp_path):
        first = MemoryStore(fs_root=str(tmp_path))
        tenant = first.create_tenant("maple", "Maple Court", settings={"primary_color": "#111111"})
        user = first.create_user("alice@example.com", "Alice", tenant_id=tenant.id)
        first.save_password(user.id, "hash", "argon2id")
        issue = first.create_issue(tenant.id, user.id, title="Leak", description="Sink")
        first.create_comment(issue.id, user.id, "Still dripping")
        note = first.create_notification(
            user.id, tenant_id=tenant.id, type="NEW_COMMENT", message="hi", link="/x"
        )
        first.mark_notification_read(note.id, user.id)

        second = MemoryStore(fs_root=str(tmp_path))
        assert second.get_tenant_by_key("maple").settings == {"primary_color": "#111111"}
        assert second.get_user_by_email("alice@example.com").tenant_id == tenant.id
        assert second.get_password_record(user.id) == ("hash", "argon2id")
        assert second.list_comments(issue.id)[0].content == "Still dripping"
        assert second.get_notification(note.id).is_read is True
        assert second.count_unread_notifications(user.id) == 0

    def test_reset_clears_snapshot(self, tmp_path):
        first = MemoryStore(fs_root=str(tmp_path))
        first.create_tenant("maple", "Maple Court")
        first.reset()
        assert MemoryStore(fs_root=str(tmp_path)).list_tenants() == []
