from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import pytest
from psycopg import errors

from communitypulse.storage.errors import ConstraintViolation
from communitypulse.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row else []


class FakeConnection:
    def __init__(self, result=None, exc=None):
        self.result = result
        self.exc = exc
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        if self.exc is not None:
            raise self.exc
        return self.result


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(tmp_path: Path, conn: FakeConnection) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store.fs_root = tmp_path
    return store


def _user_row(**overrides):
    row = {
        "id": "u-1",
        "email": "alice@example.com",
        "name": "Alice",
        "role": "tenant_member",
        "tenant_id": "t-1",
        "is_active": True,
        "apartment_number": None,
        "phone": None,
        "avatar": None,
        "created_at": datetime(2024, 1, 1),
    }
    row.update(overrides)
    return row


def test_create_user_normalizes_email(tmp_path: Path):
    conn = FakeConnection(result=FakeCursor(_user_row()))
    store = _store(tmp_path, conn)

    user = store.create_user("  Alice@Example.COM ", "Alice", tenant_id="t-1")

    _, params = conn.executed[0]
    assert params[1] == "alice@example.com"
    assert user.apartment_number == ""
    assert user.tenant_id == "t-1"


def test_duplicate_email_maps_to_constraint_violation(tmp_path: Path):
    store = _store(tmp_path, FakeConnection(exc=errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("alice@example.com", "Alice")
    assert exc_info.value.detail == {"field": "email"}


def test_unknown_tenant_maps_to_constraint_violation(tmp_path: Path):
    store = _store(tmp_path, FakeConnection(exc=errors.ForeignKeyViolation("fk")))
    with pytest.raises(ConstraintViolation):
        store.create_user("alice@example.com", "Alice", tenant_id="missing")


def test_duplicate_subdomain(tmp_path: Path):
    store = _store(tmp_path, FakeConnection(exc=errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation):
        store.create_tenant("maple", "Maple Court")


def test_tenant_settings_decoded_from_json(tmp_path: Path):
    row = {
        "id": "t-1",
        "key": "maple",
        "name": "Maple Court",
        "settings": '{"primary_color": "#000000"}',
        "is_active": False,
        "created_at": datetime(2024, 1, 1),
    }
    store = _store(tmp_path, FakeConnection(result=FakeCursor(row)))
    tenant = store.get_tenant("t-1")
    assert tenant.settings == {"primary_color": "#000000"}
    assert tenant.is_active is False


def test_active_only_key_lookup_filters_inactive(tmp_path: Path):
    conn = FakeConnection(result=FakeCursor(None))
    store = _store(tmp_path, conn)

    assert store.get_tenant_by_key("MAPLE") is None
    sql, params = conn.executed[0]
    assert "is_active" in sql
    assert params == ("maple",)


def test_mark_read_is_owner_scoped(tmp_path: Path):
    conn = FakeConnection(result=FakeCursor(None))
    store = _store(tmp_path, conn)

    assert store.mark_notification_read("n-1", "u-2") is None
    sql, params = conn.executed[0]
    assert "user_id = %s" in sql
    assert params == ("n-1", "u-2")


def test_mark_all_read_counts_rows(tmp_path: Path):
    conn = FakeConnection(result=FakeCursor(rowcount=4))
    store = _store(tmp_path, conn)

    assert store.mark_all_notifications_read("u-1") == 4
    sql, params = conn.executed[0]
    assert "NOT is_read" in sql
    assert params == ("u-1",)


def test_list_members_filters_and_counts(tmp_path: Path):
    conn = FakeConnection(result=FakeCursor(_user_row(total=1)))
    store = _store(tmp_path, conn)

    members, total = store.list_members("t-1", role="tenant_member", search="ali", limit=10, offset=20)

    assert total == 1
    assert [m.id for m in members] == ["u-1"]
    count_sql, count_params = conn.executed[0]
    assert count_sql.startswith("SELECT COUNT(*)")
    assert count_params == ("t-1", "tenant_member", "%ali%", "%ali%", "%ali%")
    list_sql, list_params = conn.executed[1]
    assert "ORDER BY role, lower(name)" in list_sql
    assert list_params[-2:] == (10, 20)


def test_profile_update_touches_only_given_fields(tmp_path: Path):
    conn = FakeConnection(result=FakeCursor(_user_row(phone="555")))
    store = _store(tmp_path, conn)

    user = store.update_user_profile("u-1", phone="555")

    sql, params = conn.executed[0]
    assert "phone = %s" in sql
    assert "name = %s" not in sql
    assert params == ("555", "u-1")
    assert user.phone == "555"


def test_set_user_tenant_unknown_tenant(tmp_path: Path):
    store = _store(tmp_path, FakeConnection(exc=errors.ForeignKeyViolation("fk")))
    with pytest.raises(ConstraintViolation):
        store.set_user_tenant("u-1", "missing")


def test_platform_stats(tmp_path: Path):
    row = {"communities": 2, "users": 5, "issues": 7, "open_issues": 3}
    conn = FakeConnection(result=FakeCursor(row))
    store = _store(tmp_path, conn)

    assert store.platform_stats(("open", "in_progress")) == row
    _, params = conn.executed[0]
    assert params == (["open", "in_progress"],)
