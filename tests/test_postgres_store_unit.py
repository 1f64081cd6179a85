import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from psycopg import sql

from freeme.logging import get_logger
from freeme.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, results):
        self.results = results
        self.executed = []

    def execute(self, query, params=None):
        self.executed.append((query, params))
        return self.results.pop(0) if self.results else FakeCursor()


class FakePool:
    def __init__(self, *results):
        self.conn = FakeConnection(list(results))

    @contextmanager
    def connection(self):
        yield self.conn


def _store(*results) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.logger = get_logger("test")
    store.pool = FakePool(*results)
    return store


def _row(**overrides):
    start = datetime(2030, 1, 1, 9, tzinfo=timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "user_id": "u1",
        "title": "Standup",
        "description": None,
        "start_time": start,
        "end_time": start + timedelta(minutes=30),
        "location": None,
        "created_at": start - timedelta(days=1),
        "updated_at": None,
    }
    row.update(overrides)
    return row


def test_get_event_is_owner_scoped():
    row = _row()
    store = _store(FakeCursor([row]))

    evt = store.get_event(str(row["id"]), "u1")

    query, params = store.pool.conn.executed[0]
    assert "user_id = %s" in query
    assert params == (str(row["id"]), "u1")
    assert evt.id == str(row["id"])
    assert evt.title == "Standup"


def test_get_event_miss_returns_none():
    store = _store(FakeCursor([]))
    assert store.get_event(str(uuid.uuid4()), "u2") is None


def test_list_events_applies_filter_order_and_limit():
    cutoff = datetime(2030, 1, 1, tzinfo=timezone.utc)
    store = _store(FakeCursor([_row(), _row(title="Lunch")]))

    events = store.list_events("u1", ending_after=cutoff, limit=50)

    query, params = store.pool.conn.executed[0]
    assert "end_time >= %s" in query
    assert "ORDER BY start_time ASC" in query
    assert query.rstrip().endswith("LIMIT %s")
    assert params == ["u1", cutoff, 50]
    assert [evt.title for evt in events] == ["Standup", "Lunch"]


def test_update_event_writes_only_allowed_columns():
    row = _row(title="Renamed")
    store = _store(FakeCursor([row]))

    updated = store.update_event(
        str(row["id"]), "u1", {"title": "Renamed", "user_id": "attacker", "id": "x"}
    )

    query, params = store.pool.conn.executed[0]
    assert isinstance(query, sql.Composed)
    assert params == ["Renamed", str(row["id"]), "u1"]
    assert updated.title == "Renamed"


def test_update_event_of_foreign_record_returns_none():
    store = _store(FakeCursor([]))
    assert store.update_event(str(uuid.uuid4()), "u2", {"title": "x"}) is None


def test_delete_event_reports_rowcount():
    store = _store(FakeCursor(rowcount=1), FakeCursor(rowcount=0))
    event_id = str(uuid.uuid4())

    assert store.delete_event(event_id, "u1") is True
    assert store.delete_event(event_id, "u2") is False
    assert store.pool.conn.executed[1][1] == (event_id, "u2")


def test_get_session_decodes_meta():
    now = datetime.now(timezone.utc)
    store = _store(
        FakeCursor(
            [
                {
                    "id": "s" * 64,
                    "user_id": "u1",
                    "created_at": now,
                    "expires_at": now + timedelta(hours=1),
                    "meta": '{"csrf_token": "abc"}',
                }
            ]
        )
    )
    session = store.get_session("s" * 64)
    assert session.user_id == "u1"
    assert session.meta == {"csrf_token": "abc"}
