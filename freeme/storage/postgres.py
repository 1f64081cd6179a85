from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from freeme.logging import get_logger
from freeme.storage.models import CalendarEvent, Session

_EVENT_COLUMNS = ("title", "description", "start_time", "end_time", "location")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS calendar_event (
        id UUID PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        start_time TIMESTAMPTZ NOT NULL,
        end_time TIMESTAMPTZ NOT NULL,
        location TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ,
        CONSTRAINT calendar_event_span CHECK (end_time > start_time)
    )
    """,
    "CREATE INDEX IF NOT EXISTS calendar_event_owner_start ON calendar_event (user_id, start_time)",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        meta JSONB
    )
    """,
)


class PostgresStore:
    """Postgres-backed store; every event statement is scoped by owner."""

    def __init__(self, dsn: str, *, statement_timeout_ms: int = 5000) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(statement_timeout_ms)}",
            },
            open=True,
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _event_from_row(row: Dict[str, Any]) -> CalendarEvent:
        return CalendarEvent(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row["title"],
            description=row.get("description"),
            start_time=row["start_time"],
            end_time=row["end_time"],
            location=row.get("location"),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
        )

    # -- events -----------------------------------------------------------

    def list_events(
        self,
        user_id: str,
        *,
        ending_after: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[CalendarEvent]:
        query = "SELECT * FROM calendar_event WHERE user_id = %s"
        params: list[Any] = [user_id]
        if ending_after is not None:
            query += " AND end_time >= %s"
            params.append(ending_after)
        query += " ORDER BY start_time ASC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(int(limit))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._event_from_row(row) for row in rows]

    def get_event(self, event_id: str, user_id: str) -> Optional[CalendarEvent]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM calendar_event WHERE id = %s AND user_id = %s",
                (event_id, user_id),
            ).fetchone()
        return self._event_from_row(row) if row else None

    def insert_event(self, user_id: str, fields: Dict[str, Any]) -> CalendarEvent:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO calendar_event
                    (id, user_id, title, description, start_time, end_time, location)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    user_id,
                    fields.get("title"),
                    fields.get("description"),
                    fields.get("start_time"),
                    fields.get("end_time"),
                    fields.get("location"),
                ),
            ).fetchone()
        return self._event_from_row(row)

    def update_event(
        self, event_id: str, user_id: str, fields: Dict[str, Any]
    ) -> Optional[CalendarEvent]:
        columns = [col for col in _EVENT_COLUMNS if col in fields]
        if not columns:
            return self.get_event(event_id, user_id)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(col)) for col in columns
        )
        query = sql.SQL(
            "UPDATE calendar_event SET {}, updated_at = now() "
            "WHERE id = %s AND user_id = %s RETURNING *"
        ).format(assignments)
        params = [fields[col] for col in columns] + [event_id, user_id]
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._event_from_row(row) if row else None

    def delete_event(self, event_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM calendar_event WHERE id = %s AND user_id = %s",
                (event_id, user_id),
            )
            return cur.rowcount > 0

    # -- sessions (written by the identity provider) ------------------------

    def create_session(
        self, user_id: str, ttl_minutes: int = 60 * 24, *, meta: Dict | None = None
    ) -> Session:
        sess = Session.new(user_id, ttl_minutes, meta=meta)
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO auth_session (id, user_id, created_at, expires_at, meta) "
                "VALUES (%s, %s, %s, %s, %s)",
                (sess.id, sess.user_id, sess.created_at, sess.expires_at, Jsonb(meta or {})),
            )
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        meta = row.get("meta")
        if isinstance(meta, str):
            try:
                meta = json.loads(meta)
            except ValueError:
                meta = None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            meta=meta if isinstance(meta, dict) else {},
        )

    def set_session_meta(self, session_id: str, meta: Dict) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET meta = %s WHERE id = %s",
                (Jsonb(meta), session_id),
            )
