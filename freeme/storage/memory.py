from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from freeme.logging import get_logger
from freeme.storage.models import CalendarEvent, Session

_EVENT_FIELDS = ("title", "description", "start_time", "end_time", "location")


class MemoryStore:
    """In-memory backing store for tests and single-process development.

    Every read returns a copy, so callers can never mutate stored records
    except through the owner-scoped write methods.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.events: Dict[str, CalendarEvent] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock for all data operations
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # -- events -----------------------------------------------------------

    def list_events(
        self,
        user_id: str,
        *,
        ending_after: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[CalendarEvent]:
        with self._data_lock:
            owned = [
                replace(evt)
                for evt in self.events.values()
                if evt.user_id == user_id
                and (ending_after is None or evt.end_time >= ending_after)
            ]
        owned.sort(key=lambda evt: evt.start_time)
        if limit is not None:
            owned = owned[:limit]
        return owned

    def get_event(self, event_id: str, user_id: str) -> Optional[CalendarEvent]:
        with self._data_lock:
            evt = self.events.get(event_id)
            if not evt or evt.user_id != user_id:
                return None
            return replace(evt)

    def insert_event(self, user_id: str, fields: Dict[str, Any]) -> CalendarEvent:
        values = {key: fields.get(key) for key in _EVENT_FIELDS}
        evt = CalendarEvent(id=str(uuid.uuid4()), user_id=user_id, **values)
        with self._data_lock:
            self.events[evt.id] = evt
        self.logger.debug("event_inserted", event_id=evt.id, user_id=user_id)
        return replace(evt)

    def update_event(
        self, event_id: str, user_id: str, fields: Dict[str, Any]
    ) -> Optional[CalendarEvent]:
        changes = {key: value for key, value in fields.items() if key in _EVENT_FIELDS}
        with self._data_lock:
            evt = self.events.get(event_id)
            if not evt or evt.user_id != user_id:
                return None
            updated = replace(evt, **changes, updated_at=datetime.now(timezone.utc))
            self.events[event_id] = updated
            return replace(updated)

    def delete_event(self, event_id: str, user_id: str) -> bool:
        with self._data_lock:
            evt = self.events.get(event_id)
            if not evt or evt.user_id != user_id:
                return False
            del self.events[event_id]
            return True

    # -- sessions (written by the identity provider) ------------------------

    def create_session(
        self, user_id: str, ttl_minutes: int = 60 * 24, *, meta: Dict | None = None
    ) -> Session:
        sess = Session.new(user_id, ttl_minutes, meta=meta)
        with self._data_lock:
            self.sessions[sess.id] = sess
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess, meta=dict(sess.meta or {})) if sess else None

    def set_session_meta(self, session_id: str, meta: Dict) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess:
                sess.meta = dict(meta)
