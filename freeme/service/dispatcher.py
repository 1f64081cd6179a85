"""Applies a validated intent to the caller's calendar.

Dispatch is one-shot: each intent maps to at most one write, nothing is
retried, and every store call is scoped to the principal. Lookups for
records owned by someone else fail exactly like lookups for records that
do not exist.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TypeVar

from freeme.logging import get_logger
from freeme.service.auth import AuthContext
from freeme.service.errors import (
    InvalidInputError,
    NotFoundError,
    ServiceError,
    StorageFailureError,
)
from freeme.service.intents import (
    CreateIntent,
    DeleteIntent,
    Intent,
    QueryIntent,
    UpdateIntent,
)
from freeme.service.sanitizer import sanitize
from freeme.service.validation import (
    MAX_DESCRIPTION_LENGTH,
    MAX_EVENT_SPAN,
    MAX_LOCATION_LENGTH,
    MAX_TITLE_LENGTH,
    is_valid_event_id,
    validate_and_normalize_date,
    validate_event_payload,
)
from freeme.storage.models import CalendarEvent

logger = get_logger(__name__)

T = TypeVar("T")

_TEMPORAL_ALIASES = {"start": "start_time", "end": "end_time"}
_TEXT_LIMITS = {"description": MAX_DESCRIPTION_LENGTH, "location": MAX_LOCATION_LENGTH}


def call_store(operation: str, fn: Callable[..., T], *args, **kwargs) -> T:
    """Run a store call; any failure is logged in full and surfaces as StorageFailureError."""
    try:
        return fn(*args, **kwargs)
    except ServiceError:
        raise
    except Exception as exc:
        logger.error(
            "store_operation_failed", operation=operation, error=str(exc), exc_info=True
        )
        raise StorageFailureError(detail={"operation": operation}) from exc


@dataclass
class DispatchOutcome:
    action: str
    message: str
    event: Optional[Dict[str, Any]] = None
    event_id: Optional[str] = None
    results: List[Dict[str, Any]] = field(default_factory=list)

    def body(self) -> Dict[str, Any]:
        """Action-specific part of the success response."""
        if self.action in ("create", "update"):
            return {"event": self.event}
        if self.action == "delete":
            return {"event_id": self.event_id}
        return {"results": self.results}


class CommandDispatcher:
    def __init__(self, store) -> None:
        self.store = store

    def _require_owned(self, event_id: Any, user_id: str) -> CalendarEvent:
        if not is_valid_event_id(event_id):
            raise InvalidInputError("Invalid event ID")
        existing = call_store("get_event", self.store.get_event, event_id, user_id)
        if not existing:
            raise NotFoundError("Event not found")
        return existing

    def dispatch(self, intent: Intent, principal: AuthContext) -> DispatchOutcome:
        if isinstance(intent, CreateIntent):
            return self._create(intent, principal.user_id)
        if isinstance(intent, UpdateIntent):
            return self._update(intent, principal.user_id)
        if isinstance(intent, DeleteIntent):
            return self._delete(intent, principal.user_id)
        if isinstance(intent, QueryIntent):
            return self._query(intent)
        raise InvalidInputError(f"Unsupported action: {type(intent).__name__}")

    def _create(self, intent: CreateIntent, user_id: str) -> DispatchOutcome:
        result = validate_event_payload(intent.event)
        if not result.valid:
            raise InvalidInputError("Invalid event data", detail=result.error)
        payload = result.value
        for name in ("start_time", "end_time"):
            dated = validate_and_normalize_date(getattr(payload, name))
            if not dated.valid:
                raise InvalidInputError("Invalid event data", detail=f"{name}: {dated.error}")

        fields = payload.model_dump(
            include={"title", "description", "start_time", "end_time", "location"}
        )
        created = call_store("insert_event", self.store.insert_event, user_id, fields)
        logger.info("event_created", event_id=created.id, user_id=user_id)
        return DispatchOutcome(action="create", message=intent.message, event=created.to_dict())

    def _clean_updates(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Keep allow-listed fields that pass validation; drop everything else."""
        cleaned: Dict[str, Any] = {}
        for key, value in updates.items():
            target = _TEMPORAL_ALIASES.get(key, key)
            if target == "title":
                if not isinstance(value, str):
                    continue
                title = sanitize(value)[:MAX_TITLE_LENGTH].strip()
                if title:
                    cleaned["title"] = title
            elif target in _TEXT_LIMITS:
                if value is None:
                    cleaned[target] = None
                elif isinstance(value, str):
                    cleaned[target] = sanitize(value)[: _TEXT_LIMITS[target]] or None
            elif target in ("start_time", "end_time"):
                dated = validate_and_normalize_date(value)
                if dated.valid:
                    cleaned[target] = dated.value
        return cleaned

    def _update(self, intent: UpdateIntent, user_id: str) -> DispatchOutcome:
        existing = self._require_owned(intent.event_id, user_id)
        fields = self._clean_updates(intent.updates)
        if not fields:
            raise InvalidInputError("No valid updates provided")

        start = fields.get("start_time", existing.start_time)
        end = fields.get("end_time", existing.end_time)
        if end <= start:
            raise InvalidInputError("End time must be after start time")
        if end - start > MAX_EVENT_SPAN:
            raise InvalidInputError("Event cannot be longer than 30 days")

        updated = call_store(
            "update_event", self.store.update_event, existing.id, user_id, fields
        )
        if not updated:
            raise NotFoundError("Event not found")
        logger.info(
            "event_updated", event_id=updated.id, user_id=user_id, fields=sorted(fields)
        )
        return DispatchOutcome(action="update", message=intent.message, event=updated.to_dict())

    def _delete(self, intent: DeleteIntent, user_id: str) -> DispatchOutcome:
        existing = self._require_owned(intent.event_id, user_id)
        removed = call_store("delete_event", self.store.delete_event, existing.id, user_id)
        if not removed:
            raise NotFoundError("Event not found")
        logger.info("event_deleted", event_id=existing.id, user_id=user_id)
        return DispatchOutcome(action="delete", message=intent.message, event_id=existing.id)

    def _query(self, intent: QueryIntent) -> DispatchOutcome:
        results = [item for item in intent.results if isinstance(item, dict)]
        return DispatchOutcome(action="query", message=intent.message, results=results)
