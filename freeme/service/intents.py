"""Structured intents recovered from model output.

An intent is exactly one of four tagged variants. Keys belonging to other
variants are ignored when the payload is read, so a model reply such as
``{"action": "delete", "event_id": ..., "event": {...}}`` yields a plain
``DeleteIntent``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Union

from freeme.service.errors import ParseFailureError

VALID_ACTIONS = ("create", "update", "delete", "query")


@dataclass(frozen=True)
class CreateIntent:
    action: ClassVar[str] = "create"
    default_message: ClassVar[str] = "Event created successfully"

    event: Dict[str, Any]
    message: str = default_message


@dataclass(frozen=True)
class UpdateIntent:
    action: ClassVar[str] = "update"
    default_message: ClassVar[str] = "Event updated successfully"

    event_id: Any
    updates: Dict[str, Any]
    message: str = default_message


@dataclass(frozen=True)
class DeleteIntent:
    action: ClassVar[str] = "delete"
    default_message: ClassVar[str] = "Event deleted successfully"

    event_id: Any
    message: str = default_message


@dataclass(frozen=True)
class QueryIntent:
    action: ClassVar[str] = "query"
    default_message: ClassVar[str] = "Query completed"

    results: List[Any] = field(default_factory=list)
    message: str = default_message


Intent = Union[CreateIntent, UpdateIntent, DeleteIntent, QueryIntent]


def _message(payload: Dict[str, Any], default: str) -> str:
    value = payload.get("message")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def intent_from_payload(payload: Any) -> Intent:
    """Check the per-action shape of a parsed model reply and build the intent.

    Only shape is checked here. Field-level rules (event schema, id format,
    allow-listed updates) belong to the dispatcher.
    """
    if not isinstance(payload, dict):
        raise ParseFailureError(detail={"reason": "response is not an object"})

    action = payload.get("action")
    if isinstance(action, str):
        action = action.strip().lower()
    if action not in VALID_ACTIONS:
        raise ParseFailureError(
            "Sorry, I couldn't understand what you wanted to do.",
            detail={"reason": "invalid action", "action": str(action)[:50]},
        )

    if action == "create":
        event = payload.get("event")
        if not isinstance(event, dict):
            raise ParseFailureError(detail={"reason": "create without event object"})
        return CreateIntent(event=event, message=_message(payload, CreateIntent.default_message))

    if action == "update":
        updates = payload.get("updates")
        if "event_id" not in payload or not isinstance(updates, dict):
            raise ParseFailureError(detail={"reason": "update without event_id/updates"})
        return UpdateIntent(
            event_id=payload.get("event_id"),
            updates=updates,
            message=_message(payload, UpdateIntent.default_message),
        )

    if action == "delete":
        if "event_id" not in payload:
            raise ParseFailureError(detail={"reason": "delete without event_id"})
        return DeleteIntent(
            event_id=payload.get("event_id"),
            message=_message(payload, DeleteIntent.default_message),
        )

    results = payload.get("results")
    return QueryIntent(
        results=results if isinstance(results, list) else [],
        message=_message(payload, QueryIntent.default_message),
    )
