from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from freeme.service.sanitizer import sanitize

MAX_PROMPT_LENGTH = 500
MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 2000
MAX_LOCATION_LENGTH = 200
MAX_EVENT_SPAN = timedelta(days=30)
DATE_POLICY_PAST = timedelta(days=365)
DATE_POLICY_FUTURE = timedelta(days=3653)

# Role overrides, instruction overrides and markup/script injection markers
_PROMPT_DENYLIST = [
    re.compile(r"system:", re.IGNORECASE),
    re.compile(r"ignore previous", re.IGNORECASE),
    re.compile(r"disregard", re.IGNORECASE),
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
]

_UUID_V4 = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

_DATETIME_ADAPTER = TypeAdapter(datetime)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a validation: the normalized value or the violated rule."""

    valid: bool
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, value: Any) -> "ValidationResult":
        return cls(True, value, None)

    @classmethod
    def fail(cls, error: str) -> "ValidationResult":
        return cls(False, None, error)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ``value`` as a timestamp, returning an aware UTC datetime or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = _DATETIME_ADAPTER.validate_python(value)
    except ValidationError:
        return None
    return _as_utc(parsed)


class EventPayload(BaseModel):
    """Candidate calendar event as proposed by the model."""

    model_config = ConfigDict(extra="ignore")

    title: str = Field(..., min_length=1, max_length=MAX_TITLE_LENGTH)
    description: Optional[str] = Field(None, max_length=MAX_DESCRIPTION_LENGTH)
    location: Optional[str] = Field(None, max_length=MAX_LOCATION_LENGTH)
    start_time: datetime = Field(
        ..., validation_alias=AliasChoices("start_time", "start")
    )
    end_time: datetime = Field(..., validation_alias=AliasChoices("end_time", "end"))

    @field_validator("title")
    @classmethod
    def _clean_title(cls, value: str) -> str:
        cleaned = sanitize(value)
        if not cleaned:
            raise ValueError("Title cannot be empty")
        return cleaned

    @field_validator("description", "location")
    @classmethod
    def _clean_optional(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return sanitize(value) or None

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_tz(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_span(self) -> "EventPayload":
        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")
        if self.end_time - self.start_time > MAX_EVENT_SPAN:
            raise ValueError("Event cannot be longer than 30 days")
        return self


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    msg = err.get("msg", "invalid value")
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    field = ".".join(str(part) for part in err.get("loc", ()))
    return f"{field}: {msg}" if field else msg


def validate_prompt(prompt: Any) -> ValidationResult:
    """Validate a user prompt before it is sent to the model.

    Type, emptiness and length are checked before the denylist so callers
    get a precise error category.
    """
    if not isinstance(prompt, str):
        return ValidationResult.fail("Invalid prompt type")

    trimmed = prompt.strip()
    if not trimmed:
        return ValidationResult.fail("Prompt cannot be empty")
    if len(trimmed) > MAX_PROMPT_LENGTH:
        return ValidationResult.fail(
            f"Prompt too long (max {MAX_PROMPT_LENGTH} characters)"
        )

    for pattern in _PROMPT_DENYLIST:
        if pattern.search(trimmed):
            return ValidationResult.fail("Invalid prompt content")

    sanitized = sanitize(trimmed)
    if not sanitized:
        return ValidationResult.fail("Prompt cannot be empty")
    return ValidationResult.ok(sanitized)


def validate_event_payload(payload: Any) -> ValidationResult:
    """Validate a candidate event, failing fast on the first violated rule.

    On success ``value`` is an ``EventPayload`` with sanitized strings and
    UTC timestamps.
    """
    if not isinstance(payload, dict):
        return ValidationResult.fail("Event payload must be an object")
    try:
        event = EventPayload.model_validate(payload)
    except ValidationError as exc:
        return ValidationResult.fail(_first_error(exc))
    return ValidationResult.ok(event)


def validate_and_normalize_date(
    value: Any, *, now: Optional[datetime] = None
) -> ValidationResult:
    """Parse a timestamp and check it sits within the accepted planning range.

    Accepted range: one year in the past up to ten years in the future.
    """
    parsed = parse_timestamp(value)
    if parsed is None:
        return ValidationResult.fail("Invalid date format")
    current = _as_utc(now) if now else datetime.now(timezone.utc)
    if parsed < current - DATE_POLICY_PAST or parsed > current + DATE_POLICY_FUTURE:
        return ValidationResult.fail("Date out of acceptable range")
    return ValidationResult.ok(parsed)


def is_valid_event_id(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID_V4.match(value))


def validate_request_size(
    content_length: Optional[str], max_bytes: int = 1024 * 1024
) -> ValidationResult:
    """Check a declared Content-Length against ``max_bytes``."""
    if not content_length:
        return ValidationResult.fail("Content-Length header missing")
    try:
        size = int(content_length)
    except (TypeError, ValueError):
        size = -1
    if size < 0 or size > max_bytes:
        return ValidationResult.fail(f"Request body too large (max {max_bytes} bytes)")
    return ValidationResult.ok(size)
