from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorBody(BaseModel):
    """Error envelope; ``details`` only carries caller-safe validation context."""

    model_config = ConfigDict(populate_by_name=True)

    error: str
    code: str
    details: Optional[Any] = None
    message: Optional[str] = None
    request_id: Optional[str] = Field(None, serialization_alias="requestId")

    def render(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class EventOut(BaseModel):
    id: str
    user_id: str
    title: str
    description: Optional[str] = None
    start_time: str
    end_time: str
    location: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None


class AIEventResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    action: str
    event: Optional[EventOut] = None
    event_id: Optional[str] = None
    results: Optional[List[Dict[str, Any]]] = None
    message: str
    request_id: str = Field(..., alias="requestId")
    processing_time_ms: int = Field(..., alias="processingTimeMs")

    def render(self) -> Dict[str, Any]:
        # Only the action-specific top-level keys are optional; event fields keep their nulls
        body = self.model_dump(by_alias=True)
        return {key: value for key, value in body.items() if value is not None}


class AIEventHealth(BaseModel):
    status: str = "ok"
    service: str = "ai-event"
    timestamp: str
    version: str


class EventListResponse(BaseModel):
    events: List[EventOut]
    count: int


class CsrfTokenResponse(BaseModel):
    csrf_token: str
