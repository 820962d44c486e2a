"""Event API schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from killall.models.events import LifecycleEvent


class EventResponse(BaseModel):
    """Event record payload."""

    id: str
    event_type: str
    payload: dict[str, Any]
    timestamp: datetime

    @classmethod
    def from_event(cls, event: LifecycleEvent) -> EventResponse:
        return cls(
            id=event.id,
            event_type=event.event_type.value,
            payload=event.payload,
            timestamp=event.timestamp,
        )


class EventsResponse(BaseModel):
    """Collection of events."""

    items: list[EventResponse]
