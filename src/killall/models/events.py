"""Lifecycle events and notification messages."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Lifecycle events emitted by the scheduler and executor."""

    PROJECT_DISCOVERED = "project.discovered"
    PROJECT_SCHEDULED = "project.scheduled"
    PROJECT_RESCHEDULED = "project.rescheduled"
    PROJECT_WARNING = "project.warning"
    PROJECT_CANCELLED = "project.cancelled"
    PROJECT_DESTROYED = "project.destroyed"
    PROJECT_FAILED = "project.failed"
    EXECUTION_STARTED = "execution.started"
    EXECUTION_COMPLETED = "execution.completed"
    ERROR = "error"


class NotificationType(str, Enum):
    """Severity shown to the user."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class NotificationMessage(BaseModel):
    """Payload handed to every notification sink."""

    type: NotificationType
    event: EventType
    title: str
    body: str
    project_id: str | None = None
    execution_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class LifecycleEvent(BaseModel):
    """Append-only audit record of a notification."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    project_id: str
    event_type: EventType
    payload: dict[str, str | int | float | bool | None] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
