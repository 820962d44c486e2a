"""Lifecycle history of a single project."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from killall.api.deps import get_project_service
from killall.api.schemas.events import EventResponse, EventsResponse
from killall.core.project_service import ProjectService
from killall.models.events import EventType

router = APIRouter(prefix="/api/v1/projects/{project_id}/events", tags=["events"])


def _event_type(value: str | None) -> EventType | None:
    if value is None:
        return None
    try:
        return EventType(value)
    except ValueError as exc:
        known = ", ".join(member.value for member in EventType)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown event_type {value!r}; expected one of {known}",
        ) from exc


@router.get("", response_model=EventsResponse)
async def project_history(
    project_id: str,
    event_type: str | None = None,
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    service: ProjectService = Depends(get_project_service),
) -> EventsResponse:
    events = await service.history(
        project_id,
        event_type=_event_type(event_type),
        since=since,
        until=until,
    )
    return EventsResponse(items=[EventResponse.from_event(event) for event in events])
