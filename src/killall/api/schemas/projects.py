"""Project API schemas."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from killall.models.execution import Execution
from killall.models.project import Project


class DiscoverProjectRequest(BaseModel):
    """Payload announcing a project directory.

    Without ``config`` the ``.killall.yaml`` in ``path`` is read.
    """

    path: Path
    config: dict[str, Any] | None = None


class ExtendProjectRequest(BaseModel):
    """Payload for pushing back a destroy time."""

    duration: str = Field(min_length=1)


class ProjectResponse(BaseModel):
    project: Project


class ProjectsResponse(BaseModel):
    """Collection response for projects."""

    items: list[Project]


class ExecutionsResponse(BaseModel):
    """Collection response for executions."""

    items: list[Execution]
