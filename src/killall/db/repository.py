"""Repository interfaces consumed by the lifecycle engine.

Implementations raise ``RepositoryError`` when a read or write fails.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Protocol

from killall.models.events import EventType, LifecycleEvent
from killall.models.execution import Execution, ExecutionStatus
from killall.models.project import Project, ProjectStatus


class ProjectRepository(Protocol):
    async def create_project(self, project: Project) -> Project: ...

    async def update_project(self, project: Project) -> Project: ...

    async def get_project(self, project_id: str) -> Project | None: ...

    async def find_project_by_path(self, path: Path) -> Project | None: ...

    async def list_projects(self, *, status: ProjectStatus | None = None) -> list[Project]: ...

    async def delete_project(self, project_id: str) -> None: ...


class ExecutionRepository(Protocol):
    async def create_execution(self, execution: Execution) -> Execution: ...

    async def update_execution(self, execution: Execution) -> Execution: ...

    async def get_execution(self, execution_id: str) -> Execution | None: ...

    async def list_executions(
        self,
        *,
        project_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[Execution]: ...


class EventRepository(Protocol):
    async def append_event(self, event: LifecycleEvent) -> None: ...

    async def list_events(
        self,
        *,
        project_id: str | None = None,
        event_type: EventType | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[LifecycleEvent]: ...
