"""Project operations exposed to the UI and CLI layers."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

from killall.core.config_validator import load_config_file, validate_config
from killall.core.duration import parse_duration
from killall.core.errors import NotFoundError, ValidationError
from killall.core.executor import Executor
from killall.core.lifecycle import ACTIVE_STATUSES
from killall.core.notifier import NotificationEmitter
from killall.core.scheduler import Clock, Scheduler, utcnow
from killall.db.repository import EventRepository, ExecutionRepository, ProjectRepository
from killall.logging_config import get_logger
from killall.models.events import EventType, LifecycleEvent
from killall.models.execution import Execution
from killall.models.project import Project, ProjectConfig, ProjectStatus

logger = get_logger(__name__)


class ProjectStore(ProjectRepository, ExecutionRepository, EventRepository, Protocol):
    pass


class ProjectService:
    """Track discovered projects and drive them through the scheduler."""

    def __init__(
        self,
        store: ProjectStore,
        scheduler: Scheduler,
        executor: Executor,
        *,
        notifier: NotificationEmitter | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._executor = executor
        self._notifier = notifier or NotificationEmitter()
        self._clock = clock

    async def on_project_discovered(self, path: Path) -> Project:
        """Handle a discovery event for the directory holding ``.killall.yaml``."""
        config = load_config_file(path)
        return await self._track(path, config)

    async def register(self, path: Path, raw: Mapping[str, object]) -> Project:
        """Validate an already parsed config and start tracking ``path``."""
        config = validate_config(raw, path)
        return await self._track(path, config)

    async def on_project_removed(self, path: Path) -> Project | None:
        """Cancel the pending destroy of a project whose config disappeared."""
        project = await self._find_active_by_path(path)
        if project is None:
            return None
        if project.status in {ProjectStatus.DISCOVERED, ProjectStatus.SCHEDULED}:
            return await self._scheduler.cancel(project.id)
        logger.info("project_removed_while_destroying", project_id=project.id, path=str(path))
        return project

    async def get_all(self) -> list[Project]:
        projects = {project.id: project for project in await self._store.list_projects()}
        for project in self._scheduler.tracked():
            projects[project.id] = project
        return sorted(projects.values(), key=lambda project: project.destroy_at)

    async def get_active(self) -> list[Project]:
        return [project for project in await self.get_all() if project.status in ACTIVE_STATUSES]

    async def get_by_status(self, status: ProjectStatus) -> list[Project]:
        return [project for project in await self.get_all() if project.status is status]

    async def get(self, project_id: str) -> Project:
        project = self._scheduler.get_project(project_id)
        if project is None:
            project = await self._store.get_project(project_id)
        if project is None:
            msg = f"Project not found: {project_id}"
            raise NotFoundError(msg)
        return project

    async def cancel(self, project_id: str) -> Project:
        return await self._scheduler.cancel(project_id)

    async def extend(self, project_id: str, additional: str) -> Project:
        """Push the destroy time back by ``additional`` (e.g. ``"1 hour"``)."""
        extra = parse_duration(additional)
        if extra <= 0:
            msg = "Extension must be a positive duration"
            raise ValidationError(msg, "additional")
        return await self._scheduler.extend(project_id, timedelta(milliseconds=extra))

    async def destroy(self, project_id: str) -> Project:
        """Hand the project to the executor without waiting for its due time."""
        return await self._scheduler.destroy_now(project_id)

    async def list_executions(self, project_id: str) -> list[Execution]:
        await self.get(project_id)
        return await self._store.list_executions(project_id=project_id)

    async def history(
        self,
        project_id: str,
        *,
        event_type: EventType | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[LifecycleEvent]:
        """Lifecycle events recorded for a known project, oldest first."""
        await self.get(project_id)
        return await self._store.list_events(
            project_id=project_id,
            event_type=event_type,
            since=since,
            until=until,
        )

    def running_executions(self) -> list[Execution]:
        return self._executor.get_running()

    async def cancel_execution(self, execution_id: str) -> Execution:
        return await self._executor.cancel(execution_id)

    async def _track(self, path: Path, config: ProjectConfig) -> Project:
        existing = await self._find_active_by_path(path)
        if existing is not None and existing.status is ProjectStatus.DISCOVERED:
            # persisted by an earlier discovery whose schedule call failed
            logger.info("project_schedule_resumed", project_id=existing.id, path=str(path))
            return await self._scheduler.schedule(existing)
        if existing is not None:
            logger.info("project_already_tracked", project_id=existing.id, path=str(path))
            return existing

        project = Project.from_config(path, config, discovered_at=self._clock())
        await self._store.create_project(project)
        logger.info(
            "project_discovered",
            project_id=project.id,
            path=str(path),
            destroy_at=project.destroy_at.isoformat(),
        )
        await self._notifier.emit(
            EventType.PROJECT_DISCOVERED,
            f"Discovered {project.display_name}",
            f"Timeout {config.timeout}",
            project_id=project.id,
        )
        return await self._scheduler.schedule(project)

    async def _find_active_by_path(self, path: Path) -> Project | None:
        for project in self._scheduler.tracked():
            if project.path == path:
                return project
        project = await self._store.find_project_by_path(path)
        if project is not None and project.status in ACTIVE_STATUSES:
            return project
        return None
