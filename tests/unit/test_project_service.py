import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path

import pytest

from killall.core.config_validator import CONFIG_FILENAME
from killall.core.errors import (
    DurationRangeError,
    InvalidTransitionError,
    NotFoundError,
    SchedulerNotRunningError,
    ValidationError,
)
from killall.core.notifier import EventLogSink, NotificationEmitter
from killall.core.project_service import ProjectService
from killall.core.scheduler import Scheduler
from killall.db.store import SQLiteStore
from killall.models.events import EventType
from killall.models.project import ProjectStatus
from tests.support.lifecycle_helpers import FakeExecutor, scheduler_settings, wait_until


@asynccontextmanager
async def _service(tmp_path: Path) -> AsyncIterator[tuple[ProjectService, SQLiteStore, Scheduler]]:
    store = SQLiteStore(tmp_path / "killall.db")
    notifier = NotificationEmitter([EventLogSink(store)])
    executor = FakeExecutor()
    scheduler = Scheduler(
        scheduler_settings(),
        executor,  # type: ignore[arg-type]
        projects=store,
        notifier=notifier,
    )
    service = ProjectService(store, scheduler, executor, notifier=notifier)  # type: ignore[arg-type]
    await scheduler.start()
    try:
        yield service, store, scheduler
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_register_schedules_project_one_hour_out(tmp_path: Path) -> None:
    async with _service(tmp_path) as (service, store, _scheduler):
        project = await service.register(tmp_path / "demo", {"version": 1, "timeout": "1 hour"})

        delta = project.destroy_at - project.discovered_at
        assert delta.total_seconds() * 1000 == 3_600_000
        assert project.status is ProjectStatus.SCHEDULED

        stored = await store.get_project(project.id)
        assert stored is not None
        assert stored.status is ProjectStatus.SCHEDULED

        events = await store.list_events(project_id=project.id)
        assert [event.event_type for event in events] == [
            EventType.PROJECT_DISCOVERED,
            EventType.PROJECT_SCHEDULED,
        ]


@pytest.mark.asyncio
async def test_register_rejects_sub_second_timeout(tmp_path: Path) -> None:
    async with _service(tmp_path) as (service, store, _scheduler):
        with pytest.raises(DurationRangeError) as exc_info:
            await service.register(tmp_path / "demo", {"version": 1, "timeout": "500 milliseconds"})

        assert "1 second" in str(exc_info.value)
        assert await store.list_projects() == []


@pytest.mark.asyncio
async def test_discovery_reads_config_file_and_deduplicates(tmp_path: Path) -> None:
    project_dir = tmp_path / "infra"
    project_dir.mkdir()
    (project_dir / CONFIG_FILENAME).write_text(
        "version: 1\ntimeout: 2 hours\nname: infra\n",
        encoding="utf-8",
    )

    async with _service(tmp_path) as (service, _store, _scheduler):
        first = await service.on_project_discovered(project_dir)
        second = await service.on_project_discovered(project_dir)

        assert first.id == second.id
        assert first.display_name == "infra"
        assert len(await service.get_active()) == 1


@pytest.mark.asyncio
async def test_project_removal_cancels_pending_destroy(tmp_path: Path) -> None:
    async with _service(tmp_path) as (service, _store, scheduler):
        project = await service.register(tmp_path / "demo", {"version": 1, "timeout": "1h"})

        removed = await service.on_project_removed(tmp_path / "demo")

        assert removed is not None
        assert removed.status is ProjectStatus.CANCELLED
        assert scheduler.get_scheduled() == []
        assert await service.on_project_removed(tmp_path / "unknown") is None

        cancelled = await service.get_by_status(ProjectStatus.CANCELLED)
        assert [item.id for item in cancelled] == [project.id]


@pytest.mark.asyncio
async def test_extend_moves_destroy_time(tmp_path: Path) -> None:
    async with _service(tmp_path) as (service, _store, _scheduler):
        project = await service.register(tmp_path / "demo", {"version": 1, "timeout": "1h"})

        extended = await service.extend(project.id, "30 minutes")

        assert extended.destroy_at == project.destroy_at + timedelta(minutes=30)
        assert extended.status is ProjectStatus.SCHEDULED

        with pytest.raises(ValidationError):
            await service.extend(project.id, "0")
        with pytest.raises(ValidationError):
            await service.extend(project.id, "a while")


@pytest.mark.asyncio
async def test_destroy_runs_immediately(tmp_path: Path) -> None:
    async with _service(tmp_path) as (service, _store, scheduler):
        project = await service.register(tmp_path / "demo", {"version": 1, "timeout": "1h"})

        await service.destroy(project.id)
        await wait_until(lambda: not scheduler.tracked())

        fetched = await service.get(project.id)
        assert fetched.status is ProjectStatus.DESTROYED
        assert fetched.last_execution_id is not None

        with pytest.raises(InvalidTransitionError):
            await service.cancel(project.id)
        with pytest.raises(InvalidTransitionError):
            await service.extend(project.id, "1h")


@pytest.mark.asyncio
async def test_unknown_project(tmp_path: Path) -> None:
    async with _service(tmp_path) as (service, _store, _scheduler):
        with pytest.raises(NotFoundError):
            await service.get("missing")
        with pytest.raises(NotFoundError):
            await service.cancel("missing")
        with pytest.raises(NotFoundError):
            await service.list_executions("missing")


@pytest.mark.asyncio
async def test_concurrent_extends_are_not_lost(tmp_path: Path) -> None:
    async with _service(tmp_path) as (service, store, _scheduler):
        project = await service.register(tmp_path / "demo", {"version": 1, "timeout": "1h"})

        await asyncio.gather(
            service.extend(project.id, "1 hour"),
            service.extend(project.id, "1 hour"),
        )

        extended = await service.get(project.id)
        assert extended.destroy_at == project.destroy_at + timedelta(hours=2)
        stored = await store.get_project(project.id)
        assert stored is not None
        assert stored.destroy_at == extended.destroy_at


@pytest.mark.asyncio
async def test_rediscovery_schedules_project_stuck_in_discovered(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "killall.db")
    executor = FakeExecutor()
    scheduler = Scheduler(scheduler_settings(), executor)  # type: ignore[arg-type]
    service = ProjectService(store, scheduler, executor)  # type: ignore[arg-type]
    raw = {"version": 1, "timeout": "1h"}

    with pytest.raises(SchedulerNotRunningError):
        await service.register(tmp_path / "demo", raw)
    [stranded] = await store.list_projects()
    assert stranded.status is ProjectStatus.DISCOVERED

    await scheduler.start()
    try:
        project = await service.register(tmp_path / "demo", raw)

        assert project.id == stranded.id
        assert project.status is ProjectStatus.SCHEDULED
        assert [item.id for item in scheduler.get_scheduled()] == [stranded.id]
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_history_lists_project_events(tmp_path: Path) -> None:
    async with _service(tmp_path) as (service, _store, _scheduler):
        project = await service.register(tmp_path / "demo", {"version": 1, "timeout": "1h"})
        await service.extend(project.id, "10m")

        history = await service.history(project.id)
        assert [event.event_type for event in history] == [
            EventType.PROJECT_DISCOVERED,
            EventType.PROJECT_SCHEDULED,
            EventType.PROJECT_RESCHEDULED,
        ]

        rescheduled = await service.history(project.id, event_type=EventType.PROJECT_RESCHEDULED)
        assert len(rescheduled) == 1

        with pytest.raises(NotFoundError):
            await service.history("missing")
