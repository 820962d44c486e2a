"""Due-time scheduling of project destruction.

A single loop task owns all scheduling state: the pending map, the wake-up
heap and every tracked project's status. Public mutations are submitted to
that loop as commands and awaited, so ``schedule``, ``reschedule``,
``cancel`` and executor completions are applied one at a time.

Due projects are handed to the executor only while fewer than the concurrency
cap are destroying. Blocked entries stay pending and are retried on the next
poll tick. The status moves to ``destroying`` and the pending entry is removed
before the executor is invoked.
"""

from __future__ import annotations

import asyncio
import heapq
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TypeAlias, TypeVar

from killall.core.errors import (
    DuplicateScheduleError,
    InvalidTransitionError,
    NotFoundError,
    RepositoryError,
    SchedulerNotRunningError,
    ValidationError,
)
from killall.core.executor import Executor
from killall.core.lifecycle import TERMINAL_STATUSES, require_status, transition
from killall.core.notifier import NotificationEmitter
from killall.core.settings import SchedulerSettings
from killall.db.repository import ProjectRepository
from killall.logging_config import get_logger
from killall.models.events import EventType, NotificationType
from killall.models.execution import Execution, ExecutionStatus
from killall.models.project import Project, ProjectStatus

logger = get_logger(__name__)

Clock: TypeAlias = Callable[[], datetime]

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(UTC)


class _EntryKind(str, Enum):
    DESTROY = "destroy"
    WARNING = "warning"


@dataclass(order=True, slots=True)
class _Entry:
    due: datetime
    seq: int
    project_id: str = field(compare=False)
    kind: _EntryKind = field(compare=False)
    generation: int = field(compare=False)
    warning_minutes: int = field(default=0, compare=False)


@dataclass(slots=True)
class _Command:
    action: Callable[[], Awaitable[object]]
    future: asyncio.Future[object]


_STOP = object()


@dataclass(slots=True)
class SchedulerStats:
    scheduled: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    retried: int = 0
    active: int = 0
    pending: int = 0


class Scheduler:
    """Own pending destroys and hand due projects to the executor."""

    def __init__(
        self,
        settings: SchedulerSettings,
        executor: Executor,
        *,
        projects: ProjectRepository | None = None,
        notifier: NotificationEmitter | None = None,
        max_concurrent_executions: int | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._settings = settings
        self._executor = executor
        self._repository = projects
        self._notifier = notifier or NotificationEmitter()
        self._clock = clock
        cap = max_concurrent_executions or executor.settings.max_concurrent_executions
        self._max_concurrent = min(cap, settings.max_concurrent_jobs)

        self._projects: dict[str, Project] = {}
        self._pending: dict[str, datetime] = {}
        self._generation: dict[str, int] = {}
        self._heap: list[_Entry] = []
        self._seq = 0
        self._active: dict[str, asyncio.Task[None]] = {}
        self._dirty: dict[str, Project] = {}
        self._queue: asyncio.Queue[_Command | object] = asyncio.Queue()
        self._loop_task: asyncio.Task[None] | None = None
        self._running = False
        self._stats = SchedulerStats()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active_count(self) -> int:
        return len(self._active)

    def stats(self) -> SchedulerStats:
        return replace(self._stats, active=len(self._active), pending=len(self._pending))

    async def start(self) -> None:
        """Reload persisted schedules and begin the wake-up loop."""
        if self._running:
            return

        if self._repository is not None:
            for project in await self._repository.list_projects(status=ProjectStatus.SCHEDULED):
                if project.id in self._projects:
                    continue
                self._projects[project.id] = project
                self._register(project)
            # discovered but never scheduled, e.g. the scheduler stopped mid-discovery
            for project in await self._repository.list_projects(status=ProjectStatus.DISCOVERED):
                if project.id in self._projects:
                    continue
                transition(project, ProjectStatus.SCHEDULED)
                self._projects[project.id] = project
                self._register(project)
                self._stats.scheduled += 1
                await self._persist(project)

        self._heap.clear()
        for project_id in list(self._pending):
            self._register(self._projects[project_id])

        self._running = True
        self._loop_task = asyncio.create_task(self._run(), name="killall-scheduler")
        logger.info("scheduler_started", pending=len(self._pending))

    async def stop(self) -> None:
        """Halt the loop and drop its timers; in-flight destroys keep running."""
        if not self._running:
            return
        self._running = False
        await self._queue.put(_STOP)
        if self._loop_task is not None:
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        while not self._queue.empty():
            item = self._queue.get_nowait()
            if isinstance(item, _Command) and not item.future.done():
                item.future.set_exception(SchedulerNotRunningError("Scheduler stopped"))
        self._heap.clear()
        logger.info("scheduler_stopped", pending=len(self._pending), active=len(self._active))

    async def wait_idle(self) -> None:
        """Wait for every destroy already handed to the executor."""
        while self._active:
            await asyncio.gather(*self._active.values(), return_exceptions=True)

    async def schedule(self, project: Project) -> Project:
        """Register ``project`` for destruction at ``project.destroy_at``."""

        async def action() -> Project:
            existing = self._projects.get(project.id)
            if existing is not None and existing.status not in TERMINAL_STATUSES:
                msg = f"Project {project.id} is already scheduled; use reschedule"
                raise DuplicateScheduleError(msg)
            for other in self._projects.values():
                if other.id != project.id and other.path == project.path:
                    msg = f"Project {other.id} already tracks {project.path}"
                    raise DuplicateScheduleError(msg)

            require_status(project, ProjectStatus.SCHEDULED, ProjectStatus.DISCOVERED)
            tracked = transition(project.model_copy(deep=True), ProjectStatus.SCHEDULED)
            self._projects[tracked.id] = tracked
            self._register(tracked)
            self._stats.scheduled += 1
            await self._persist(tracked)
            await self._notifier.emit(
                EventType.PROJECT_SCHEDULED,
                f"{tracked.display_name} scheduled",
                f"Destroy at {tracked.destroy_at.isoformat()}",
                project_id=tracked.id,
            )
            return tracked.model_copy(deep=True)

        return await self._submit(action)

    async def reschedule(self, project_id: str, new_date: datetime) -> Project:
        """Move the due time of a scheduled project without changing its status."""
        return await self._submit(lambda: self._move(project_id, lambda _current: new_date))

    async def extend(self, project_id: str, delta: timedelta) -> Project:
        """Push the due time back by ``delta`` relative to the due time at apply time."""
        return await self._submit(lambda: self._move(project_id, lambda current: current + delta))

    async def destroy_now(self, project_id: str) -> Project:
        """Make a scheduled project due immediately; the concurrency cap still applies."""
        return await self.reschedule(project_id, self._clock())

    async def cancel(self, project_id: str) -> Project:
        """Cancel a project that has not started destroying."""

        async def action() -> Project:
            project = await self._lookup(project_id)
            require_status(
                project,
                ProjectStatus.CANCELLED,
                ProjectStatus.DISCOVERED,
                ProjectStatus.SCHEDULED,
            )
            transition(project, ProjectStatus.CANCELLED)
            self._forget(project.id)
            self._stats.cancelled += 1
            await self._persist(project)
            await self._notifier.emit(
                EventType.PROJECT_CANCELLED,
                f"{project.display_name} cancelled",
                "Scheduled destruction was cancelled",
                kind=NotificationType.WARNING,
                project_id=project.id,
            )
            return project.model_copy(deep=True)

        return await self._submit(action)

    def get_scheduled(self) -> list[Project]:
        """Pending projects ordered by ``destroy_at`` ascending."""
        projects = [self._projects[project_id] for project_id in self._pending]
        projects.sort(key=lambda project: project.destroy_at)
        return [project.model_copy(deep=True) for project in projects]

    def get_project(self, project_id: str) -> Project | None:
        project = self._projects.get(project_id)
        return project.model_copy(deep=True) if project is not None else None

    def tracked(self) -> list[Project]:
        return [project.model_copy(deep=True) for project in self._projects.values()]

    async def _move(
        self,
        project_id: str,
        new_due: Callable[[datetime], datetime],
    ) -> Project:
        project = await self._lookup(project_id)
        require_status(project, ProjectStatus.SCHEDULED, ProjectStatus.SCHEDULED)
        new_date = new_due(project.destroy_at)
        if new_date < project.discovered_at:
            msg = "destroy_at must not precede discovered_at"
            raise ValidationError(msg, "destroy_at")
        transition(project, ProjectStatus.SCHEDULED)
        project.destroy_at = new_date
        self._projects[project.id] = project
        self._register(project)
        await self._persist(project)
        await self._notifier.emit(
            EventType.PROJECT_RESCHEDULED,
            f"{project.display_name} rescheduled",
            f"Destroy at {new_date.isoformat()}",
            project_id=project.id,
        )
        return project.model_copy(deep=True)

    async def _submit(self, action: Callable[[], Awaitable[T]]) -> T:
        if not self._running:
            msg = "Scheduler is not running"
            raise SchedulerNotRunningError(msg)
        future: asyncio.Future[object] = asyncio.get_running_loop().create_future()
        await self._queue.put(_Command(action=action, future=future))
        return await future  # type: ignore[return-value]

    async def _run(self) -> None:
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), self._next_wakeup())
            except TimeoutError:
                item = None

            if item is _STOP:
                return
            if isinstance(item, _Command):
                await self._apply(item)
            try:
                await self._dispatch_due()
            except Exception:
                logger.exception("scheduler_dispatch_failed")

    async def _apply(self, command: _Command) -> None:
        try:
            result = await command.action()
        except Exception as exc:
            if not command.future.done():
                command.future.set_exception(exc)
        else:
            if not command.future.done():
                command.future.set_result(result)

    def _next_wakeup(self) -> float | None:
        self._drop_stale()
        if not self._heap:
            return None
        now = self._clock()
        if self._has_blocked_due(now):
            return self._settings.poll_interval
        delay = (self._heap[0].due - now).total_seconds()
        return max(0.0, delay)

    def _has_blocked_due(self, now: datetime) -> bool:
        if len(self._active) < self._max_concurrent:
            return False
        return any(
            entry.kind is _EntryKind.DESTROY and entry.due <= now and not self._is_stale(entry)
            for entry in self._heap
        )

    async def _dispatch_due(self) -> None:
        now = self._clock()
        deferred: list[_Entry] = []
        try:
            while self._heap and self._heap[0].due <= now:
                entry = heapq.heappop(self._heap)
                if self._is_stale(entry):
                    continue
                if entry.kind is _EntryKind.WARNING:
                    await self._warn(entry)
                    continue
                if len(self._active) >= self._max_concurrent:
                    deferred.append(entry)
                    continue
                try:
                    await self._handoff(entry.project_id)
                except InvalidTransitionError as exc:
                    logger.warning(
                        "scheduler_handoff_rejected",
                        project_id=entry.project_id,
                        error=str(exc),
                    )
                    self._forget(entry.project_id, keep_project=True)
        finally:
            for entry in deferred:
                heapq.heappush(self._heap, entry)
        if deferred:
            logger.debug("scheduler_backpressure", blocked=len(deferred), active=len(self._active))

    async def _handoff(self, project_id: str) -> None:
        project = self._projects[project_id]
        transition(project, ProjectStatus.DESTROYING)
        self._forget(project_id, keep_project=True)
        execution = Execution(project_id=project.id)
        project.last_execution_id = execution.id
        await self._persist(project)
        logger.info("scheduler_handoff", project_id=project.id, execution_id=execution.id)
        self._active[project_id] = asyncio.create_task(
            self._run_destroy(project, execution),
            name=f"killall-destroy-{project_id}",
        )

    async def _run_destroy(self, project: Project, execution: Execution) -> None:
        try:
            execution = await self._executor.execute(project, execution)
        except Exception:
            logger.exception("executor_crashed", project_id=project.id)
            execution.finish(ExecutionStatus.FAILED, None)

        async def action() -> None:
            await self._complete(project.id, execution)

        if self._running:
            try:
                await self._submit(action)
                return
            except SchedulerNotRunningError:
                pass
        await action()

    async def _complete(self, project_id: str, execution: Execution) -> None:
        self._active.pop(project_id, None)
        project = self._projects[project_id]
        project.last_execution_id = execution.id

        if execution.status is ExecutionStatus.COMPLETED:
            transition(project, ProjectStatus.DESTROYED)
            self._stats.completed += 1
            await self._notifier.emit(
                EventType.PROJECT_DESTROYED,
                f"{project.display_name} destroyed",
                f"Destroy finished in {execution.duration}ms",
                kind=NotificationType.SUCCESS,
                project_id=project.id,
                execution_id=execution.id,
            )
        elif execution.status is ExecutionStatus.CANCELLED:
            transition(project, ProjectStatus.CANCELLED)
            self._stats.cancelled += 1
            await self._notifier.emit(
                EventType.PROJECT_CANCELLED,
                f"{project.display_name} cancelled",
                "The running destroy was cancelled",
                kind=NotificationType.WARNING,
                project_id=project.id,
                execution_id=execution.id,
            )
        else:
            await self._fail(project, execution)

        await self._persist(project)
        if project.status in TERMINAL_STATUSES or project.status is ProjectStatus.FAILED:
            self._projects.pop(project_id, None)

    async def _fail(self, project: Project, execution: Execution) -> None:
        error = f"Execution {execution.status.value} with exit code {execution.exit_code}"
        transition(project, ProjectStatus.FAILED, error=error)

        retry_count = int(project.metadata.get("retry_count", 0))
        if retry_count < self._settings.retry_attempts:
            project.metadata["retry_count"] = retry_count + 1
            project.destroy_at = self._clock() + timedelta(seconds=self._settings.retry_delay)
            transition(project, ProjectStatus.SCHEDULED)
            self._register(project)
            self._stats.retried += 1
            await self._notifier.emit(
                EventType.PROJECT_SCHEDULED,
                f"{project.display_name} retry scheduled",
                f"Attempt {retry_count + 2} at {project.destroy_at.isoformat()}: {error}",
                kind=NotificationType.WARNING,
                project_id=project.id,
                execution_id=execution.id,
            )
            return

        self._stats.failed += 1
        await self._notifier.emit(
            EventType.PROJECT_FAILED,
            f"{project.display_name} failed to destroy",
            error,
            kind=NotificationType.ERROR,
            project_id=project.id,
            execution_id=execution.id,
        )

    async def _warn(self, entry: _Entry) -> None:
        project = self._projects.get(entry.project_id)
        if project is None:
            return
        await self._notifier.emit(
            EventType.PROJECT_WARNING,
            f"{project.display_name} will be destroyed soon",
            f"Destruction in {entry.warning_minutes} minute(s)",
            kind=NotificationType.WARNING,
            project_id=project.id,
        )

    async def _lookup(self, project_id: str) -> Project:
        project = self._projects.get(project_id)
        if project is not None:
            return project
        if self._repository is not None:
            project = await self._repository.get_project(project_id)
        if project is None:
            msg = f"Project not found: {project_id}"
            raise NotFoundError(msg)
        return project

    async def _persist(self, project: Project) -> None:
        # in-memory state stays authoritative; failed writes are retried on the next mutation
        if self._repository is None:
            return
        self._dirty[project.id] = project
        for project_id, dirty in list(self._dirty.items()):
            try:
                await self._repository.update_project(dirty)
            except RepositoryError as exc:
                logger.warning(
                    "project_persist_failed",
                    project_id=project_id,
                    status=dirty.status.value,
                    error=str(exc),
                )
            else:
                self._dirty.pop(project_id, None)

    def _register(self, project: Project) -> None:
        generation = self._generation.get(project.id, 0) + 1
        self._generation[project.id] = generation
        self._pending[project.id] = project.destroy_at
        self._push(project.destroy_at, project.id, _EntryKind.DESTROY, generation)

        now = self._clock()
        for minutes in self._settings.warning_minutes:
            warn_at = project.destroy_at - timedelta(minutes=minutes)
            if warn_at > now:
                self._push(warn_at, project.id, _EntryKind.WARNING, generation, minutes)

    def _push(
        self,
        due: datetime,
        project_id: str,
        kind: _EntryKind,
        generation: int,
        warning_minutes: int = 0,
    ) -> None:
        self._seq += 1
        heapq.heappush(
            self._heap,
            _Entry(due, self._seq, project_id, kind, generation, warning_minutes),
        )

    def _forget(self, project_id: str, *, keep_project: bool = False) -> None:
        self._pending.pop(project_id, None)
        self._generation[project_id] = self._generation.get(project_id, 0) + 1
        if not keep_project:
            self._projects.pop(project_id, None)

    def _is_stale(self, entry: _Entry) -> bool:
        return (
            entry.project_id not in self._pending
            or self._generation.get(entry.project_id) != entry.generation
        )

    def _drop_stale(self) -> None:
        while self._heap and self._is_stale(self._heap[0]):
            heapq.heappop(self._heap)
