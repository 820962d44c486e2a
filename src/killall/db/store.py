"""Async SQLite persistence for projects, executions and lifecycle events."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import aiosqlite

from killall.core.errors import RepositoryError
from killall.db.migrations import apply_migrations
from killall.models.events import EventType, LifecycleEvent
from killall.models.execution import Execution, ExecutionStatus
from killall.models.project import Project, ProjectConfig, ProjectStatus


class SQLiteStore:
    """Data access layer implementing the project, execution and event repositories."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            conn = await aiosqlite.connect(self._db_path)
        except (aiosqlite.Error, OSError) as exc:
            msg = f"Cannot open database {self._db_path}: {exc}"
            raise RepositoryError(msg) from exc
        conn.row_factory = aiosqlite.Row
        try:
            await apply_migrations(conn)
            yield conn
        except aiosqlite.Error as exc:
            msg = f"Database operation failed: {exc}"
            raise RepositoryError(msg) from exc
        finally:
            await conn.close()

    async def create_project(self, project: Project) -> Project:
        async with self.connection() as conn:
            try:
                await conn.execute(
                    """
                    INSERT INTO projects(
                        id,
                        path,
                        config,
                        discovered_at,
                        destroy_at,
                        status,
                        last_execution_id,
                        metadata,
                        updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    self._project_params(project),
                )
            except aiosqlite.IntegrityError as exc:
                msg = f"Project already exists: {project.id}"
                raise RepositoryError(msg) from exc
            await conn.commit()
        return project

    async def update_project(self, project: Project) -> Project:
        async with self.connection() as conn:
            cursor = await conn.execute(
                """
                UPDATE projects SET
                    path = ?,
                    config = ?,
                    discovered_at = ?,
                    destroy_at = ?,
                    status = ?,
                    last_execution_id = ?,
                    metadata = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (*self._project_params(project)[1:], project.id),
            )
            await conn.commit()
            if cursor.rowcount == 0:
                msg = f"Project not found: {project.id}"
                raise RepositoryError(msg)
        return project

    async def get_project(self, project_id: str) -> Project | None:
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,))
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._project_from_row(row)

    async def find_project_by_path(self, path: Path) -> Project | None:
        async with self.connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM projects WHERE path = ? ORDER BY discovered_at DESC LIMIT 1",
                (str(path),),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._project_from_row(row)

    async def list_projects(self, *, status: ProjectStatus | None = None) -> list[Project]:
        query = "SELECT * FROM projects"
        params: tuple[str, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        query += " ORDER BY destroy_at ASC"
        async with self.connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
        return [self._project_from_row(row) for row in rows]

    async def delete_project(self, project_id: str) -> None:
        async with self.connection() as conn:
            await conn.execute("DELETE FROM executions WHERE project_id = ?", (project_id,))
            await conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            await conn.commit()

    async def create_execution(self, execution: Execution) -> Execution:
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO executions(
                    id,
                    project_id,
                    started_at,
                    completed_at,
                    status,
                    exit_code,
                    stdout,
                    stderr,
                    output_truncated,
                    attempts,
                    duration
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._execution_params(execution),
            )
            await conn.commit()
        return execution

    async def update_execution(self, execution: Execution) -> Execution:
        async with self.connection() as conn:
            cursor = await conn.execute(
                """
                UPDATE executions SET
                    project_id = ?,
                    started_at = ?,
                    completed_at = ?,
                    status = ?,
                    exit_code = ?,
                    stdout = ?,
                    stderr = ?,
                    output_truncated = ?,
                    attempts = ?,
                    duration = ?
                WHERE id = ?
                """,
                (*self._execution_params(execution)[1:], execution.id),
            )
            await conn.commit()
            if cursor.rowcount == 0:
                msg = f"Execution not found: {execution.id}"
                raise RepositoryError(msg)
        return execution

    async def get_execution(self, execution_id: str) -> Execution | None:
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT * FROM executions WHERE id = ?", (execution_id,))
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._execution_from_row(row)

    async def list_executions(
        self,
        *,
        project_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[Execution]:
        query = "SELECT * FROM executions WHERE 1 = 1"
        params: list[str] = []

        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)

        if status:
            query += " AND status = ?"
            params.append(status.value)

        query += " ORDER BY started_at ASC"

        async with self.connection() as conn:
            cursor = await conn.execute(query, tuple(params))
            rows = await cursor.fetchall()
        return [self._execution_from_row(row) for row in rows]

    async def append_event(self, event: LifecycleEvent) -> None:
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO lifecycle_events(id, project_id, event_type, payload, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.project_id,
                    event.event_type.value,
                    json.dumps(event.payload),
                    event.timestamp.isoformat(),
                ),
            )
            await conn.commit()

    async def list_events(
        self,
        *,
        project_id: str | None = None,
        event_type: EventType | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[LifecycleEvent]:
        query = "SELECT * FROM lifecycle_events WHERE 1 = 1"
        params: list[str] = []

        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)

        if event_type:
            query += " AND event_type = ?"
            params.append(event_type.value)

        if since:
            query += " AND timestamp >= ?"
            params.append(since.isoformat())

        if until:
            query += " AND timestamp <= ?"
            params.append(until.isoformat())

        query += " ORDER BY timestamp ASC"

        async with self.connection() as conn:
            cursor = await conn.execute(query, tuple(params))
            rows = await cursor.fetchall()

        return [self._event_from_row(row) for row in rows]

    @staticmethod
    def _project_params(project: Project) -> tuple[str | None, ...]:
        return (
            project.id,
            str(project.path),
            project.config.model_dump_json(),
            project.discovered_at.isoformat(),
            project.destroy_at.isoformat(),
            project.status.value,
            project.last_execution_id,
            json.dumps(project.metadata, default=str),
            project.updated_at.isoformat(),
        )

    @staticmethod
    def _execution_params(execution: Execution) -> tuple[str | int | None, ...]:
        return (
            execution.id,
            execution.project_id,
            execution.started_at.isoformat(),
            execution.completed_at.isoformat() if execution.completed_at else None,
            execution.status.value,
            execution.exit_code,
            execution.stdout,
            execution.stderr,
            int(execution.output_truncated),
            execution.attempts,
            execution.duration,
        )

    @staticmethod
    def _project_from_row(row: aiosqlite.Row) -> Project:
        return Project(
            id=str(row["id"]),
            path=Path(str(row["path"])),
            config=ProjectConfig.model_validate_json(str(row["config"])),
            discovered_at=datetime.fromisoformat(str(row["discovered_at"])),
            destroy_at=datetime.fromisoformat(str(row["destroy_at"])),
            status=ProjectStatus(str(row["status"])),
            last_execution_id=str(row["last_execution_id"]) if row["last_execution_id"] else None,
            metadata=json.loads(str(row["metadata"])),
            updated_at=datetime.fromisoformat(str(row["updated_at"])),
        )

    @staticmethod
    def _execution_from_row(row: aiosqlite.Row) -> Execution:
        return Execution(
            id=str(row["id"]),
            project_id=str(row["project_id"]),
            started_at=datetime.fromisoformat(str(row["started_at"])),
            completed_at=(
                datetime.fromisoformat(str(row["completed_at"])) if row["completed_at"] else None
            ),
            status=ExecutionStatus(str(row["status"])),
            exit_code=int(row["exit_code"]) if row["exit_code"] is not None else None,
            stdout=str(row["stdout"]),
            stderr=str(row["stderr"]),
            output_truncated=bool(row["output_truncated"]),
            attempts=int(row["attempts"]),
            duration=int(row["duration"]) if row["duration"] is not None else None,
        )

    @staticmethod
    def _event_from_row(row: aiosqlite.Row) -> LifecycleEvent:
        return LifecycleEvent(
            id=str(row["id"]),
            project_id=str(row["project_id"]),
            event_type=EventType(str(row["event_type"])),
            payload=json.loads(str(row["payload"])),
            timestamp=datetime.fromisoformat(str(row["timestamp"])),
        )
