"""Execution records for destroy attempts."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


class ExecutionStatus(str, Enum):
    """Status of one destroy run."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def terminal(self) -> bool:
        return self not in {ExecutionStatus.QUEUED, ExecutionStatus.RUNNING}


class Execution(BaseModel):
    """Auditable record of a destroy run, retries included."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    project_id: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    status: ExecutionStatus = ExecutionStatus.QUEUED
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    output_truncated: bool = False
    attempts: int = 0
    duration: int | None = None

    def finish(self, status: ExecutionStatus, exit_code: int | None) -> None:
        """Mark terminal and compute the duration in milliseconds."""
        self.status = status
        self.exit_code = exit_code
        self.completed_at = datetime.now(UTC)
        self.duration = int((self.completed_at - self.started_at).total_seconds() * 1000)
