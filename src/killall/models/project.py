"""Project domain models."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from killall.core.duration import parse_timeout


class ProjectStatus(str, Enum):
    """Lifecycle status for a tracked project."""

    DISCOVERED = "discovered"
    SCHEDULED = "scheduled"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExecutionOptions(BaseModel):
    """How the destroy command runs."""

    model_config = ConfigDict(frozen=True)

    retries: int = 0
    environment: dict[str, str] = Field(default_factory=dict)
    working_directory: str | None = None
    shell: str | None = None


class HookConfig(BaseModel):
    """Shell command sequences run around the destroy command."""

    model_config = ConfigDict(frozen=True)

    before_destroy: tuple[str, ...] = ()
    after_destroy: tuple[str, ...] = ()
    on_failure: tuple[str, ...] = ()


class ProjectConfig(BaseModel):
    """Validated contents of a project's ``.killall.yaml``."""

    model_config = ConfigDict(frozen=True)

    version: int = 1
    timeout: str
    command: str | None = None
    name: str | None = None
    tags: tuple[str, ...] = ()
    execution: ExecutionOptions = Field(default_factory=ExecutionOptions)
    hooks: HookConfig = Field(default_factory=HookConfig)

    @property
    def timeout_ms(self) -> int:
        return parse_timeout(self.timeout)


class Project(BaseModel):
    """Tracked infrastructure directory with a destroy schedule."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    path: Path
    config: ProjectConfig
    discovered_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    destroy_at: datetime
    status: ProjectStatus = ProjectStatus.DISCOVERED
    last_execution_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def _destroy_not_before_discovery(self) -> Project:
        if self.destroy_at < self.discovered_at:
            msg = "destroy_at must not precede discovered_at"
            raise ValueError(msg)
        return self

    @classmethod
    def from_config(
        cls,
        path: Path,
        config: ProjectConfig,
        *,
        discovered_at: datetime | None = None,
    ) -> Project:
        """Create a discovered project whose destroy time is discovery + timeout."""
        discovered = discovered_at or datetime.now(UTC)
        return cls(
            path=path,
            config=config,
            discovered_at=discovered,
            destroy_at=discovered + timedelta(milliseconds=config.timeout_ms),
        )

    @property
    def display_name(self) -> str:
        return self.config.name or self.path.name

    def touch(self) -> None:
        """Update mutation timestamp."""
        self.updated_at = datetime.now(UTC)
