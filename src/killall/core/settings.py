"""App-level settings for the scheduler, executor and their collaborators.

Settings live in a YAML file. Updates are deep-merged onto the current values
by ``merge_settings``, which is pure and reports every key it did not
recognise instead of dropping it silently.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from killall.core.duration import parse_duration
from killall.core.errors import ConfigurationError, DurationError
from killall.logging_config import get_logger

logger = get_logger(__name__)

KILLALL_HOME = Path.home() / ".killall"

# maps replaced wholesale on update rather than merged key by key
FREE_FORM_KEYS = frozenset({"executor.environment"})


def _default_shell() -> str:
    return "cmd.exe" if sys.platform == "win32" else "/bin/bash"


def _default_environment() -> dict[str, str]:
    return {
        "PATH": os.environ.get("PATH", ""),
        "HOME": os.environ.get("HOME", os.environ.get("USERPROFILE", "")),
        "USER": os.environ.get("USER", os.environ.get("USERNAME", "")),
    }


class DatabaseSettings(BaseModel):
    path: Path = KILLALL_HOME / "killall.db"


class WatcherSettings(BaseModel):
    paths: list[Path] = Field(
        default_factory=lambda: [
            Path.home() / "terraform",
            Path.home() / "projects",
            Path.home() / "code",
        ]
    )
    ignored: list[str] = Field(
        default_factory=lambda: [
            "**/node_modules/**",
            "**/.git/**",
            "**/dist/**",
            "**/build/**",
            "**/.terraform/**",
        ]
    )
    poll_interval: float = Field(default=30.0, gt=0)


class SchedulerSettings(BaseModel):
    """Tuning for due-time bookkeeping."""

    max_concurrent_jobs: int = Field(default=5, ge=1)
    default_timeout: str = "2 hours"
    retry_attempts: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=300.0, ge=0)
    poll_interval: float = Field(default=1.0, gt=0)
    warning_minutes: list[int] = Field(default_factory=lambda: [60, 15, 5, 1])

    @field_validator("default_timeout")
    @classmethod
    def _parseable_timeout(cls, value: str) -> str:
        try:
            parse_duration(value)
        except DurationError as exc:
            raise ValueError(str(exc)) from exc
        return value


class ExecutorSettings(BaseModel):
    """Everything the executor needs; it never reads process state itself."""

    max_concurrent_executions: int = Field(default=3, ge=1)
    default_shell: str = Field(default_factory=_default_shell)
    environment: dict[str, str] = Field(default_factory=_default_environment)
    retry_backoff: float = Field(default=5.0, ge=0)
    kill_grace_period: float = Field(default=5.0, ge=0)
    max_output_bytes: int = Field(default=1_048_576, ge=1024)


class NotificationSettings(BaseModel):
    enabled: bool = True
    desktop: bool = True
    sound: bool = True


class AppSettings(BaseModel):
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)


class EnvSettings(BaseSettings):
    """Process-level settings read from ``KILLALL_*`` variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="KILLALL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    config_path: Path = KILLALL_HOME / "killall.yaml"
    database_path: Path | None = None
    log_format: Literal["json", "console"] = "console"
    log_level: str = "INFO"
    api_host: str = "127.0.0.1"
    api_port: int = 8000


def merge_settings(
    current: Mapping[str, Any],
    updates: Mapping[str, Any],
    *,
    known: Mapping[str, Any] | None = None,
    prefix: str = "",
) -> tuple[dict[str, Any], list[str]]:
    """Deep-merge ``updates`` onto ``current``.

    Returns the merged mapping and the dotted paths of keys in ``updates`` that
    ``known`` (defaults to ``current``) does not define. Unknown keys are left
    out of the result. Neither input is mutated.
    """
    schema = current if known is None else known
    merged: dict[str, Any] = dict(current)
    unknown: list[str] = []
    for key, value in updates.items():
        path = f"{prefix}{key}"
        if key not in schema:
            unknown.append(path)
            continue
        existing = merged.get(key)
        if (
            isinstance(value, Mapping)
            and isinstance(existing, Mapping)
            and path not in FREE_FORM_KEYS
        ):
            merged[key], nested_unknown = merge_settings(
                existing, value, known=schema[key], prefix=f"{path}."
            )
            unknown.extend(nested_unknown)
        else:
            merged[key] = value
    return merged, unknown


class ConfigurationService:
    """Load, update and persist ``AppSettings``."""

    def __init__(self, config_path: Path) -> None:
        self._config_path = config_path
        self._settings = AppSettings()

    @property
    def config_path(self) -> Path:
        return self._config_path

    def get(self) -> AppSettings:
        return self._settings.model_copy(deep=True)

    def load(self) -> AppSettings:
        """Read the YAML file, creating it with defaults when missing."""
        if not self._config_path.exists():
            logger.info("settings_file_missing", path=str(self._config_path))
            self._settings = AppSettings()
            self.save()
            return self.get()

        try:
            raw = yaml.safe_load(self._config_path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            msg = f"Failed to read settings from {self._config_path}: {exc}"
            raise ConfigurationError(msg) from exc
        if not isinstance(raw, Mapping):
            msg = f"Settings file {self._config_path} must contain a mapping"
            raise ConfigurationError(msg)

        self._settings = self._merged(AppSettings(), raw)
        logger.info("settings_loaded", path=str(self._config_path))
        return self.get()

    def save(self, settings: AppSettings | None = None) -> None:
        if settings is not None:
            self._settings = settings.model_copy(deep=True)
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        content = yaml.safe_dump(
            self._settings.model_dump(mode="json"),
            sort_keys=False,
            default_flow_style=False,
        )
        self._config_path.write_text(content, encoding="utf-8")

    def update(self, updates: Mapping[str, Any]) -> AppSettings:
        """Apply a partial update; invalid results leave current settings untouched."""
        candidate = self._merged(self._settings, updates)
        self.save(candidate)
        logger.info("settings_updated", sections=sorted(updates.keys()))
        return self.get()

    def reset_to_defaults(self) -> AppSettings:
        self.save(AppSettings())
        logger.info("settings_reset")
        return self.get()

    @staticmethod
    def _merged(base: AppSettings, updates: Mapping[str, Any]) -> AppSettings:
        merged, unknown = merge_settings(base.model_dump(mode="json"), updates)
        for path in unknown:
            logger.warning("settings_unknown_key_ignored", key=path)
        try:
            return AppSettings.model_validate(merged)
        except PydanticValidationError as exc:
            msg = f"Invalid settings: {exc.errors(include_url=False)}"
            raise ConfigurationError(msg) from exc
