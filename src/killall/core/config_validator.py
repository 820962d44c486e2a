"""Validation of per-project ``.killall.yaml`` files.

Rules are checked in a fixed order and the first violation wins. Nothing is
partially applied: a ``ProjectConfig`` is only built once every rule passed.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from killall.core.duration import parse_timeout
from killall.core.errors import DurationError, ValidationError
from killall.models.project import ExecutionOptions, HookConfig, ProjectConfig

CONFIG_FILENAME = ".killall.yaml"
SUPPORTED_VERSION = 1
MAX_RETRIES = 10

_TAG_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,50}")
_NAME_PATTERN = re.compile(r"[A-Za-z0-9_.-]{1,100}")

_HOOK_KEYS: tuple[tuple[str, str], ...] = (
    ("before_destroy", "beforeDestroy"),
    ("after_destroy", "afterDestroy"),
    ("on_failure", "onFailure"),
)


def validate_config(raw: object, project_path: Path) -> ProjectConfig:
    """Validate a parsed config mapping for the project at ``project_path``."""
    if not isinstance(raw, Mapping):
        msg = "Configuration must be a mapping"
        raise ValidationError(msg, "config")

    version = raw.get("version")
    if isinstance(version, bool) or version != SUPPORTED_VERSION:
        msg = f"version must be {SUPPORTED_VERSION} (only supported version), got {version!r}"
        raise ValidationError(msg, "version")

    timeout = raw.get("timeout")
    if not isinstance(timeout, str):
        msg = "timeout is required and must be a string such as '2 hours'"
        raise ValidationError(msg, "timeout")
    try:
        parse_timeout(timeout)
    except DurationError as exc:
        exc.field = "timeout"
        raise

    command = raw.get("command")
    if command is not None and (not isinstance(command, str) or not command.strip()):
        msg = "command must be a non-empty string"
        raise ValidationError(msg, "command")

    name = raw.get("name")
    if name is not None and (not isinstance(name, str) or not _NAME_PATTERN.fullmatch(name)):
        msg = "name must be 1-100 characters of letters, digits, '.', '_' or '-'"
        raise ValidationError(msg, "name")

    tags = _validate_tags(raw.get("tags"))
    execution = _validate_execution(raw.get("execution"), project_path)
    hooks = _validate_hooks(raw.get("hooks"))

    return ProjectConfig(
        version=SUPPORTED_VERSION,
        timeout=timeout,
        command=command,
        name=name,
        tags=tags,
        execution=execution,
        hooks=hooks,
    )


def load_config_file(project_path: Path) -> ProjectConfig:
    """Read and validate ``.killall.yaml`` inside ``project_path``."""
    config_path = project_path / CONFIG_FILENAME
    try:
        content = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Failed to read {config_path}: {exc.strerror or exc}"
        raise ValidationError(msg, "file") from exc

    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        msg = f"Invalid YAML in {config_path}: {exc}"
        raise ValidationError(msg, "yaml") from exc

    return validate_config(parsed, project_path)


def is_within(path: str, project_path: Path) -> bool:
    """Return whether ``path`` resolves inside ``project_path``."""
    root = project_path.resolve()
    resolved = (root / path).resolve()
    return resolved == root or root in resolved.parents


def _pick(raw: Mapping[str, Any], snake: str, camel: str) -> Any:
    if camel in raw:
        return raw[camel]
    return raw.get(snake)


def _validate_tags(tags: object) -> tuple[str, ...]:
    if tags is None:
        return ()
    if not isinstance(tags, list):
        msg = "tags must be a list of strings"
        raise ValidationError(msg, "tags")
    for tag in tags:
        if not isinstance(tag, str) or not _TAG_PATTERN.fullmatch(tag):
            msg = f"tag {tag!r} must be 1-50 characters of letters, digits, '_' or '-'"
            raise ValidationError(msg, "tags")
    return tuple(tags)


def _validate_execution(execution: object, project_path: Path) -> ExecutionOptions:
    if execution is None:
        return ExecutionOptions()
    if not isinstance(execution, Mapping):
        msg = "execution must be a mapping"
        raise ValidationError(msg, "execution")

    retries = execution.get("retries", 0)
    if retries is None:
        retries = 0
    if isinstance(retries, bool) or not isinstance(retries, int) or not 0 <= retries <= MAX_RETRIES:
        msg = f"execution.retries must be an integer between 0 and {MAX_RETRIES}"
        raise ValidationError(msg, "execution.retries")

    environment = _pick(execution, "environment_variables", "environment")
    if environment is None:
        environment = {}
    if not isinstance(environment, Mapping):
        msg = "execution.environment must be a mapping of strings"
        raise ValidationError(msg, "execution.environment")
    for key, value in environment.items():
        if not isinstance(key, str) or not isinstance(value, str):
            msg = f"execution.environment.{key} must be a string"
            raise ValidationError(msg, "execution.environment")

    working_directory = _pick(execution, "working_directory", "workingDirectory")
    if working_directory is not None:
        if not isinstance(working_directory, str) or not working_directory.strip():
            msg = "execution.workingDirectory must be a non-empty string"
            raise ValidationError(msg, "execution.workingDirectory")
        if not is_within(working_directory, project_path):
            msg = f"Path traversal detected: {working_directory}"
            raise ValidationError(msg, "execution.workingDirectory")

    shell = execution.get("shell")
    if shell is not None and (not isinstance(shell, str) or not shell.strip()):
        msg = "execution.shell must be a non-empty string"
        raise ValidationError(msg, "execution.shell")

    return ExecutionOptions(
        retries=retries,
        environment=dict(environment),
        working_directory=working_directory,
        shell=shell,
    )


def _validate_hooks(hooks: object) -> HookConfig:
    if hooks is None:
        return HookConfig()
    if not isinstance(hooks, Mapping):
        msg = "hooks must be a mapping"
        raise ValidationError(msg, "hooks")

    validated: dict[str, tuple[str, ...]] = {}
    for snake, camel in _HOOK_KEYS:
        commands = _pick(hooks, snake, camel)
        if commands is None:
            continue
        field = f"hooks.{camel}"
        if not isinstance(commands, list) or not commands:
            msg = f"{field} must be a non-empty list of commands"
            raise ValidationError(msg, field)
        for command in commands:
            if not isinstance(command, str) or not command.strip():
                msg = f"{field} must contain only non-empty strings"
                raise ValidationError(msg, field)
        validated[snake] = tuple(commands)

    return HookConfig(**validated)
