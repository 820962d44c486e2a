"""Error taxonomy for the project lifecycle engine."""

from __future__ import annotations

from collections.abc import Iterable


class KillallError(Exception):
    """Base class for all lifecycle engine errors."""


class ValidationError(KillallError):
    """A configuration field violated a rule."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class DurationError(ValidationError):
    """A duration string could not be parsed."""


class DurationRangeError(DurationError):
    """A parsed timeout fell outside the accepted window."""

    def __init__(self, message: str, bound: str, field: str | None = None) -> None:
        super().__init__(message, field)
        self.bound = bound


class NotFoundError(KillallError):
    """Unknown project or execution id."""


class ConfigurationError(KillallError):
    """App-level settings are malformed."""


class ExecutionError(KillallError):
    """A destroy command or hook exited unsuccessfully."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class InvalidTransitionError(KillallError):
    """A status change was requested from an incompatible state."""

    def __init__(
        self,
        project_id: str,
        current: str,
        target: str,
        allowed_from: Iterable[str],
    ) -> None:
        self.project_id = project_id
        self.current = current
        self.target = target
        self.allowed_from = tuple(allowed_from)
        required = ", ".join(self.allowed_from) or "none"
        super().__init__(
            f"Cannot move project {project_id} to '{target}': "
            f"current status is '{current}', required one of: {required}"
        )


class DuplicateScheduleError(KillallError):
    """The project already has a pending destroy entry."""


class RepositoryError(KillallError):
    """The persistence layer failed to read or write a record."""


class SchedulerNotRunningError(KillallError):
    """A mutation reached the scheduler while its loop is stopped."""
