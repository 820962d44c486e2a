"""Project status state machine.

    discovered -> scheduled -> destroying -> destroyed | failed | cancelled

``scheduled`` may be re-entered from ``scheduled`` (reschedule). ``cancelled``
is reachable from ``discovered`` and ``scheduled`` only. ``failed`` may loop
back to ``scheduled`` while retries remain. An in-flight destroy reaches
``cancelled`` only through the executor reporting a cancelled execution.
"""

from __future__ import annotations

from datetime import UTC, datetime

from killall.core.errors import InvalidTransitionError
from killall.models.project import Project, ProjectStatus

ALLOWED_TRANSITIONS: dict[ProjectStatus, frozenset[ProjectStatus]] = {
    ProjectStatus.DISCOVERED: frozenset({ProjectStatus.SCHEDULED, ProjectStatus.CANCELLED}),
    ProjectStatus.SCHEDULED: frozenset(
        {ProjectStatus.SCHEDULED, ProjectStatus.DESTROYING, ProjectStatus.CANCELLED}
    ),
    ProjectStatus.DESTROYING: frozenset(
        {ProjectStatus.DESTROYED, ProjectStatus.FAILED, ProjectStatus.CANCELLED}
    ),
    ProjectStatus.FAILED: frozenset({ProjectStatus.SCHEDULED}),
    ProjectStatus.DESTROYED: frozenset(),
    ProjectStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({ProjectStatus.DESTROYED, ProjectStatus.CANCELLED})
ACTIVE_STATUSES = frozenset(
    {ProjectStatus.DISCOVERED, ProjectStatus.SCHEDULED, ProjectStatus.DESTROYING}
)

MAX_HISTORY = 50


def can_transition(current: ProjectStatus, target: ProjectStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def sources_for(target: ProjectStatus) -> list[ProjectStatus]:
    """Statuses from which ``target`` is reachable."""
    return [status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets]


def require_status(project: Project, target: ProjectStatus, *allowed: ProjectStatus) -> None:
    """Raise unless ``project`` is in one of ``allowed``."""
    if project.status not in allowed:
        raise InvalidTransitionError(
            project.id,
            project.status.value,
            target.value,
            [status.value for status in allowed],
        )


def transition(
    project: Project,
    target: ProjectStatus,
    *,
    error: str | None = None,
    at: datetime | None = None,
) -> Project:
    """Move ``project`` to ``target`` in place, recording the change in metadata.

    Invalid requests raise ``InvalidTransitionError`` and leave the project
    untouched.
    """
    current = project.status
    if not can_transition(current, target):
        raise InvalidTransitionError(
            project.id,
            current.value,
            target.value,
            [status.value for status in sources_for(target)],
        )

    timestamp = at or datetime.now(UTC)
    entry: dict[str, str] = {
        "from": current.value,
        "to": target.value,
        "at": timestamp.isoformat(),
    }
    if error is not None:
        entry["error"] = error
        project.metadata["last_error"] = error

    history = list(project.metadata.get("transitions", []))
    history.append(entry)
    project.metadata["transitions"] = history[-MAX_HISTORY:]
    project.status = target
    project.touch()
    return project
