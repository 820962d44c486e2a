"""Fire-and-forget lifecycle notifications.

Components push events into a ``NotificationEmitter``; it fans them out to
sinks (desktop notifier, UI bridge, event log). A failing sink is logged and
skipped so delivery problems never interrupt scheduling or execution.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Protocol, TypeAlias

from killall.db.repository import EventRepository
from killall.logging_config import get_logger
from killall.models.events import (
    EventType,
    LifecycleEvent,
    NotificationMessage,
    NotificationType,
)

logger = get_logger(__name__)

Subscriber: TypeAlias = Callable[[NotificationMessage], Awaitable[None] | None]


class NotificationSink(Protocol):
    async def notify(self, message: NotificationMessage) -> None: ...


class EventLogSink:
    """Append every notification to the lifecycle event log."""

    def __init__(self, events: EventRepository) -> None:
        self._events = events

    async def notify(self, message: NotificationMessage) -> None:
        await self._events.append_event(
            LifecycleEvent(
                project_id=message.project_id or "",
                event_type=message.event,
                payload={
                    "type": message.type.value,
                    "title": message.title,
                    "body": message.body,
                    "execution_id": message.execution_id,
                },
                timestamp=message.timestamp,
            )
        )


class NotificationEmitter:
    """Build notification messages and deliver them to every sink."""

    def __init__(self, sinks: list[NotificationSink] | None = None, *, enabled: bool = True) -> None:
        self._sinks: list[NotificationSink] = list(sinks or [])
        self._subscribers: list[Subscriber] = []
        self._enabled = enabled
        self._failed = 0

    @property
    def failed_deliveries(self) -> int:
        return self._failed

    def add_sink(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def emit(
        self,
        event: EventType,
        title: str,
        body: str,
        *,
        kind: NotificationType = NotificationType.INFO,
        project_id: str | None = None,
        execution_id: str | None = None,
    ) -> NotificationMessage:
        message = NotificationMessage(
            type=kind,
            event=event,
            title=title,
            body=body,
            project_id=project_id,
            execution_id=execution_id,
        )
        await self.notify(message)
        return message

    async def notify(self, message: NotificationMessage) -> None:
        logger.info(
            "notification",
            notification_event=message.event.value,
            title=message.title,
            project_id=message.project_id,
            execution_id=message.execution_id,
        )
        if not self._enabled:
            return

        for subscriber in list(self._subscribers):
            try:
                result = subscriber(message)
                if result is not None:
                    await result
            except Exception:
                self._failed += 1
                logger.warning("notification_subscriber_failed", exc_info=True)

        for sink in self._sinks:
            try:
                await sink.notify(message)
            except Exception:
                self._failed += 1
                logger.warning(
                    "notification_delivery_failed",
                    sink=type(sink).__name__,
                    notification_event=message.event.value,
                    exc_info=True,
                )
