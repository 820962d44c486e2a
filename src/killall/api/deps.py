"""Shared API dependency providers."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from killall.core.executor import Executor
from killall.core.notifier import EventLogSink, NotificationEmitter
from killall.core.project_service import ProjectService
from killall.core.scheduler import Scheduler
from killall.core.settings import ConfigurationService, EnvSettings
from killall.db.store import SQLiteStore


@dataclass(slots=True)
class Services:
    """Long-lived components shared by every request."""

    store: SQLiteStore
    config: ConfigurationService
    notifier: NotificationEmitter
    executor: Executor
    scheduler: Scheduler
    projects: ProjectService


def build_services(env: EnvSettings | None = None) -> Services:
    env = env or EnvSettings()
    config = ConfigurationService(env.config_path)
    settings = config.load()

    db_path = env.database_path or settings.database.path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = SQLiteStore(db_path=db_path)

    notifier = NotificationEmitter(
        [EventLogSink(store)],
        enabled=settings.notifications.enabled,
    )
    executor = Executor(settings.executor, executions=store, notifier=notifier)
    scheduler = Scheduler(settings.scheduler, executor, projects=store, notifier=notifier)
    projects = ProjectService(store, scheduler, executor, notifier=notifier)
    return Services(
        store=store,
        config=config,
        notifier=notifier,
        executor=executor,
        scheduler=scheduler,
        projects=projects,
    )


def get_services(request: Request) -> Services:
    services: Services = request.app.state.services
    return services


def get_project_service(request: Request) -> ProjectService:
    return get_services(request).projects


def get_config_service(request: Request) -> ConfigurationService:
    return get_services(request).config
