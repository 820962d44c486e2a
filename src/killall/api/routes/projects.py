"""Project routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from killall.api.deps import get_project_service
from killall.api.schemas.projects import (
    DiscoverProjectRequest,
    ExecutionsResponse,
    ExtendProjectRequest,
    ProjectResponse,
    ProjectsResponse,
)
from killall.core.project_service import ProjectService
from killall.models.project import ProjectStatus

router = APIRouter(prefix="/api/v1/projects", tags=["projects"])


@router.get("", response_model=ProjectsResponse)
async def list_projects(
    project_status: ProjectStatus | None = Query(default=None, alias="status"),
    service: ProjectService = Depends(get_project_service),
) -> ProjectsResponse:
    if project_status is None:
        return ProjectsResponse(items=await service.get_all())
    return ProjectsResponse(items=await service.get_by_status(project_status))


@router.get("/active", response_model=ProjectsResponse)
async def list_active_projects(
    service: ProjectService = Depends(get_project_service),
) -> ProjectsResponse:
    return ProjectsResponse(items=await service.get_active())


@router.post("/discover", status_code=status.HTTP_201_CREATED, response_model=ProjectResponse)
async def discover_project(
    request: DiscoverProjectRequest,
    service: ProjectService = Depends(get_project_service),
) -> ProjectResponse:
    if request.config is None:
        project = await service.on_project_discovered(request.path)
    else:
        project = await service.register(request.path, request.config)
    return ProjectResponse(project=project)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: str,
    service: ProjectService = Depends(get_project_service),
) -> ProjectResponse:
    return ProjectResponse(project=await service.get(project_id))


@router.post("/{project_id}/cancel", response_model=ProjectResponse)
async def cancel_project(
    project_id: str,
    service: ProjectService = Depends(get_project_service),
) -> ProjectResponse:
    return ProjectResponse(project=await service.cancel(project_id))


@router.post("/{project_id}/extend", response_model=ProjectResponse)
async def extend_project(
    project_id: str,
    request: ExtendProjectRequest,
    service: ProjectService = Depends(get_project_service),
) -> ProjectResponse:
    return ProjectResponse(project=await service.extend(project_id, request.duration))


@router.post("/{project_id}/destroy", response_model=ProjectResponse)
async def destroy_project(
    project_id: str,
    service: ProjectService = Depends(get_project_service),
) -> ProjectResponse:
    return ProjectResponse(project=await service.destroy(project_id))


@router.get("/{project_id}/executions", response_model=ExecutionsResponse)
async def list_project_executions(
    project_id: str,
    service: ProjectService = Depends(get_project_service),
) -> ExecutionsResponse:
    return ExecutionsResponse(items=await service.list_executions(project_id))
