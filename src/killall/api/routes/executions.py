"""Execution routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from killall.api.deps import get_project_service
from killall.api.schemas.projects import ExecutionsResponse
from killall.core.project_service import ProjectService
from killall.models.execution import Execution

router = APIRouter(prefix="/api/v1/executions", tags=["executions"])


@router.get("/running", response_model=ExecutionsResponse)
async def list_running_executions(
    service: ProjectService = Depends(get_project_service),
) -> ExecutionsResponse:
    return ExecutionsResponse(items=service.running_executions())


@router.post("/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    service: ProjectService = Depends(get_project_service),
) -> dict[str, Execution]:
    return {"execution": await service.cancel_execution(execution_id)}
