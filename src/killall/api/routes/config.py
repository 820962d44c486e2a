"""App settings routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends

from killall.api.deps import get_config_service
from killall.core.settings import AppSettings, ConfigurationService

router = APIRouter(prefix="/api/v1/config", tags=["config"])


@router.get("", response_model=AppSettings)
async def get_config(config: ConfigurationService = Depends(get_config_service)) -> AppSettings:
    return config.get()


@router.patch("", response_model=AppSettings)
async def update_config(
    updates: dict[str, Any] = Body(...),
    config: ConfigurationService = Depends(get_config_service),
) -> AppSettings:
    # takes effect for components built after the next restart
    return config.update(updates)


@router.post("/reset", response_model=AppSettings)
async def reset_config(config: ConfigurationService = Depends(get_config_service)) -> AppSettings:
    return config.reset_to_defaults()
