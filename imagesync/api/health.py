"""Health check endpoint."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from imagesync import __version__
from imagesync.api.deps import get_settings
from imagesync.config import Settings

router = APIRouter(tags=["health"])


class ConfigStatus(BaseModel):
    has_wechat_config: bool
    has_github_config: bool


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: str
    config: ConfigStatus


@router.get("/health", response_model=HealthResponse)
async def health_check(
    settings: Annotated[Settings, Depends(get_settings)],
) -> HealthResponse:
    """Health check endpoint for monitoring and load balancers."""
    return HealthResponse(
        status="ok",
        version=__version__,
        timestamp=datetime.now(UTC).isoformat(),
        config=ConfigStatus(
            has_wechat_config=settings.has_wechat_config,
            has_github_config=settings.has_github_config,
        ),
    )
