from fastapi import APIRouter
from pydantic import BaseModel

from app.core.config import get_settings

router = APIRouter(prefix="/api", tags=["config"])


class HealthResponse(BaseModel):
    status: str
    version: str


class ConfigResponse(BaseModel):
    soc_api_url: str
    soc_timeout_seconds: float
    batch_size: int
    sub_batch_size: int
    max_concurrent: int
    max_batch_size: int
    max_concurrent_limit: int
    execution_budget_seconds: float
    safety_margin_seconds: float
    continuation_mode: str
    sync_global_guard: bool
    debug: bool


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version="0.1.0")


@router.get("/config", response_model=ConfigResponse)
async def get_config() -> ConfigResponse:
    """Get current configuration (excluding secrets)."""
    settings = get_settings()
    return ConfigResponse(
        soc_api_url=settings.soc_api_url,
        soc_timeout_seconds=settings.soc_timeout_seconds,
        batch_size=settings.batch_size,
        sub_batch_size=settings.sub_batch_size,
        max_concurrent=settings.max_concurrent,
        max_batch_size=settings.max_batch_size,
        max_concurrent_limit=settings.max_concurrent_limit,
        execution_budget_seconds=settings.execution_budget_seconds,
        safety_margin_seconds=settings.safety_margin_seconds,
        continuation_mode=settings.continuation_mode,
        sync_global_guard=settings.sync_global_guard,
        debug=settings.debug,
    )
