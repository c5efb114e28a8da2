"""Health check + meta endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from decomposer.dependencies import get_registry
from decomposer.engine.session import SessionRegistry
from decomposer.models.responses import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health(registry: SessionRegistry = Depends(get_registry)) -> HealthResponse:
    return HealthResponse(
        status="ok",
        version="0.1.0",
        sessions=len(registry),
    )


@router.get("/prompts")
async def prompts() -> dict[str, str]:
    from decomposer.llm.prompts import get_all_templates

    return get_all_templates()
