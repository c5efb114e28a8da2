"""API response models."""

from __future__ import annotations

from pydantic import BaseModel, Field

from decomposer.models.agent import TokenUsage
from decomposer.models.element import Element


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    sessions: int = 0


class RunResponse(BaseModel):
    id: str
    width: int
    height: int
    background_color: str = "#FFFFFF"
    running: bool = False
    created_at: float = 0.0
    started_at: float | None = None
    finished_at: float | None = None
    counts: dict[str, int] = Field(default_factory=dict)
    elements: list[Element] = Field(default_factory=list)
    logs: list[str] = Field(default_factory=list)
    token_usage: list[TokenUsage] = Field(default_factory=list)


class StartResponse(BaseModel):
    id: str
    status: str = "started"
    pending: int = 0
