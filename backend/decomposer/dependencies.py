"""FastAPI dependency injection."""

from __future__ import annotations

from decomposer.config import settings
from decomposer.engine.config import PipelineConfig
from decomposer.engine.session import SessionRegistry, get_session_registry
from decomposer.llm.client import AgentService, get_agent_service


def get_pipeline_config() -> PipelineConfig:
    return PipelineConfig.from_settings(settings)


def get_service() -> AgentService:
    return get_agent_service()


def get_registry() -> SessionRegistry:
    return get_session_registry()
