"""Task → model selection. Cheap models for text reading, mid-tier for planning
and critique, frontier for detection. Cleaning models are routed per element type."""

from __future__ import annotations

from decomposer.config import settings
from decomposer.engine.config import PipelineConfig
from decomposer.engine.errors import EntitlementError
from decomposer.models.element import ElementType

_TASK_MODEL_MAP = {
    "text": "cheap",
    "analyst": "mid",
    "critic": "mid",
    "detection": "frontier",
}


def get_model_for_task(task: str) -> str:
    tier = _TASK_MODEL_MAP.get(task, "cheap")
    if tier == "cheap":
        return settings.model_cheap
    elif tier == "mid":
        return settings.model_mid
    else:
        return settings.model_frontier


def select_cleaning_model(element_type: ElementType, config: PipelineConfig) -> str:
    return config.model_routing.get(element_type, config.fallback_cleaning_model)


def check_entitlement(model: str, config: PipelineConfig) -> None:
    """Raise EntitlementError when ``model`` is restricted and not unlocked."""
    if model in config.restricted_models and not config.has_entitlement:
        raise EntitlementError(f"{model} requires an entitlement the caller does not hold")
