"""Pipeline configuration — fixed policy values for one extraction run."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from decomposer.models.element import ElementType

if TYPE_CHECKING:
    from decomposer.config import Settings

MODEL_IMAGE_FAST = "gemini-2.5-flash-image"
MODEL_IMAGE_PRO = "gemini-3-pro-image-preview"


def _default_routing() -> dict[ElementType, str]:
    return {
        ElementType.SHAPE: MODEL_IMAGE_PRO,
        ElementType.ICON: MODEL_IMAGE_FAST,
        ElementType.IMAGE: MODEL_IMAGE_FAST,
    }


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable per-run policy for the extraction loop."""

    # Cleaner model per element type; anything unmapped uses the fallback
    model_routing: dict[ElementType, str] = field(default_factory=_default_routing)
    fallback_cleaning_model: str = MODEL_IMAGE_FAST

    # Models that need an entitlement, and whether the caller holds it
    restricted_models: frozenset[str] = frozenset({MODEL_IMAGE_PRO})
    has_entitlement: bool = False

    # Critic score at or above which a PASS verdict is accepted
    qa_pass_threshold: int = 85

    # Self-correction iterations per element
    max_attempts: int = 4
    # Re-invocations of a single failing stage call
    max_stage_retries: int = 2

    # Worker pool size
    concurrency: int = 3

    # Delays (seconds)
    stage_backoff_s: float = 1.0
    cooldown_s: float = 1.0

    # Per-stage call timeouts (seconds)
    analyst_timeout_s: float = 60.0
    cleaner_timeout_s: float = 120.0
    critic_timeout_s: float = 120.0
    text_timeout_s: float = 60.0

    # Geometry
    crop_padding: int = 50
    max_crop_dimension: int = 1024
    transparency_tolerance: int = 8

    @classmethod
    def from_settings(cls, settings: Settings) -> PipelineConfig:
        return cls(
            model_routing={
                ElementType.SHAPE: settings.model_image_pro,
                ElementType.ICON: settings.model_image_fast,
                ElementType.IMAGE: settings.model_image_fast,
            },
            fallback_cleaning_model=settings.model_image_fast,
            restricted_models=frozenset({settings.model_image_pro}),
            has_entitlement=settings.pro_image_entitled,
            qa_pass_threshold=settings.qa_pass_threshold,
            max_attempts=settings.max_attempts,
            max_stage_retries=settings.max_stage_retries,
            concurrency=settings.parallel_count,
        )
