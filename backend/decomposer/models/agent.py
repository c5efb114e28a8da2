"""Typed payloads returned by the agent service.

Every JSON-shaped response is validated into one of these models. A response
that cannot be validated becomes a ``ParseFailure`` instead of an untyped dict,
so callers always branch on the variant.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from decomposer.models.element import ElementType


class TokenUsage(BaseModel):
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class ParseFailure(BaseModel):
    """The service answered but the payload was unusable."""

    raw_text: str = ""
    error: str = ""
    usage: TokenUsage | None = None


class PlanResult(BaseModel):
    prompt: str = Field(..., min_length=1)
    is_white_interior: bool = Field(False, validation_alias="isWhiteInterior")
    cleaning_goal: str = Field("", validation_alias="cleaningGoal")
    usage: TokenUsage | None = None

    model_config = {"populate_by_name": True}


class CritiqueResult(BaseModel):
    score: int = Field(..., ge=0, le=100)
    verdict: str = "RETRY"
    reason: str = ""
    improved_prompt: str = Field("", validation_alias="improvedPrompt")
    usage: TokenUsage | None = None

    model_config = {"populate_by_name": True}

    @field_validator("score", mode="before")
    @classmethod
    def _round_score(cls, v):
        if isinstance(v, float):
            return round(v)
        return v

    @field_validator("verdict", mode="before")
    @classmethod
    def _normalize_verdict(cls, v):
        verdict = str(v or "").strip().upper()
        return verdict if verdict in ("PASS", "RETRY") else "RETRY"

    @property
    def passed_verdict(self) -> bool:
        return self.verdict == "PASS"


class GeneratedImage(BaseModel):
    data: bytes
    mime_type: str = "image/png"
    usage: TokenUsage | None = None


class DetectedElement(BaseModel):
    type: ElementType
    description: str = ""
    box_2d: list[float] = Field(..., min_length=4, max_length=4)
    z_order: int = 0

    @field_validator("type", mode="before")
    @classmethod
    def _upper_type(cls, v):
        return str(v).strip().upper()


class DetectionResult(BaseModel):
    background_color: str = Field("#FFFFFF", validation_alias="backgroundColor")
    elements: list[DetectedElement] = Field(default_factory=list)
    usage: TokenUsage | None = None

    model_config = {"populate_by_name": True}


class TextResult(BaseModel):
    text: str = ""
    color: str = Field("#000000", validation_alias="hexColor")
    bold: bool = Field(False, validation_alias="isBold")
    usage: TokenUsage | None = None

    model_config = {"populate_by_name": True}
