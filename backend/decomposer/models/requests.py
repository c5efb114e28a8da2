"""API request models."""

from __future__ import annotations

from pydantic import BaseModel, Field

from decomposer.models.element import ElementType


class ElementInput(BaseModel):
    type: ElementType
    box_2d: list[float] = Field(..., min_length=4, max_length=4, description="[ymin, xmin, ymax, xmax] in 0-1000")
    description: str = ""
    z_order: int = 0
    id: str | None = None


class CreateRunRequest(BaseModel):
    image: str = Field(..., description="Slide image as base64 or data URL")
    background_color: str | None = Field(None, description="Slide background colour, e.g. #FFFFFF")
    elements: list[ElementInput] | None = Field(
        None,
        description="Pre-detected elements; detection runs when omitted",
    )


class RerunRequest(BaseModel):
    prompt: str | None = Field(None, description="Manual prompt override; skips the analyst")


class UpdateBoxRequest(BaseModel):
    box: list[float] = Field(..., min_length=4, max_length=4, description="[ymin, xmin, ymax, xmax] in 0-1000")
