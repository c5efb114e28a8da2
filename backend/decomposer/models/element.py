"""Element data model — one detected region of the slide and its extraction state."""

from __future__ import annotations

import enum
import time

from pydantic import BaseModel, Field, model_validator

# Normalized coordinate space used by detection boxes.
BOX_SCALE = 1000.0


class ElementType(str, enum.Enum):
    TEXT = "TEXT"
    SHAPE = "SHAPE"
    ICON = "ICON"
    IMAGE = "IMAGE"


class ElementStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Box(BaseModel):
    """Bounding rectangle in the 0-1000 normalized space.

    Out-of-range coordinates are clamped and swapped pairs reordered, so a Box
    never carries an inverted or out-of-range edge. Zero extent is allowed here
    and rejected later by ``crop_region``.
    """

    ymin: float
    xmin: float
    ymax: float
    xmax: float

    @model_validator(mode="after")
    def _clamp(self) -> Box:
        ys = sorted(_clamp_coord(v) for v in (self.ymin, self.ymax))
        xs = sorted(_clamp_coord(v) for v in (self.xmin, self.xmax))
        self.ymin, self.ymax = ys
        self.xmin, self.xmax = xs
        return self

    @classmethod
    def from_list(cls, values: list[float] | tuple[float, ...]) -> Box:
        if len(values) != 4:
            raise ValueError(f"box_2d needs 4 values, got {len(values)}")
        ymin, xmin, ymax, xmax = (float(v) for v in values)
        return cls(ymin=ymin, xmin=xmin, ymax=ymax, xmax=xmax)

    def as_list(self) -> list[float]:
        return [self.ymin, self.xmin, self.ymax, self.xmax]


def _clamp_coord(value: float) -> float:
    return min(max(float(value), 0.0), BOX_SCALE)


class AttemptRecord(BaseModel):
    """One completed self-correction iteration."""

    attempt: int
    model: str
    prompt: str
    verdict: str
    score: int
    feedback: str = ""
    status: str = "QA_FAILED"  # SUCCESS, QA_FAILED
    timestamp: float = Field(default_factory=time.time)


class Element(BaseModel):
    id: str
    type: ElementType
    box: Box
    description: str = ""
    z_order: int = 0
    status: ElementStatus = ElementStatus.PENDING

    attempts: int = 0
    active_prompt: str = ""
    cleaning_goal: str = ""
    is_white_interior: bool = False
    history: list[AttemptRecord] = Field(default_factory=list)
    last_qa_score: int | None = None
    last_qa_feedback: str = ""
    failure_reason: str = ""

    # Base64 PNG payloads
    original_crop: str | None = None
    cleaned_image: str | None = None

    # TEXT elements only
    text_content: str = ""
    text_color: str = ""
    is_bold: bool = False

    processing_ms: float | None = None
