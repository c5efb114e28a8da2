"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from PIL import Image, ImageDraw
from pydantic import BaseModel

from decomposer.engine.config import PipelineConfig
from decomposer.models.agent import (
    CritiqueResult,
    DetectedElement,
    DetectionResult,
    GeneratedImage,
    PlanResult,
    TextResult,
    TokenUsage,
)
from decomposer.models.element import Box, Element, ElementType


PLAN_PROMPT = "ERASE TASK: keep the blue gear icon, replace everything else with #FFFFFF."
IMPROVED_PROMPT = "ERASE TASK: also remove the grey caption under the gear."

DEFAULT_PLAN = PlanResult(
    prompt=PLAN_PROMPT,
    is_white_interior=False,
    cleaning_goal="Blue gear on pure white.",
    usage=TokenUsage(model="claude-mid", input_tokens=100, output_tokens=20, total_tokens=120),
)
PASSING_CRITIQUE = CritiqueResult(score=95, verdict="PASS", reason="Clean isolation.")
DEFAULT_TEXT = TextResult(text="Quarterly Results", color="#112233", bold=True)

DETECTED = [
    DetectedElement(type="TEXT", description="title", box_2d=[50, 100, 150, 900], z_order=2),
    DetectedElement(type="ICON", description="gear icon", box_2d=[300, 100, 500, 300], z_order=1),
    DetectedElement(type="SHAPE", description="rounded panel", box_2d=[250, 400, 800, 900], z_order=0),
]


def critique(score: int, verdict: str = "RETRY", improved: str = IMPROVED_PROMPT) -> CritiqueResult:
    return CritiqueResult(score=score, verdict=verdict, reason=f"score {score}", improved_prompt=improved)


def _echo(square_png: bytes, **_: Any) -> GeneratedImage:
    return GeneratedImage(data=square_png)


class FakeAgentService:
    """Scripted stand-in for the agent service.

    Each stage pops the next item of its script. Exceptions are raised,
    callables are called with the call's arguments (and awaited if they return
    a coroutine). An exhausted script falls back to a passing default: the
    generator echoes its input square back.
    """

    def __init__(
        self,
        plans: list | None = None,
        generations: list | None = None,
        critiques: list | None = None,
        detections: list | None = None,
        texts: list | None = None,
        delay: float = 0.0,
    ) -> None:
        self.scripts: dict[str, list] = {
            "plan": list(plans or []),
            "generate": list(generations or []),
            "critique": list(critiques or []),
            "detect": list(detections or []),
            "read_text": list(texts or []),
        }
        self.defaults: dict[str, Any] = {
            "plan": DEFAULT_PLAN,
            "generate": _echo,
            "critique": PASSING_CRITIQUE,
            "detect": DetectionResult(background_color="#F0F0F0", elements=DETECTED),
            "read_text": DEFAULT_TEXT,
        }
        self.delay = delay
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def calls_to(self, stage: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == stage]

    async def _respond(self, stage: str, **kwargs: Any) -> Any:
        self.calls.append((stage, kwargs))
        if self.delay:
            await asyncio.sleep(self.delay)
        script = self.scripts[stage]
        item = script.pop(0) if script else self.defaults[stage]
        if callable(item) and not isinstance(item, BaseModel):
            item = item(**kwargs)
            if asyncio.iscoroutine(item):
                item = await item
        if isinstance(item, BaseException):
            raise item
        return item

    async def plan(self, crop_png, element_type, description, background_color):
        return await self._respond(
            "plan",
            crop_png=crop_png,
            element_type=element_type,
            description=description,
            background_color=background_color,
        )

    async def generate(self, square_png, prompt, model):
        return await self._respond("generate", square_png=square_png, prompt=prompt, model=model)

    async def critique(self, original_png, candidate_png, cleaning_goal):
        return await self._respond(
            "critique",
            original_png=original_png,
            candidate_png=candidate_png,
            cleaning_goal=cleaning_goal,
        )

    async def detect(self, image_png):
        return await self._respond("detect", image_png=image_png)

    async def read_text(self, crop_png):
        return await self._respond("read_text", crop_png=crop_png)


def fast_config(**overrides: Any) -> PipelineConfig:
    """Default policy without sleeps and with the pro model unlocked."""
    values: dict[str, Any] = {"stage_backoff_s": 0.0, "cooldown_s": 0.0, "has_entitlement": True}
    values.update(overrides)
    return PipelineConfig(**values)


def make_element(
    element_id: str = "el-0",
    element_type: ElementType = ElementType.ICON,
    box: tuple[float, float, float, float] = (300, 100, 500, 300),
    description: str = "gear icon",
) -> Element:
    return Element(id=element_id, type=element_type, box=Box.from_list(box), description=description)


def make_slide(width: int = 400, height: int = 300) -> Image.Image:
    """White slide with a blue square and an orange bar."""
    img = Image.new("RGB", (width, height), (255, 255, 255))
    draw = ImageDraw.Draw(img)
    draw.rectangle([40, 90, 120, 150], fill=(30, 80, 200))
    draw.rectangle([160, 75, 360, 240], fill=(240, 140, 30))
    return img


def ring_image(size: int = 40) -> Image.Image:
    """Black ring on white with a white hole in the middle."""
    img = Image.new("RGBA", (size, size), (255, 255, 255, 255))
    draw = ImageDraw.Draw(img)
    margin = size // 8
    draw.ellipse([margin, margin, size - margin, size - margin], outline=(0, 0, 0, 255), width=max(2, size // 10))
    return img


@pytest.fixture
def service() -> FakeAgentService:
    return FakeAgentService()


@pytest.fixture
def config() -> PipelineConfig:
    return fast_config()


@pytest.fixture
def slide() -> Image.Image:
    return make_slide()
