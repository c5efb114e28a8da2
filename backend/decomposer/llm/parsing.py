"""Turn raw model text into typed payloads or an explicit ParseFailure."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from decomposer.models.agent import (
    CritiqueResult,
    DetectedElement,
    DetectionResult,
    ParseFailure,
    PlanResult,
    TextResult,
    TokenUsage,
)
from decomposer.models.element import ElementType

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(\{[\s\S]*?\})\s*\n?```")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def extract_json(text: str) -> dict[str, Any]:
    """Find the JSON object in a model answer (fenced or bare).

    Raises ValueError when nothing parses to an object.
    """
    candidates: list[str] = []
    stripped = text.strip()
    if stripped:
        candidates.append(stripped)
    fenced = _FENCE_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    bare = _OBJECT_RE.search(text)
    if bare:
        candidates.append(bare.group(0))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise ValueError("Model did not return a JSON object")


def _parse(model: type[M], text: str, usage: TokenUsage | None) -> M | ParseFailure:
    try:
        data = extract_json(text)
        return model.model_validate({**data, "usage": usage})
    except (ValueError, ValidationError) as e:
        logger.debug("Could not parse %s: %s", model.__name__, e)
        return ParseFailure(raw_text=text[:2000], error=str(e), usage=usage)


def parse_plan(text: str, usage: TokenUsage | None = None) -> PlanResult | ParseFailure:
    return _parse(PlanResult, text, usage)


def parse_critique(text: str, usage: TokenUsage | None = None) -> CritiqueResult | ParseFailure:
    return _parse(CritiqueResult, text, usage)


def parse_text(text: str, usage: TokenUsage | None = None) -> TextResult | ParseFailure:
    return _parse(TextResult, text, usage)


def parse_detection(text: str, usage: TokenUsage | None = None) -> DetectionResult | ParseFailure:
    """Detection tolerates bad items: unknown types and malformed boxes are dropped."""
    try:
        data = extract_json(text)
    except ValueError as e:
        return ParseFailure(raw_text=text[:2000], error=str(e), usage=usage)

    valid_types = {t.value for t in ElementType}
    elements: list[DetectedElement] = []
    for raw in data.get("elements") or []:
        if not isinstance(raw, dict) or str(raw.get("type", "")).strip().upper() not in valid_types:
            continue
        try:
            elements.append(DetectedElement.model_validate(raw))
        except ValidationError as e:
            logger.debug("Dropping detected element %s: %s", raw, e)

    return DetectionResult(
        background_color=data.get("backgroundColor") or "#FFFFFF",
        elements=elements,
        usage=usage,
    )
