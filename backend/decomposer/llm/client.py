"""Agent service — the external vision/generation capability behind each stage.

Planning, critique, detection and text reading go through LangChain's
ChatAnthropic with multimodal messages. Image generation for the cleaner stage
goes through google-genai, the only one of the two that returns images.

Provider exceptions are converted to StageError at this boundary so the
orchestrator can retry them uniformly.
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Protocol

from decomposer.config import settings
from decomposer.engine.errors import NoImageError, StageError
from decomposer.llm import prompts
from decomposer.llm.model_router import get_model_for_task
from decomposer.llm.parsing import parse_critique, parse_detection, parse_plan, parse_text
from decomposer.models.agent import (
    CritiqueResult,
    DetectionResult,
    GeneratedImage,
    ParseFailure,
    PlanResult,
    TextResult,
    TokenUsage,
)

logger = logging.getLogger(__name__)


class AgentService(Protocol):
    async def plan(
        self,
        crop_png: bytes,
        element_type: str,
        description: str,
        background_color: str,
    ) -> PlanResult | ParseFailure: ...

    async def generate(self, square_png: bytes, prompt: str, model: str) -> GeneratedImage: ...

    async def critique(
        self,
        original_png: bytes,
        candidate_png: bytes,
        cleaning_goal: str,
    ) -> CritiqueResult | ParseFailure: ...

    async def detect(self, image_png: bytes) -> DetectionResult | ParseFailure: ...

    async def read_text(self, crop_png: bytes) -> TextResult | ParseFailure: ...


def _image_block(data: bytes, media_type: str = "image/png") -> dict[str, Any]:
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": media_type,
            "data": base64.b64encode(data).decode("ascii"),
        },
    }


def _text_block(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def _response_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        )
    return str(content)


class LangChainAgentService:
    """Production agent service backed by Anthropic (vision) and Gemini (images)."""

    def __init__(
        self,
        anthropic_api_key: str | None = None,
        google_api_key: str | None = None,
    ) -> None:
        self._anthropic_api_key = anthropic_api_key if anthropic_api_key is not None else settings.anthropic_api_key
        self._google_api_key = google_api_key if google_api_key is not None else settings.google_api_key
        self._genai_client = None

    # ── Vision (LangChain) ──

    async def _vision_call(self, task: str, blocks: list[dict[str, Any]], max_tokens: int = 2048) -> tuple[str, TokenUsage]:
        if not self._anthropic_api_key:
            raise StageError("LLM not configured — set ANTHROPIC_API_KEY in .env")

        from langchain_anthropic import ChatAnthropic
        from langchain_core.messages import HumanMessage

        model_id = get_model_for_task(task)
        llm = ChatAnthropic(
            model=model_id,
            api_key=self._anthropic_api_key,
            max_tokens=max_tokens,
        )
        try:
            response = await llm.ainvoke([HumanMessage(content=blocks)])
        except Exception as e:
            raise StageError(f"{task} call failed: {e}") from e

        meta = getattr(response, "usage_metadata", None) or {}
        usage = TokenUsage(
            model=model_id,
            input_tokens=meta.get("input_tokens", 0),
            output_tokens=meta.get("output_tokens", 0),
            total_tokens=meta.get("total_tokens", 0),
        )
        return _response_text(response.content), usage

    async def plan(
        self,
        crop_png: bytes,
        element_type: str,
        description: str,
        background_color: str,
    ) -> PlanResult | ParseFailure:
        text, usage = await self._vision_call(
            "analyst",
            [
                _image_block(crop_png),
                _text_block(prompts.analyst_prompt(element_type, description, background_color)),
            ],
        )
        return parse_plan(text, usage)

    async def critique(
        self,
        original_png: bytes,
        candidate_png: bytes,
        cleaning_goal: str,
    ) -> CritiqueResult | ParseFailure:
        text, usage = await self._vision_call(
            "critic",
            [
                _text_block("Original Reference Crop:"),
                _image_block(original_png),
                _text_block("Cleaned Candidate Result:"),
                _image_block(candidate_png),
                _text_block(prompts.critic_prompt(cleaning_goal)),
            ],
        )
        return parse_critique(text, usage)

    async def detect(self, image_png: bytes) -> DetectionResult | ParseFailure:
        text, usage = await self._vision_call(
            "detection",
            [
                _image_block(image_png),
                _text_block(prompts.detection_prompt()),
                _text_block("Analyze slide layout for exhaustive decomposition."),
            ],
            max_tokens=8192,
        )
        return parse_detection(text, usage)

    async def read_text(self, crop_png: bytes) -> TextResult | ParseFailure:
        text, usage = await self._vision_call(
            "text",
            [_image_block(crop_png), _text_block(prompts.text_prompt())],
        )
        return parse_text(text, usage)

    # ── Image generation (google-genai) ──

    def _get_genai_client(self):
        if not self._google_api_key:
            raise StageError("Image model not configured — set GOOGLE_API_KEY in .env")
        if self._genai_client is None:
            from google import genai

            self._genai_client = genai.Client(api_key=self._google_api_key)
        return self._genai_client

    async def generate(self, square_png: bytes, prompt: str, model: str) -> GeneratedImage:
        from google.genai import types

        client = self._get_genai_client()
        contents = [
            types.Content(
                role="user",
                parts=[
                    types.Part.from_bytes(data=square_png, mime_type="image/png"),
                    types.Part.from_text(text=prompts.cleaner_prompt(prompt)),
                ],
            )
        ]
        config = types.GenerateContentConfig(
            response_modalities=["IMAGE", "TEXT"],
            image_config=types.ImageConfig(aspect_ratio="1:1"),
        )
        try:
            response = await client.aio.models.generate_content(
                model=model,
                contents=contents,
                config=config,
            )
        except Exception as e:
            raise StageError(f"cleaner call failed: {e}") from e

        meta = response.usage_metadata
        usage = TokenUsage(
            model=model,
            input_tokens=(meta.prompt_token_count or 0) if meta else 0,
            output_tokens=(meta.candidates_token_count or 0) if meta else 0,
            total_tokens=(meta.total_token_count or 0) if meta else 0,
        )

        for candidate in response.candidates or []:
            if candidate.content is None:
                continue
            for part in candidate.content.parts or []:
                if part.inline_data and part.inline_data.data:
                    data = part.inline_data.data
                    if isinstance(data, str):
                        data = base64.b64decode(data)
                    return GeneratedImage(
                        data=data,
                        mime_type=part.inline_data.mime_type or "image/png",
                        usage=usage,
                    )
            # Only the first candidate is considered
            break

        raise NoImageError("Cleaner failed to produce image.")


_service: AgentService | None = None


def get_agent_service() -> AgentService:
    global _service
    if _service is None:
        _service = LangChainAgentService()
    return _service
