"""Stage orchestrator — drives one element through Analyst → (Cleaner → Critic)*.

The element must already be PROCESSING (claimed by the caller). The
orchestrator only touches that element, and only through the store's merge
entry point. Every outcome ends in COMPLETED or FAILED; nothing raised here
escapes to the worker.

Stage calls are wrapped twice: ``with_timeout`` bounds a single invocation,
``with_retry`` re-invokes a failing stage a fixed number of times. Exhausting a
stage's retries fails the element without spending a self-correction attempt;
attempts only advance once a critique has come back.
"""

from __future__ import annotations

import asyncio
import logging
import time

from PIL import Image, UnidentifiedImageError

from decomposer.engine.config import PipelineConfig
from decomposer.engine.errors import (
    EntitlementError,
    InvalidTransitionError,
    MalformedResponseError,
    StageExhaustedError,
)
from decomposer.engine.geometry import pad_to_square, unpad
from decomposer.engine.retry import with_retry, with_timeout
from decomposer.engine.state import ElementStore, short_id
from decomposer.engine.transparency import mode_for, remove_background
from decomposer.llm.client import AgentService
from decomposer.llm.model_router import check_entitlement, select_cleaning_model
from decomposer.llm.prompts import fallback_cleaning_goal, fallback_cleaning_prompt
from decomposer.models.agent import CritiqueResult, ParseFailure, PlanResult, TextResult
from decomposer.models.element import AttemptRecord, Element, ElementStatus
from decomposer.utils.imaging import from_bytes, to_base64, to_png_bytes

logger = logging.getLogger(__name__)


class StageOrchestrator:
    """Per-element state machine for the self-correcting extraction loop."""

    def __init__(
        self,
        store: ElementStore,
        service: AgentService,
        config: PipelineConfig | None = None,
        background_color: str = "#FFFFFF",
    ) -> None:
        self.store = store
        self.service = service
        self.config = config or PipelineConfig()
        self.background_color = background_color

    async def process(
        self,
        element_id: str,
        crop: Image.Image,
        prompt_override: str | None = None,
    ) -> Element:
        """Run the extraction loop for one claimed element and return its final state."""
        el = self.store.get(element_id)
        if el.status != ElementStatus.PROCESSING:
            raise InvalidTransitionError(f"{element_id} must be PROCESSING, is {el.status.value}")

        label = f"[{short_id(element_id)}]"
        start = time.perf_counter()
        try:
            model = select_cleaning_model(el.type, self.config)
            check_entitlement(model, self.config)
            await self._run(el, crop, model, prompt_override, label)
        except EntitlementError as e:
            self.store.fail(element_id, f"Entitlement error: {e}")
        except StageExhaustedError as e:
            self.store.fail(element_id, f"Critical error: {e}")
        except Exception as e:
            logger.exception("%s unexpected failure", label)
            self.store.fail(element_id, f"Critical error: {e}")

        elapsed = round((time.perf_counter() - start) * 1000, 1)
        return self.store.update(element_id, {"processing_ms": elapsed})

    async def read_text(self, element_id: str, crop: Image.Image) -> Element:
        """Non-iterative path for TEXT elements: one read, then COMPLETED or FAILED."""
        label = f"[{short_id(element_id)}]"
        crop_png = to_png_bytes(crop)
        try:
            result = await self._stage(
                "Text",
                label,
                lambda: self.service.read_text(crop_png),
                self.config.text_timeout_s,
            )
        except StageExhaustedError as e:
            return self.store.fail(element_id, f"Text failed: {e}")

        self.store.add_usage(result.usage)
        if isinstance(result, ParseFailure):
            return self.store.fail(element_id, f"Text failed: unreadable response ({result.error})")
        return self._complete_text(element_id, result)

    # ── Loop ──

    async def _run(
        self,
        el: Element,
        crop: Image.Image,
        model: str,
        prompt_override: str | None,
        label: str,
    ) -> Element:
        cfg = self.config
        crop_png = to_png_bytes(crop)

        active_prompt = prompt_override or el.active_prompt
        is_white = el.is_white_interior
        goal = el.cleaning_goal
        attempt = 0 if prompt_override else el.attempts
        if prompt_override:
            self.store.update(el.id, {"attempts": 0, "active_prompt": prompt_override})

        if not active_prompt:
            self.store.log(f"{label} Analyst planning...")
            plan = await self._plan(el, crop_png, label)
            active_prompt = plan.prompt
            is_white = plan.is_white_interior
            goal = plan.cleaning_goal or fallback_cleaning_goal()
            self.store.update(
                el.id,
                {"active_prompt": active_prompt, "is_white_interior": is_white, "cleaning_goal": goal},
            )
        goal = goal or fallback_cleaning_goal()

        square, _ = pad_to_square(crop)
        square_png = to_png_bytes(square)

        while attempt < cfg.max_attempts:
            n = attempt + 1
            self.store.log(f"{label} Attempt {n}/{cfg.max_attempts} starting...")

            prompt = active_prompt
            raw = await self._stage(
                "Cleaning",
                label,
                lambda: self._clean(square_png, prompt, model, crop.size),
                cfg.cleaner_timeout_s,
            )
            cleaned = remove_background(raw, mode_for(is_white), cfg.transparency_tolerance)
            self.store.update(el.id, {"cleaned_image": to_base64(cleaned)})

            self.store.log(f"{label} Critic evaluating...")
            raw_png = to_png_bytes(raw)
            qa = await self._stage(
                "QA",
                label,
                lambda: self._critique(crop_png, raw_png, goal),
                cfg.critic_timeout_s,
            )

            passed = qa.passed_verdict and qa.score >= cfg.qa_pass_threshold
            attempt = n
            next_prompt = active_prompt if passed else (qa.improved_prompt or active_prompt)
            record = AttemptRecord(
                attempt=n,
                model=model,
                prompt=active_prompt,
                verdict=qa.verdict,
                score=qa.score,
                feedback=qa.reason,
                status="SUCCESS" if passed else "QA_FAILED",
            )
            self.store.append_history(
                el.id,
                record,
                attempts=n,
                last_qa_score=qa.score,
                last_qa_feedback=qa.reason,
                active_prompt=next_prompt,
            )

            if passed:
                self.store.log(f"{label} SUCCESS on attempt {n} (score: {qa.score})")
                return self.store.update(el.id, {"status": ElementStatus.COMPLETED})

            self.store.log(f"{label} Attempt {n} failed QA (score: {qa.score}, verdict: {qa.verdict}).")
            active_prompt = next_prompt
            if attempt < cfg.max_attempts:
                self.store.log(f"{label} Auto-retrying with self-correction...")
                await asyncio.sleep(cfg.cooldown_s)

        return self.store.fail(
            el.id,
            f"Max attempts ({cfg.max_attempts}) reached. Manual fix required.",
        )

    # ── Stages ──

    async def _stage(self, stage: str, label: str, call, timeout_s: float):
        return await with_retry(
            lambda: with_timeout(call(), timeout_s, stage),
            self.config.max_stage_retries,
            self.config.stage_backoff_s,
            f"{label} {stage}",
        )

    async def _plan(self, el: Element, crop_png: bytes, label: str) -> PlanResult:
        result = await self._stage(
            "Analyst",
            label,
            lambda: self.service.plan(crop_png, el.type.value, el.description, self.background_color),
            self.config.analyst_timeout_s,
        )
        self.store.add_usage(result.usage)
        if isinstance(result, ParseFailure):
            self.store.log(f"{label} Analyst response unusable, using template prompt.")
            return PlanResult(
                prompt=fallback_cleaning_prompt(el.type.value, el.description),
                is_white_interior=False,
                cleaning_goal=fallback_cleaning_goal(),
            )
        return result

    async def _clean(
        self,
        square_png: bytes,
        prompt: str,
        model: str,
        crop_size: tuple[int, int],
    ) -> Image.Image:
        generated = await self.service.generate(square_png, prompt, model)
        self.store.add_usage(generated.usage)
        try:
            output = from_bytes(generated.data)
        except (UnidentifiedImageError, OSError) as e:
            raise MalformedResponseError(f"Cleaner returned undecodable image: {e}") from e
        return unpad(output, *crop_size)

    async def _critique(self, original_png: bytes, candidate_png: bytes, goal: str) -> CritiqueResult:
        result = await self.service.critique(original_png, candidate_png, goal)
        self.store.add_usage(result.usage)
        if isinstance(result, ParseFailure):
            raise MalformedResponseError(f"Critic response unusable: {result.error}")
        return result

    def _complete_text(self, element_id: str, result: TextResult) -> Element:
        self.store.log(f"[{short_id(element_id)}] Text read ({len(result.text)} chars).")
        return self.store.update(
            element_id,
            {
                "text_content": result.text,
                "text_color": result.color,
                "is_bold": result.bold,
                "status": ElementStatus.COMPLETED,
            },
        )
