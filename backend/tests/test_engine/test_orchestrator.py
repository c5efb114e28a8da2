"""Tests for the per-element Analyst → Cleaner → Critic loop (scripted service, no network)."""

from __future__ import annotations

import asyncio
import base64

import numpy as np
import pytest
from PIL import Image, ImageDraw

from decomposer.engine.config import MODEL_IMAGE_FAST, MODEL_IMAGE_PRO
from decomposer.engine.errors import InvalidTransitionError, NoImageError, StageError
from decomposer.engine.orchestrator import StageOrchestrator
from decomposer.engine.state import ElementStore
from decomposer.llm.prompts import fallback_cleaning_goal, fallback_cleaning_prompt
from decomposer.models.agent import GeneratedImage, ParseFailure, PlanResult
from decomposer.models.element import ElementStatus, ElementType
from decomposer.utils.imaging import from_bytes
from tests.conftest import (
    IMPROVED_PROMPT,
    PASSING_CRITIQUE,
    PLAN_PROMPT,
    FakeAgentService,
    critique,
    fast_config,
    make_element,
    ring_image,
)


def _crop() -> Image.Image:
    img = Image.new("RGBA", (60, 40), (255, 255, 255, 255))
    ImageDraw.Draw(img).rectangle([20, 10, 40, 30], fill=(30, 80, 200, 255))
    return img


def _process(service, config=None, element=None, crop=None, override=None):
    el = element or make_element()
    store = ElementStore([el])
    store.claim(el.id)
    orch = StageOrchestrator(store, service, config or fast_config())
    result = asyncio.run(orch.process(el.id, crop or _crop(), override))
    return result, store


async def _hang(**_):
    await asyncio.sleep(1)


def _alpha_at(b64: str, x: int, y: int) -> int:
    return from_bytes(base64.b64decode(b64)).getpixel((x, y))[3]


# ── Happy path ──


def test_passes_first_attempt():
    service = FakeAgentService()
    el, store = _process(service)
    assert el.status == ElementStatus.COMPLETED
    assert el.attempts == 1
    assert len(el.history) == 1
    assert el.history[0].status == "SUCCESS"
    assert el.history[0].score == 95
    assert el.last_qa_score == 95
    assert el.active_prompt == PLAN_PROMPT
    assert el.cleaned_image
    assert len(service.calls_to("plan")) == 1
    assert service.calls_to("generate")[0]["prompt"] == PLAN_PROMPT
    assert service.calls_to("generate")[0]["model"] == MODEL_IMAGE_FAST
    assert store.usage["claude-mid"].total_tokens == 120
    assert el.processing_ms is not None


@pytest.mark.parametrize(
    "service",
    [
        FakeAgentService(),
        FakeAgentService(critiques=[critique(30)] * 4),
        FakeAgentService(generations=[StageError("503")] * 3),
    ],
)
def test_returns_latest_stored_element(service):
    el, store = _process(service)
    assert el == store.get("el-0")
    assert el.processing_ms is not None


def test_cleaned_image_is_transparent_outside_subject():
    el, _ = _process(FakeAgentService())
    assert _alpha_at(el.cleaned_image, 0, 0) == 0
    assert _alpha_at(el.cleaned_image, 30, 20) == 255


def test_critic_sees_original_and_unpadded_candidate():
    service = FakeAgentService()
    _process(service)
    call = service.calls_to("critique")[0]
    assert from_bytes(call["candidate_png"]).size == (60, 40)
    assert from_bytes(call["original_png"]).size == (60, 40)
    assert call["cleaning_goal"] == "Blue gear on pure white."


def test_generator_receives_square():
    service = FakeAgentService()
    _process(service)
    assert from_bytes(service.calls_to("generate")[0]["square_png"]).size == (60, 60)


# ── Self-correction ──


def test_four_failed_critiques_fail_element():
    service = FakeAgentService(critiques=[critique(84, improved=f"fix {i}") for i in range(1, 5)])
    el, store = _process(service)
    assert el.status == ElementStatus.FAILED
    assert "Max attempts (4)" in el.failure_reason
    assert el.attempts == 4
    assert [r.attempt for r in el.history] == [1, 2, 3, 4]
    assert [c["prompt"] for c in service.calls_to("generate")] == [PLAN_PROMPT, "fix 1", "fix 2", "fix 3"]
    assert [r.prompt for r in el.history] == [PLAN_PROMPT, "fix 1", "fix 2", "fix 3"]
    assert el.active_prompt == "fix 4"
    assert len(service.calls_to("plan")) == 1


def test_pass_on_last_attempt():
    service = FakeAgentService(critiques=[critique(84)] * 3 + [critique(90, "PASS")])
    el, _ = _process(service)
    assert el.status == ElementStatus.COMPLETED
    assert el.attempts == 4
    assert [r.status for r in el.history] == ["QA_FAILED"] * 3 + ["SUCCESS"]
    assert service.calls_to("generate")[1]["prompt"] == IMPROVED_PROMPT


@pytest.mark.parametrize("first", [critique(84, "PASS"), critique(97, "RETRY")])
def test_pass_needs_verdict_and_score(first):
    service = FakeAgentService(critiques=[first, PASSING_CRITIQUE])
    el, _ = _process(service)
    assert el.status == ElementStatus.COMPLETED
    assert el.attempts == 2
    assert el.history[0].status == "QA_FAILED"


def test_empty_improved_prompt_keeps_current():
    service = FakeAgentService(critiques=[critique(40, improved=""), PASSING_CRITIQUE])
    _process(service)
    assert [c["prompt"] for c in service.calls_to("generate")] == [PLAN_PROMPT, PLAN_PROMPT]


# ── Stage failures ──


def test_cleaner_exhausted_fails_without_attempt():
    service = FakeAgentService(generations=[NoImageError("Cleaner failed to produce image.")] * 3)
    el, _ = _process(service)
    assert el.status == ElementStatus.FAILED
    assert el.failure_reason.startswith("Critical error")
    assert el.attempts == 0
    assert el.history == []
    assert len(service.calls_to("generate")) == 3
    assert service.calls_to("critique") == []


def test_cleaner_recovers_within_stage_retries():
    service = FakeAgentService(generations=[StageError("503"), StageError("503")])
    el, _ = _process(service)
    assert el.status == ElementStatus.COMPLETED
    assert el.attempts == 1
    assert len(service.calls_to("generate")) == 3


def test_undecodable_image_is_retried():
    service = FakeAgentService(generations=[GeneratedImage(data=b"not a png")])
    el, _ = _process(service)
    assert el.status == ElementStatus.COMPLETED
    assert len(service.calls_to("generate")) == 2


def test_malformed_critique_retries_critic_only():
    service = FakeAgentService(critiques=[ParseFailure(raw_text="??", error="no json"), PASSING_CRITIQUE])
    el, _ = _process(service)
    assert el.status == ElementStatus.COMPLETED
    assert el.attempts == 1
    assert len(service.calls_to("critique")) == 2
    assert len(service.calls_to("generate")) == 1


def test_cleaner_timeout_retried():
    service = FakeAgentService(generations=[_hang])
    el, _ = _process(service, config=fast_config(cleaner_timeout_s=0.05))
    assert el.status == ElementStatus.COMPLETED
    assert len(service.calls_to("generate")) == 2


def test_cleaner_timeouts_exhausted():
    service = FakeAgentService(generations=[_hang] * 3)
    el, _ = _process(service, config=fast_config(cleaner_timeout_s=0.05))
    assert el.status == ElementStatus.FAILED
    assert "timed out" in el.failure_reason
    assert el.attempts == 0


# ── Analyst ──


def test_unusable_plan_uses_template_prompt():
    service = FakeAgentService(plans=[ParseFailure(raw_text="sure!", error="no json")])
    el, store = _process(service)
    assert el.status == ElementStatus.COMPLETED
    assert service.calls_to("generate")[0]["prompt"] == fallback_cleaning_prompt("ICON", "gear icon")
    assert service.calls_to("critique")[0]["cleaning_goal"] == fallback_cleaning_goal()
    assert any("template prompt" in line for line in store.logs)


def test_analyst_exhausted():
    service = FakeAgentService(plans=[StageError("down")] * 3)
    el, _ = _process(service)
    assert el.status == ElementStatus.FAILED
    assert len(service.calls_to("plan")) == 3
    assert service.calls_to("generate") == []


def test_existing_prompt_skips_analyst():
    element = make_element().model_copy(update={"active_prompt": "kept prompt", "cleaning_goal": "g"})
    service = FakeAgentService()
    el, _ = _process(service, element=element)
    assert el.status == ElementStatus.COMPLETED
    assert service.calls_to("plan") == []
    assert service.calls_to("generate")[0]["prompt"] == "kept prompt"


def test_prompt_override_restarts_budget():
    element = make_element().model_copy(update={"attempts": 4, "active_prompt": "old"})
    service = FakeAgentService()
    el, _ = _process(service, element=element, override="manual erase")
    assert el.status == ElementStatus.COMPLETED
    assert el.attempts == 1
    assert service.calls_to("plan") == []
    assert service.calls_to("generate")[0]["prompt"] == "manual erase"


def test_spent_budget_without_override_fails():
    element = make_element().model_copy(update={"attempts": 4, "active_prompt": "old"})
    service = FakeAgentService()
    el, _ = _process(service, element=element)
    assert el.status == ElementStatus.FAILED
    assert service.calls == []


# ── Transparency mode ──


def test_white_interior_preserved():
    plan = PlanResult(prompt="keep the ring", is_white_interior=True, cleaning_goal="ring")
    el, _ = _process(FakeAgentService(plans=[plan]), crop=ring_image(40))
    assert el.is_white_interior is True
    assert _alpha_at(el.cleaned_image, 20, 20) == 255
    assert _alpha_at(el.cleaned_image, 0, 0) == 0


def test_white_cleared_without_interior_flag():
    el, _ = _process(FakeAgentService(), crop=ring_image(40))
    assert _alpha_at(el.cleaned_image, 20, 20) == 0


# ── Routing ──


def test_restricted_model_without_entitlement():
    service = FakeAgentService()
    element = make_element(element_type=ElementType.SHAPE, description="panel")
    el, _ = _process(service, config=fast_config(has_entitlement=False), element=element)
    assert el.status == ElementStatus.FAILED
    assert el.failure_reason.startswith("Entitlement error")
    assert service.calls == []


def test_shape_routed_to_pro_model():
    service = FakeAgentService()
    element = make_element(element_type=ElementType.SHAPE, description="panel")
    _process(service, element=element)
    assert service.calls_to("generate")[0]["model"] == MODEL_IMAGE_PRO


def test_requires_processing_status():
    store = ElementStore([make_element()])
    orch = StageOrchestrator(store, FakeAgentService(), fast_config())
    with pytest.raises(InvalidTransitionError):
        asyncio.run(orch.process("el-0", _crop()))


# ── Text path ──


def _read_text(service):
    store = ElementStore([make_element(element_type=ElementType.TEXT, description="title")])
    store.claim("el-0")
    orch = StageOrchestrator(store, service, fast_config())
    return asyncio.run(orch.read_text("el-0", _crop()))


def test_read_text():
    el = _read_text(FakeAgentService())
    assert el.status == ElementStatus.COMPLETED
    assert el.text_content == "Quarterly Results"
    assert el.text_color == "#112233"
    assert el.is_bold is True


def test_read_text_unusable():
    el = _read_text(FakeAgentService(texts=[ParseFailure(error="no json")]))
    assert el.status == ElementStatus.FAILED
    assert el.failure_reason.startswith("Text failed")


def test_cleaned_image_matches_crop_size():
    crop = _crop()
    el, _ = _process(FakeAgentService(), crop=crop)
    cleaned = np.asarray(from_bytes(base64.b64decode(el.cleaned_image)))
    assert cleaned.shape == (40, 60, 4)
