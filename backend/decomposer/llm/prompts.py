"""Prompt templates per agent task — detection, analyst, cleaner, critic, text."""

from __future__ import annotations

_DETECTION_TEMPLATE = """You are a pixel-precise vision model for slide layout analysis. Decompose the slide into its constituent elements with exact bounding boxes.

COORDINATE SYSTEM:
- [ymin, xmin, ymax, xmax] normalized to 0-1000.
- 0,0 is top-left, 1000,1000 is bottom-right.
- Boxes hug the visible edges of each element.

TEXT BOXING RULES:
1. Include descenders (g, y, j, p, q). A box that stops at the baseline looks shifted up.
2. Include ascenders and accents.
3. Group paragraphs into one box unless lines are distinct headings.

ELEMENT TYPES:
- TEXT: readable text blocks.
- SHAPE: geometric backgrounds, cards, lines.
- ICON: small symbols, logos, arrows.
- IMAGE: photos, screenshots, illustrations.

Return JSON only:
{{
  "backgroundColor": "#RRGGBB",
  "elements": [
    {{"type": "TEXT" | "SHAPE" | "ICON" | "IMAGE", "description": "visual description", "box_2d": [ymin, xmin, ymax, xmax], "z_order": 0}}
  ]
}}"""

_ANALYST_TEMPLATE = """You are a slide reconstruction architect. Write precise ERASE instructions that isolate one visual element as a clean asset.

TARGET TYPE: {type}
TARGET SUBJECT: {description}
SLIDE BACKGROUND: {background_color}

CONSERVATION RULES:
1. IMAGE (photographs, illustrations): keep all internal detail. Remove only overlays on top of the picture such as text labels, buttons or watermarks.
2. SHAPE / ICON: strip all internal content. Wipe any text or nested icons so only the clean solid or gradient container remains.

ISOLATION RULES:
- Remove background clutter and neighbouring elements outside the target.
- Output on a solid #FFFFFF white background.

Set "isWhiteInterior" to true when the target itself contains white areas (a white card, white fill inside an outline) that must survive background removal.

Return JSON only:
{{
  "isWhiteInterior": boolean,
  "cleaningGoal": "one sentence describing the isolated result",
  "prompt": "numbered erase instructions for the image editor"
}}"""

_CLEANER_TEMPLATE = """ERASE TASK: {prompt}

Maintain target object fidelity. Output on pure white #FFFFFF background."""

_FALLBACK_CLEANING_TEMPLATE = """ERASE TASK: Isolate {target}.
1. COMPLETELY WIPE all internal text, labels, and nested icons.
2. Maintain the base {type} colors, gradients, and borders.
3. Output on solid white #FFFFFF."""

_FALLBACK_GOAL = "Isolate the object perfectly."

_CRITIC_TEMPLATE = """You are a strict quality assurance validator.
GOAL: {cleaning_goal}

Compare the "Original Reference Crop" with the "Cleaned Candidate Result".

CHECKLIST:
1. SUBJECT FIDELITY: does the cleaned object match the original base subject (shape, colour, gradient) minus the overlays?
2. CLUTTER REMOVAL: is the object completely free of text, fragments or overlapping sub-icons? Tiny letter remnants are a failure.
3. ISOLATION: is the background pure #FFFFFF white with no fragments of the surrounding slide?
4. INTEGRITY: did cleaning delete parts of the target itself?

SCORING (0-100):
- 95-100: perfect. No remnants, subject identical, background pure white.
- 85-94: excellent. Near-invisible noise, text fully gone.
- 70-84: acceptable. Usable with slight artifacts.
- below 70: failure. Readable text, word fragments, or broken subject.

Return JSON only:
{{
  "score": number,
  "verdict": "PASS" (if score >= 85) | "RETRY",
  "reason": "what remains or what was damaged",
  "improvedPrompt": "revised erase instructions that fix the failure; name exactly where and what to scrub"
}}"""

_TEXT_TEMPLATE = """Read the text in this crop.
1. Transcribe it exactly, keeping line breaks.
2. Identify the dominant text colour and whether it is bold.

Return JSON only:
{{"text": "string", "hexColor": "#RRGGBB", "isBold": boolean}}"""

_TEMPLATES = {
    "detection": _DETECTION_TEMPLATE,
    "analyst": _ANALYST_TEMPLATE,
    "cleaner": _CLEANER_TEMPLATE,
    "critic": _CRITIC_TEMPLATE,
    "text": _TEXT_TEMPLATE,
}


def get_prompt_template(task: str) -> str:
    return _TEMPLATES.get(task, _ANALYST_TEMPLATE)


def get_all_templates() -> dict[str, str]:
    return dict(_TEMPLATES)


def analyst_prompt(element_type: str, description: str, background_color: str) -> str:
    return _ANALYST_TEMPLATE.format(
        type=element_type,
        description=description or "object",
        background_color=background_color or "#FFFFFF",
    )


def cleaner_prompt(prompt: str) -> str:
    return _CLEANER_TEMPLATE.format(prompt=prompt)


def critic_prompt(cleaning_goal: str) -> str:
    return _CRITIC_TEMPLATE.format(cleaning_goal=cleaning_goal or _FALLBACK_GOAL)


def fallback_cleaning_prompt(element_type: str, description: str = "") -> str:
    """Deterministic erase prompt used when the analyst's plan is unusable."""
    target = f"the {description}" if description else "the main subject"
    return _FALLBACK_CLEANING_TEMPLATE.format(target=target, type=element_type)


def fallback_cleaning_goal() -> str:
    return _FALLBACK_GOAL


def detection_prompt() -> str:
    return _DETECTION_TEMPLATE.format()


def text_prompt() -> str:
    return _TEXT_TEMPLATE.format()
