"""DecompositionSession — one slide image, its elements and the runs over them.

Holds everything a consumer needs for a run: the source image, the detected
background colour, the element store and the scheduler. Also provides the two
user actions on a single element: rerun (optionally with a prompt override)
and box edit.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from typing import Any

from PIL import Image

from decomposer.engine.config import PipelineConfig
from decomposer.engine.errors import InvalidTransitionError, MalformedResponseError
from decomposer.engine.geometry import MAX_DETECTION_DIMENSION, downscale_to_fit
from decomposer.engine.retry import with_retry, with_timeout
from decomposer.engine.scheduler import Scheduler
from decomposer.engine.state import ElementStore
from decomposer.llm.client import AgentService
from decomposer.models.agent import DetectedElement, ParseFailure
from decomposer.models.element import Box, Element, ElementStatus
from decomposer.utils.imaging import to_png_bytes

logger = logging.getLogger(__name__)

_DETECTION_TIMEOUT_S = 120.0


def elements_from_detection(detected: list[DetectedElement]) -> list[Element]:
    return [
        Element(
            id=f"el-{i}",
            type=d.type,
            description=d.description,
            box=Box.from_list(d.box_2d),
            z_order=d.z_order,
        )
        for i, d in enumerate(detected)
    ]


class DecompositionSession:
    def __init__(
        self,
        image: Image.Image,
        elements: list[Element],
        service: AgentService,
        config: PipelineConfig | None = None,
        background_color: str = "#FFFFFF",
        session_id: str | None = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex[:12]
        self.image = image.convert("RGBA")
        self.background_color = background_color
        self.config = config or PipelineConfig()
        self.store = ElementStore(elements)
        self.scheduler = Scheduler(
            self.store, service, self.image, self.config, background_color
        )
        self.created_at = time.time()
        self.started_at: float | None = None
        self.finished_at: float | None = None
        self._task: asyncio.Task | None = None

    @classmethod
    async def detect(
        cls,
        image: Image.Image,
        service: AgentService,
        config: PipelineConfig | None = None,
        background_color: str | None = None,
    ) -> DecompositionSession:
        """Run the one-shot detection call and build a session from its elements.

        A caller-supplied ``background_color`` wins over the detected one.
        """
        cfg = config or PipelineConfig()
        preview_png = to_png_bytes(downscale_to_fit(image.convert("RGB"), MAX_DETECTION_DIMENSION))

        async def _detect():
            result = await service.detect(preview_png)
            if isinstance(result, ParseFailure):
                raise MalformedResponseError(f"Detection response unusable: {result.error}")
            return result

        result = await with_retry(
            lambda: with_timeout(_detect(), _DETECTION_TIMEOUT_S, "Detection"),
            cfg.max_stage_retries,
            cfg.stage_backoff_s,
            "Detection",
        )
        session = cls(
            image,
            elements_from_detection(result.elements),
            service,
            cfg,
            background_color=background_color or result.background_color,
        )
        session.store.add_usage(result.usage)
        session.store.log(f"Image: {image.width}x{image.height}. Found {len(result.elements)} elements.")
        return session

    # ── Runs ──

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self) -> list[Element]:
        self.started_at = time.time()
        self.finished_at = None
        try:
            return await self.scheduler.run()
        finally:
            self.finished_at = time.time()

    def start(self) -> asyncio.Task:
        """Start processing every PENDING element in the background."""
        if self.is_running:
            raise RuntimeError(f"Session {self.id} is already running")
        self._task = asyncio.create_task(self.run())
        return self._task

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def rerun(self, element_id: str, prompt: str | None = None) -> Element:
        """Send a finished element through the loop again.

        Planning state is kept; a prompt override restarts the attempt budget
        and skips the analyst.
        """
        el = self.store.get(element_id)
        if el.status == ElementStatus.PROCESSING:
            raise InvalidTransitionError(f"{element_id} is already being processed")
        if el.status != ElementStatus.PENDING:
            self.store.reset(element_id, clear=False)
        return await self.scheduler.process_one(element_id, prompt_override=prompt or None)

    def update_box(self, element_id: str, box: Box) -> Element:
        """Move an element's box; all cached extraction state is discarded."""
        el = self.store.get(element_id)
        if el.status == ElementStatus.PROCESSING:
            raise InvalidTransitionError(f"{element_id} is being processed; wait before editing")
        return self.store.reset(element_id, clear=True, box=box)

    # ── Observation ──

    def snapshot(self) -> dict[str, Any]:
        elements = self.store.snapshot()
        counts = {s.value: 0 for s in ElementStatus}
        for el in elements:
            counts[el.status.value] += 1
        return {
            "id": self.id,
            "width": self.image.width,
            "height": self.image.height,
            "background_color": self.background_color,
            "running": self.is_running,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "counts": counts,
            "elements": elements,
            "logs": self.store.logs,
            "token_usage": list(self.store.usage.values()),
        }


class SessionRegistry:
    """In-memory sessions for the lifetime of the process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, DecompositionSession] = {}

    def add(self, session: DecompositionSession) -> None:
        with self._lock:
            self._sessions[session.id] = session

    def get(self, session_id: str) -> DecompositionSession:
        with self._lock:
            return self._sessions[session_id]

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


_registry: SessionRegistry | None = None


def get_session_registry() -> SessionRegistry:
    global _registry
    if _registry is None:
        _registry = SessionRegistry()
    return _registry