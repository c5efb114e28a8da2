"""Concurrency scheduler — a fixed pool of workers draining a FIFO of element ids."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from PIL import Image

from decomposer.engine.config import PipelineConfig
from decomposer.engine.errors import GeometryError
from decomposer.engine.geometry import crop_and_downscale, crop_region
from decomposer.engine.orchestrator import StageOrchestrator
from decomposer.engine.state import ElementStore, short_id
from decomposer.llm.client import AgentService
from decomposer.models.element import Element, ElementStatus, ElementType
from decomposer.utils.imaging import to_base64

logger = logging.getLogger(__name__)


class Scheduler:
    """Runs every queued element through the orchestrator with bounded concurrency.

    Queue pops are the only synchronized step between workers. Each worker
    claims the element it popped, so an element is never held by two workers
    (or by a worker and a manual rerun) at once.
    """

    def __init__(
        self,
        store: ElementStore,
        service: AgentService,
        source_image: Image.Image,
        config: PipelineConfig | None = None,
        background_color: str = "#FFFFFF",
    ) -> None:
        self.store = store
        self.source_image = source_image
        self.config = config or PipelineConfig()
        self.orchestrator = StageOrchestrator(store, service, self.config, background_color)

    async def run(self, element_ids: Iterable[str] | None = None) -> list[Element]:
        """Process the given ids (default: every PENDING element) and wait for all workers."""
        if element_ids is None:
            element_ids = self.store.ids_with_status(ElementStatus.PENDING)
        pending = [i for i in element_ids if self.store.get(i).status == ElementStatus.PENDING]
        if not pending:
            return []

        queue: asyncio.Queue[str] = asyncio.Queue()
        for element_id in pending:
            queue.put_nowait(element_id)

        n_workers = max(1, min(self.config.concurrency, len(pending)))
        self.store.log(f"Batch extraction starting: {len(pending)} elements, {n_workers} workers.")

        await asyncio.gather(*(self._worker(w, queue) for w in range(n_workers)))

        self.store.log("Finished.")
        return [self.store.get(i) for i in pending]

    async def _worker(self, worker_id: int, queue: asyncio.Queue[str]) -> None:
        while True:
            try:
                element_id = queue.get_nowait()
            except asyncio.QueueEmpty:
                logger.debug("Worker %d: queue empty, exiting", worker_id)
                return
            try:
                await self.process_one(element_id)
            finally:
                queue.task_done()

    async def process_one(self, element_id: str, prompt_override: str | None = None) -> Element:
        """Claim, crop and process a single PENDING element."""
        label = f"[{short_id(element_id)}]"
        if not self.store.claim(element_id):
            logger.debug("%s not PENDING, skipping", label)
            return self.store.get(element_id)

        el = self.store.get(element_id)
        try:
            rect = crop_region(self.source_image.size, el.box, self.config.crop_padding)
        except GeometryError as e:
            return self.store.fail(element_id, f"Geometry error: {e}")

        try:
            crop = crop_and_downscale(self.source_image, rect, self.config.max_crop_dimension)
            self.store.update(element_id, {"original_crop": to_base64(crop)})

            if el.type == ElementType.TEXT:
                return await self.orchestrator.read_text(element_id, crop)
            return await self.orchestrator.process(element_id, crop, prompt_override)
        except Exception as e:
            logger.exception("%s worker failure", label)
            if self.store.get(element_id).status == ElementStatus.PROCESSING:
                return self.store.fail(element_id, f"Critical error: {e}")
            return self.store.get(element_id)
