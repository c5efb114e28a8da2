"""/api/runs — create a decomposition run, drive it, observe it, nudge single elements."""

from __future__ import annotations

import asyncio
import io
import json
import logging
from collections.abc import AsyncGenerator
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from PIL import Image, UnidentifiedImageError

from decomposer.dependencies import get_pipeline_config, get_registry, get_service
from decomposer.engine.config import PipelineConfig
from decomposer.engine.errors import DecomposerError, InvalidTransitionError
from decomposer.engine.session import DecompositionSession, SessionRegistry
from decomposer.llm.client import AgentService
from decomposer.models.element import Box, Element, ElementStatus
from decomposer.models.requests import CreateRunRequest, ElementInput, RerunRequest, UpdateBoxRequest
from decomposer.models.responses import RunResponse, StartResponse
from decomposer.utils.imaging import decode_base64

logger = logging.getLogger(__name__)

router = APIRouter()

# Heavy image payloads are left out of streamed element events.
_STREAM_EXCLUDE = {"original_crop", "cleaned_image"}


def _load_image(payload: str) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(decode_base64(payload)))
        img.load()
    except (ValueError, UnidentifiedImageError, OSError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid image: {e}") from e
    return img.convert("RGBA")


def _elements_from_input(items: list[ElementInput]) -> list[Element]:
    elements = []
    for i, item in enumerate(items):
        elements.append(
            Element(
                id=item.id or f"el-{i}",
                type=item.type,
                box=Box.from_list(item.box_2d),
                description=item.description,
                z_order=item.z_order,
            )
        )
    return elements


def _get_session(registry: SessionRegistry, run_id: str) -> DecompositionSession:
    try:
        return registry.get(run_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown run: {run_id}") from None


def _get_element(session: DecompositionSession, element_id: str) -> Element:
    try:
        return session.store.get(element_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown element: {element_id}") from None


@router.post("/runs", response_model=RunResponse)
async def create_run(
    req: CreateRunRequest,
    service: AgentService = Depends(get_service),
    config: PipelineConfig = Depends(get_pipeline_config),
    registry: SessionRegistry = Depends(get_registry),
) -> RunResponse:
    image = _load_image(req.image)

    if req.elements is not None:
        try:
            elements = _elements_from_input(req.elements)
            session = DecompositionSession(
                image,
                elements,
                service,
                config,
                background_color=req.background_color or "#FFFFFF",
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
    else:
        try:
            session = await DecompositionSession.detect(
                image, service, config, background_color=req.background_color
            )
        except DecomposerError as e:
            logger.warning("Detection failed: %s", e)
            raise HTTPException(status_code=502, detail=f"Detection failed: {e}") from e

    registry.add(session)
    return RunResponse(**session.snapshot())


@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str, registry: SessionRegistry = Depends(get_registry)) -> RunResponse:
    return RunResponse(**_get_session(registry, run_id).snapshot())


@router.post("/runs/{run_id}/start", response_model=StartResponse)
async def start_run(
    run_id: str,
    wait: bool = False,
    registry: SessionRegistry = Depends(get_registry),
) -> StartResponse:
    session = _get_session(registry, run_id)
    pending = session.store.count(ElementStatus.PENDING)
    try:
        task = session.start()
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    if wait:
        await task
        return StartResponse(id=session.id, status="finished", pending=pending)
    return StartResponse(id=session.id, status="started", pending=pending)


@router.post("/runs/{run_id}/elements/{element_id}/rerun", response_model=Element)
async def rerun_element(
    run_id: str,
    element_id: str,
    req: RerunRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> Element:
    session = _get_session(registry, run_id)
    _get_element(session, element_id)
    try:
        return await session.rerun(element_id, req.prompt)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e


@router.put("/runs/{run_id}/elements/{element_id}/box", response_model=Element)
async def update_box(
    run_id: str,
    element_id: str,
    req: UpdateBoxRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> Element:
    session = _get_session(registry, run_id)
    _get_element(session, element_id)
    try:
        return session.update_box(element_id, Box.from_list(req.box))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e


def _stream_active(session: DecompositionSession) -> bool:
    """True while a run is in flight, not yet started, or an element is being rerun."""
    store = session.store
    if session.is_running or store.count(ElementStatus.PROCESSING):
        return True
    return session.started_at is None and store.count(ElementStatus.PENDING) > 0


def _sse(event: str, payload: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


def _event_payload(evt: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    if evt["type"] == "element":
        el: Element = evt["element"]
        return "element", {
            "type": "element",
            "timestamp": evt["timestamp"],
            "element": el.model_dump(mode="json", exclude=_STREAM_EXCLUDE),
        }
    return "log", {"type": "log", "timestamp": evt["timestamp"], "message": evt.get("message", "")}


async def _stream_run(session: DecompositionSession) -> AsyncGenerator[str, None]:
    """Relay store events as SSE until the run stops and the backlog is drained."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def _on_event(evt: dict[str, Any]) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, evt)

    unsubscribe = session.store.subscribe(_on_event)
    try:
        counts = session.snapshot()["counts"]
        yield _sse("snapshot", {"type": "snapshot", "id": session.id, "counts": counts})

        while _stream_active(session) or not queue.empty():
            try:
                evt = await asyncio.wait_for(queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            event, payload = _event_payload(evt)
            yield _sse(event, payload)

        yield _sse("done", {"type": "done", "counts": session.snapshot()["counts"]})
    finally:
        unsubscribe()


@router.get("/runs/{run_id}/stream")
async def stream_run(run_id: str, registry: SessionRegistry = Depends(get_registry)) -> StreamingResponse:
    session = _get_session(registry, run_id)
    return StreamingResponse(
        _stream_run(session),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
