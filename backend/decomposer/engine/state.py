"""ElementStore — the shared, observable progress state of one run.

Workers, manual reruns and HTTP observers all touch the same elements, so every
write goes through ``update()``: a read-modify-write merge against the latest
stored element, applied under one lock. A change is either a dict of fields or
a function of the current element returning such a dict. Partial updates from
different writers therefore compose instead of overwriting each other.

Stored elements are replaced, never mutated in place, so a snapshot handed to a
reader stays consistent while workers keep going.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from decomposer.engine.errors import InvalidTransitionError
from decomposer.models.agent import TokenUsage
from decomposer.models.element import AttemptRecord, Element, ElementStatus

logger = logging.getLogger(__name__)

Changes = dict[str, Any]
ChangeFn = Callable[[Element], Changes]
Listener = Callable[[dict[str, Any]], None]

_ALLOWED: dict[ElementStatus, set[ElementStatus]] = {
    ElementStatus.PENDING: {ElementStatus.PROCESSING},
    ElementStatus.PROCESSING: {ElementStatus.COMPLETED, ElementStatus.FAILED},
    ElementStatus.COMPLETED: {ElementStatus.PENDING},
    ElementStatus.FAILED: {ElementStatus.PENDING},
}


def _reset_fields() -> Changes:
    """Fields cleared when an element is sent back to PENDING from scratch."""
    return {
        "attempts": 0,
        "active_prompt": "",
        "cleaning_goal": "",
        "is_white_interior": False,
        "history": [],
        "last_qa_score": None,
        "last_qa_feedback": "",
        "failure_reason": "",
        "original_crop": None,
        "cleaned_image": None,
        "processing_ms": None,
        "text_content": "",
        "text_color": "",
        "is_bold": False,
    }


def check_transition(current: ElementStatus, target: ElementStatus) -> None:
    if current == target:
        return
    if target not in _ALLOWED[current]:
        raise InvalidTransitionError(f"{current.value} -> {target.value} is not allowed")


class ElementStore:
    """Thread-safe element collection with merge-only updates."""

    def __init__(self, elements: Iterable[Element] = ()) -> None:
        self._lock = threading.RLock()
        self._elements: dict[str, Element] = {}
        self._logs: list[str] = []
        self._usage: dict[str, TokenUsage] = {}
        self._listeners: list[Listener] = []
        for el in elements:
            self.add(el)

    # ── Collection ──

    def add(self, element: Element) -> None:
        with self._lock:
            if element.id in self._elements:
                raise ValueError(f"Duplicate element id: {element.id}")
            self._elements[element.id] = element
            self._emit({"type": "element", "element": element})

    def get(self, element_id: str) -> Element:
        with self._lock:
            try:
                return self._elements[element_id]
            except KeyError:
                raise KeyError(f"Unknown element: {element_id}") from None

    def __contains__(self, element_id: object) -> bool:
        with self._lock:
            return element_id in self._elements

    def __len__(self) -> int:
        with self._lock:
            return len(self._elements)

    def snapshot(self) -> list[Element]:
        """All elements in insertion order."""
        with self._lock:
            return list(self._elements.values())

    def ids_with_status(self, status: ElementStatus) -> list[str]:
        with self._lock:
            return [el.id for el in self._elements.values() if el.status == status]

    def count(self, status: ElementStatus) -> int:
        return len(self.ids_with_status(status))

    # ── Updates ──

    def update(self, element_id: str, changes: Changes | ChangeFn) -> Element:
        """Merge ``changes`` into the latest version of one element."""
        with self._lock:
            current = self.get(element_id)
            delta = changes(current) if callable(changes) else changes
            if not delta:
                return current
            delta = dict(delta)
            if "id" in delta and delta["id"] != element_id:
                raise ValueError("Element id is immutable")
            if "status" in delta:
                delta["status"] = ElementStatus(delta["status"])
                check_transition(current.status, delta["status"])
            merged = current.model_copy(update=delta)
            self._elements[element_id] = merged
            self._emit({"type": "element", "element": merged})
            return merged

    def claim(self, element_id: str) -> bool:
        """Atomically move a PENDING element to PROCESSING.

        Returns False when the element is held elsewhere or already finished.
        """
        with self._lock:
            if self.get(element_id).status != ElementStatus.PENDING:
                return False
            self.update(element_id, {"status": ElementStatus.PROCESSING, "failure_reason": ""})
            return True

    def append_history(self, element_id: str, record: AttemptRecord, **changes: Any) -> Element:
        """Append one attempt record and apply extra field changes in the same merge."""
        return self.update(
            element_id,
            lambda el: {"history": [*el.history, record], **changes},
        )

    def fail(self, element_id: str, reason: str) -> Element:
        el = self.update(element_id, {"status": ElementStatus.FAILED, "failure_reason": reason})
        self.log(f"[{short_id(element_id)}] {reason}")
        return el

    def reset(self, element_id: str, clear: bool = True, **changes: Any) -> Element:
        """Send a finished element back to PENDING.

        With ``clear`` all planning, prompt and history state is dropped;
        otherwise it is kept for a rerun.
        """
        delta: Changes = _reset_fields() if clear else {"failure_reason": ""}
        delta.update(changes)
        delta["status"] = ElementStatus.PENDING
        return self.update(element_id, delta)

    # ── Run log ──

    def log(self, message: str) -> None:
        with self._lock:
            self._logs.append(message)
            self._emit({"type": "log", "message": message})
        logger.info(message)

    @property
    def logs(self) -> list[str]:
        with self._lock:
            return list(self._logs)

    # ── Token usage ──

    def add_usage(self, usage: TokenUsage | None) -> None:
        if usage is None:
            return
        with self._lock:
            current = self._usage.get(usage.model) or TokenUsage(model=usage.model)
            self._usage[usage.model] = TokenUsage(
                model=usage.model,
                input_tokens=current.input_tokens + usage.input_tokens,
                output_tokens=current.output_tokens + usage.output_tokens,
                total_tokens=current.total_tokens + usage.total_tokens,
            )

    @property
    def usage(self) -> dict[str, TokenUsage]:
        with self._lock:
            return dict(self._usage)

    # ── Observers ──

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it.

        Listeners run under the store lock and must return quickly.
        """
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, event: dict[str, Any]) -> None:
        event.setdefault("timestamp", time.time())
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning("Store listener failed: %s", e)


def short_id(element_id: str) -> str:
    """Label used in run log lines, e.g. 'el-12' -> '12'."""
    return element_id.rsplit("-", 1)[-1]
