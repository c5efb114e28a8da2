"""Error taxonomy for the extraction pipeline.

Stage errors are recoverable through stage-level retry. Everything else is
fatal for a single element, never for the whole run.
"""

from __future__ import annotations


class DecomposerError(Exception):
    """Base class for all pipeline errors."""


class StageError(DecomposerError):
    """A single stage call failed (transport, timeout or unusable response)."""


class StageTimeoutError(StageError):
    pass


class MalformedResponseError(StageError):
    pass


class NoImageError(StageError):
    pass


class StageExhaustedError(DecomposerError):
    """A stage failed on every allowed invocation."""

    def __init__(self, stage: str, attempts: int, last_error: BaseException | None) -> None:
        self.stage = stage
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{stage} failed after {attempts} attempt(s): {last_error}")


class EntitlementError(DecomposerError):
    """The routed model needs an entitlement the caller does not hold."""


class GeometryError(DecomposerError):
    """The crop region collapsed to zero or negative extent."""


class InvalidTransitionError(DecomposerError):
    """A status change outside PENDING -> PROCESSING -> {COMPLETED, FAILED}."""
