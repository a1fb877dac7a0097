"""
Content Conveyor — Error Taxonomy
Stage failures are converted to item state by the engine; the rest surface
to callers with a machine-readable code.
"""

from __future__ import annotations
from typing import Optional


class ConveyorError(Exception):
    code = "conveyor_error"

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message or self.code)
        if code:
            self.code = code


class StageError(ConveyorError):
    """A stage could not produce its output (external call failed, bad data)."""
    code = "stage_error"


class StageTimeoutError(StageError):
    code = "stage_timeout"


class ConflictError(ConveyorError):
    """Optimistic version check failed; the losing writer must abort."""
    code = "conflict"


class IdempotencyInProgressError(ConflictError):
    code = "idempotency_in_progress"


class AdmissionDenied(ConveyorError):
    """Budget Guard or concurrency rule refused a new admission cycle."""
    code = "admission_denied"


class ItemNotFoundError(ConveyorError):
    code = "item_not_found"


class InvalidTransitionError(ConveyorError):
    """Requested lifecycle action is not valid for the item's current status."""
    code = "invalid_transition"
