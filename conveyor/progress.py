"""
Content Conveyor — Progress Report
Dashboard view of one item: percentage, elapsed time and an ETA from the
average duration of the stages completed so far.
"""

from __future__ import annotations
from typing import Optional

from conveyor.models import (
    STAGE_DESCRIPTIONS,
    TOTAL_STAGES,
    Item,
    ItemStatus,
    stage_name,
    utcnow,
)

DEFAULT_STAGE_SECONDS = 30


def _stage_status(item: Item, number: int, completed: set[int]) -> str:
    if number in completed:
        return "completed"
    if item.status == ItemStatus.PROCESSING and number == item.current_stage:
        return "running"
    if item.status != ItemStatus.PROCESSING and number == item.error_stage:
        return item.status.value
    return "pending"


def _last_duration_ms(item: Item, number: int) -> Optional[int]:
    for entry in reversed(item.stage_history):
        if entry.stage == number:
            return entry.duration_ms
    return None


def build_progress(item: Item) -> dict:
    completed_entries = item.completed_stages()
    completed = {h.stage for h in completed_entries}

    if item.status == ItemStatus.COMPLETED:
        progress = 100
    elif item.status == ItemStatus.PROCESSING:
        progress = int(round(len(completed) / TOTAL_STAGES * 100))
    else:
        progress = 0

    end = item.completed_at if item.status != ItemStatus.PROCESSING and item.completed_at else utcnow()
    elapsed = max(0, int((end - item.started_at).total_seconds()))

    if item.status == ItemStatus.PROCESSING:
        if completed_entries:
            avg = sum(h.duration_ms for h in completed_entries) / len(completed_entries) / 1000
        else:
            avg = DEFAULT_STAGE_SECONDS
        remaining = int(round((TOTAL_STAGES - len(completed)) * avg))
    else:
        remaining = 0

    current = min(item.current_stage, TOTAL_STAGES)
    return {
        "item_id": item.id,
        "status": item.status.value,
        "current_stage": item.current_stage,
        "stage_name": stage_name(current),
        "progress": progress,
        "elapsed_time": elapsed,
        "estimated_time_remaining": remaining,
        "error_message": item.error_message,
        "error_kind": item.error_kind.value if item.error_kind else None,
        "stages": [
            {
                "stage": n,
                "name": stage_name(n),
                "description": STAGE_DESCRIPTIONS[n],
                "status": _stage_status(item, n, completed),
                "duration_ms": _last_duration_ms(item, n),
            }
            for n in range(1, TOTAL_STAGES + 1)
        ],
    }
