"""
Content Conveyor — Runner
Lifecycle actions around the engine: admission cycles (trigger), retry,
cancel, resume after restart, the stall sweep, and human feedback.
`run_all` is the periodic entry point (cron / `conveyor run-all`).
"""

from __future__ import annotations
from datetime import datetime
from typing import Optional

from conveyor.budget import guard
from conveyor.config import get_counter_write_attempts, get_max_retries, get_stall_timeout_minutes
from conveyor.engine import PipelineEngine
from conveyor.errors import AdmissionDenied, ConflictError, InvalidTransitionError, ItemNotFoundError
from conveyor.events.bus import EventBus, get_bus
from conveyor.gate import threshold as gate_threshold
from conveyor.learning import patterns
from conveyor.ledger import idempotency
from conveyor.models import (
    TOTAL_STAGES,
    ConveyorEvent,
    ErrorKind,
    EventType,
    Item,
    ItemOutcome,
    ItemStatus,
    RejectionCategory,
    stage_name,
    utcnow,
)
from conveyor.store import candidates, scripts
from conveyor.store import items as item_store
from conveyor.store import settings as settings_store
from orchestrator.alert import alert_stalled_items
from orchestrator.as_built import log, log_cycle_start, log_decision


def _emit(bus: Optional[EventBus], event_type: EventType, item: Item, message: str) -> None:
    stage = min(item.current_stage, TOTAL_STAGES)
    (bus or get_bus()).emit(ConveyorEvent(
        type=event_type,
        user_id=item.user_id,
        item_id=item.id,
        stage=stage,
        stage_name=stage_name(stage),
        message=message,
    ))


def get_user_item(user_id: str, item_id: str) -> Item:
    """Load an item owned by user_id. Someone else's item looks like a missing one."""
    item = item_store.get_item(item_id)
    if item is None or item.user_id != user_id:
        raise ItemNotFoundError(f"item {item_id} not found")
    return item


# ── admission ─────────────────────────────────────────────────────────────────

def trigger(
    user_id: str,
    now: Optional[datetime] = None,
    bus: Optional[EventBus] = None,
) -> dict:
    """
    Start one admission cycle for a user. Items are created here; processing
    them is the caller's job (resume / engine.run).

    Raises AdmissionDenied with code already_processing, budget_exceeded or
    daily_limit_reached. Returns {admitted, item_ids, reason}.
    """
    settings = settings_store.get_settings(user_id)
    if not settings.enabled:
        settings = settings_store.update_settings(user_id, enabled=True)
        log_decision("Conveyor auto-enabled", "manual trigger on a disabled conveyor", user_id=user_id)

    busy = item_store.count_processing(user_id)
    if busy:
        raise AdmissionDenied(f"{busy} item(s) still processing", code="already_processing")

    decision = guard.can_admit(user_id, settings, now)
    if not decision.allowed:
        log(f"Admission denied: {decision.reason}", detail=decision.detail, user_id=user_id)
        raise AdmissionDenied(decision.detail, code=decision.reason)

    capacity = guard.remaining_capacity(user_id, settings, now)
    eligible = candidates.get_eligible(user_id, settings, capacity)
    if not eligible:
        log("Admission cycle: nothing eligible", user_id=user_id)
        return {"admitted": 0, "item_ids": [], "reason": "no_candidates"}

    new_items = [
        Item(
            user_id=user_id,
            source_type=source.source_type,
            source_ref=source.source_ref,
            source_data=source,
            settings_snapshot=settings,
        )
        for source in eligible
    ]
    admitted = item_store.admit_items(user_id, new_items)
    guard.record_admissions(user_id, len(admitted), now)
    log_cycle_start(user_id, len(admitted), skipped=len(new_items) - len(admitted))

    for item in admitted:
        _emit(bus, EventType.ITEM_STARTED, item, f"Started: {item.source_data.title}")
    return {
        "admitted": len(admitted),
        "item_ids": [i.id for i in admitted],
        "reason": None if admitted else "no_candidates",
    }


def resume(user_id: str, engine: Optional[PipelineEngine] = None) -> list[ItemOutcome]:
    """Run every processing item of a user from its persisted current_stage."""
    engine = engine or PipelineEngine()
    return [engine.run(item.id) for item in item_store.list_processing(user_id)]


# ── per-item actions ──────────────────────────────────────────────────────────

def retry(
    user_id: str,
    item_id: str,
    bus: Optional[EventBus] = None,
) -> Item:
    """
    Put a failed item back into processing at its failed stage.
    Earlier stage outputs are kept, so stages before error_stage do not run
    again and unchanged paid calls are served from the idempotency ledger.
    """
    item = get_user_item(user_id, item_id)
    if item.status != ItemStatus.FAILED:
        raise InvalidTransitionError(
            f"only failed items can be retried (item is {item.status.value})", code="not_failed"
        )
    if item.error_kind == ErrorKind.REJECTED:
        raise InvalidTransitionError("the Gate rejected this item; it is final", code="not_retryable")
    if item.retry_count >= get_max_retries():
        raise InvalidTransitionError(
            f"retry limit reached ({item.retry_count}/{get_max_retries()})", code="retry_limit_reached"
        )

    failed_stage = item.error_stage or item.current_stage
    item.status = ItemStatus.PROCESSING
    item.current_stage = failed_stage
    item.retry_count += 1
    item.error_stage = None
    item.error_message = None
    item.error_kind = None
    item.completed_at = None
    saved = item_store.save_item(item)

    log(
        f"Retry #{saved.retry_count} from stage {failed_stage}",
        item_id=saved.id, user_id=user_id,
    )
    _emit(bus, EventType.ITEM_STARTED, saved, f"Retry #{saved.retry_count} from {stage_name(failed_stage)}")
    return saved


def cancel(user_id: str, item_id: str, bus: Optional[EventBus] = None) -> Item:
    """
    Cancel a processing item. A stage call already running finishes, but the
    engine's write of its result loses the version race and is dropped.
    """
    for _ in range(get_counter_write_attempts()):
        item = get_user_item(user_id, item_id)
        if item.status != ItemStatus.PROCESSING:
            raise InvalidTransitionError(
                f"only processing items can be cancelled (item is {item.status.value})",
                code="not_processing",
            )
        item.status = ItemStatus.CANCELLED
        item.error_stage = item.current_stage
        item.error_kind = ErrorKind.CANCELLED
        item.error_message = "Cancelled by user"
        item.completed_at = utcnow()
        try:
            saved = item_store.save_item(item)
        except ConflictError:
            continue
        log("Item cancelled", detail=f"at stage {saved.current_stage}", item_id=saved.id, user_id=user_id)
        _emit(bus, EventType.ITEM_FAILED, saved, "Cancelled by user")
        return saved
    raise ConflictError(f"item {item_id} kept changing while cancelling")


def feedback(
    user_id: str,
    item_id: str,
    decision: str,
    reason: Optional[str] = None,
    category: Optional[RejectionCategory] = None,
) -> dict:
    """
    Human approve/reject of a delivered script. Feeds the adaptive Gate
    threshold, and on reject the user's rejection patterns.
    """
    if decision not in ("approve", "reject"):
        raise ValueError(f"decision must be 'approve' or 'reject', got {decision!r}")
    item = get_user_item(user_id, item_id)
    if item.status != ItemStatus.COMPLETED:
        raise InvalidTransitionError(
            "feedback is only accepted for completed items", code="not_completed"
        )
    script = scripts.record_review(item_id, decision, reason)
    base = settings_store.get_settings(user_id).min_score_threshold
    state = gate_threshold.record_feedback(user_id, decision, base)
    learned = []
    if decision == "reject":
        learned = patterns.record_rejection(user_id, reason, category, title=script["title"])
    return {"script": script, "threshold": state, "categories": [c.value for c in learned]}


# ── maintenance ───────────────────────────────────────────────────────────────

def sweep_stalled(minutes: Optional[int] = None, bus: Optional[EventBus] = None) -> list[str]:
    """
    Fail processing items with no write for longer than the stall timeout
    (a worker died mid-stage). Their pending ledger claims are released so
    a retry can run the stage again. Stalled items stay retryable.
    """
    minutes = minutes if minutes is not None else get_stall_timeout_minutes()
    failed = []
    for item in item_store.find_stalled(minutes):
        item.status = ItemStatus.FAILED
        item.error_stage = item.current_stage
        item.error_kind = ErrorKind.STALLED
        item.error_message = f"No progress for over {minutes} minutes"
        try:
            saved = item_store.save_item(item)
        except ConflictError:
            # it moved, so it is not stalled
            continue
        # the dead worker never resolved its ledger claims
        idempotency.release_pending(saved.id)
        _emit(bus, EventType.ITEM_FAILED, saved, saved.error_message)
        failed.append({"item_id": saved.id, "user_id": saved.user_id, "stage": saved.current_stage})

    if failed:
        log(
            f"Stall sweep failed {len(failed)} item(s)",
            detail=", ".join(f["item_id"] for f in failed),
            level="WARNING",
        )
        alert_stalled_items(failed, minutes)
    return [f["item_id"] for f in failed]


def run_all(engine: Optional[PipelineEngine] = None, now: Optional[datetime] = None) -> dict:
    """
    Periodic tick: sweep stalled items, then give every enabled user one
    admission cycle and process what was admitted.
    """
    engine = engine or PipelineEngine()
    summary = {"stalled": sweep_stalled(), "users": {}}
    for user_id in settings_store.get_enabled_users():
        try:
            admitted = trigger(user_id, now=now)["admitted"]
            denied = None
        except AdmissionDenied as e:
            admitted, denied = 0, e.code
        # already_processing leftovers (e.g. after a restart) are picked up here too
        outcomes = resume(user_id, engine)
        summary["users"][user_id] = {
            "admitted": admitted,
            "denied": denied,
            "completed": sum(1 for o in outcomes if o.status == ItemStatus.COMPLETED),
            "failed": sum(1 for o in outcomes if o.status == ItemStatus.FAILED),
        }
    return summary
