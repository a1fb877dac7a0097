"""
Content Conveyor — Pipeline Engine
Drives one item through stages 1..9, one stage per advance() call.

Per advance:
1. Load the item; terminal items are returned as-is
2. emit stage_started
3. Run the stage in a worker thread under its timeout
4. Persist the result with a versioned write (paid calls have already
   charged the Budget Guard inside the stage)
5. emit stage_completed / stage_failed / item_completed / item_failed

The engine never retries on its own. A write that loses the version race
(cancel, concurrent retry, a second engine) is dropped: the item's history is
left exactly as the winner wrote it. Finding another worker mid-call on the
same stage (its ledger claim is pending) is the same kind of lost race.
"""

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from typing import Optional

from conveyor.config import get_stage_timeout
from conveyor.errors import (
    ConflictError,
    IdempotencyInProgressError,
    ItemNotFoundError,
    StageError,
    StageTimeoutError,
)
from conveyor.events.bus import EventBus, get_bus
from conveyor.framework.base_stage import BaseStage, Failure, LLMCaller, StageContext, StageResult, Success
from conveyor.ledger import idempotency
from conveyor.models import (
    TOTAL_STAGES,
    ConveyorEvent,
    ErrorKind,
    EventType,
    GateDecision,
    Item,
    ItemOutcome,
    ItemStatus,
    StageHistoryEntry,
    stage_name,
    utcnow,
)
from conveyor.stages.registry import get_stage
from conveyor.store import items as item_store
from orchestrator.as_built import log, log_error, log_item_complete


def _progress(completed_stages: int) -> int:
    return int(round(completed_stages / TOTAL_STAGES * 100))


def _duration_ms(started: datetime, finished: datetime) -> int:
    return int((finished - started).total_seconds() * 1000)


class PipelineEngine:
    def __init__(
        self,
        bus: Optional[EventBus] = None,
        llm_caller: Optional[LLMCaller] = None,
        stage_overrides: Optional[dict[int, type[BaseStage]]] = None,
    ):
        self._bus = bus
        self.llm_caller = llm_caller
        self.stage_overrides = stage_overrides or {}

    @property
    def bus(self) -> EventBus:
        return self._bus or get_bus()

    # ── events ────────────────────────────────────────────────────────────────

    def _emit(
        self,
        event_type: EventType,
        item: Item,
        stage: Optional[int] = None,
        message: str = "",
        progress: Optional[int] = None,
    ) -> None:
        self.bus.emit(ConveyorEvent(
            type=event_type,
            user_id=item.user_id,
            item_id=item.id,
            stage=stage,
            stage_name=stage_name(stage) if stage else None,
            message=message,
            progress=progress,
        ))

    # ── stage invocation ──────────────────────────────────────────────────────

    def _invoke(self, stage: BaseStage, ctx: StageContext) -> StageResult:
        """
        Run one stage under its timeout. Every exception becomes a Failure,
        except a pending ledger claim, which means another worker owns this stage.
        """
        timeout = get_stage_timeout(stage.key)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{stage.key}")
        try:
            future = executor.submit(stage.run, ctx)
            return future.result(timeout=timeout)
        except FutureTimeout:
            # the abandoned call may never finish; free its claim for the retry
            idempotency.release_pending(ctx.item.id, stage.number)
            return Failure(f"{stage.name} timed out after {timeout:g}s", kind=ErrorKind.TIMEOUT)
        except StageTimeoutError as e:
            return Failure(str(e), kind=ErrorKind.TIMEOUT)
        except IdempotencyInProgressError:
            raise
        except StageError as e:
            return Failure(str(e))
        except Exception as e:
            log_error(f"{stage.name} raised", e, item_id=ctx.item.id, user_id=ctx.item.user_id)
            return Failure(f"{type(e).__name__}: {e}")
        finally:
            # A timed-out call keeps running in its thread; its result is discarded.
            executor.shutdown(wait=False)

    # ── public API ────────────────────────────────────────────────────────────

    def advance(self, item_id: str) -> ItemOutcome:
        item = item_store.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(f"item {item_id} not found")
        if item.is_terminal:
            return ItemOutcome(
                item_id=item.id,
                status=item.status,
                stage=item.current_stage,
                error=item.error_message,
            )

        number = item.current_stage
        stage = get_stage(number, self.stage_overrides)
        done_before = len({h.stage for h in item.completed_stages()})
        self._emit(
            EventType.STAGE_STARTED, item, number,
            message=f"{stage.name}: started",
            progress=_progress(done_before),
        )

        started = utcnow()
        try:
            result = self._invoke(stage, StageContext(item=item, llm_caller=self.llm_caller))
        except IdempotencyInProgressError as e:
            return self._lost_race(item, number, e)
        finished = utcnow()

        try:
            if isinstance(result, GateDecision):
                return self._apply_gate(item, stage, result, started, finished)
            if isinstance(result, Success):
                return self._apply_success(item, stage, result, started, finished)
            return self._apply_failure(item, stage, result, started, finished)
        except ConflictError as e:
            return self._lost_race(item, number, e)

    def run(self, item_id: str) -> ItemOutcome:
        """Advance until the item is terminal or another writer takes over."""
        while True:
            outcome = self.advance(item_id)
            if outcome.conflict or outcome.status != ItemStatus.PROCESSING:
                return outcome

    # ── result application ────────────────────────────────────────────────────

    def _apply_success(
        self, item: Item, stage: BaseStage, result: Success, started: datetime, finished: datetime
    ) -> ItemOutcome:
        number = stage.number
        item.stage_history.append(StageHistoryEntry(
            stage=number, started=started, completed=finished,
            duration_ms=_duration_ms(started, finished), success=True,
        ))
        item.stage_outputs[number] = result.output
        item.total_cost_usd = round(item.total_cost_usd + result.cost_usd, 6)
        item.current_stage = number + 1
        finished_item = item.current_stage > TOTAL_STAGES
        if finished_item:
            item.status = ItemStatus.COMPLETED
            item.completed_at = finished
        saved = item_store.save_item(item)

        cached = f", {result.cached_calls} cached" if result.cached_calls else ""
        log(
            f"Stage {number} ({stage.name}) complete",
            detail=f"{result.llm_calls} LLM call(s){cached}, {_duration_ms(started, finished)}ms",
            item_id=item.id, user_id=item.user_id, cost_usd=result.cost_usd,
        )
        self._emit(
            EventType.STAGE_COMPLETED, saved, number,
            message=f"{stage.name}: completed",
            progress=_progress(number),
        )
        if finished_item:
            log_item_complete(saved.id, saved.user_id, saved.status.value, saved.total_cost_usd)
            self._emit(
                EventType.ITEM_COMPLETED, saved, number,
                message="Script delivered for review",
                progress=100,
            )
        return ItemOutcome(item_id=saved.id, status=saved.status, stage=number)

    def _apply_gate(
        self, item: Item, stage: BaseStage, decision: GateDecision, started: datetime, finished: datetime
    ) -> ItemOutcome:
        if decision.decision == "approve":
            return self._apply_success(
                item, stage, Success(output=decision.model_dump()), started, finished
            )

        number = stage.number
        item.stage_history.append(StageHistoryEntry(
            stage=number, started=started, completed=finished,
            duration_ms=_duration_ms(started, finished), success=False,
            error=decision.reason,
        ))
        item.stage_outputs[number] = decision.model_dump()
        item.status = ItemStatus.FAILED
        item.error_stage = number
        item.error_kind = ErrorKind.REJECTED
        item.error_message = f"Rejected by Gate: {decision.reason}"
        item.completed_at = finished
        saved = item_store.save_item(item)

        log(
            "Gate rejected item",
            detail=decision.reason,
            level="DECISION",
            item_id=item.id, user_id=item.user_id,
        )
        self._emit(
            EventType.STAGE_COMPLETED, saved, number,
            message=f"{stage.name}: rejected ({decision.reason})",
            progress=_progress(number - 1),
        )
        self._emit(
            EventType.ITEM_FAILED, saved, number,
            message=saved.error_message,
            progress=_progress(number - 1),
        )
        return ItemOutcome(
            item_id=saved.id, status=saved.status, stage=number, error=saved.error_message
        )

    def _apply_failure(
        self, item: Item, stage: BaseStage, failure: Failure, started: datetime, finished: datetime
    ) -> ItemOutcome:
        number = stage.number
        item.stage_history.append(StageHistoryEntry(
            stage=number, started=started, completed=finished,
            duration_ms=_duration_ms(started, finished), success=False,
            error=failure.reason,
        ))
        item.status = ItemStatus.FAILED
        item.error_stage = number
        item.error_kind = failure.kind
        item.error_message = failure.reason
        item.total_cost_usd = round(item.total_cost_usd + failure.cost_usd, 6)
        saved = item_store.save_item(item)

        log(
            f"Stage {number} ({stage.name}) failed",
            detail=failure.reason,
            level="WARNING",
            item_id=item.id, user_id=item.user_id,
        )
        progress = _progress(number - 1)
        self._emit(
            EventType.STAGE_FAILED, saved, number,
            message=f"{stage.name}: {failure.reason}",
            progress=progress,
        )
        self._emit(
            EventType.ITEM_FAILED, saved, number,
            message=failure.reason,
            progress=progress,
        )
        return ItemOutcome(
            item_id=saved.id, status=saved.status, stage=number, error=failure.reason
        )

    def _lost_race(self, item: Item, number: int, error: ConflictError) -> ItemOutcome:
        current = item_store.get_item(item.id)
        status = current.status if current else item.status
        log(
            f"Stage {number} result discarded",
            detail=f"{error} (item is now {status.value})",
            level="WARNING",
            item_id=item.id, user_id=item.user_id,
        )
        return ItemOutcome(
            item_id=item.id,
            status=status,
            stage=current.current_stage if current else number,
            error=current.error_message if current else str(error),
            conflict=True,
        )
