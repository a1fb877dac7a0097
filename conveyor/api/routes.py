"""REST endpoints: trigger, settings, items, feedback, learning, usage, health."""

from __future__ import annotations
from typing import Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, Request, status
from pydantic import BaseModel

from conveyor import progress, runner
from conveyor.budget import guard
from conveyor.engine import PipelineEngine
from conveyor.gate import threshold as gate_threshold
from conveyor.learning import patterns
from conveyor.models import ConveyorSettings, Item, RejectionCategory
from conveyor.store import db, scripts
from conveyor.store import items as item_store
from conveyor.store import settings as settings_store
from orchestrator.cost_logger import get_item_summary

router = APIRouter(tags=["conveyor"])


class FeedbackRequest(BaseModel):
    decision: Literal["approve", "reject"]
    reason: Optional[str] = None
    category: Optional[RejectionCategory] = None


def get_user_id(x_user_id: str = Header(..., min_length=1)) -> str:
    return x_user_id


def get_engine(request: Request) -> PipelineEngine:
    return request.app.state.engine


def _item_summary(item: Item) -> dict:
    return item.model_dump(mode="json", exclude={"stage_outputs", "settings_snapshot"})


@router.get("/health")
def health() -> dict:
    with db.connect() as conn:
        conn.execute("SELECT 1").fetchone()
    return {"status": "ok"}


@router.post("/trigger", status_code=status.HTTP_202_ACCEPTED)
def trigger(
    background: BackgroundTasks,
    request: Request,
    user_id: str = Depends(get_user_id),
    engine: PipelineEngine = Depends(get_engine),
) -> dict:
    result = runner.trigger(user_id, bus=request.app.state.bus)
    if result["admitted"]:
        background.add_task(runner.resume, user_id, engine)
    return result


@router.get("/settings")
def read_settings(user_id: str = Depends(get_user_id)) -> ConveyorSettings:
    return settings_store.get_settings(user_id)


@router.put("/settings")
def replace_settings(body: ConveyorSettings, user_id: str = Depends(get_user_id)) -> ConveyorSettings:
    return settings_store.save_settings(user_id, body)


@router.get("/items")
def list_items(
    user_id: str = Depends(get_user_id),
    limit: int = Query(50, ge=1, le=500),
) -> dict:
    return {"items": [_item_summary(i) for i in item_store.list_items(user_id, limit)]}


@router.get("/items/{item_id}")
def read_item(item_id: str, user_id: str = Depends(get_user_id)) -> dict:
    item = runner.get_user_item(user_id, item_id)
    return {
        "item": item.model_dump(mode="json"),
        "script": scripts.get_script_for_item(item_id),
        "costs": get_item_summary(item_id),
    }


@router.get("/items/{item_id}/progress")
def read_progress(item_id: str, user_id: str = Depends(get_user_id)) -> dict:
    return progress.build_progress(runner.get_user_item(user_id, item_id))


@router.post("/items/{item_id}/retry", status_code=status.HTTP_202_ACCEPTED)
def retry_item(
    item_id: str,
    background: BackgroundTasks,
    request: Request,
    user_id: str = Depends(get_user_id),
    engine: PipelineEngine = Depends(get_engine),
) -> dict:
    item = runner.retry(user_id, item_id, bus=request.app.state.bus)
    background.add_task(engine.run, item.id)
    return {"item": _item_summary(item)}


@router.post("/items/{item_id}/cancel")
def cancel_item(item_id: str, request: Request, user_id: str = Depends(get_user_id)) -> dict:
    item = runner.cancel(user_id, item_id, bus=request.app.state.bus)
    return {"item": _item_summary(item)}


@router.post("/items/{item_id}/feedback")
def submit_feedback(
    item_id: str,
    body: FeedbackRequest,
    user_id: str = Depends(get_user_id),
) -> dict:
    return runner.feedback(user_id, item_id, body.decision, body.reason, body.category)


@router.get("/learning")
def read_learning(user_id: str = Depends(get_user_id)) -> dict:
    return {
        "patterns": patterns.get_patterns(user_id),
        "writer_instructions": patterns.writer_instructions(user_id),
    }


@router.get("/usage")
def read_usage(user_id: str = Depends(get_user_id)) -> dict:
    settings = settings_store.get_settings(user_id)
    return {
        **guard.usage(user_id),
        "daily_limit": settings.daily_limit,
        "monthly_budget_limit": settings.monthly_budget_limit,
        "remaining_capacity": guard.remaining_capacity(user_id, settings),
        "effective_threshold": gate_threshold.get_effective_threshold(
            user_id, settings.min_score_threshold
        ),
        "processing": item_store.count_processing(user_id),
    }
