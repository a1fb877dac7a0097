"""
Content Conveyor — LLM Call Ledger
One row per stage LLM call, including calls replayed from the idempotency
ledger (logged at zero cost). conveyor.budget.guard enforces the caps;
this table is what an operator reads to see where the money went.
"""

from __future__ import annotations
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

from conveyor.store import db

# USD per 1K tokens: (prompt, completion)
PRICE_PER_1K = {
    "claude-sonnet-4-5": (0.003, 0.015),
    "claude-haiku-4-5": (0.00025, 0.00125),
    "deepseek-v3": (0.00027, 0.00110),
}
FALLBACK_PRICE = (0.001, 0.003)


@dataclass
class LLMCall:
    user_id: str
    item_id: str
    stage: str
    model: str
    tokens_in: int
    tokens_out: int
    cost: float
    purpose: str
    called_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cached: bool = False


def log_call(call: LLMCall) -> None:
    row = asdict(call)
    row["called_at"] = call.called_at.isoformat()
    row["cached"] = 1 if call.cached else 0
    with db.connect() as conn:
        conn.execute(
            "INSERT INTO llm_calls (user_id, item_id, stage, model, tokens_in, tokens_out, "
            "cost, purpose, called_at, cached) VALUES (:user_id, :item_id, :stage, :model, "
            ":tokens_in, :tokens_out, :cost, :purpose, :called_at, :cached)",
            row,
        )


def get_item_summary(item_id: str) -> dict:
    """Spend for one item, one row per (stage, model), most expensive first."""
    with db.connect() as conn:
        grouped = conn.execute(
            "SELECT stage, model, SUM(tokens_in) AS input_tokens, SUM(tokens_out) AS output_tokens, "
            "SUM(cost) AS cost, COUNT(*) AS calls, SUM(cached) AS cached_calls "
            "FROM llm_calls WHERE item_id = ? GROUP BY stage, model ORDER BY SUM(cost) DESC",
            (item_id,),
        ).fetchall()

    by_stage = [dict(r) for r in grouped]
    return {
        "item_id": item_id,
        "total_cost": sum(r["cost"] for r in by_stage),
        "total_calls": sum(r["calls"] for r in by_stage),
        "by_stage": by_stage,
    }


def get_user_spend(user_id: str, since: Optional[str] = None) -> float:
    """Logged spend for a user; `since` is an ISO timestamp lower bound."""
    query = "SELECT COALESCE(SUM(cost), 0) FROM llm_calls WHERE user_id = ?"
    params: list = [user_id]
    if since:
        query += " AND called_at >= ?"
        params.append(since)
    with db.connect() as conn:
        return conn.execute(query, params).fetchone()[0]


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    prompt_rate, completion_rate = PRICE_PER_1K.get(model, FALLBACK_PRICE)
    return (input_tokens * prompt_rate + output_tokens * completion_rate) / 1000
