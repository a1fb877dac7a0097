"""
Content Conveyor — Budget Guard
Admission gate: per-user daily item count and per-month spend.
Counters are rows keyed (user, period kind, period key), written with the same
optimistic versioning as items, so several engine processes can share them.
A new day/month is a new key: limits reset at the boundary with no cron job.
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional

from conveyor.config import get_counter_write_attempts, get_estimated_cost_per_item
from conveyor.errors import ConflictError
from conveyor.models import AdmissionDecision, ConveyorSettings
from conveyor.store import db
from orchestrator.alert import alert_budget_threshold
from orchestrator.as_built import log

DAY = "day"
MONTH = "month"


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def period_key(kind: str, now: datetime) -> str:
    return now.strftime("%Y-%m-%d") if kind == DAY else now.strftime("%Y-%m")


def _read(conn, user_id: str, kind: str, key: str) -> dict:
    row = conn.execute(
        """
        SELECT items, spend_usd, alerted, version FROM usage_counters
        WHERE user_id = ? AND period_kind = ? AND period_key = ?
        """,
        (user_id, kind, key),
    ).fetchone()
    if row is None:
        return {"items": 0, "spend_usd": 0.0, "alerted": 0, "version": None}
    return dict(row)


def _bump(
    user_id: str,
    kind: str,
    now: datetime,
    items: int = 0,
    spend: float = 0.0,
    mark_alerted: bool = False,
) -> dict:
    """Versioned read-modify-write of one counter row. Returns the new values."""
    key = period_key(kind, now)
    for _ in range(get_counter_write_attempts()):
        with db.connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO usage_counters (user_id, period_kind, period_key)
                VALUES (?, ?, ?)
                """,
                (user_id, kind, key),
            )
            current = _read(conn, user_id, kind, key)
            updated = {
                "items": current["items"] + items,
                "spend_usd": current["spend_usd"] + spend,
                "alerted": 1 if mark_alerted else current["alerted"],
            }
            cur = conn.execute(
                """
                UPDATE usage_counters
                SET items = ?, spend_usd = ?, alerted = ?, version = version + 1
                WHERE user_id = ? AND period_kind = ? AND period_key = ? AND version = ?
                """,
                (
                    updated["items"], updated["spend_usd"], updated["alerted"],
                    user_id, kind, key, current["version"],
                ),
            )
            if cur.rowcount == 1:
                return updated
    raise ConflictError(f"usage counter {user_id}/{kind}/{key} kept changing; giving up")


def usage(user_id: str, now: Optional[datetime] = None) -> dict:
    now = _now(now)
    with db.connect() as conn:
        day = _read(conn, user_id, DAY, period_key(DAY, now))
        month = _read(conn, user_id, MONTH, period_key(MONTH, now))
    return {
        "day": period_key(DAY, now),
        "month": period_key(MONTH, now),
        "items_today": day["items"],
        "spend_today": day["spend_usd"],
        "items_this_month": month["items"],
        "spend_this_month": month["spend_usd"],
    }


def can_admit(
    user_id: str,
    settings: ConveyorSettings,
    now: Optional[datetime] = None,
) -> AdmissionDecision:
    """
    Check if a new admission cycle may start.
    Monthly budget is checked before the daily item limit.
    """
    u = usage(user_id, now)
    if u["spend_this_month"] >= settings.monthly_budget_limit:
        return AdmissionDecision(
            allowed=False,
            reason="budget_exceeded",
            detail=(
                f"monthly budget exceeded: ${u['spend_this_month']:.4f} >= "
                f"${settings.monthly_budget_limit:.2f}"
            ),
        )
    if u["items_today"] >= settings.daily_limit:
        return AdmissionDecision(
            allowed=False,
            reason="daily_limit_reached",
            detail=f"daily limit reached: {u['items_today']} >= {settings.daily_limit}",
        )
    return AdmissionDecision(allowed=True, detail="ok")


def remaining_capacity(
    user_id: str,
    settings: ConveyorSettings,
    now: Optional[datetime] = None,
) -> int:
    """How many items one admission cycle may take, by daily slots and by budget."""
    u = usage(user_id, now)
    remaining_daily = settings.daily_limit - u["items_today"]
    per_item = get_estimated_cost_per_item()
    remaining_budget = settings.monthly_budget_limit - u["spend_this_month"]
    remaining_by_budget = int(remaining_budget // per_item) if per_item > 0 else remaining_daily
    # An item may start as long as the month is under budget.
    remaining_by_budget = max(remaining_by_budget, 1) if remaining_budget > 0 else 0
    return max(0, min(remaining_daily, remaining_by_budget, settings.batch_size))


def record_admissions(user_id: str, count: int, now: Optional[datetime] = None) -> None:
    if count <= 0:
        return
    now = _now(now)
    _bump(user_id, DAY, now, items=count)
    _bump(user_id, MONTH, now, items=count)


def record_spend(
    user_id: str,
    amount: float,
    monthly_limit: Optional[float] = None,
    now: Optional[datetime] = None,
) -> float:
    """
    Add a stage cost to today's and this month's spend. Returns month spend.
    Alerts once per month when spend crosses the monthly limit; in-flight items
    are allowed to finish regardless.
    """
    if amount <= 0:
        return usage(user_id, now)["spend_this_month"]
    now = _now(now)
    _bump(user_id, DAY, now, spend=amount)
    month = _bump(user_id, MONTH, now, spend=amount)

    if monthly_limit and month["spend_usd"] >= monthly_limit and not month["alerted"]:
        _bump(user_id, MONTH, now, mark_alerted=True)
        pct = month["spend_usd"] / monthly_limit * 100
        log(
            f"Monthly budget exhausted for user {user_id}",
            detail=f"${month['spend_usd']:.4f} of ${monthly_limit:.2f}",
            level="WARNING",
            user_id=user_id,
        )
        alert_budget_threshold(
            cap_name="month",
            used=month["spend_usd"],
            cap=monthly_limit,
            pct=pct,
            user_id=user_id,
        )
    return month["spend_usd"]
