"""
Content Conveyor — Adaptive Gate Threshold
Human approve/reject of delivered scripts nudges the per-user Gate threshold.

    r <- (1 - alpha) * r + alpha * signal          signal: approve=1, reject=0
    threshold = clamp(base + sensitivity * (0.5 - r), min_band, max_band)

r starts at 0.5, so a user with no feedback gets their min_score_threshold.
The base itself is pulled into [min_band, max_band] first: a setting of 50
or 95 still gates at 60 or 90. Mostly-rejected scripts push r down and the
threshold up; mostly-approved scripts let it drift down toward min_band.
"""

from __future__ import annotations
from typing import Optional

from conveyor.config import get_counter_write_attempts, get_threshold_band
from conveyor.errors import ConflictError
from conveyor.models import utcnow
from conveyor.store import db
from orchestrator.as_built import log_decision

INITIAL_RATE = 0.5


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def compute_threshold(base: float, approval_rate: float, band: Optional[dict] = None) -> float:
    band = band or get_threshold_band()
    base = _clamp(float(base), band["min_band"], band["max_band"])
    raw = base + band["sensitivity"] * (INITIAL_RATE - approval_rate)
    return round(_clamp(raw, band["min_band"], band["max_band"]), 2)


def get_state(user_id: str) -> Optional[dict]:
    with db.connect() as conn:
        row = conn.execute(
            "SELECT * FROM threshold_state WHERE user_id = ?", (user_id,)
        ).fetchone()
    return dict(row) if row else None


def get_effective_threshold(user_id: str, base: float) -> float:
    """Threshold the Gate applies now. No feedback yet -> base, held inside the band."""
    state = get_state(user_id)
    if state is None or (state["approvals"] + state["rejections"]) == 0:
        return compute_threshold(base, INITIAL_RATE)
    return compute_threshold(base, state["approval_rate"])


def record_feedback(user_id: str, decision: str, base: float) -> dict:
    """
    Fold one human decision into the user's approval rate.
    Versioned read-modify-write; retried on conflict.
    """
    if decision not in ("approve", "reject"):
        raise ValueError(f"decision must be 'approve' or 'reject', got {decision!r}")
    band = get_threshold_band()
    signal = 1.0 if decision == "approve" else 0.0

    for _ in range(get_counter_write_attempts()):
        with db.connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO threshold_state (user_id, approval_rate, updated_at)
                VALUES (?, ?, ?)
                """,
                (user_id, INITIAL_RATE, utcnow().isoformat()),
            )
            row = dict(conn.execute(
                "SELECT * FROM threshold_state WHERE user_id = ?", (user_id,)
            ).fetchone())
            rate = (1 - band["alpha"]) * row["approval_rate"] + band["alpha"] * signal
            approvals = row["approvals"] + (1 if signal else 0)
            rejections = row["rejections"] + (0 if signal else 1)
            threshold = compute_threshold(base, rate, band)
            cur = conn.execute(
                """
                UPDATE threshold_state
                SET approval_rate = ?, approvals = ?, rejections = ?,
                    effective_threshold = ?, version = version + 1, updated_at = ?
                WHERE user_id = ? AND version = ?
                """,
                (rate, approvals, rejections, threshold, utcnow().isoformat(),
                 user_id, row["version"]),
            )
            if cur.rowcount == 1:
                log_decision(
                    f"Gate threshold -> {threshold:.1f}",
                    f"feedback={decision}, approval_rate={rate:.3f}, base={base}",
                    user_id=user_id,
                )
                return {
                    "approval_rate": rate,
                    "approvals": approvals,
                    "rejections": rejections,
                    "effective_threshold": threshold,
                }
    raise ConflictError(f"threshold state for {user_id} kept changing; giving up")
