"""
Stage 8 — Gate
Final approve/reject. No LLM: pure logic over the last QC result and the
user's adaptive threshold.

    reject   if final_score < effective_threshold
    approve  otherwise; flagged low_confidence when confidence < floor
"""

from __future__ import annotations

from conveyor.config import get_confidence_floor
from conveyor.framework.base_stage import BaseStage, StageContext
from conveyor.gate import threshold as gate_threshold
from conveyor.models import GateDecision, Stage


def final_qc(ctx: StageContext) -> dict:
    optimized = ctx.output(Stage.OPTIMIZER)
    if optimized and optimized.get("qc"):
        return optimized["qc"]
    return ctx.require(Stage.QC)


def confidence_for(score: float, hook: float, has_critical: bool, approval_rate: float) -> float:
    """How sure the Gate is that a human will agree with an approval."""
    if score >= 85 and hook >= 80 and not has_critical:
        return 0.95
    if score >= 75 and not has_critical and approval_rate > 0.7:
        return 0.8
    if score >= 75 and not has_critical:
        return 0.7
    if score >= 70 and not has_critical:
        return 0.6
    if score >= 65 and has_critical:
        return 0.5
    return 0.4


def decide(
    score: float,
    hook: float,
    has_critical: bool,
    threshold: float,
    approval_rate: float = 0.5,
    confidence_floor: float = 0.6,
) -> GateDecision:
    if score < threshold:
        return GateDecision(
            decision="reject",
            final_score=score,
            confidence=0.9 if (score < threshold - 5 or hook < 50) else 0.7,
            reason=f"score {score:g} is below threshold {threshold:g}",
            threshold=threshold,
        )
    confidence = confidence_for(score, hook, has_critical, approval_rate)
    low = confidence < confidence_floor
    reason = f"score {score:g} meets threshold {threshold:g}"
    if low:
        reason += f" (low confidence {confidence:.2f}: flagged for review)"
    return GateDecision(
        decision="approve",
        final_score=score,
        confidence=confidence,
        reason=reason,
        threshold=threshold,
        low_confidence=low,
    )


class GateStage(BaseStage):
    stage = Stage.GATE
    key = "gate"

    def run(self, ctx: StageContext) -> GateDecision:
        qc = final_qc(ctx)
        user_id = ctx.item.user_id
        threshold = gate_threshold.get_effective_threshold(
            user_id, ctx.settings.min_score_threshold
        )
        state = gate_threshold.get_state(user_id)
        approval_rate = state["approval_rate"] if state else gate_threshold.INITIAL_RATE
        return decide(
            score=float(qc["overall_score"]),
            hook=float(qc.get("hook_score", 0)),
            has_critical=bool(qc.get("has_critical")),
            threshold=threshold,
            approval_rate=approval_rate,
            confidence_floor=get_confidence_floor(),
        )
