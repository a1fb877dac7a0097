"""
Stage 9 — Delivery
Writes the approved script to the scripts table for human review.
"""

from __future__ import annotations

from conveyor.framework.base_stage import BaseStage, StageContext, StageResult, Success
from conveyor.models import Stage
from conveyor.store import scripts


class DeliveryStage(BaseStage):
    stage = Stage.DELIVERY
    key = "delivery"

    def run(self, ctx: StageContext) -> StageResult:
        optimized = ctx.output(Stage.OPTIMIZER) or {}
        script = optimized.get("script") or ctx.require(Stage.WRITER)
        gate = ctx.require(Stage.GATE)
        script_id = scripts.store_script(
            item_id=ctx.item.id,
            user_id=ctx.item.user_id,
            title=ctx.source.title,
            full_script=script["full_script"],
            scenes=script["scenes"],
            final_score=gate["final_score"],
            low_confidence=gate.get("low_confidence", False),
        )
        return Success(output={"script_id": script_id, "low_confidence": gate.get("low_confidence", False)})
