"""
Content Conveyor — Stage Registry
Maps stage number to implementation. A fresh instance is built per call
because LLM stages keep per-run cost tallies.
"""

from __future__ import annotations
from typing import Optional

from conveyor.framework.base_stage import BaseStage
from conveyor.models import Stage
from conveyor.stages.analyst import AnalystStage
from conveyor.stages.architect import ArchitectStage
from conveyor.stages.delivery import DeliveryStage
from conveyor.stages.gate import GateStage
from conveyor.stages.optimizer import OptimizerStage
from conveyor.stages.qc import QCStage
from conveyor.stages.scorer import ScorerStage
from conveyor.stages.scout import ScoutStage
from conveyor.stages.writer import WriterStage

STAGE_CLASSES: dict[int, type[BaseStage]] = {
    Stage.SCOUT: ScoutStage,
    Stage.SCORER: ScorerStage,
    Stage.ANALYST: AnalystStage,
    Stage.ARCHITECT: ArchitectStage,
    Stage.WRITER: WriterStage,
    Stage.QC: QCStage,
    Stage.OPTIMIZER: OptimizerStage,
    Stage.GATE: GateStage,
    Stage.DELIVERY: DeliveryStage,
}


def get_stage(number: int, overrides: Optional[dict[int, type[BaseStage]]] = None) -> BaseStage:
    classes = {**STAGE_CLASSES, **(overrides or {})}
    try:
        return classes[number]()
    except KeyError:
        raise KeyError(f"no stage registered for number {number}") from None
