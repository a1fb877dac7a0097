"""
Content Conveyor Framework — Base Stage Interface
Every stage implements one method, run(ctx), and returns one of:
Success(output, cost), Failure(reason) or, for the Gate only, a GateDecision.
Stages never write item state; the engine does.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from conveyor.models import (
    ConveyorSettings,
    ErrorKind,
    GateDecision,
    Item,
    SourceData,
    Stage,
    stage_name,
)


@dataclass
class Success:
    """Stage produced its output. cost_usd is what this run actually paid."""
    output: Any
    cost_usd: float = 0.0
    llm_calls: int = 0
    cached_calls: int = 0


@dataclass
class Failure:
    """cost_usd is what the stage paid before it gave up; the spend is real."""
    reason: str
    kind: ErrorKind = ErrorKind.STAGE_ERROR
    cost_usd: float = 0.0


StageResult = Union[Success, Failure, GateDecision]

# (prompt, task_type) -> parsed JSON dict
LLMCaller = Callable[..., dict]


@dataclass
class StageContext:
    """What a stage may read: the item as loaded, its settings snapshot, prior outputs."""
    item: Item
    llm_caller: Optional[LLMCaller] = None
    extras: dict = field(default_factory=dict)

    @property
    def settings(self) -> ConveyorSettings:
        return self.item.settings_snapshot

    @property
    def source(self) -> Optional[SourceData]:
        return self.item.source_data

    def output(self, stage: Stage) -> Any:
        return self.item.stage_outputs.get(int(stage))

    def require(self, stage: Stage) -> Any:
        out = self.output(stage)
        if out is None:
            raise KeyError(f"missing output of stage {int(stage)} ({stage_name(stage)})")
        return out


class BaseStage(ABC):
    """
    Abstract base class for all conveyor stages.

    Subclass this to implement a stage. Each stage:
    1. Reads the item's source snapshot and earlier stage outputs from ctx
    2. Optionally calls an LLM (through the idempotency ledger)
    3. Returns Success / Failure / GateDecision

    Raising is allowed; the engine converts any exception into a Failure.
    """

    stage: Stage
    key: str = ""

    def __init__(self, config: dict | None = None):
        self.config = config or {}

    @property
    def number(self) -> int:
        return int(self.stage)

    @property
    def name(self) -> str:
        return stage_name(self.stage)

    @abstractmethod
    def run(self, ctx: StageContext) -> StageResult:
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(stage={self.number}, key={self.key})"
