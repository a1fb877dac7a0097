"""
Content Conveyor — Model Router
Static table from paid stage task type to model. Every request goes through
the LiteLLM proxy; provider SDKs are never called directly.
"""

from __future__ import annotations
import os
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class TaskType(str, Enum):
    SCORING = "scoring"
    ANALYSIS = "analysis"
    ARCHITECTURE = "architecture"
    WRITING = "writing"
    QUALITY_CHECK = "quality_check"
    OPTIMIZATION = "optimization"


class Models:
    """Proxy model names; keep in sync with the LiteLLM proxy config."""
    SONNET = "claude-sonnet-4-5"
    HAIKU = "claude-haiku-4-5"
    DEEPSEEK_V3 = "deepseek-v3"


@dataclass(frozen=True)
class RouteDecision:
    primary_model: str
    rationale: str
    estimated_cost_tier: str
    max_tokens: int = 1500


def _entry(model: str, tier: str, max_tokens: int, why: str) -> RouteDecision:
    return RouteDecision(primary_model=model, rationale=why, estimated_cost_tier=tier, max_tokens=max_tokens)


ROUTING_TABLE: dict[TaskType, RouteDecision] = {
    TaskType.SCORING: _entry(Models.HAIKU, "low", 400, "short structured viral-score judgment"),
    TaskType.ANALYSIS: _entry(Models.SONNET, "medium", 1200, "fact extraction; must not invent claims"),
    TaskType.ARCHITECTURE: _entry(Models.DEEPSEEK_V3, "low", 1000, "templated scene plan"),
    TaskType.WRITING: _entry(Models.SONNET, "medium", 2500, "the script is the deliverable"),
    TaskType.QUALITY_CHECK: _entry(Models.HAIKU, "low", 500, "fixed rubric"),
    TaskType.OPTIMIZATION: _entry(Models.SONNET, "medium", 2500, "rewrites in the writer's voice"),
}

_FALLBACK = _entry(Models.SONNET, "medium", 1500, "no table entry")


def route(task_type: TaskType) -> RouteDecision:
    """Table lookup; CONVEYOR_MODEL_<TASK> (e.g. CONVEYOR_MODEL_WRITING) swaps the model."""
    decision = ROUTING_TABLE.get(task_type, _FALLBACK)
    name = getattr(task_type, "name", str(task_type).upper())
    override = os.environ.get(f"CONVEYOR_MODEL_{name}")
    if not override:
        return decision
    return replace(decision, primary_model=override, rationale=decision.rationale + " (env override)")


def get_litellm_base_url() -> str:
    return os.environ.get("LITELLM_PROXY_URL", "http://localhost:4000")


def get_litellm_api_key() -> Optional[str]:
    return os.environ.get("LITELLM_MASTER_KEY") or None
