"""
Stage 4 — Architect
Picks a format and splits the running time into five beats:
hook, context, main, twist, cta. Total duration is kept inside the user's
duration_range.
"""

from __future__ import annotations

from conveyor.framework.base_stage import StageContext
from conveyor.models import Stage
from conveyor.stages.llm import LLMStage, clamp_int, str_list
from orchestrator.router import TaskType

BEATS = ("hook", "context", "main", "twist", "cta")

# Share of total running time per beat when the model's split is unusable.
DEFAULT_SPLIT = {"hook": 0.1, "context": 0.2, "main": 0.45, "twist": 0.15, "cta": 0.1}

ARCHITECT_PROMPT_TEMPLATE = """You design the structure of short vertical videos.

Topic: {topic}
Key facts: {facts}
Unique angle: {angle}
Tone: {tone}, formality: {formality}
Target length: {min_s}-{max_s} seconds

Return ONLY valid JSON, no markdown:
{{"format_name": "<e.g. countdown, myth-buster, explainer>", "reasoning": "<one sentence>", "suggested_hooks": ["<hook line>", ...], "durations": {{"hook": <s>, "context": <s>, "main": <s>, "twist": <s>, "cta": <s>}}}}"""


def fit_durations(raw: dict, min_s: int, max_s: int) -> dict[str, int]:
    """Normalize beat durations so the total lands inside [min_s, max_s]."""
    durations = {b: clamp_int(raw.get(b), 0, max_s, 0) for b in BEATS}
    total = sum(durations.values())
    if total == 0:
        target = (min_s + max_s) // 2
        durations = {b: max(1, round(target * DEFAULT_SPLIT[b])) for b in BEATS}
        total = sum(durations.values())
    if total < min_s or total > max_s:
        target = min(max(total, min_s), max_s)
        durations = {b: max(1, round(d * target / total)) for b, d in durations.items()}
        # rounding drift goes to the main beat
        durations["main"] = max(1, durations["main"] + target - sum(durations.values()))
    return durations


class ArchitectStage(LLMStage):
    stage = Stage.ARCHITECT
    key = "architect"
    task_type = TaskType.ARCHITECTURE

    def execute(self, ctx: StageContext) -> dict:
        analysis = ctx.require(Stage.ANALYST)
        style = ctx.settings.style_preferences
        rng = ctx.settings.duration_range
        prompt = ARCHITECT_PROMPT_TEMPLATE.format(
            topic=analysis["main_topic"],
            facts="; ".join(analysis["key_facts"][:6]),
            angle=analysis.get("unique_angle", ""),
            tone=style.tone,
            formality=style.formality,
            min_s=rng.min,
            max_s=rng.max,
        )
        result = self.call_llm(ctx, prompt)

        raw = result.get("durations") if isinstance(result.get("durations"), dict) else {}
        durations = fit_durations(raw, rng.min, rng.max)
        return {
            "format_name": str(result.get("format_name", "explainer")).strip() or "explainer",
            "reasoning": str(result.get("reasoning", "")).strip(),
            "suggested_hooks": str_list(result.get("suggested_hooks"), limit=3),
            "structure": durations,
            "total_duration": sum(durations.values()),
        }
