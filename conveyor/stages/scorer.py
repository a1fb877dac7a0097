"""
Stage 2 — Scorer
Scores the source for short-video potential (0-100) across four dimensions.
Model: Haiku (routed as SCORING).
"""

from __future__ import annotations

from conveyor.framework.base_stage import StageContext
from conveyor.models import Stage
from conveyor.stages.llm import LLMStage, clamp_int
from orchestrator.router import TaskType

SCORER_PROMPT_TEMPLATE = """You are an editor deciding which stories become 60-second vertical videos.

Title: {title}
Content: {content}

Score the story 0-100 as the sum of:
- facts (0-35): concrete numbers, names, events
- relevance (0-25): is it trending now
- audience (0-20): how many people care
- interest (0-20): is the topic inherently gripping

Return ONLY valid JSON, no markdown:
{{"score": <0-100>, "breakdown": {{"facts": <0-35>, "relevance": <0-25>, "audience": <0-20>, "interest": <0-20>}}, "reasoning": "<one sentence>"}}"""


def verdict_for(score: int) -> str:
    if score >= 85:
        return "viral"
    if score >= 70:
        return "strong"
    if score >= 50:
        return "moderate"
    return "weak"


class ScorerStage(LLMStage):
    stage = Stage.SCORER
    key = "scorer"
    task_type = TaskType.SCORING

    def execute(self, ctx: StageContext) -> dict:
        source = ctx.source
        prompt = SCORER_PROMPT_TEMPLATE.format(title=source.title, content=source.content[:3000])
        result = self.call_llm(ctx, prompt)

        score = clamp_int(result.get("score"), 0, 100, 0)
        breakdown = result.get("breakdown") if isinstance(result.get("breakdown"), dict) else {}
        return {
            "score": score,
            "verdict": verdict_for(score),
            "breakdown": {
                "facts": clamp_int(breakdown.get("facts"), 0, 35, 0),
                "relevance": clamp_int(breakdown.get("relevance"), 0, 25, 0),
                "audience": clamp_int(breakdown.get("audience"), 0, 20, 0),
                "interest": clamp_int(breakdown.get("interest"), 0, 20, 0),
            },
            "reasoning": str(result.get("reasoning", "")).strip() or "No reasoning provided.",
        }
