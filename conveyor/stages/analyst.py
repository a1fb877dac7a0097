"""
Stage 3 — Analyst
Extracts the facts and angles the script is allowed to use.
"""

from __future__ import annotations
from typing import Union

from conveyor.framework.base_stage import Failure, StageContext
from conveyor.models import Stage
from conveyor.stages.llm import LLMStage, clamp_int, str_list
from orchestrator.router import TaskType

ANALYST_PROMPT_TEMPLATE = """You are a research analyst preparing a brief for a short-video scriptwriter.
Use ONLY facts stated in the source. Do not invent numbers or quotes.

Title: {title}
Content: {content}
Scorer notes: {reasoning}

Return ONLY valid JSON, no markdown:
{{"main_topic": "<short phrase>", "key_facts": ["<fact>", ...], "target_audience": ["<group>", ...], "emotional_angles": ["<angle>", ...], "controversy_level": <1-10>, "unique_angle": "<one sentence>"}}"""


class AnalystStage(LLMStage):
    stage = Stage.ANALYST
    key = "analyst"
    task_type = TaskType.ANALYSIS

    def execute(self, ctx: StageContext) -> Union[dict, Failure]:
        source = ctx.source
        scoring = ctx.require(Stage.SCORER)
        prompt = ANALYST_PROMPT_TEMPLATE.format(
            title=source.title,
            content=source.content[:4000],
            reasoning=scoring.get("reasoning", ""),
        )
        result = self.call_llm(ctx, prompt)

        facts = str_list(result.get("key_facts"))
        if not facts:
            return Failure("analyst found no usable facts in the source")
        return {
            "main_topic": str(result.get("main_topic", source.title)).strip(),
            "key_facts": facts,
            "target_audience": str_list(result.get("target_audience"), limit=5),
            "emotional_angles": str_list(result.get("emotional_angles"), limit=5),
            "controversy_level": clamp_int(result.get("controversy_level"), 1, 10, 1),
            "unique_angle": str(result.get("unique_angle", "")).strip(),
        }
