"""
Stage 1 — Scout
Validates the source snapshot captured at admission. No LLM.
"""

from __future__ import annotations

from conveyor.framework.base_stage import BaseStage, Failure, StageContext, StageResult, Success
from conveyor.models import Stage

MIN_CONTENT_LENGTH = 100


class ScoutStage(BaseStage):
    stage = Stage.SCOUT
    key = "scout"

    def run(self, ctx: StageContext) -> StageResult:
        source = ctx.source
        if source is None:
            return Failure("no source data captured for this item")
        content = source.content.strip()
        if len(content) < MIN_CONTENT_LENGTH:
            return Failure(
                f"source content too short ({len(content)} chars, need {MIN_CONTENT_LENGTH})"
            )
        return Success(
            output={
                "source_type": source.source_type.value,
                "source_ref": source.source_ref,
                "title": source.title,
                "url": source.url,
                "content_hash": source.content_hash,
                "content_length": len(content),
            }
        )
