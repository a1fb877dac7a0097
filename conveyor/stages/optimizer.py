"""
Stage 7 — Optimizer
If QC passed, the script goes through unchanged at no cost. Otherwise rewrite
the weak scenes and re-check, up to optimizer.max_iterations rounds. The
optimizer never fails an item for a low score; that is the Gate's call.
"""

from __future__ import annotations
import json

from conveyor.config import get_optimizer_max_iterations
from conveyor.framework.base_stage import StageContext
from conveyor.models import Stage
from conveyor.stages.llm import LLMStage
from conveyor.stages.qc import check_script
from conveyor.stages.writer import join_script
from orchestrator.router import TaskType

OPTIMIZER_PROMPT_TEMPLATE = """You improve short-video scripts. Rewrite ONLY the scenes listed as weak.
Keep every fact unchanged. Keep each scene about the same length.

Scenes (JSON): {scenes}
Weak spots (JSON): {weak_spots}

Return ONLY valid JSON, no markdown:
{{"changes": [{{"scene_id": <int>, "improved": "<new text>", "reason": "<short>"}}]}}"""


def apply_changes(script: dict, changes: list) -> tuple[dict, list[dict]]:
    scenes = [dict(s) for s in script["scenes"]]
    by_id = {s["id"]: s for s in scenes}
    applied = []
    for c in changes:
        if not isinstance(c, dict):
            continue
        scene = by_id.get(c.get("scene_id"))
        improved = str(c.get("improved", "")).strip()
        if scene is None or not improved or improved == scene["text"]:
            continue
        applied.append({
            "scene_id": scene["id"],
            "original": scene["text"],
            "improved": improved,
            "reason": str(c.get("reason", "")).strip(),
        })
        scene["text"] = improved
    new_script = {**script, "scenes": scenes, "full_script": join_script(scenes)}
    return new_script, applied


class OptimizerStage(LLMStage):
    stage = Stage.OPTIMIZER
    key = "optimizer"
    task_type = TaskType.OPTIMIZATION

    def execute(self, ctx: StageContext) -> dict:
        script = ctx.require(Stage.WRITER)
        qc = ctx.require(Stage.QC)
        changes: list[dict] = []
        iterations = 0

        while not qc["passed"] and iterations < get_optimizer_max_iterations():
            iterations += 1
            prompt = OPTIMIZER_PROMPT_TEMPLATE.format(
                scenes=json.dumps([{k: s[k] for k in ("id", "label", "text")} for s in script["scenes"]]),
                weak_spots=json.dumps(qc["weak_spots"]),
            )
            result = self.call_llm(ctx, prompt)
            script, applied = apply_changes(script, result.get("changes") or [])
            changes.extend(applied)
            if not applied:
                break
            qc = check_script(self, ctx, script)

        return {
            "iterations": iterations,
            "script": script,
            "qc": qc,
            "changes": changes,
        }
