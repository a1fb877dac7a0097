"""
Stage 6 — QC
Rubric check of the script: hook, structure, emotion, call to action.
A script passes when overall >= 75, hook >= 70 and there is no critical weak spot.
"""

from __future__ import annotations
import json

from conveyor.framework.base_stage import StageContext
from conveyor.models import Stage
from conveyor.stages.llm import LLMStage, clamp_int
from orchestrator.router import TaskType

PASS_OVERALL = 75
PASS_HOOK = 70
SEVERITIES = ("critical", "major", "minor")

QC_PROMPT_TEMPLATE = """You review short-video scripts before they go to a human editor.

Scenes (JSON): {scenes}
Target length: {duration}s

Score 0-100: hook (first 3 seconds stop the scroll?), structure (clear build-up
and payoff?), emotional (does it make the viewer feel something?), cta (clear
ask?). List weak spots by scene id.

Return ONLY valid JSON, no markdown:
{{"hook_score": <0-100>, "structure_score": <0-100>, "emotional_score": <0-100>, "cta_score": <0-100>, "weak_spots": [{{"scene_id": <int>, "area": "hook|structure|emotional|cta", "issue": "<text>", "severity": "critical|major|minor", "suggestion": "<text>"}}]}}"""


def normalize_qc(result: dict) -> dict:
    scores = {
        k: clamp_int(result.get(k), 0, 100, 0)
        for k in ("hook_score", "structure_score", "emotional_score", "cta_score")
    }
    # hook weighs double: it decides whether anyone watches the rest
    overall = round(
        (2 * scores["hook_score"] + scores["structure_score"]
         + scores["emotional_score"] + scores["cta_score"]) / 5
    )
    weak_spots = []
    for w in result.get("weak_spots") or []:
        if not isinstance(w, dict):
            continue
        severity = str(w.get("severity", "minor")).lower()
        weak_spots.append({
            "scene_id": clamp_int(w.get("scene_id"), 0, 99, 0),
            "area": str(w.get("area", "structure")),
            "issue": str(w.get("issue", "")).strip(),
            "severity": severity if severity in SEVERITIES else "minor",
            "suggestion": str(w.get("suggestion", "")).strip(),
        })
    has_critical = any(w["severity"] == "critical" for w in weak_spots)
    return {
        "overall_score": overall,
        **scores,
        "weak_spots": weak_spots,
        "has_critical": has_critical,
        "passed": overall >= PASS_OVERALL and scores["hook_score"] >= PASS_HOOK and not has_critical,
    }


def check_script(stage: LLMStage, ctx: StageContext, script: dict) -> dict:
    """One QC call. Shared by the QC stage and the Optimizer's re-check."""
    prompt = QC_PROMPT_TEMPLATE.format(
        scenes=json.dumps([{k: s[k] for k in ("id", "label", "text")} for s in script["scenes"]]),
        duration=script.get("estimated_duration", 0),
    )
    return normalize_qc(stage.call_llm(ctx, prompt, TaskType.QUALITY_CHECK))


class QCStage(LLMStage):
    stage = Stage.QC
    key = "qc"
    task_type = TaskType.QUALITY_CHECK

    def execute(self, ctx: StageContext) -> dict:
        return check_script(self, ctx, ctx.require(Stage.WRITER))
