"""
Stage 5 — Writer
Writes the scene-by-scene script from the brief and the structure.
Model: Sonnet (routed as WRITING). The script is the deliverable.
The user's custom guidelines are followed by whatever their rejections
have taught so far (conveyor.learning.patterns).
"""

from __future__ import annotations
from typing import Union

from conveyor.framework.base_stage import Failure, StageContext
from conveyor.learning import patterns
from conveyor.models import Stage
from conveyor.stages.architect import BEATS
from conveyor.stages.llm import LLMStage, clamp_int
from orchestrator.router import TaskType

WRITER_PROMPT_TEMPLATE = """You write voice-over scripts for short vertical videos.

Title: {title}
Facts you may use (and nothing else): {facts}
Unique angle: {angle}
Format: {format_name}
Beat durations in seconds: {structure}
Opening hook ideas: {hooks}
Language: {language}. Tone: {tone}. Formality: {formality}.
{guidelines}
Write one scene per beat, in order: hook, context, main, twist, cta.

Return ONLY valid JSON, no markdown:
{{"scenes": [{{"label": "<beat>", "text": "<spoken text>", "visual_notes": "<optional>"}}, ...]}}"""


def build_scenes(raw_scenes: list, structure: dict[str, int]) -> list[dict]:
    """Attach ids and start/end times from the beat durations."""
    scenes = []
    clock = 0
    for i, raw in enumerate(raw_scenes):
        if not isinstance(raw, dict) or not str(raw.get("text", "")).strip():
            continue
        label = str(raw.get("label", "")).lower().strip()
        if label not in BEATS:
            label = BEATS[min(i, len(BEATS) - 1)]
        length = structure.get(label, 10)
        scenes.append({
            "id": len(scenes) + 1,
            "label": label,
            "text": str(raw["text"]).strip(),
            "start": clock,
            "end": clock + length,
            "visual_notes": str(raw.get("visual_notes", "")).strip(),
        })
        clock += length
    return scenes


def join_script(scenes: list[dict]) -> str:
    return "\n\n".join(s["text"] for s in scenes)


class WriterStage(LLMStage):
    stage = Stage.WRITER
    key = "writer"
    task_type = TaskType.WRITING

    def execute(self, ctx: StageContext) -> Union[dict, Failure]:
        analysis = ctx.require(Stage.ANALYST)
        architecture = ctx.require(Stage.ARCHITECT)
        style = ctx.settings.style_preferences
        guidelines = list(ctx.settings.custom_guidelines)
        guidelines += [g for g in patterns.writer_instructions(ctx.item.user_id) if g not in guidelines]
        prompt = WRITER_PROMPT_TEMPLATE.format(
            title=ctx.source.title,
            facts="; ".join(analysis["key_facts"]),
            angle=analysis.get("unique_angle", ""),
            format_name=architecture["format_name"],
            structure=architecture["structure"],
            hooks=" | ".join(architecture.get("suggested_hooks", [])) or "none",
            language=style.language,
            tone=style.tone,
            formality=style.formality,
            guidelines=("Follow these rules:\n- " + "\n- ".join(guidelines)) if guidelines else "",
        )
        result = self.call_llm(ctx, prompt)

        raw_scenes = result.get("scenes") if isinstance(result.get("scenes"), list) else []
        scenes = build_scenes(raw_scenes, architecture["structure"])
        if not scenes:
            return Failure("writer returned no scenes")
        return {
            "scenes": scenes,
            "full_script": join_script(scenes),
            "estimated_duration": clamp_int(scenes[-1]["end"], 0, 600, 0),
        }
