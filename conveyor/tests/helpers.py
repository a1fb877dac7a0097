"""
Test doubles shared by the milestone suites.
FakeLLM stands in for the LiteLLM proxy and counts the calls that actually
reached it (ledger replays never do).
"""

from __future__ import annotations
import copy
import threading
from collections import Counter
from datetime import datetime, timezone
from typing import Optional

from conveyor.errors import StageError
from conveyor.models import ConveyorSettings, Item, SourceData, SourceType
from conveyor.store import candidates
from conveyor.store import items as item_store
from conveyor.store import settings as settings_store
from orchestrator.router import TaskType

STORY = (
    "The city council approved a plan on Tuesday to convert 40 downtown parking "
    "garages into vertical farms by 2028, citing a 30 percent drop in commuter "
    "traffic and a shortage of fresh produce in the central district."
)

PASSING_QC = {"hook_score": 85, "structure_score": 80, "emotional_score": 80, "cta_score": 80}

RESPONSES: dict[TaskType, dict] = {
    TaskType.SCORING: {
        "score": 78,
        "breakdown": {"facts": 30, "relevance": 20, "audience": 14, "interest": 14},
        "reasoning": "Concrete numbers and a surprising local angle.",
    },
    TaskType.ANALYSIS: {
        "main_topic": "Parking garages become vertical farms",
        "key_facts": ["40 garages will be converted", "Commuter traffic fell 30 percent"],
        "target_audience": ["city residents", "urban gardeners"],
        "emotional_angles": ["surprise", "hope"],
        "controversy_level": 4,
        "unique_angle": "Cars out, lettuce in.",
    },
    TaskType.ARCHITECTURE: {
        "format_name": "explainer",
        "reasoning": "A single surprising change explained step by step.",
        "suggested_hooks": ["Your parking spot is about to grow lettuce."],
        "durations": {"hook": 5, "context": 10, "main": 30, "twist": 8, "cta": 7},
    },
    TaskType.WRITING: {
        "scenes": [
            {"label": "hook", "text": "Your parking spot is about to grow lettuce."},
            {"label": "context", "text": "Commuter traffic downtown fell 30 percent."},
            {"label": "main", "text": "So the council is turning 40 garages into vertical farms."},
            {"label": "twist", "text": "The first harvest is planned before the last car leaves."},
            {"label": "cta", "text": "Would you buy tomatoes grown on level three? Comment below."},
        ]
    },
}


class FakeLLM:
    """
    Callable with the engine's llm_caller signature: (prompt, task_type) -> dict.

    qc: scores returned for every QUALITY_CHECK call
    fail: {TaskType: n} raise StageError for the first n calls of that task
    changes: what OPTIMIZATION calls return
    """

    def __init__(
        self,
        qc: Optional[dict] = None,
        fail: Optional[dict] = None,
        changes: Optional[list] = None,
        usage: Optional[dict] = None,
    ):
        self.qc = dict(PASSING_QC if qc is None else qc)
        self.fail = dict(fail or {})
        self.changes = list(changes or [])
        self.usage = usage
        self.calls: Counter = Counter()
        self.prompts: list[tuple[TaskType, str]] = []
        self._lock = threading.Lock()

    def __call__(self, prompt: str, task_type: TaskType) -> dict:
        with self._lock:
            self.calls[task_type] += 1
            self.prompts.append((task_type, prompt))
            if self.fail.get(task_type, 0) > 0:
                self.fail[task_type] -= 1
                raise StageError(f"{task_type.value} provider unavailable")

        if task_type == TaskType.QUALITY_CHECK:
            data = {**self.qc, "weak_spots": []}
        elif task_type == TaskType.OPTIMIZATION:
            data = {"changes": copy.deepcopy(self.changes)}
        else:
            data = copy.deepcopy(RESPONSES[task_type])
        if self.usage:
            data["_meta"] = dict(self.usage)
        return data

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())


def enable_user(user_id: str, **overrides) -> ConveyorSettings:
    return settings_store.save_settings(user_id, ConveyorSettings(enabled=True, **overrides))


def add_candidates(user_id: str, count: int, prefix: str = "story", content: str = STORY) -> list[str]:
    refs = []
    for i in range(count):
        ref = f"{prefix}-{i}"
        candidates.add_candidate(
            user_id,
            "news",
            ref,
            title=f"Garages to farms ({prefix} {i})",
            content=content,
            url=f"https://news.example.com/{ref}",
            published_at=datetime.now(timezone.utc),
        )
        refs.append(ref)
    return refs


def make_item(user_id: str = "u1", ref: str = "story-0", content: str = STORY, **settings) -> Item:
    """Admit one processing item directly, bypassing the Budget Guard."""
    source = SourceData(
        source_type=SourceType.NEWS,
        source_ref=ref,
        title=f"Garages to farms ({ref})",
        content=content,
    )
    item = Item(
        user_id=user_id,
        source_type=SourceType.NEWS,
        source_ref=ref,
        source_data=source,
        settings_snapshot=ConveyorSettings(enabled=True, **settings),
    )
    return item_store.admit_items(user_id, [item])[0]
