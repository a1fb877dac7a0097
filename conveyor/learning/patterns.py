"""
Content Conveyor — Rejection Patterns
Remembers why a user rejects scripts and turns repeated reasons into Writer
instructions.

Each rejection lands in one or more categories: the one the reviewer picked,
or the ones its free-text reason matches. Once a category has been hit
min_pattern_count times, its instruction is added to the guidelines of that
user's next Writer prompts. A boring_topic rejection also puts the script
title on the user's exclude list so the same story is not picked again.
"""

from __future__ import annotations
from typing import Optional

from conveyor.config import get_min_pattern_count
from conveyor.models import RejectionCategory, utcnow
from conveyor.store import db
from conveyor.store import settings as settings_store
from orchestrator.as_built import log_decision

CATEGORY_INSTRUCTIONS: dict[RejectionCategory, str] = {
    RejectionCategory.TOO_LONG: "Keep the script under 60 seconds.",
    RejectionCategory.TOO_SHORT: "Make the script at least 45 seconds long.",
    RejectionCategory.BORING_INTRO: "Open with a provocation, a question or a shock.",
    RejectionCategory.WEAK_CTA: "End with a strong call to action.",
    RejectionCategory.TOO_FORMAL: "Write conversationally, like talking to a friend.",
    RejectionCategory.TOO_CASUAL: "Add expertise and concrete facts.",
    RejectionCategory.BORING_TOPIC: "Find a more interesting angle on the story.",
    RejectionCategory.WRONG_TONE: "Match the tone to the audience.",
    RejectionCategory.NO_HOOK: "The first 5 seconds must grab attention.",
    RejectionCategory.TOO_COMPLEX: "Simplify; explain it as you would to a 12-year-old.",
    RejectionCategory.OFF_TOPIC: "Stay strictly on the topic of the source.",
    RejectionCategory.OTHER: "",
}

# checked in order; a reason can land in several categories
KEYWORDS: list[tuple[RejectionCategory, tuple[str, ...]]] = [
    (RejectionCategory.TOO_LONG, ("too long", "shorter", "trim", "drags", "cut it down")),
    (RejectionCategory.TOO_SHORT, ("too short", "longer", "more detail")),
    (RejectionCategory.NO_HOOK, ("hook",)),
    (RejectionCategory.BORING_INTRO, ("intro", "opening", "beginning")),
    (RejectionCategory.WEAK_CTA, ("call to action", "cta", "ending")),
    (RejectionCategory.TOO_FORMAL, ("formal", "stiff", "robotic")),
    (RejectionCategory.TOO_CASUAL, ("casual", "slang", "shallow")),
    (RejectionCategory.TOO_COMPLEX, ("complex", "complicated", "confusing", "jargon")),
    (RejectionCategory.OFF_TOPIC, ("off topic", "off-topic", "unrelated", "not about")),
    (RejectionCategory.BORING_TOPIC, ("boring topic", "not interesting", "uninteresting")),
    (RejectionCategory.WRONG_TONE, ("tone",)),
]


def categorize(reason: Optional[str]) -> list[RejectionCategory]:
    """Keyword match on the free-text reason. No match -> [OTHER]."""
    lowered = (reason or "").lower()
    found = [cat for cat, words in KEYWORDS if any(w in lowered for w in words)]
    return found or [RejectionCategory.OTHER]


def _bump(user_id: str, category: RejectionCategory, reason: Optional[str]) -> None:
    instruction = CATEGORY_INSTRUCTIONS[category] or (reason or "").strip()
    with db.connect() as conn:
        conn.execute(
            """
            INSERT INTO rejection_patterns
                (user_id, category, count, instruction, last_reason, updated_at)
            VALUES (?, ?, 1, ?, ?, ?)
            ON CONFLICT (user_id, category) DO UPDATE SET
                count = count + 1,
                last_reason = excluded.last_reason,
                updated_at = excluded.updated_at
            """,
            (user_id, category.value, instruction, reason, utcnow().isoformat()),
        )


def _avoid_topic(user_id: str, title: str) -> None:
    settings = settings_store.get_settings(user_id)
    if title in settings.exclude_keywords:
        return
    settings_store.update_settings(user_id, exclude_keywords=[*settings.exclude_keywords, title])
    log_decision("Topic avoided", f"rejected as boring: {title}", user_id=user_id)


def record_rejection(
    user_id: str,
    reason: Optional[str] = None,
    category: Optional[RejectionCategory] = None,
    title: Optional[str] = None,
) -> list[RejectionCategory]:
    categories = [category] if category else categorize(reason)
    for cat in categories:
        _bump(user_id, cat, reason)
    if RejectionCategory.BORING_TOPIC in categories and title:
        _avoid_topic(user_id, title)
    return categories


def get_patterns(user_id: str) -> list[dict]:
    with db.connect() as conn:
        rows = conn.execute(
            """
            SELECT category, count, instruction, last_reason, updated_at
            FROM rejection_patterns WHERE user_id = ?
            ORDER BY count DESC, category
            """,
            (user_id,),
        ).fetchall()
    return [dict(r) for r in rows]


def writer_instructions(user_id: str, min_count: Optional[int] = None) -> list[str]:
    """Instructions of the categories hit at least min_count times, most frequent first."""
    min_count = min_count if min_count is not None else get_min_pattern_count()
    return [
        p["instruction"] for p in get_patterns(user_id)
        if p["count"] >= min_count and p["instruction"]
    ]
