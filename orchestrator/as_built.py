"""
Content Conveyor — As-Built Log
A Markdown journal at logs/as-built.md that an operator can read top to
bottom: admissions, finished items, gate and threshold decisions, budget
warnings, stalls and tracebacks.

Levels: INFO, WARNING, ERROR, MILESTONE, DECISION.
"""

from __future__ import annotations
import os
import threading
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


AS_BUILT_PATH = Path(os.environ.get("AS_BUILT_LOG") or Path(__file__).parent.parent / "logs" / "as-built.md")

_append_lock = threading.Lock()


def _context_tags(item_id: Optional[str], user_id: Optional[str], cost_usd: Optional[float]) -> str:
    parts = []
    if user_id:
        parts.append(f"[user:{user_id}]")
    if item_id:
        parts.append(f"[item:{item_id[:8]}]")
    if cost_usd is not None:
        parts.append(f"[cost:${cost_usd:.4f}]")
    return "".join(" " + p for p in parts)


def _render(level: str, stamp: str, tags: str, action: str, detail: str) -> str:
    if level == "MILESTONE":
        body = f"\n{detail}\n" if detail else ""
        return f"\n### {action}\n\n**Time:** {stamp}{tags}\n{body}\n---\n"

    head = f"\n**[{level} {stamp}{tags}]** {action}"
    if not detail:
        return head + "\n"
    if level == "ERROR":
        return f"{head}\n\n```\n{detail}\n```\n"
    if level == "DECISION":
        return f"{head}\n\n> {detail}\n"
    return f"{head}: {detail}\n"


def log(
    action: str,
    detail: str = "",
    level: str = "INFO",
    item_id: Optional[str] = None,
    user_id: Optional[str] = None,
    cost_usd: Optional[float] = None,
) -> None:
    """
    Append one entry.

    `action` is the headline ("Stage 3 complete"); `detail` is optional
    context rendered by level (a quote for DECISION, a code block for ERROR).
    The item id is shortened to 8 characters in the tag list.
    """
    stamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
    text = _render(level, stamp, _context_tags(item_id, user_id, cost_usd), action, detail)
    with _append_lock:
        AS_BUILT_PATH.parent.mkdir(parents=True, exist_ok=True)
        with AS_BUILT_PATH.open("a", encoding="utf-8") as fh:
            fh.write(text)


def log_error(
    action: str,
    error: Exception,
    item_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> None:
    trace = traceback.format_exception(type(error), error, error.__traceback__)
    log(action, "".join(trace).strip(), level="ERROR", item_id=item_id, user_id=user_id)


def log_decision(
    decision: str,
    rationale: str,
    item_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> None:
    log(decision, rationale, level="DECISION", item_id=item_id, user_id=user_id)


def log_cycle_start(user_id: str, admitted: int, skipped: int = 0) -> None:
    note = f"skipped (already known): {skipped}" if skipped else ""
    log(f"Admission cycle started: {admitted} item(s)", note, user_id=user_id)


def log_item_complete(item_id: str, user_id: str, status: str, total_cost: float) -> None:
    """Completed items get a MILESTONE heading; failures and cancels a plain line."""
    log(
        f"Item finished ({status})",
        level="MILESTONE" if status == "completed" else "INFO",
        item_id=item_id,
        user_id=user_id,
        cost_usd=total_cost,
    )
