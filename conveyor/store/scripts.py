"""
Content Conveyor — Script Store
Deliverables written by the Delivery stage and reviewed by a human.
"""

from __future__ import annotations
import json
import uuid
from typing import Optional

from conveyor.errors import InvalidTransitionError
from conveyor.models import utcnow
from conveyor.store import db


def store_script(
    item_id: str,
    user_id: str,
    title: str,
    full_script: str,
    scenes: list[dict],
    final_score: float,
    low_confidence: bool = False,
) -> str:
    """
    Insert the deliverable for an item. One script per item: a second call for
    the same item returns the existing id instead of creating a duplicate.
    """
    with db.connect() as conn:
        conn.execute(
            """
            INSERT OR IGNORE INTO scripts
                (id, item_id, user_id, title, full_script, scenes,
                 final_score, low_confidence, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                item_id,
                user_id,
                title,
                full_script,
                json.dumps(scenes),
                final_score,
                int(low_confidence),
                utcnow().isoformat(),
            ),
        )
        row = conn.execute("SELECT id FROM scripts WHERE item_id = ?", (item_id,)).fetchone()
        return row["id"]


def get_script_for_item(item_id: str) -> Optional[dict]:
    with db.connect() as conn:
        row = conn.execute("SELECT * FROM scripts WHERE item_id = ?", (item_id,)).fetchone()
    if row is None:
        return None
    script = dict(row)
    script["scenes"] = json.loads(script["scenes"])
    script["low_confidence"] = bool(script["low_confidence"])
    return script


def record_review(item_id: str, decision: str, reason: Optional[str] = None) -> dict:
    """Mark a pending script approved/rejected. A script is reviewed once."""
    status = {"approve": "approved", "reject": "rejected"}[decision]
    with db.connect() as conn:
        cur = conn.execute(
            """
            UPDATE scripts SET status = ?, feedback_reason = ?, reviewed_at = ?
            WHERE item_id = ? AND status = 'pending_review'
            """,
            (status, reason, utcnow().isoformat(), item_id),
        )
        if cur.rowcount == 0:
            raise InvalidTransitionError(
                f"no script pending review for item {item_id}", code="already_reviewed"
            )
    return get_script_for_item(item_id)
