"""
Content Conveyor — Idempotency Ledger
Deduplicates externally-billed calls across retries.

Key = sha256 of canonical JSON {item_id, stage, inputs}. No clocks, no random
values: a retry with unchanged inputs re-derives the same key and gets the
stored result back. Cost: $0 on hit.

Records go pending -> done. A pending claim is taken before the external call,
so two concurrent callers cannot both pay for it. A claim left pending by a
call that died is taken over once it is older than the stage timeout.
Completed records are never mutated.
"""

from __future__ import annotations
import hashlib
import json
import uuid
from datetime import timedelta
from typing import Any, Callable, Optional

from conveyor.config import get_stage_timeout
from conveyor.errors import IdempotencyInProgressError
from conveyor.models import utcnow
from conveyor.store import db
from orchestrator.as_built import log


def derive_key(item_id: str, stage: int, inputs: Any) -> str:
    payload = json.dumps(
        {"item_id": item_id, "stage": int(stage), "inputs": inputs},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(payload.encode()).hexdigest()


def lookup(key: str) -> tuple[bool, Any]:
    """Return (found, result) for a completed record."""
    with db.connect() as conn:
        row = conn.execute(
            "SELECT status, result FROM idempotency_records WHERE key = ?", (key,)
        ).fetchone()
    if row is None or row["status"] != "done":
        return False, None
    return True, json.loads(row["result"])


def _claim(key: str, item_id: str, stage: int, stale_after: float) -> Optional[str]:
    """
    Take the pending claim for key and return its token, or None if someone
    else holds a live claim. A pending claim older than stale_after seconds
    belongs to a call that died or was abandoned and is taken over.
    """
    token = uuid.uuid4().hex
    now = utcnow()
    with db.connect() as conn:
        cur = conn.execute(
            """
            INSERT OR IGNORE INTO idempotency_records
                (key, item_id, stage, status, claim_token, created_at)
            VALUES (?, ?, ?, 'pending', ?, ?)
            """,
            (key, item_id, stage, token, now.isoformat()),
        )
        if cur.rowcount > 0:
            return token
        cutoff = (now - timedelta(seconds=stale_after)).isoformat()
        cur = conn.execute(
            """
            UPDATE idempotency_records SET claim_token = ?, created_at = ?
            WHERE key = ? AND status = 'pending' AND created_at < ?
            """,
            (token, now.isoformat(), key, cutoff),
        )
    if cur.rowcount > 0:
        log(f"Took over stale ledger claim {key[:12]}", detail=f"older than {stale_after:g}s",
            level="WARNING", item_id=item_id)
        return token
    return None


def _complete(key: str, token: str, payload: str) -> None:
    with db.connect() as conn:
        conn.execute(
            """
            UPDATE idempotency_records SET status = 'done', result = ?, completed_at = ?
            WHERE key = ? AND status = 'pending' AND claim_token = ?
            """,
            (payload, utcnow().isoformat(), key, token),
        )


def _release(key: str, token: str) -> None:
    with db.connect() as conn:
        conn.execute(
            "DELETE FROM idempotency_records WHERE key = ? AND status = 'pending' AND claim_token = ?",
            (key, token),
        )


def release_pending(item_id: str, stage: Optional[int] = None) -> int:
    """Drop an item's pending claims (abandoned calls). Completed records stay."""
    query = "DELETE FROM idempotency_records WHERE item_id = ? AND status = 'pending'"
    params: list = [item_id]
    if stage is not None:
        query += " AND stage = ?"
        params.append(stage)
    with db.connect() as conn:
        return conn.execute(query, params).rowcount


def get_or_create(
    key: str,
    compute: Callable[[], Any],
    item_id: str = "",
    stage: int = 0,
    stale_after: Optional[float] = None,
) -> Any:
    """
    Return the stored result for key, or run compute() exactly once and store it.
    compute() must return a JSON-serializable value.
    If compute() raises, or its result cannot be stored, the claim is released
    so a later retry can try again.
    """
    found, result = lookup(key)
    if found:
        return result

    if stale_after is None:
        stale_after = get_stage_timeout("default")
    token = _claim(key, item_id, stage, stale_after)
    if token is None:
        found, result = lookup(key)
        if found:
            return result
        raise IdempotencyInProgressError(
            f"external call for key {key[:12]}… is already in progress"
        )

    try:
        result = compute()
        payload = json.dumps(result)
    except Exception:
        _release(key, token)
        raise
    _complete(key, token, payload)
    return result


def count_records(item_id: str) -> int:
    with db.connect() as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM idempotency_records WHERE item_id = ? AND status = 'done'",
            (item_id,),
        ).fetchone()[0]
