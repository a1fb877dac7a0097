"""
Content Conveyor — Item State Store
Single source of truth for current_stage / status. Every write is a versioned
compare-and-set: UPDATE ... WHERE id = ? AND version = ?. Zero rows changed
means another writer got there first.
"""

from __future__ import annotations
import json
from datetime import datetime, timedelta
from typing import Optional

from conveyor.errors import AdmissionDenied, ConflictError
from conveyor.models import (
    ConveyorSettings,
    ErrorKind,
    Item,
    ItemStatus,
    SourceData,
    StageHistoryEntry,
    utcnow,
)
from conveyor.store import db


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_item(row) -> Item:
    outputs = json.loads(row["stage_outputs"] or "{}")
    return Item(
        id=row["id"],
        user_id=row["user_id"],
        source_type=row["source_type"],
        source_ref=row["source_ref"],
        status=ItemStatus(row["status"]),
        current_stage=row["current_stage"],
        stage_history=[StageHistoryEntry(**h) for h in json.loads(row["stage_history"] or "[]")],
        stage_outputs={int(k): v for k, v in outputs.items()},
        source_data=SourceData(**json.loads(row["source_data"])) if row["source_data"] else None,
        settings_snapshot=ConveyorSettings(**json.loads(row["settings_snapshot"] or "{}")),
        error_stage=row["error_stage"],
        error_message=row["error_message"],
        error_kind=ErrorKind(row["error_kind"]) if row["error_kind"] else None,
        retry_count=row["retry_count"],
        total_cost_usd=row["total_cost_usd"],
        version=row["version"],
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _history_json(item: Item) -> str:
    return json.dumps([h.model_dump(mode="json") for h in item.stage_history])


def _source_json(item: Item) -> Optional[str]:
    if item.source_data is None:
        return None
    return json.dumps(item.source_data.model_dump(mode="json", exclude={"content_hash"}))


def _insert(conn, item: Item) -> None:
    conn.execute(
        """
        INSERT INTO items
            (id, user_id, source_type, source_ref, status, current_stage,
             stage_history, stage_outputs, source_data, settings_snapshot,
             retry_count, total_cost_usd, version, started_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            item.id,
            item.user_id,
            item.source_type.value,
            item.source_ref,
            item.status.value,
            item.current_stage,
            _history_json(item),
            json.dumps(item.stage_outputs),
            _source_json(item),
            item.settings_snapshot.model_dump_json(),
            item.retry_count,
            item.total_cost_usd,
            item.version,
            item.started_at.isoformat(),
            item.updated_at.isoformat(),
        ),
    )


def admit_items(user_id: str, items: list[Item]) -> list[Item]:
    """
    Create items for one admission cycle.
    The idle check and the inserts share one immediate transaction, so two
    concurrent triggers for the same user cannot both admit.
    """
    with db.transaction(immediate=True) as conn:
        busy = conn.execute(
            "SELECT COUNT(*) FROM items WHERE user_id = ? AND status = 'processing'",
            (user_id,),
        ).fetchone()[0]
        if busy > 0:
            raise AdmissionDenied(
                f"{busy} item(s) still processing", code="already_processing"
            )
        admitted = []
        for item in items:
            exists = conn.execute(
                "SELECT 1 FROM items WHERE user_id = ? AND source_type = ? AND source_ref = ?",
                (user_id, item.source_type.value, item.source_ref),
            ).fetchone()
            if exists:
                continue
            _insert(conn, item)
            admitted.append(item)
        return admitted


def get_item(item_id: str) -> Optional[Item]:
    with db.connect() as conn:
        row = conn.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
        return _row_to_item(row) if row else None


def list_items(user_id: str, limit: int = 50) -> list[Item]:
    with db.connect() as conn:
        rows = conn.execute(
            "SELECT * FROM items WHERE user_id = ? ORDER BY started_at DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
        return [_row_to_item(r) for r in rows]


def list_processing(user_id: str) -> list[Item]:
    with db.connect() as conn:
        rows = conn.execute(
            """
            SELECT * FROM items WHERE user_id = ? AND status = 'processing'
            ORDER BY started_at ASC, rowid ASC
            """,
            (user_id,),
        ).fetchall()
        return [_row_to_item(r) for r in rows]


def count_processing(user_id: str) -> int:
    with db.connect() as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM items WHERE user_id = ? AND status = 'processing'",
            (user_id,),
        ).fetchone()[0]


def item_exists(user_id: str, source_type: str, source_ref: str) -> bool:
    with db.connect() as conn:
        row = conn.execute(
            "SELECT 1 FROM items WHERE user_id = ? AND source_type = ? AND source_ref = ?",
            (user_id, source_type, source_ref),
        ).fetchone()
        return row is not None


def save_item(item: Item) -> Item:
    """
    Persist item against the version it was loaded at.
    Returns the item with its new version; raises ConflictError if stale.
    """
    now = utcnow()
    with db.connect() as conn:
        cur = conn.execute(
            """
            UPDATE items SET
                status = ?,
                current_stage = ?,
                stage_history = ?,
                stage_outputs = ?,
                error_stage = ?,
                error_message = ?,
                error_kind = ?,
                retry_count = ?,
                total_cost_usd = ?,
                completed_at = ?,
                updated_at = ?,
                version = version + 1
            WHERE id = ? AND version = ?
            """,
            (
                item.status.value,
                item.current_stage,
                _history_json(item),
                json.dumps(item.stage_outputs),
                item.error_stage,
                item.error_message,
                item.error_kind.value if item.error_kind else None,
                item.retry_count,
                item.total_cost_usd,
                item.completed_at.isoformat() if item.completed_at else None,
                now.isoformat(),
                item.id,
                item.version,
            ),
        )
        if cur.rowcount == 0:
            raise ConflictError(
                f"item {item.id} was modified concurrently (expected version {item.version})"
            )
    return item.model_copy(update={"version": item.version + 1, "updated_at": now})


def find_stalled(older_than_minutes: int) -> list[Item]:
    """Processing items with no write for longer than the stall timeout."""
    cutoff = (utcnow() - timedelta(minutes=older_than_minutes)).isoformat()
    with db.connect() as conn:
        rows = conn.execute(
            "SELECT * FROM items WHERE status = 'processing' AND updated_at < ?",
            (cutoff,),
        ).fetchall()
        return [_row_to_item(r) for r in rows]
