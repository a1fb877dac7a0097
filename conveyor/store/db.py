"""
Content Conveyor — SQLite Store
One database file holds every table the conveyor needs. Connections run in
autocommit mode; multi-statement writes go through transaction().
"""

from __future__ import annotations
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path

_DEFAULT_DB = Path(__file__).resolve().parents[2] / "data" / "conveyor.sqlite"
DB_PATH = Path(os.environ.get("CONVEYOR_DB_PATH") or _DEFAULT_DB)

SCHEMA = """
CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    source_type TEXT NOT NULL,
    source_ref TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'processing',
    current_stage INTEGER NOT NULL DEFAULT 1,
    stage_history TEXT NOT NULL DEFAULT '[]',
    stage_outputs TEXT NOT NULL DEFAULT '{}',
    source_data TEXT,
    settings_snapshot TEXT NOT NULL DEFAULT '{}',
    error_stage INTEGER,
    error_message TEXT,
    error_kind TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    total_cost_usd REAL NOT NULL DEFAULT 0.0,
    version INTEGER NOT NULL DEFAULT 0,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_items_user ON items(user_id);
CREATE INDEX IF NOT EXISTS idx_items_status ON items(user_id, status);
CREATE INDEX IF NOT EXISTS idx_items_source ON items(user_id, source_type, source_ref);
CREATE INDEX IF NOT EXISTS idx_items_started ON items(started_at);

CREATE TABLE IF NOT EXISTS settings (
    user_id TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS candidates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    source_type TEXT NOT NULL,
    source_ref TEXT NOT NULL,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    url TEXT,
    published_at TEXT,
    collected_at TEXT NOT NULL,
    UNIQUE (user_id, source_type, source_ref)
);
CREATE INDEX IF NOT EXISTS idx_candidates_user ON candidates(user_id, collected_at);

CREATE TABLE IF NOT EXISTS scripts (
    id TEXT PRIMARY KEY,
    item_id TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    full_script TEXT NOT NULL,
    scenes TEXT NOT NULL DEFAULT '[]',
    final_score REAL NOT NULL,
    low_confidence INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending_review',
    feedback_reason TEXT,
    created_at TEXT NOT NULL,
    reviewed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_scripts_user ON scripts(user_id);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    item_id TEXT NOT NULL,
    type TEXT NOT NULL,
    stage INTEGER,
    stage_name TEXT,
    message TEXT NOT NULL DEFAULT '',
    progress INTEGER,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_user ON events(user_id, id);

CREATE TABLE IF NOT EXISTS idempotency_records (
    key TEXT PRIMARY KEY,
    item_id TEXT NOT NULL,
    stage INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    claim_token TEXT,
    result TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_idem_item ON idempotency_records(item_id);

CREATE TABLE IF NOT EXISTS usage_counters (
    user_id TEXT NOT NULL,
    period_kind TEXT NOT NULL,
    period_key TEXT NOT NULL,
    items INTEGER NOT NULL DEFAULT 0,
    spend_usd REAL NOT NULL DEFAULT 0.0,
    alerted INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (user_id, period_kind, period_key)
);

CREATE TABLE IF NOT EXISTS threshold_state (
    user_id TEXT PRIMARY KEY,
    approval_rate REAL NOT NULL DEFAULT 0.5,
    approvals INTEGER NOT NULL DEFAULT 0,
    rejections INTEGER NOT NULL DEFAULT 0,
    effective_threshold REAL,
    version INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS llm_calls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    item_id TEXT NOT NULL,
    stage TEXT NOT NULL,
    model TEXT NOT NULL,
    tokens_in INTEGER NOT NULL DEFAULT 0,
    tokens_out INTEGER NOT NULL DEFAULT 0,
    cost REAL NOT NULL DEFAULT 0.0,
    purpose TEXT,
    called_at TEXT NOT NULL,
    cached INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_llm_calls_item ON llm_calls(item_id);
CREATE INDEX IF NOT EXISTS idx_llm_calls_user ON llm_calls(user_id, called_at);

CREATE TABLE IF NOT EXISTS rejection_patterns (
    user_id TEXT NOT NULL,
    category TEXT NOT NULL,
    count INTEGER NOT NULL DEFAULT 0,
    instruction TEXT NOT NULL DEFAULT '',
    last_reason TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, category)
);
"""


def _open(path: Path) -> sqlite3.Connection:
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = sqlite3.connect(str(path), timeout=30, isolation_level=None)
    handle.row_factory = sqlite3.Row
    handle.execute("PRAGMA busy_timeout=30000")
    handle.execute("PRAGMA journal_mode=WAL")
    handle.executescript(SCHEMA)
    return handle


@contextmanager
def connect():
    """Autocommit connection to DB_PATH; CREATE IF NOT EXISTS runs every time."""
    handle = _open(DB_PATH)
    try:
        yield handle
    finally:
        handle.close()


@contextmanager
def transaction(immediate: bool = False):
    """
    BEGIN ... COMMIT around the block, ROLLBACK if it raises.

    immediate=True grabs the write lock before the first read, so a
    check-then-insert cannot interleave with another writer.
    """
    with connect() as handle:
        handle.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        try:
            yield handle
        except Exception:
            handle.execute("ROLLBACK")
            raise
        handle.execute("COMMIT")
