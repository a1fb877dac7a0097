"""
Content Conveyor — Event Bus
Durable event log (sqlite) plus in-memory live fan-out per user.

Live delivery is best-effort: each subscriber owns a bounded queue and a full
queue drops the event for that subscriber only, so the engine never blocks on
a slow observer. Anything dropped is still in the log and can be replayed.
The durable append is not best-effort: an event that cannot be written is
not fanned out either, and emit raises.
"""

from __future__ import annotations
import queue
import sqlite3
import threading
import time
from collections import defaultdict
from datetime import datetime
from typing import Iterator, Optional

from conveyor.config import get_event_append_attempts, get_history_default_limit, get_live_queue_size
from conveyor.models import ConveyorEvent, EventType
from conveyor.store import db
from orchestrator.as_built import log_error


def _row_to_event(row) -> ConveyorEvent:
    return ConveyorEvent(
        id=row["id"],
        type=EventType(row["type"]),
        user_id=row["user_id"],
        item_id=row["item_id"],
        stage=row["stage"],
        stage_name=row["stage_name"],
        message=row["message"],
        progress=row["progress"],
        timestamp=datetime.fromisoformat(row["created_at"]),
    )


class EventLog:
    """Append-only event table. Ids are monotonically increasing."""

    def append(self, event: ConveyorEvent) -> ConveyorEvent:
        with db.connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO events
                    (user_id, item_id, type, stage, stage_name, message, progress, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.user_id,
                    event.item_id,
                    event.type.value,
                    event.stage,
                    event.stage_name,
                    event.message,
                    event.progress,
                    event.timestamp.isoformat(),
                ),
            )
            return event.model_copy(update={"id": cur.lastrowid})

    def history(self, user_id: str, limit: Optional[int] = None) -> list[ConveyorEvent]:
        """Most recent `limit` events for the user, oldest first."""
        limit = limit or get_history_default_limit()
        with db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM events WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [_row_to_event(r) for r in reversed(rows)]

    def for_item(self, item_id: str) -> list[ConveyorEvent]:
        with db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM events WHERE item_id = ? ORDER BY id ASC", (item_id,)
            ).fetchall()
        return [_row_to_event(r) for r in rows]


class Subscription:
    def __init__(self, user_id: str, maxsize: int):
        self.user_id = user_id
        self.queue: queue.Queue[ConveyorEvent] = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: ConveyorEvent) -> bool:
        try:
            self.queue.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            return False


class EventBus:
    """Emit = durable append, then fan-out to the user's live subscribers."""

    def __init__(self, event_log: Optional[EventLog] = None, queue_size: Optional[int] = None):
        self.log = event_log or EventLog()
        self._queue_size = queue_size
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)
        self._lock = threading.Lock()

    def emit(self, event: ConveyorEvent) -> ConveyorEvent:
        event = self._append(event)
        with self._lock:
            subscribers = list(self._subscribers.get(event.user_id, []))
        for sub in subscribers:
            sub.offer(event)
        return event

    def _append(self, event: ConveyorEvent) -> ConveyorEvent:
        """Durable write with a short backoff on sqlite errors (a locked database)."""
        attempts = get_event_append_attempts()
        attempt = 1
        while True:
            try:
                return self.log.append(event)
            except sqlite3.Error as e:
                if attempt >= attempts:
                    log_error(
                        f"Event log append failed after {attempts} attempt(s)", e,
                        item_id=event.item_id, user_id=event.user_id,
                    )
                    raise
            time.sleep(0.05 * attempt)
            attempt += 1

    def subscribe(self, user_id: str) -> Subscription:
        sub = Subscription(user_id, self._queue_size or get_live_queue_size())
        with self._lock:
            self._subscribers[user_id].append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.user_id, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscribers.pop(sub.user_id, None)

    def subscriber_count(self, user_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(user_id, []))

    def history(self, user_id: str, limit: Optional[int] = None) -> list[ConveyorEvent]:
        return self.log.history(user_id, limit)

    def stream(
        self,
        user_id: str,
        replay: int = 0,
        follow: bool = True,
        heartbeat: float = 15.0,
    ) -> Iterator[Optional[ConveyorEvent]]:
        """
        Replay the last `replay` events, then yield live ones.

        Attaches before reading history, then skips live events whose id is
        not newer than the last replayed id: nothing emitted during connect is
        lost or delivered twice. Yields None every `heartbeat` seconds of
        silence so the caller can write a keep-alive.
        """
        sub = self.subscribe(user_id)
        try:
            last_id = 0
            if replay > 0:
                for event in self.log.history(user_id, replay):
                    last_id = event.id
                    yield event
            if not follow:
                return
            while True:
                try:
                    event = sub.queue.get(timeout=heartbeat)
                except queue.Empty:
                    yield None
                    continue
                if event.id is not None and event.id <= last_id:
                    continue
                yield event
        finally:
            self.unsubscribe(sub)


_bus: Optional[EventBus] = None
_bus_lock = threading.Lock()


def get_bus() -> EventBus:
    global _bus
    with _bus_lock:
        if _bus is None:
            _bus = EventBus()
        return _bus


def reset_bus() -> EventBus:
    """Drop all live subscribers and start a fresh bus (tests, app restarts)."""
    global _bus
    with _bus_lock:
        _bus = EventBus()
        return _bus
