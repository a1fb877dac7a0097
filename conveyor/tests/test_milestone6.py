"""
Milestone 6 — Event bus, HTTP API and SSE
Covers: durable event log, append retry and failure, bounded live queues,
replay-then-live streaming without gaps or duplicates, REST endpoints and
error mapping, the learning endpoint, the SSE stream with replay.
"""

import pytest


def _event(user_id="u1", item_id="i1", event_type="stage_started", stage=1):
    from conveyor.models import ConveyorEvent, EventType
    return ConveyorEvent(type=EventType(event_type), user_id=user_id, item_id=item_id, stage=stage)


@pytest.fixture
def client(fake_llm):
    from fastapi.testclient import TestClient
    from conveyor.api.app import create_app
    from conveyor.engine import PipelineEngine

    app = create_app(engine=PipelineEngine(llm_caller=fake_llm))
    with TestClient(app) as c:
        yield c


def _headers(user_id="u1"):
    return {"X-User-Id": user_id}


def _parse_sse(text):
    frames = []
    for block in text.split("\n\n"):
        lines = [l for l in block.split("\n") if l and not l.startswith(":")]
        if not lines:
            continue
        frame = dict(l.split(": ", 1) for l in lines)
        frames.append(frame)
    return frames


class TestEventBus:

    def test_ids_increase_and_history_is_oldest_first(self):
        from conveyor.events.bus import EventBus
        bus = EventBus()
        emitted = [bus.emit(_event(stage=n)) for n in range(1, 6)]
        ids = [e.id for e in emitted]
        assert ids == sorted(ids) and len(set(ids)) == 5

        last_three = bus.history("u1", 3)
        assert [e.id for e in last_three] == ids[-3:]
        assert bus.history("u2") == []

    def test_full_queue_drops_for_that_subscriber_only(self):
        from conveyor.events.bus import EventBus
        bus = EventBus(queue_size=2)
        slow = bus.subscribe("u1")
        other = bus.subscribe("u2")
        for n in range(3):
            bus.emit(_event(stage=n + 1))

        assert slow.dropped == 1
        assert slow.queue.qsize() == 2
        assert other.queue.qsize() == 0
        assert len(bus.history("u1")) == 3

    def test_unsubscribe(self):
        from conveyor.events.bus import EventBus
        bus = EventBus()
        sub = bus.subscribe("u1")
        assert bus.subscriber_count("u1") == 1
        bus.unsubscribe(sub)
        assert bus.subscriber_count("u1") == 0

    def test_stream_replay_without_duplicates(self, monkeypatch):
        """An event emitted while the stream connects is delivered exactly once."""
        from conveyor.events.bus import EventBus

        bus = EventBus()
        first = bus.emit(_event(stage=1))
        second = bus.emit(_event(stage=2))

        original_history = bus.log.history
        racing = []

        def history_with_race(user_id, limit=None):
            racing.append(bus.emit(_event(stage=3)))
            return original_history(user_id, limit)

        monkeypatch.setattr(bus.log, "history", history_with_race)
        stream = bus.stream("u1", replay=10, heartbeat=0.05)

        replayed = [next(stream) for _ in range(3)]
        assert [e.id for e in replayed] == [first.id, second.id, racing[0].id]
        assert next(stream) is None  # the queued copy was skipped

        live = bus.emit(_event(stage=4))
        assert next(stream).id == live.id
        stream.close()
        assert bus.subscriber_count("u1") == 0
        print("PASS: replay then live, no gap, no duplicate")

    def test_stream_without_follow_ends(self):
        from conveyor.events.bus import EventBus
        bus = EventBus()
        for n in range(4):
            bus.emit(_event(stage=n + 1))
        events = list(bus.stream("u1", replay=2, follow=False))
        assert [e.stage for e in events] == [3, 4]
        assert bus.subscriber_count("u1") == 0

    def test_append_failure_raises_and_skips_fan_out(self, monkeypatch):
        import sqlite3
        from conveyor.events.bus import EventBus
        from orchestrator import as_built

        bus = EventBus()
        sub = bus.subscribe("u1")
        calls = []

        def locked(event):
            calls.append(event)
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(bus.log, "append", locked)
        with pytest.raises(sqlite3.OperationalError):
            bus.emit(_event(stage=1))
        assert len(calls) == 3
        assert sub.queue.qsize() == 0
        assert "Event log append failed after 3 attempt(s)" in as_built.AS_BUILT_PATH.read_text()

    def test_transient_append_failure_is_retried(self, monkeypatch):
        import sqlite3
        from conveyor.events.bus import EventBus

        bus = EventBus()
        sub = bus.subscribe("u1")
        original = bus.log.append
        failures = [sqlite3.OperationalError("database is locked")]

        def flaky(event):
            if failures:
                raise failures.pop()
            return original(event)

        monkeypatch.setattr(bus.log, "append", flaky)
        emitted = bus.emit(_event(stage=1))
        assert emitted.id is not None
        assert [e.id for e in bus.history("u1")] == [emitted.id]
        assert sub.queue.get_nowait().id == emitted.id

    def test_reset_bus(self):
        from conveyor.events.bus import get_bus, reset_bus
        bus = get_bus()
        assert get_bus() is bus
        assert reset_bus() is not bus


class TestScenarioAPI:

    def test_health_and_identity(self, client):
        assert client.get("/health").json() == {"status": "ok"}
        assert client.get("/settings").status_code == 422

    def test_settings_round_trip(self, client):
        body = client.get("/settings", headers=_headers()).json()
        assert body["enabled"] is False
        body.update(enabled=True, daily_limit=4, keywords=["farm"])
        saved = client.put("/settings", headers=_headers(), json=body)
        assert saved.status_code == 200
        assert client.get("/settings", headers=_headers()).json()["daily_limit"] == 4
        assert client.get("/settings", headers=_headers("u2")).json()["daily_limit"] == 10

        bad = client.put("/settings", headers=_headers(), json={**body, "min_score_threshold": 400})
        assert bad.status_code == 422

    def test_daily_limit_returns_429(self, client):
        """Daily limit 5 already used today: trigger is refused with 429."""
        from conveyor.budget import guard
        from conveyor.tests.helpers import add_candidates, enable_user

        enable_user("u1", daily_limit=5)
        add_candidates("u1", 2)
        guard.record_admissions("u1", 5)

        resp = client.post("/trigger", headers=_headers())
        assert resp.status_code == 429
        assert resp.json()["code"] == "daily_limit_reached"
        assert client.get("/items", headers=_headers()).json()["items"] == []
        print("PASS: 429 daily_limit_reached")

    def test_busy_user_returns_409(self, client):
        from conveyor.tests.helpers import make_item
        make_item("u1", "busy")
        resp = client.post("/trigger", headers=_headers())
        assert resp.status_code == 409
        assert resp.json()["code"] == "already_processing"

    def test_trigger_processes_in_background(self, client):
        """Trigger answers 202; the admitted items are processed to completion."""
        from conveyor.tests.helpers import add_candidates, enable_user

        enable_user("u1", batch_size=2)
        add_candidates("u1", 2)
        resp = client.post("/trigger", headers=_headers())
        assert resp.status_code == 202
        assert resp.json()["admitted"] == 2

        items = client.get("/items", headers=_headers()).json()["items"]
        assert {i["status"] for i in items} == {"completed"}
        assert "stage_outputs" not in items[0]

        detail = client.get(f"/items/{items[0]['id']}", headers=_headers()).json()
        assert detail["item"]["current_stage"] == 10
        assert detail["script"]["status"] == "pending_review"
        assert detail["costs"]["total_cost"] == pytest.approx(0.12)

        progress = client.get(f"/items/{items[0]['id']}/progress", headers=_headers()).json()
        assert progress["progress"] == 100
        assert all(s["status"] == "completed" for s in progress["stages"])

        usage = client.get("/usage", headers=_headers()).json()
        assert usage["items_today"] == 2
        assert usage["spend_this_month"] == pytest.approx(0.24)
        assert usage["processing"] == 0

    def test_item_errors(self, client):
        from conveyor.tests.helpers import make_item

        missing = client.get("/items/nope", headers=_headers())
        assert missing.status_code == 404
        assert missing.json()["code"] == "item_not_found"

        item = make_item("owner")
        assert client.get(f"/items/{item.id}", headers=_headers("intruder")).status_code == 404

        not_failed = client.post(f"/items/{item.id}/retry", headers=_headers("owner"))
        assert not_failed.status_code == 409
        assert not_failed.json()["code"] == "not_failed"

    def test_cancel_endpoint(self, client):
        from conveyor.tests.helpers import make_item

        item = make_item()
        cancelled = client.post(f"/items/{item.id}/cancel", headers=_headers())
        assert cancelled.status_code == 200
        assert cancelled.json()["item"]["status"] == "cancelled"
        again = client.post(f"/items/{item.id}/cancel", headers=_headers())
        assert again.status_code == 409

    def test_retry_endpoint_runs_item(self, client):
        from conveyor.models import ErrorKind, ItemStatus
        from conveyor.store import items as item_store
        from conveyor.tests.helpers import make_item

        item = make_item()
        item.status = ItemStatus.FAILED
        item.current_stage = 1
        item.error_stage = 1
        item.error_kind = ErrorKind.STALLED
        item_store.save_item(item)

        resp = client.post(f"/items/{item.id}/retry", headers=_headers())
        assert resp.status_code == 202
        assert resp.json()["item"]["retry_count"] == 1
        assert item_store.get_item(item.id).status == ItemStatus.COMPLETED

    def test_feedback_endpoint(self, client):
        from conveyor.tests.helpers import enable_user, make_item

        enable_user("u1")
        item = make_item()
        client.app.state.engine.run(item.id)

        bad = client.post(f"/items/{item.id}/feedback", headers=_headers(), json={"decision": "meh"})
        assert bad.status_code == 422

        ok = client.post(f"/items/{item.id}/feedback", headers=_headers(), json={"decision": "approve"})
        assert ok.status_code == 200
        assert ok.json()["script"]["status"] == "approved"
        assert ok.json()["threshold"]["approvals"] == 1

        twice = client.post(f"/items/{item.id}/feedback", headers=_headers(), json={"decision": "reject"})
        assert twice.status_code == 409
        assert twice.json()["code"] == "already_reviewed"

    def test_rejection_category_and_learning(self, client):
        from conveyor.tests.helpers import enable_user, make_item

        enable_user("u1")
        item = make_item()
        client.app.state.engine.run(item.id)

        bad = client.post(
            f"/items/{item.id}/feedback", headers=_headers(),
            json={"decision": "reject", "category": "too_weird"},
        )
        assert bad.status_code == 422

        ok = client.post(
            f"/items/{item.id}/feedback", headers=_headers(),
            json={"decision": "reject", "reason": "no hook", "category": "weak_cta"},
        )
        assert ok.status_code == 200
        assert ok.json()["categories"] == ["weak_cta"]

        learned = client.get("/learning", headers=_headers()).json()
        assert [p["category"] for p in learned["patterns"]] == ["weak_cta"]
        assert learned["patterns"][0]["count"] == 1
        assert learned["writer_instructions"] == []


class TestScenarioSSE:

    def test_history_endpoint(self, client):
        from conveyor.events.bus import get_bus
        for n in range(5):
            get_bus().emit(_event(stage=n + 1))
        events = client.get("/events/history?limit=3", headers=_headers()).json()["events"]
        assert [e["data"]["stage"] for e in events] == [3, 4, 5]
        assert events[0]["userId"] == "u1"

    def test_replay_stream_in_order(self, client):
        """replay=N sends the last N events, oldest first, then closes with follow=false."""
        from conveyor.events.bus import get_bus
        bus = get_bus()
        emitted = [bus.emit(_event(stage=n + 1)) for n in range(6)]
        bus.emit(_event(user_id="u2"))

        resp = client.get("/events?replay=3&follow=false", headers=_headers())
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.text.startswith(": connected")

        frames = _parse_sse(resp.text)
        assert [int(f["id"]) for f in frames] == [e.id for e in emitted[-3:]]
        assert {f["event"] for f in frames} == {"stage_started"}
        print("PASS: SSE replay in order")

    def test_format_event(self):
        import json
        from conveyor.api.sse import format_event
        event = _event().model_copy(update={"id": 42})
        text = format_event(event)
        assert text.startswith("id: 42\nevent: stage_started\ndata: ")
        assert text.endswith("\n\n")
        payload = json.loads(text.split("data: ", 1)[1])
        assert payload["itemId"] == "i1"
