"""
Milestone 2 — Idempotency ledger and Budget Guard
Covers: exactly-once external calls per key, claim release on failure,
daily/monthly counters with period rollover, admission decisions, the
one-time monthly budget alert.
"""

from datetime import datetime, timezone

import pytest


DAY_ONE = datetime(2026, 3, 14, 23, 50, tzinfo=timezone.utc)
DAY_TWO = datetime(2026, 3, 15, 0, 10, tzinfo=timezone.utc)
NEXT_MONTH = datetime(2026, 4, 1, 9, 0, tzinfo=timezone.utc)


class TestIdempotencyLedger:

    def test_key_is_deterministic(self):
        from conveyor.ledger.idempotency import derive_key
        a = derive_key("i1", 2, {"prompt": "p", "model": "m"})
        b = derive_key("i1", 2, {"model": "m", "prompt": "p"})
        assert a == b
        assert derive_key("i1", 3, {"prompt": "p", "model": "m"}) != a
        assert derive_key("i2", 2, {"prompt": "p", "model": "m"}) != a

    def test_same_key_computes_once(self):
        from conveyor.ledger import idempotency
        calls = []

        def compute():
            calls.append(1)
            return {"score": 80}

        key = idempotency.derive_key("i1", 2, {"prompt": "p"})
        assert idempotency.get_or_create(key, compute, "i1", 2) == {"score": 80}
        assert idempotency.get_or_create(key, compute, "i1", 2) == {"score": 80}
        assert len(calls) == 1
        assert idempotency.count_records("i1") == 1

    def test_different_inputs_compute_twice(self):
        from conveyor.ledger import idempotency
        calls = []

        def compute():
            calls.append(1)
            return len(calls)

        k1 = idempotency.derive_key("i1", 2, {"prompt": "p1"})
        k2 = idempotency.derive_key("i1", 2, {"prompt": "p2"})
        assert idempotency.get_or_create(k1, compute, "i1", 2) == 1
        assert idempotency.get_or_create(k2, compute, "i1", 2) == 2
        assert len(calls) == 2

    def test_failed_compute_releases_claim(self):
        from conveyor.ledger import idempotency
        key = idempotency.derive_key("i1", 5, {"prompt": "p"})

        def boom():
            raise RuntimeError("provider down")

        with pytest.raises(RuntimeError):
            idempotency.get_or_create(key, boom, "i1", 5)
        assert idempotency.lookup(key) == (False, None)
        assert idempotency.get_or_create(key, lambda: "ok", "i1", 5) == "ok"

    def test_pending_claim_blocks_second_caller(self):
        import json
        from conveyor.errors import IdempotencyInProgressError
        from conveyor.ledger import idempotency

        key = idempotency.derive_key("i1", 5, {"prompt": "p"})
        token = idempotency._claim(key, "i1", 5, stale_after=60)
        assert token
        with pytest.raises(IdempotencyInProgressError):
            idempotency.get_or_create(key, lambda: "second", "i1", 5)
        idempotency._complete(key, token, json.dumps("first"))
        assert idempotency.get_or_create(key, lambda: "second", "i1", 5) == "first"

    def test_abandoned_claim_is_taken_over(self):
        """A claim left pending by a dead worker does not block the key forever."""
        from conveyor.errors import IdempotencyInProgressError
        from conveyor.ledger import idempotency
        from conveyor.store import db

        key = idempotency.derive_key("i1", 3, {"prompt": "p"})
        stale = idempotency._claim(key, "i1", 3, stale_after=60)
        with pytest.raises(IdempotencyInProgressError):
            idempotency.get_or_create(key, lambda: "fresh", "i1", 3, stale_after=60)

        with db.connect() as conn:
            conn.execute(
                "UPDATE idempotency_records SET created_at = ? WHERE key = ?",
                ("2020-01-01T00:00:00+00:00", key),
            )
        assert idempotency.get_or_create(key, lambda: "fresh", "i1", 3, stale_after=60) == "fresh"

        # the dead worker's late completion cannot overwrite the new record
        idempotency._complete(key, stale, '"late"')
        assert idempotency.lookup(key) == (True, "fresh")
        print("PASS: stale ledger claim reclaimed")

    def test_release_pending_for_item(self):
        from conveyor.ledger import idempotency

        done = idempotency.derive_key("i1", 2, {"prompt": "a"})
        idempotency.get_or_create(done, lambda: 1, "i1", 2)
        idempotency._claim(idempotency.derive_key("i1", 3, {"prompt": "b"}), "i1", 3, stale_after=60)
        idempotency._claim(idempotency.derive_key("i2", 3, {"prompt": "b"}), "i2", 3, stale_after=60)

        assert idempotency.release_pending("i1") == 1
        assert idempotency.count_records("i1") == 1
        assert idempotency.release_pending("i2", stage=4) == 0

    def test_unserializable_result_releases_claim(self):
        from conveyor.ledger import idempotency
        key = idempotency.derive_key("i1", 6, {"prompt": "p"})

        with pytest.raises(TypeError):
            idempotency.get_or_create(key, lambda: {"bad": object()}, "i1", 6)
        assert idempotency.get_or_create(key, lambda: {"ok": True}, "i1", 6) == {"ok": True}


class TestBudgetCounters:

    def test_fresh_user_has_zero_usage(self):
        from conveyor.budget import guard
        u = guard.usage("u1", DAY_ONE)
        assert u == {
            "day": "2026-03-14",
            "month": "2026-03",
            "items_today": 0,
            "spend_today": 0.0,
            "items_this_month": 0,
            "spend_this_month": 0.0,
        }

    def test_counters_roll_over_by_period(self):
        from conveyor.budget import guard
        guard.record_admissions("u1", 3, DAY_ONE)
        guard.record_spend("u1", 0.5, now=DAY_ONE)

        assert guard.usage("u1", DAY_ONE)["items_today"] == 3
        day_two = guard.usage("u1", DAY_TWO)
        assert day_two["items_today"] == 0
        assert day_two["spend_today"] == 0.0
        assert day_two["items_this_month"] == 3
        assert day_two["spend_this_month"] == pytest.approx(0.5)
        assert guard.usage("u1", NEXT_MONTH)["spend_this_month"] == 0.0

    def test_counters_are_per_user(self):
        from conveyor.budget import guard
        guard.record_admissions("u1", 2, DAY_ONE)
        assert guard.usage("u2", DAY_ONE)["items_today"] == 0


class TestScenarioAdmissionLimits:

    def test_daily_limit_resets_next_day(self):
        """Admission denied at the limit; allowed again after the day boundary."""
        from conveyor.budget import guard
        from conveyor.models import ConveyorSettings

        settings = ConveyorSettings(daily_limit=5)
        guard.record_admissions("u1", 5, DAY_ONE)

        denied = guard.can_admit("u1", settings, DAY_ONE)
        assert not denied.allowed
        assert denied.reason == "daily_limit_reached"

        allowed = guard.can_admit("u1", settings, DAY_TWO)
        assert allowed.allowed
        assert guard.remaining_capacity("u1", settings, DAY_TWO) == 3
        print("PASS: daily limit resets at the day boundary")

    def test_budget_checked_before_daily_limit(self):
        from conveyor.budget import guard
        from conveyor.models import ConveyorSettings

        settings = ConveyorSettings(daily_limit=1, monthly_budget_limit=1.0)
        guard.record_admissions("u1", 1, DAY_ONE)
        guard.record_spend("u1", 1.0, now=DAY_ONE)

        decision = guard.can_admit("u1", settings, DAY_ONE)
        assert decision.reason == "budget_exceeded"
        assert guard.can_admit("u1", settings, NEXT_MONTH).allowed

    def test_remaining_capacity(self):
        from conveyor.budget import guard
        from conveyor.models import ConveyorSettings

        assert guard.remaining_capacity("u1", ConveyorSettings(daily_limit=10, batch_size=3), DAY_ONE) == 3

        guard.record_admissions("u1", 9, DAY_ONE)
        assert guard.remaining_capacity("u1", ConveyorSettings(daily_limit=10, batch_size=3), DAY_ONE) == 1

        # under budget but less than one item's estimate left: still one slot
        guard.record_spend("u2", 0.9, now=DAY_ONE)
        tight = ConveyorSettings(daily_limit=10, batch_size=3, monthly_budget_limit=1.0)
        assert guard.remaining_capacity("u2", tight, DAY_ONE) == 1

        guard.record_spend("u2", 0.2, now=DAY_ONE)
        assert guard.remaining_capacity("u2", tight, DAY_ONE) == 0


class TestScenarioBudgetAlert:

    def test_alert_sent_once_per_month(self, monkeypatch):
        """Crossing the monthly limit alerts once; further spend stays quiet."""
        from conveyor.budget import guard

        sent = []
        monkeypatch.setattr(guard, "alert_budget_threshold", lambda **kw: sent.append(kw) or True)

        guard.record_spend("u1", 6.0, monthly_limit=10.0, now=DAY_ONE)
        assert sent == []
        total = guard.record_spend("u1", 5.0, monthly_limit=10.0, now=DAY_ONE)
        assert total == pytest.approx(11.0)
        assert len(sent) == 1
        assert sent[0]["cap_name"] == "month"
        assert sent[0]["user_id"] == "u1"
        assert sent[0]["pct"] == pytest.approx(110.0)

        guard.record_spend("u1", 1.0, monthly_limit=10.0, now=DAY_TWO)
        assert len(sent) == 1

        guard.record_spend("u1", 12.0, monthly_limit=10.0, now=NEXT_MONTH)
        assert len(sent) == 2
        print("PASS: one budget alert per user per month")

    def test_zero_spend_is_not_recorded(self):
        from conveyor.budget import guard
        assert guard.record_spend("u1", 0.0, now=DAY_ONE) == 0.0
        assert guard.usage("u1", DAY_ONE)["spend_today"] == 0.0

    def test_alert_logged_to_as_built(self, monkeypatch):
        from conveyor.budget import guard
        from orchestrator import as_built

        monkeypatch.setattr(guard, "alert_budget_threshold", lambda **kw: True)
        guard.record_spend("u1", 2.0, monthly_limit=1.0, now=DAY_ONE)
        text = as_built.AS_BUILT_PATH.read_text()
        assert "Monthly budget exhausted for user u1" in text
        assert "[WARNING" in text
