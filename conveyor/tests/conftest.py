"""
Shared fixtures: every test gets its own sqlite file, as-built log and event
bus, and no SMTP configuration (alerts are skipped, never sent).
"""

from __future__ import annotations

import pytest

SMTP_VARS = ("SMTP_HOST", "SMTP_PORT", "SMTP_USER", "SMTP_PASS", "ALERT_TO", "ALERT_FROM", "ALERT_FROM_NAME")


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    from conveyor import config
    from conveyor.events import bus
    from conveyor.store import db
    from orchestrator import alert, as_built

    monkeypatch.setattr(db, "DB_PATH", tmp_path / "conveyor.sqlite")
    monkeypatch.setattr(as_built, "AS_BUILT_PATH", tmp_path / "logs" / "as-built.md")
    monkeypatch.setattr(alert, "ENV_PATH", tmp_path / ".env")
    for var in SMTP_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.delenv("CONVEYOR_MAX_RETRIES", raising=False)
    config.reload_config()
    bus.reset_bus()

    yield tmp_path

    bus.reset_bus()
    config.reload_config()


@pytest.fixture
def fake_llm():
    from conveyor.tests.helpers import FakeLLM
    return FakeLLM()
