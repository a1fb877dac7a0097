"""
Content Conveyor — Settings Store
One settings row per user. Written by the settings surface only.
"""

from __future__ import annotations
from conveyor.models import ConveyorSettings, utcnow
from conveyor.store import db


def get_settings(user_id: str) -> ConveyorSettings:
    """Return stored settings, or defaults if the user has never saved any."""
    with db.connect() as conn:
        row = conn.execute(
            "SELECT data FROM settings WHERE user_id = ?", (user_id,)
        ).fetchone()
    if row is None:
        return ConveyorSettings()
    return ConveyorSettings.model_validate_json(row["data"])


def save_settings(user_id: str, settings: ConveyorSettings) -> ConveyorSettings:
    with db.connect() as conn:
        conn.execute(
            """
            INSERT INTO settings (user_id, data, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (user_id, settings.model_dump_json(), utcnow().isoformat()),
        )
    return settings


def update_settings(user_id: str, **changes) -> ConveyorSettings:
    current = get_settings(user_id)
    return save_settings(user_id, current.model_copy(update=changes))


def get_enabled_users() -> list[str]:
    with db.connect() as conn:
        rows = conn.execute("SELECT user_id, data FROM settings ORDER BY user_id").fetchall()
    return [
        r["user_id"] for r in rows
        if ConveyorSettings.model_validate_json(r["data"]).enabled
    ]
