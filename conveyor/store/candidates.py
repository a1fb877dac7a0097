"""
Content Conveyor — Candidate Store
Raw source records written by ingestion connectors (news feeds, short-video
transcripts) and read by the admission cycle.
"""

from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Optional

from conveyor.models import ConveyorSettings, SourceData, SourceType, utcnow
from conveyor.store import db


def add_candidate(
    user_id: str,
    source_type: str,
    source_ref: str,
    title: str,
    content: str,
    url: Optional[str] = None,
    published_at: Optional[datetime] = None,
) -> bool:
    """Store a candidate. Returns True if inserted, False if already known."""
    with db.connect() as conn:
        cur = conn.execute(
            """
            INSERT OR IGNORE INTO candidates
                (user_id, source_type, source_ref, title, content, url,
                 published_at, collected_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                SourceType(source_type).value,
                source_ref,
                title,
                content,
                url,
                published_at.isoformat() if published_at else None,
                utcnow().isoformat(),
            ),
        )
        return cur.rowcount > 0


def _matches_keywords(text: str, keywords: list[str], exclude: list[str]) -> bool:
    lowered = text.lower()
    if exclude and any(k.lower() in lowered for k in exclude if k.strip()):
        return False
    wanted = [k for k in keywords if k.strip()]
    if wanted and not any(k.lower() in lowered for k in wanted):
        return False
    return True


def get_eligible(user_id: str, settings: ConveyorSettings, limit: int) -> list[SourceData]:
    """
    Candidates the user has not processed yet that pass the settings filters:
    source type, keyword include/exclude, max content age. Newest first.
    """
    source_types = [s.value for s in settings.source_types]
    if not source_types or limit <= 0:
        return []
    cutoff = utcnow() - timedelta(days=settings.max_age_days)
    placeholders = ",".join("?" for _ in source_types)

    with db.connect() as conn:
        rows = conn.execute(
            f"""
            SELECT c.* FROM candidates c
            WHERE c.user_id = ?
              AND c.source_type IN ({placeholders})
              AND NOT EXISTS (
                  SELECT 1 FROM items i
                  WHERE i.user_id = c.user_id
                    AND i.source_type = c.source_type
                    AND i.source_ref = c.source_ref
              )
            ORDER BY COALESCE(c.published_at, c.collected_at) DESC, c.id DESC
            """,
            (user_id, *source_types),
        ).fetchall()

    eligible = []
    for r in rows:
        published = datetime.fromisoformat(r["published_at"]) if r["published_at"] else None
        reference_time = published or datetime.fromisoformat(r["collected_at"])
        if reference_time.tzinfo is None:
            reference_time = reference_time.replace(tzinfo=timezone.utc)
        if reference_time < cutoff:
            continue
        if not _matches_keywords(f"{r['title']} {r['content']}", settings.keywords, settings.exclude_keywords):
            continue
        eligible.append(
            SourceData(
                source_type=r["source_type"],
                source_ref=r["source_ref"],
                title=r["title"],
                content=r["content"],
                url=r["url"],
                published_at=published,
            )
        )
        if len(eligible) >= limit:
            break
    return eligible
