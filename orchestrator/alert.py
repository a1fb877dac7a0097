"""
Content Conveyor — Operator Alerts
Email goes out over STARTTLS SMTP when someone has to act: a user's
monthly budget ran out, or the stall sweep failed items.

Credentials come from the repo-root .env first, then the process env.
With no SMTP configured an alert is printed to stderr and dropped.
"""

from __future__ import annotations
import os
import smtplib
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from pathlib import Path
from typing import Optional


ENV_PATH = Path(__file__).parent.parent / ".env"

SUBJECT_PREFIX = "[CONVEYOR]"


@dataclass
class MailSettings:
    host: str
    port: int
    user: str
    password: str
    recipient: str
    sender: str
    sender_name: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.host and self.user and self.password and self.recipient)

    @property
    def from_header(self) -> str:
        if self.sender_name:
            return formataddr((self.sender_name, self.sender))
        return self.sender


def _read_dotenv() -> dict[str, str]:
    if not ENV_PATH.exists():
        return {}
    pairs: dict[str, str] = {}
    for raw in ENV_PATH.read_text().splitlines():
        entry = raw.strip()
        if not entry or entry.startswith("#") or "=" not in entry:
            continue
        key, value = entry.split("=", 1)
        pairs[key.strip()] = value.strip()
    return pairs


def load_mail_settings() -> MailSettings:
    """Merge .env over os.environ; .env wins."""
    dotenv = _read_dotenv()

    def pick(key: str, fallback: str = "") -> str:
        if key in dotenv:
            return dotenv[key]
        return os.environ.get(key, fallback)

    user = pick("SMTP_USER")
    return MailSettings(
        host=pick("SMTP_HOST"),
        port=int(pick("SMTP_PORT", "587")),
        user=user,
        password=pick("SMTP_PASS"),
        recipient=pick("ALERT_TO"),
        sender=pick("ALERT_FROM", user),
        sender_name=pick("ALERT_FROM_NAME"),
    )


def _compose(settings: MailSettings, subject: str, severity: str, text: str) -> MIMEMultipart:
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = settings.from_header
    message["To"] = settings.recipient
    message.attach(MIMEText(
        f"Content Conveyor Alert\n\nTime: {stamp}\nSeverity: {severity}\n\n{text}\n",
        "plain",
    ))
    return message


def send_alert(subject_suffix: str, body: str, severity: str = "ERROR") -> bool:
    """
    Deliver one alert email.

    severity is one of INFO, WARNING, ERROR, CRITICAL and ends up in the
    subject line. Returns True only when the server accepted the message.
    """
    subject = f"{SUBJECT_PREFIX} [{severity}] {subject_suffix}"
    settings = load_mail_settings()
    if not settings.complete:
        print(f"[ALERT SKIPPED] SMTP not configured. Subject: {subject}", file=sys.stderr)
        return False

    message = _compose(settings, subject, severity, body)
    try:
        with smtplib.SMTP(settings.host, settings.port, timeout=30) as smtp:
            smtp.starttls()
            smtp.login(settings.user, settings.password)
            smtp.send_message(message)
    except (smtplib.SMTPException, OSError) as exc:
        print(f"[ALERT FAILED] {subject}: {exc}", file=sys.stderr)
        return False
    return True


def alert_budget_threshold(
    cap_name: str,
    used: float,
    cap: float,
    pct: float,
    user_id: Optional[str] = None,
) -> bool:
    """A user's spend hit its cap; admissions stay closed until the period rolls over."""
    who = f" for user {user_id}" if user_id else ""
    report = "\n".join([
        f"Spend cap reached{who}.",
        "",
        f"  period:   {cap_name}",
        f"  cap:      ${cap:.2f}",
        f"  spent:    ${used:.4f} ({pct:.1f}%)",
        "",
        "Trigger requests now answer budget_exceeded. Items already admitted",
        "keep running until they finish.",
        "",
        "Details: logs/as-built.md and the llm_calls table.",
    ])
    return send_alert(
        f"{cap_name} budget at {pct:.0f}%{who} (${used:.4f}/${cap:.2f})",
        report,
        severity="CRITICAL" if pct >= 100 else "WARNING",
    )


def alert_stalled_items(stalled: list[dict], timeout_minutes: int) -> bool:
    """The stall sweep failed items with no progress inside the timeout."""
    listing = [
        f"  {entry['item_id']}  user={entry['user_id']}  stage={entry['stage']}"
        for entry in stalled
    ]
    report = "\n".join([
        f"No progress for over {timeout_minutes} min; marked failed (stalled):",
        "",
        *listing,
        "",
        "Retry through the API or `conveyor retry <user_id> <item_id>`.",
    ])
    return send_alert(f"{len(stalled)} stalled item(s) failed", report, severity="WARNING")
