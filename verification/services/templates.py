"""Email bodies for verification codes and post-verification confirmations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from html import escape

VERIFICATION_SUBJECT = "your access code"
CONFIRMATION_SUBJECT = "Archived"

CRYPTIC_STATUSES = (
    "building in progress",
    "compiling memories",
    "archive expanding",
    "data streams flowing",
    "connections forming",
    "patterns emerging",
    "systems awakening",
    "networks converging",
    "possibilities unfolding",
    "future crystallizing",
)

_DIVIDER = "────────────────────"


@dataclass(frozen=True)
class EmailTemplate:
    subject: str
    text: str
    html: str


def cryptic_status(signup_number: int) -> str:
    return CRYPTIC_STATUSES[(signup_number - 1) % len(CRYPTIC_STATUSES)]


def _html_page(body: str) -> str:
    return (
        "<!DOCTYPE html><html><body style=\"margin:0;padding:0;background-color:#000000;"
        "font-family:Arial,sans-serif;color:#999999;\">"
        "<div style=\"max-width:600px;margin:0 auto;padding:40px 20px;\">"
        f"{body}"
        "</div></body></html>"
    )


def verification_code_template(code: str, expiry_minutes: int = 15, max_attempts: int = 4) -> EmailTemplate:
    text = (
        f"your code: {code}\n\n"
        f"expires: {expiry_minutes} minutes\n"
        f"attempts: {max_attempts}\n\n"
        "don't share this.\n"
        f"{_DIVIDER}\n\n"
        "didn't request this? someone has your email.\n"
        "change your password."
    )
    html = _html_page(
        "<div style=\"font-family:monospace;font-size:2.5rem;color:#00FFFF;letter-spacing:0.3em;\">"
        f"{escape(code)}</div>"
        "<div style=\"font-size:0.9rem;line-height:1.8;margin-top:24px;\">"
        f"expires in {expiry_minutes} minutes<br>{max_attempts} attempts</div>"
        "<div style=\"color:#666666;font-size:0.8rem;margin-top:24px;\">don't share this.</div>"
        "<div style=\"color:#444444;font-size:0.75rem;border-top:1px solid #222222;padding-top:20px;\">"
        "didn't request this? someone has your email.</div>"
    )
    return EmailTemplate(subject=VERIFICATION_SUBJECT, text=text, html=html)


def confirmation_template(signup_number: int, archived_at: datetime) -> EmailTemplate:
    date = archived_at.strftime("%b %d, %Y")
    status = cryptic_status(signup_number)
    text = (
        f"#{signup_number}\n\n"
        f"archived: {date}\n"
        f"status: {status}\n"
        f"{_DIVIDER}\n\n"
        "you're in. we'll be in touch."
    )
    html = _html_page(
        "<div style=\"font-family:monospace;font-size:2.5rem;color:#00FFFF;\">"
        f"#{signup_number}</div>"
        "<div style=\"font-size:0.9rem;line-height:1.8;margin-top:24px;\">"
        f"archived: {escape(date)}<br>status: {escape(status)}</div>"
        "<div style=\"color:#666666;font-size:0.8rem;margin-top:24px;\">you're in. we'll be in touch.</div>"
    )
    return EmailTemplate(subject=CONFIRMATION_SUBJECT, text=text, html=html)
