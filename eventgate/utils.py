"""Utility helpers for EventGate."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
import re
import unicodedata

from markupsafe import Markup, escape

UNKNOWN_NAME = "Unknown"
NO_EMAIL = "No email"

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
PHONE_PATTERN = re.compile(r"^\+?[0-9]{10,15}$")
URL_PATTERN = re.compile(
    r"^(https?://)?(www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b"
    r"([-a-zA-Z0-9()@:%_+.~#?&/=]*)$"
)

_slug_invalid = re.compile(r"[^a-z0-9]+")

_NAME_KEYS = ("name", "fullName", "full_name")
_FIRST_NAME_KEYS = ("firstName", "first_name")
_LAST_NAME_KEYS = ("lastName", "last_name")
_EMAIL_KEYS = (
    "email",
    "emailAddress",
    "email_address",
    "corporateEmail",
    "userEmail",
)


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def slugify(value: str) -> str:
    """Return a canonical slug suitable for URLs."""
    value = (
        unicodedata.normalize("NFKD", value or "")
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    value = value.strip().lower()
    value = _slug_invalid.sub("-", value)
    value = value.strip("-")
    return value


def is_valid_email(value: str | None) -> bool:
    return bool(value) and EMAIL_PATTERN.match(value.strip()) is not None


def _text(value) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _first_present(answers: Mapping, keys) -> str | None:
    for key in keys:
        value = _text(answers.get(key))
        if value:
            return value
    return None


def extract_name(answers: Mapping | None) -> str:
    """Best-effort display name from a free-form answer map.

    Direct keys win, then first/last name pairs, then custom
    ``question_name_*`` keys, then any other key mentioning "name". Keys are
    scanned in the map's own order so the result is stable for a given input.
    """
    if not answers:
        return UNKNOWN_NAME

    direct = _first_present(answers, _NAME_KEYS)
    if direct:
        return direct

    first = _first_present(answers, _FIRST_NAME_KEYS)
    if first:
        last = _first_present(answers, _LAST_NAME_KEYS) or ""
        return f"{first} {last}".strip()

    for key, value in answers.items():
        if str(key).startswith("question_name_") and _text(value):
            return _text(value)

    for key, value in answers.items():
        if "name" in str(key).lower() and _text(value):
            return _text(value)

    return UNKNOWN_NAME


def extract_email(answers: Mapping | None) -> str:
    """Best-effort email address from a free-form answer map."""
    if not answers:
        return NO_EMAIL

    direct = _first_present(answers, _EMAIL_KEYS)
    if direct:
        return direct

    for key, value in answers.items():
        if str(key).startswith("question_email_") and _text(value):
            return _text(value)

    for key, value in answers.items():
        if "email" in str(key).lower() and _text(value):
            return _text(value)

    return NO_EMAIL


def text_to_html(value: str | None) -> Markup:
    """Escape plain text and wrap each non-blank line in a paragraph."""
    if not value:
        return Markup("")
    lines = [line.strip() for line in value.splitlines()]
    return Markup("").join(
        Markup("<p>{}</p>").format(escape(line)) for line in lines if line
    )


def humanize_time(value: datetime | None, *, now: datetime | None = None) -> str:
    """Return a friendly string such as 'in 2 days' or '3 hours ago'."""
    if not value:
        return ""
    now = now or utcnow()
    delta_seconds = (value - now).total_seconds()
    past = delta_seconds < 0
    seconds = abs(delta_seconds)

    units = [
        ("week", 7 * 24 * 3600),
        ("day", 24 * 3600),
        ("hour", 3600),
        ("minute", 60),
    ]

    for name, step in units:
        amount = int(seconds // step)
        if amount >= 1:
            label = name if amount == 1 else f"{name}s"
            return f"{amount} {label} ago" if past else f"in {amount} {label}"
    return "moments ago" if past else "in moments"


def format_event_date(value: datetime | None) -> str:
    if not value:
        return "TBD"
    return value.strftime("%B %d, %Y at %H:%M UTC")
