from __future__ import annotations

import re
from datetime import date

from .models import Channel

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_registration(registration: str) -> str:
    """Canonical plate form: uppercase with every whitespace character removed."""
    return _WHITESPACE_RE.sub("", registration).upper()


def normalize_phone(phone: str | None) -> str | None:
    """Convert a UK-style phone number into E.164-like form.

    ``07700 900123`` becomes ``+447700900123``; numbers already carrying a
    ``44`` country code gain a leading ``+``. Returns None when no digits remain.
    """
    if phone is None:
        return None
    digits = "".join(ch for ch in phone if ch.isdigit())
    if not digits:
        return None
    if digits.startswith("44"):
        return f"+{digits}"
    if digits.startswith("0"):
        return f"+44{digits[1:]}"
    if len(digits) == 10:
        return f"+44{digits}"
    return f"+{digits}"


def format_due_date(value: date) -> str:
    return value.strftime("%d %b %Y")


def mask_contact_target(contact_target: str | None, channel: Channel) -> str:
    normalized = (contact_target or "").strip()
    if not normalized:
        return "***"

    if channel == "EMAIL" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel == "SMS":
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
