"""Phone number canonicalisation for matching inbound senders to profiles.

The canonical form is the bare national number: formatting characters are
stripped, then a ``+1`` prefix or the leading ``1`` of an 11-digit number.
"""

from __future__ import annotations

import re

_FORMATTING = re.compile(r"[\s\-().]")


def normalize_phone(raw: str | None) -> str:
    if not raw:
        return ""
    phone = _FORMATTING.sub("", raw.strip())
    if phone.startswith("+1"):
        phone = phone[2:]
    elif phone.startswith("1") and len(phone) == 11:
        phone = phone[1:]
    return phone


def phone_candidates(raw: str | None) -> list[str]:
    """Stored spellings a profile phone may use for the same number."""
    canonical = normalize_phone(raw)
    if not canonical:
        return []
    return [canonical, f"+1{canonical}", f"1{canonical}"]


def to_e164(raw: str) -> str:
    phone = _FORMATTING.sub("", raw.strip())
    if phone.startswith("+"):
        return phone
    canonical = normalize_phone(phone)
    if len(canonical) == 10:
        return f"+1{canonical}"
    return f"+{phone}"
