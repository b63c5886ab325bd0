"""Recipient parsing and JID construction."""

from __future__ import annotations

import re

USER_DOMAIN = "s.whatsapp.net"
GROUP_DOMAIN = "g.us"
DEFAULT_COUNTRY_CODE = "62"

_PHONE_RE = re.compile(r"^\d+$")
_NON_DIGITS_RE = re.compile(r"\D")


def is_jid(recipient: str) -> bool:
    """Return ``True`` when ``recipient`` is already a network identifier."""
    value = (recipient or "").strip()
    return value.endswith("@" + USER_DOMAIN) or value.endswith("@" + GROUP_DOMAIN)


def is_group_jid(jid: str) -> bool:
    return (jid or "").strip().endswith("@" + GROUP_DOMAIN)


def is_phone_recipient(recipient: str) -> bool:
    """Phone numbers are digit-only; anything else is a group display name."""
    return bool(_PHONE_RE.match((recipient or "").strip()))


def normalize_phone_number(recipient: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Strip non-digits and replace a leading trunk ``0`` with the country code."""
    digits = _NON_DIGITS_RE.sub("", recipient or "")
    if digits.startswith("0"):
        digits = country_code + digits[1:]
    return digits


def phone_to_jid(recipient: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Build the user JID for a local or international phone number."""
    return f"{normalize_phone_number(recipient, country_code)}@{USER_DOMAIN}"


def normalize_subject(name: str) -> str:
    """Key used by the group directory: trimmed and case-folded."""
    return (name or "").strip().lower()
