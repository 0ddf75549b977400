"""
Phone number normalisation and provider-text parsing for the porting lookup.
"""

from __future__ import annotations

import re

UNKNOWN_PROVIDER = "Unknown"

_NON_DIGITS = re.compile(r"\D")
_TRAILING_PUNCTUATION = re.compile(r"[.,;:!?]+$")
_MARKER = "serviced by "


def clean_phone_number(raw: str) -> str:
    """
    Strip everything but digits and convert the South African country code.

    >>> clean_phone_number("+27 18 771 2345")
    '0187712345'
    """
    cleaned = _NON_DIGITS.sub("", raw)
    if cleaned.startswith("27"):
        cleaned = "0" + cleaned[2:]
    return cleaned


def parse_provider(text: str) -> str:
    """
    Extract the provider name from a lookup result sentence.

    The provider is the first word after "serviced by " (matched
    case-insensitively) with trailing punctuation removed.
    """
    cleaned = (text or "").strip()
    if not cleaned:
        return UNKNOWN_PROVIDER

    index = cleaned.lower().find(_MARKER)
    if index == -1:
        return UNKNOWN_PROVIDER

    remainder = cleaned[index + len(_MARKER) :].split()
    if not remainder:
        return UNKNOWN_PROVIDER

    provider = _TRAILING_PUNCTUATION.sub("", remainder[0])
    return provider or UNKNOWN_PROVIDER
