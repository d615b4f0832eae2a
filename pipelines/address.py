"""Address normalisation and the generic-address gate used before any pairwise matching."""

from __future__ import annotations

import re
from typing import Optional

# Bare city/country names that carry no street-level information.
GENERIC_ADDRESSES = frozenset(
    {
        "milano",
        "roma",
        "torino",
        "firenze",
        "bologna",
        "napoli",
        "genova",
        "venezia",
        "italy",
        "italia",
    }
)

MIN_ADDRESS_LENGTH = 5

# Order matters: "viale" must be collapsed before "via".
_STREET_TYPES = (
    (re.compile(r"\bviale\s+"), "vle. "),
    (re.compile(r"\bvia\s+"), "v. "),
    (re.compile(r"\bcorso\s+"), "c.so "),
    (re.compile(r"\bpiazza\s+"), "p.za "),
)
_PUNCTUATION_RE = re.compile(r"[,.;:'\"()/\\-]+")
_WHITESPACE_RE = re.compile(r"\s+")
_DIGIT_RE = re.compile(r"\d")


def clean_whitespace(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value.strip())


def normalize_address(address: Optional[str]) -> str:
    """Return the lower-cased, abbreviation-collapsed, punctuation-free address."""
    if not address:
        return ""
    text = address.lower()
    for pattern, replacement in _STREET_TYPES:
        text = pattern.sub(replacement, text)
    text = _PUNCTUATION_RE.sub(" ", text)
    return clean_whitespace(text)


def is_generic_address(address: Optional[str]) -> bool:
    """Return True when the address is too vague to identify a building."""
    if not address or not address.strip():
        return True
    if address.strip().lower() in GENERIC_ADDRESSES:
        return True
    if not _DIGIT_RE.search(address):
        return True
    return len(normalize_address(address)) < MIN_ADDRESS_LENGTH


def dedupe_key(address: Optional[str]) -> str:
    """Key used to find an existing shared listing for the same street address."""
    return normalize_address(address)
