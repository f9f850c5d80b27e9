from __future__ import annotations

import unicodedata
from typing import Optional


def normalize_name(value: Optional[str]) -> str:
    """
    Case-fold, trim and collapse internal whitespace. Used only to build match keys.
    """
    if not value:
        return ""
    s = unicodedata.normalize("NFKC", str(value))
    return " ".join(s.casefold().split())


def split_last_comma_first(raw: Optional[str]) -> tuple[str, str]:
    """
    Split "LAST, FIRST M" into (first, last). Without a comma the whole string is the first name.
    """
    s = " ".join((raw or "").split())
    if "," not in s:
        return s, ""
    last, first = s.split(",", 1)
    return first.strip(), last.strip()


def split_first_last(raw: Optional[str]) -> tuple[str, str]:
    """
    Split "First Last Suffix" on the first run of whitespace into (first, last).
    """
    parts = (raw or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])
