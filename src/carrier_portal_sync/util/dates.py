from __future__ import annotations

import re
from datetime import date, datetime
from typing import Optional

from dateutil import parser as date_parser


_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_US_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")

# Placeholder values portals render in date columns instead of leaving them blank.
_NO_DATE_TOKENS = {"", "n/a", "na", "none", "null", "unavailable", "-", "--"}

_DEFAULT_A = datetime(2000, 1, 1)
_DEFAULT_B = datetime(2001, 2, 2)


def parse_portal_date(value: Optional[str]) -> Optional[date]:
    """
    Parse the date shapes carrier portals hand back:
    - "3/2/1945", "03/02/1945"
    - "1945-03-02", "1945-03-02T00:00:00.000Z"
    - "March 2, 1945"

    Returns None for blanks, placeholders and anything unparseable; a bad date is never fatal for a row.
    """
    if value is None:
        return None
    s = str(value).strip()
    if s.lower() in _NO_DATE_TOKENS:
        return None

    m = _ISO_DATE_RE.match(s)
    if m:
        try:
            return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        except ValueError:
            return None

    m = _US_DATE_RE.match(s)
    if m:
        try:
            return date(int(m.group(3)), int(m.group(1)), int(m.group(2)))
        except ValueError:
            return None

    # dateutil fills missing parts from `default`; parse against two defaults that differ in year, month and day
    # so a partial or masked date ("1945", "Mar 1945") is rejected instead of completed.
    try:
        a = date_parser.parse(s, dayfirst=False, yearfirst=False, default=_DEFAULT_A)
        b = date_parser.parse(s, dayfirst=False, yearfirst=False, default=_DEFAULT_B)
    except (ValueError, OverflowError):
        return None
    if a.date() != b.date():
        return None
    return a.date()
