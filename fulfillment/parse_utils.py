from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from dateutil import parser as date_parser


_ISO_DATE_LENGTH = 10


def parse_date(value: str | None, dayfirst: bool = True) -> Optional[date]:
    if not value:
        return None

    cleaned = value.strip()
    if not cleaned:
        return None

    # ISO dates are unambiguous; dayfirst would swap month and day on them.
    if len(cleaned) == _ISO_DATE_LENGTH and cleaned[4] == "-" and cleaned[7] == "-":
        dayfirst = False

    try:
        parsed = date_parser.parse(cleaned, dayfirst=dayfirst)
    except (ValueError, TypeError, OverflowError):
        return None

    return parsed.date()


def coerce_date(value: Any) -> Any:
    """Turn inbound date strings like ``13/11/2020`` into ``date`` objects.

    Anything that is not a string is returned untouched so pydantic can
    report it.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        parsed = parse_date(value)
        if parsed is None:
            raise ValueError(f"Unsupported date format: {value}")
        return parsed
    return value
