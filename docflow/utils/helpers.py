"""Shared request-parsing helpers for the blueprints.

parse_datetime:  ISO date / datetime string -> aware datetime, None on bad input
parse_int:       query-string int, None on bad input
"""
from datetime import date, datetime, time, timezone


def parse_datetime(value):
    """Parse ``YYYY-MM-DD`` or an ISO datetime into a UTC-aware datetime.

    Returns None for empty/invalid input. Naive values are taken as UTC.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            try:
                parsed = datetime.combine(date.fromisoformat(text), time.min)
            except ValueError:
                return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_int(value):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
