"""Timestamp helpers. All stored datetimes are naive UTC."""

from datetime import datetime, timezone


def to_iso_z(moment: datetime) -> str:
    """Format a UTC datetime as ISO-8601 with millisecond precision, e.g. 2025-11-07T12:00:00.000Z."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def as_naive_utc(moment: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC already."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)
