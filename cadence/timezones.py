from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cadence.errors import ValidationError


def resolve_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(str(name or "").strip() or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {name}") from exc


def to_absolute(local_time: str | datetime, zone_name: str) -> datetime:
    """Interpret a wall-clock time in ``zone_name`` and return the UTC instant.

    Values that already carry an offset (or a trailing ``Z``) are absolute and
    only normalized to UTC.
    """
    if isinstance(local_time, datetime):
        parsed = local_time
    else:
        text = str(local_time or "").strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f"Invalid date format: {local_time}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=resolve_zone(zone_name))
    return parsed.astimezone(timezone.utc)


def to_zone(value: datetime, zone_name: str) -> datetime:
    return value.astimezone(resolve_zone(zone_name))
