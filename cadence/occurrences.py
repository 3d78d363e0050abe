from __future__ import annotations

from datetime import datetime, timezone

from cadence.models import Event, EventException, Occurrence, instant_ms
from cadence.rrule_codec import DEFAULT_CODEC, RuleCodec


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _index_exceptions(exceptions: list[EventException]) -> dict[int, EventException]:
    # A deletion marker wins over any override at the same instant; among
    # overrides the most recently appended one applies.
    index: dict[int, EventException] = {}
    for item in exceptions:
        key = instant_ms(item.date)
        current = index.get(key)
        if current is not None and current.is_deleted:
            continue
        index[key] = item
    return index


def _materialize(event: Event, anchor: datetime, found: EventException | None) -> Occurrence | None:
    duration = event.duration
    if found is None or (not found.is_deleted and found.override is None):
        return Occurrence(start_time=anchor, end_time=anchor + duration, original_event_id=event.id)
    if found.is_deleted:
        return None
    override = found.override
    start = override.start_time or anchor
    end = override.end_time or (start + duration)
    return Occurrence(start_time=start, end_time=end, original_event_id=event.id, override=override)


def expand(
    event: Event,
    range_start: datetime,
    range_end: datetime,
    codec: RuleCodec | None = None,
) -> list[Occurrence]:
    """Materialize the occurrences of ``event`` whose anchors fall in the range.

    Both range ends are inclusive. Exceptions match an anchor only on the exact
    instant (millisecond precision). The result is sorted by start time.
    """
    codec = codec or DEFAULT_CODEC
    range_start = _as_utc(range_start)
    range_end = _as_utc(range_end)
    exceptions = _index_exceptions(event.exceptions)

    if not event.is_recurring:
        anchor = _as_utc(event.start_time)
        if not range_start <= anchor <= range_end:
            return []
        found = exceptions.get(instant_ms(anchor))
        if found is not None and found.override is not None and not found.is_deleted:
            # A single event keeps its own end time when only the start moves.
            override = found.override
            return [
                Occurrence(
                    start_time=override.start_time or anchor,
                    end_time=override.end_time or event.end_time,
                    original_event_id=event.id,
                    override=override,
                )
            ]
        occurrence = _materialize(event, anchor, found)
        return [occurrence] if occurrence is not None else []

    spec = codec.decode(event.recurrence_rule)
    occurrences = []
    for anchor in codec.between(spec, range_start, range_end):
        occurrence = _materialize(event, anchor, exceptions.get(instant_ms(anchor)))
        if occurrence is not None:
            occurrences.append(occurrence)
    occurrences.sort(key=lambda item: item.start_time)
    return occurrences
