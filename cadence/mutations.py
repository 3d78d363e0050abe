from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from cadence.errors import MissingOccurrenceDateError, NotFoundError, ValidationError
from cadence.event_store import EventStore
from cadence.models import (
    DeleteResult,
    Event,
    EventCreate,
    EventException,
    EventUpdate,
    Occurrence,
    OccurrencePatch,
    Participant,
    RecurrenceInput,
    RecurrenceSpec,
    parse_iso_datetime,
    serialize_datetime,
)
from cadence.occurrences import expand
from cadence.rrule_codec import DEFAULT_CODEC, RuleCodec
from cadence.timezones import to_absolute, to_zone


logger = logging.getLogger(__name__)


class Scope(str, Enum):
    THIS_EVENT = "thisEvent"
    THIS_AND_FOLLOWING = "thisAndFollowing"
    ALL_EVENTS = "allEvents"


def parse_scope(value: str | Scope | None, field_name: str = "updateType") -> Scope:
    if isinstance(value, Scope):
        return value
    try:
        return Scope(str(value or "").strip())
    except ValueError as exc:
        raise ValidationError(f"Invalid {field_name}") from exc


def new_id() -> str:
    return str(uuid.uuid4())


def _whole_seconds(value: datetime) -> datetime:
    # Rule text stores DTSTART to the second; a recurring master must match its own anchor.
    return value.replace(microsecond=0)


def _participants(user_ids: list[str]) -> list[Participant]:
    return [Participant(user_id=str(user_id)) for user_id in user_ids]


def occurrence_view(event: Event, occurrence: Occurrence) -> dict[str, Any]:
    """Occurrence enriched with the master's display fields; override values win."""
    override = occurrence.override or OccurrencePatch()
    zone = override.timezone or event.timezone
    participants = override.participants if override.participants is not None else event.participants
    payload = occurrence.to_dict()
    payload.update(
        {
            "event_id": event.id,
            "title": override.title if override.title is not None else event.title,
            "description": override.description if override.description is not None else event.description,
            "timezone": zone,
            "series_id": event.series_id,
            "participants": [item.to_dict() for item in participants],
            "local_start_time": to_zone(occurrence.start_time, zone).isoformat(),
            "local_end_time": to_zone(occurrence.end_time, zone).isoformat(),
        }
    )
    return payload


class MutationEngine:
    def __init__(
        self,
        repository: EventStore,
        codec: RuleCodec | None = None,
        id_factory: Callable[[], str] | None = None,
        timezone_converter: Callable[[str, str], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.codec = codec or DEFAULT_CODEC
        self.id_factory = id_factory or new_id
        self.to_absolute = timezone_converter or to_absolute

    def _load(self, event_id: str) -> Event:
        event = self.repository.find_by_id(event_id)
        if event is None:
            raise NotFoundError("Event not found")
        return event

    @staticmethod
    def _occurrence_date(value: str | datetime | None, scope: Scope) -> datetime:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise MissingOccurrenceDateError(scope.value)
        try:
            return parse_iso_datetime(value)
        except ValueError as exc:
            raise ValidationError(f"Invalid occurrenceDate: {value}") from exc

    @staticmethod
    def _check_span(start: datetime, end: datetime) -> None:
        if end <= start:
            raise ValidationError("endTime must be later than startTime")

    def _recurrence_spec(self, recurrence: RecurrenceInput, dtstart: datetime, zone: str) -> RecurrenceSpec:
        return RecurrenceSpec(
            freq=str(recurrence.freq).upper(),
            dtstart=dtstart,
            interval=recurrence.interval or 1,
            until=self.to_absolute(recurrence.until, zone) if recurrence.until else None,
            byweekday=tuple(recurrence.byweekday or ()),
        )

    def _audit(self, event: Event, action: str, actor_id: str, **details: Any) -> None:
        details.setdefault("title", event.title)
        self.repository.record_audit_event(event_id=event.id, action=action, details=details, actor_id=actor_id)

    def get_event(self, event_id: str) -> Event:
        return self._load(event_id)

    def create_event(self, payload: EventCreate, created_by: str) -> Event:
        start = self.to_absolute(payload.start_time, payload.timezone)
        end = self.to_absolute(payload.end_time, payload.timezone)
        if payload.recurrence is not None:
            start, end = _whole_seconds(start), _whole_seconds(end)
        self._check_span(start, end)

        recurrence_rule = None
        series_id = None
        if payload.recurrence is not None:
            series_id = self.id_factory()
            recurrence_rule = self.codec.encode(self._recurrence_spec(payload.recurrence, start, payload.timezone))

        event = Event(
            id=self.id_factory(),
            title=payload.title,
            description=payload.description or "",
            start_time=start,
            end_time=end,
            timezone=payload.timezone,
            recurrence_rule=recurrence_rule,
            series_id=series_id,
            participants=_participants(payload.participants or []),
            created_by=created_by,
        )
        self.repository.create(event)
        self._audit(event, "create_event", created_by, recurring=recurrence_rule is not None)
        logger.info("Created event %s for %s", event.id, created_by)
        return event

    def list_occurrences(self, owner_id: str, range_start: datetime, range_end: datetime) -> list[dict[str, Any]]:
        if range_end < range_start:
            raise ValidationError("end must be later than start")
        output: list[dict[str, Any]] = []
        for event in self.repository.find_by_owner(owner_id):
            for occurrence in expand(event, range_start, range_end, self.codec):
                output.append(occurrence_view(event, occurrence))
        output.sort(key=lambda item: (item["start_time"], item["event_id"]))
        return output

    def update_event(
        self,
        event_id: str,
        scope: str | Scope,
        payload: EventUpdate,
        occurrence_date: str | datetime | None = None,
        actor_id: str = "",
    ) -> Event:
        scope = parse_scope(scope, "updateType")
        event = self._load(event_id)
        if scope is Scope.ALL_EVENTS:
            return self._update_all(event, payload, actor_id)
        if scope is Scope.THIS_EVENT:
            return self._update_this(event, payload, self._occurrence_date(occurrence_date, scope), actor_id)
        cut = self._occurrence_date(occurrence_date, scope)
        if not event.is_recurring:
            return self._update_all(event, payload, actor_id)
        return self._split(event, payload, cut, actor_id)

    def _update_all(self, event: Event, payload: EventUpdate, actor_id: str) -> Event:
        zone = payload.timezone or event.timezone
        previous_start = event.start_time
        start = self.to_absolute(payload.start_time, zone) if payload.start_time else event.start_time
        end = self.to_absolute(payload.end_time, zone) if payload.end_time else event.end_time
        if payload.recurrence is not None or event.is_recurring:
            start, end = _whole_seconds(start), _whole_seconds(end)
        self._check_span(start, end)

        recurrence_rule = event.recurrence_rule
        if payload.recurrence is not None:
            recurrence_rule = self.codec.encode(self._recurrence_spec(payload.recurrence, start, zone))
        elif recurrence_rule and start != previous_start:
            recurrence_rule = self.codec.with_dtstart(recurrence_rule, start)

        if payload.title:
            event.title = payload.title
        if payload.description is not None:
            event.description = payload.description
        if payload.timezone:
            event.timezone = payload.timezone
        if payload.participants is not None:
            event.participants = _participants(payload.participants)
        event.start_time = start
        event.end_time = end
        event.recurrence_rule = recurrence_rule
        if recurrence_rule and not event.series_id:
            event.series_id = self.id_factory()

        self.repository.save(event)
        self._audit(event, "update_event", actor_id, scope=Scope.ALL_EVENTS.value)
        logger.info("Updated all occurrences of event %s", event.id)
        return event

    def _update_this(self, event: Event, payload: EventUpdate, occurrence: datetime, actor_id: str) -> Event:
        if payload.delete_occurrence:
            event.exceptions.append(EventException(date=occurrence, is_deleted=True))
        else:
            zone = payload.timezone or event.timezone
            override = OccurrencePatch(
                title=payload.title or None,
                description=payload.description,
                start_time=self.to_absolute(payload.start_time, zone) if payload.start_time else None,
                end_time=self.to_absolute(payload.end_time, zone) if payload.end_time else None,
                timezone=payload.timezone or None,
                participants=_participants(payload.participants) if payload.participants is not None else None,
            )
            if override.is_empty():
                raise ValidationError("thisEvent update must change at least one field")
            if override.start_time and override.end_time:
                self._check_span(override.start_time, override.end_time)
            event.exceptions.append(EventException(date=occurrence, override=override))

        self.repository.save(event)
        self._audit(
            event,
            "update_event",
            actor_id,
            scope=Scope.THIS_EVENT.value,
            occurrence_date=serialize_datetime(occurrence),
            deleted=payload.delete_occurrence,
        )
        logger.info("Added exception at %s to event %s", serialize_datetime(occurrence), event.id)
        return event

    def _split(self, event: Event, payload: EventUpdate, cut: datetime, actor_id: str) -> Event:
        original_spec = self.codec.decode(event.recurrence_rule)
        truncated_rule = self.codec.truncate_before(event.recurrence_rule, cut)
        series_id = event.series_id or self.id_factory()

        zone = payload.timezone or event.timezone
        start = self.to_absolute(payload.start_time, zone) if payload.start_time else cut
        end = self.to_absolute(payload.end_time, zone) if payload.end_time else start + event.duration
        start, end = _whole_seconds(start), _whole_seconds(end)
        self._check_span(start, end)
        if payload.recurrence is not None:
            successor_rule = self.codec.encode(self._recurrence_spec(payload.recurrence, start, zone))
        else:
            successor_rule = self.codec.encode(replace(original_spec, dtstart=start, until=None))

        successor = Event(
            id=self.id_factory(),
            title=payload.title or event.title,
            description=payload.description if payload.description is not None else event.description,
            start_time=start,
            end_time=end,
            timezone=zone,
            recurrence_rule=successor_rule,
            series_id=series_id,
            participants=(
                _participants(payload.participants)
                if payload.participants is not None
                else [Participant(user_id=item.user_id) for item in event.participants]
            ),
            created_by=event.created_by,
        )

        # Save then create is not atomic; a failure in between leaves the
        # original truncated without a successor.
        event.recurrence_rule = truncated_rule
        event.series_id = series_id
        self.repository.save(event)
        self.repository.create(successor)
        self._audit(
            event,
            "split_series",
            actor_id,
            cut=serialize_datetime(cut),
            successor_id=successor.id,
            series_id=series_id,
        )
        logger.info("Split event %s at %s into %s", event.id, serialize_datetime(cut), successor.id)
        return successor

    def delete_event(
        self,
        event_id: str,
        scope: str | Scope,
        occurrence_date: str | datetime | None = None,
        actor_id: str = "",
    ) -> DeleteResult:
        scope = parse_scope(scope, "deleteType")
        event = self._load(event_id)

        if scope is Scope.ALL_EVENTS:
            if event.series_id:
                count = self.repository.delete_by_series_id(event.series_id)
            else:
                count = 1 if self.repository.delete_one(event.id) else 0
            self._audit(event, "delete_event", actor_id, scope=scope.value, deleted_count=count)
            logger.info("Deleted %s event(s) for %s", count, event.id)
            return DeleteResult(message="All events in series deleted", deleted_count=count)

        occurrence = self._occurrence_date(occurrence_date, scope)
        if scope is Scope.THIS_EVENT:
            event.exceptions.append(EventException(date=occurrence, is_deleted=True))
            self.repository.save(event)
            self._audit(event, "delete_occurrence", actor_id, occurrence_date=serialize_datetime(occurrence))
            logger.info("Marked occurrence %s of event %s deleted", serialize_datetime(occurrence), event.id)
            return DeleteResult(message="Occurrence marked deleted (exception created)")

        if not event.is_recurring:
            count = 1 if self.repository.delete_one(event.id) else 0
            self._audit(event, "delete_event", actor_id, scope=scope.value, deleted_count=count)
            return DeleteResult(message="Event deleted", deleted_count=count)

        event.recurrence_rule = self.codec.truncate_before(event.recurrence_rule, occurrence)
        event.exceptions = [item for item in event.exceptions if item.date < occurrence]
        self.repository.save(event)
        self._audit(event, "truncate_series", actor_id, cut=serialize_datetime(occurrence))
        logger.info("Truncated event %s before %s", event.id, serialize_datetime(occurrence))
        return DeleteResult(message="This and following occurrences removed/series truncated")
