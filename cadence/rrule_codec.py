from __future__ import annotations

import re
from dataclasses import replace
from datetime import date, datetime, time, timedelta, timezone

from dateutil.rrule import DAILY, FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, rrule
from icalendar.prop import vDatetime, vRecur

from cadence.errors import MalformedRuleError, ValidationError
from cadence.models import FREQUENCIES, RecurrenceSpec


_FREQ_MAP = {"DAILY": DAILY, "WEEKLY": WEEKLY, "MONTHLY": MONTHLY}
_WEEKDAYS = {"MO": MO, "TU": TU, "WE": WE, "TH": TH, "FR": FR, "SA": SA, "SU": SU}
_BYDAY_PATTERN = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")
_SUPPORTED_PARTS = {"FREQ", "INTERVAL", "UNTIL", "BYDAY"}
_ONE_MS = timedelta(milliseconds=1)


def _as_utc(value: datetime | date) -> datetime:
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_byday(values: tuple[str, ...] | list[str]) -> tuple[str, ...]:
    output = []
    for value in values:
        text = str(value).strip().upper()
        if not _BYDAY_PATTERN.match(text):
            raise ValueError(f"Invalid BYDAY value: {value}")
        output.append(text)
    return tuple(output)


def _dateutil_weekdays(byweekday: tuple[str, ...]) -> list | None:
    if not byweekday:
        return None
    output = []
    for code in byweekday:
        match = _BYDAY_PATTERN.match(code)
        ordinal, day = match.group(1), match.group(2)
        output.append(_WEEKDAYS[day](int(ordinal)) if ordinal else _WEEKDAYS[day])
    return output


class RuleCodec:
    """Converts between :class:`RecurrenceSpec` and the stored rule text.

    The text form is ``DTSTART:<utc>`` and ``RRULE:<parts>`` on two lines.
    Seconds are the finest resolution the text keeps.
    """

    def encode(self, spec: RecurrenceSpec) -> str:
        freq = str(spec.freq or "").strip().upper()
        if freq not in FREQUENCIES:
            raise ValidationError(f"Unsupported frequency: {spec.freq}")
        interval = int(spec.interval or 1)
        if interval < 1:
            raise ValidationError("interval must be a positive integer")
        try:
            byweekday = _normalize_byday(spec.byweekday or ())
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        recur = vRecur()
        recur["FREQ"] = freq
        if spec.until is not None:
            recur["UNTIL"] = _as_utc(spec.until)
        recur["INTERVAL"] = interval
        if byweekday:
            recur["BYDAY"] = list(byweekday)
        dtstart_text = vDatetime(_as_utc(spec.dtstart)).to_ical().decode("ascii")
        rule_text = recur.to_ical().decode("ascii")
        return f"DTSTART:{dtstart_text}\nRRULE:{rule_text}"

    def decode(self, rule: str) -> RecurrenceSpec:
        lines = [line.strip() for line in str(rule or "").splitlines() if line.strip()]
        dtstart_text = ""
        rule_text = ""
        for line in lines:
            name, _, value = line.partition(":")
            name = name.strip().upper()
            if name == "DTSTART":
                dtstart_text = value.strip()
            elif name == "RRULE":
                rule_text = value.strip()
            else:
                raise MalformedRuleError(f"Unexpected line in recurrence rule: {line}")
        if not dtstart_text or not rule_text:
            raise MalformedRuleError(f"Recurrence rule needs DTSTART and RRULE: {rule!r}")

        try:
            dtstart = _as_utc(vDatetime.from_ical(dtstart_text))
            parts = vRecur.from_ical(rule_text)
        except ValueError as exc:
            raise MalformedRuleError(f"Malformed recurrence rule: {rule!r}") from exc

        keys = {str(key).upper() for key in parts}
        unsupported = keys - _SUPPORTED_PARTS
        if unsupported:
            raise MalformedRuleError(f"Unsupported recurrence parts: {', '.join(sorted(unsupported))}")

        freq_values = parts.get("FREQ") or []
        freq = str(freq_values[0]).upper() if freq_values else ""
        if freq not in FREQUENCIES:
            raise MalformedRuleError(f"Unsupported or missing FREQ in rule: {rule!r}")

        interval_values = parts.get("INTERVAL") or [1]
        try:
            interval = int(interval_values[0])
        except (TypeError, ValueError) as exc:
            raise MalformedRuleError(f"Invalid INTERVAL in rule: {rule!r}") from exc
        if interval < 1:
            raise MalformedRuleError(f"INTERVAL must be positive: {rule!r}")

        until_values = parts.get("UNTIL") or []
        until = _as_utc(until_values[0]) if until_values else None

        try:
            byweekday = _normalize_byday(parts.get("BYDAY") or [])
        except ValueError as exc:
            raise MalformedRuleError(str(exc)) from exc

        return RecurrenceSpec(freq=freq, dtstart=dtstart, interval=interval, until=until, byweekday=byweekday)

    def with_until(self, rule: str, until: datetime | None) -> str:
        spec = self.decode(rule)
        return self.encode(replace(spec, until=until))

    def truncate_before(self, rule: str, cut: datetime) -> str:
        """Bound ``rule`` so nothing at or after ``cut`` is produced.

        An existing ``UNTIL`` earlier than the cut is left alone.
        """
        current = self.decode(rule).until
        until = _as_utc(cut) - _ONE_MS
        if current is not None and current < until:
            return rule
        return self.with_until(rule, until)

    def with_dtstart(self, rule: str, dtstart: datetime) -> str:
        return self.encode(replace(self.decode(rule), dtstart=dtstart))

    def between(self, spec: RecurrenceSpec, start: datetime, end: datetime) -> list[datetime]:
        """Anchor instants of ``spec`` within ``[start, end]``, both ends inclusive."""
        rule = rrule(
            _FREQ_MAP[spec.freq],
            dtstart=_as_utc(spec.dtstart),
            interval=spec.interval,
            until=_as_utc(spec.until) if spec.until is not None else None,
            byweekday=_dateutil_weekdays(spec.byweekday),
        )
        return [_as_utc(item) for item in rule.between(_as_utc(start), _as_utc(end), inc=True)]


DEFAULT_CODEC = RuleCodec()
