import unittest
from datetime import datetime, timedelta, timezone

from cadence.errors import MalformedRuleError, ValidationError
from cadence.models import RecurrenceSpec
from cadence.rrule_codec import RuleCodec


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class RuleCodecTests(unittest.TestCase):
    def setUp(self) -> None:
        self.codec = RuleCodec()
        self.spec = RecurrenceSpec(
            freq="WEEKLY",
            dtstart=_utc(2025, 8, 5, 9, 0),
            interval=1,
            until=_utc(2025, 9, 30, 10, 0),
        )

    def test_encode_uses_dtstart_and_rrule_lines(self) -> None:
        rule = self.codec.encode(self.spec)
        dtstart_line, rrule_line = rule.split("\n")
        self.assertEqual(dtstart_line, "DTSTART:20250805T090000Z")
        self.assertTrue(rrule_line.startswith("RRULE:"))
        self.assertIn("FREQ=WEEKLY", rrule_line)
        self.assertIn("UNTIL=20250930T100000Z", rrule_line)
        self.assertIn("INTERVAL=1", rrule_line)

    def test_decode_recovers_fields(self) -> None:
        decoded = self.codec.decode(self.codec.encode(self.spec))
        self.assertEqual(decoded.freq, "WEEKLY")
        self.assertEqual(decoded.interval, 1)
        self.assertEqual(decoded.dtstart, _utc(2025, 8, 5, 9, 0))
        self.assertEqual(decoded.until, _utc(2025, 9, 30, 10, 0))
        self.assertEqual(decoded.byweekday, ())

    def test_round_trip_enumerates_same_instants(self) -> None:
        specs = [
            self.spec,
            RecurrenceSpec(freq="DAILY", dtstart=_utc(2025, 1, 1, 6, 30), interval=3),
            RecurrenceSpec(freq="MONTHLY", dtstart=_utc(2025, 1, 31, 12, 0), interval=1, until=_utc(2025, 12, 31)),
            RecurrenceSpec(freq="WEEKLY", dtstart=_utc(2025, 8, 4, 8, 0), interval=2, byweekday=("MO", "TH")),
        ]
        start, end = _utc(2024, 12, 1), _utc(2026, 3, 1)
        for spec in specs:
            with self.subTest(freq=spec.freq, interval=spec.interval):
                decoded = self.codec.decode(self.codec.encode(spec))
                self.assertEqual(self.codec.between(decoded, start, end), self.codec.between(spec, start, end))

    def test_between_is_inclusive_on_both_ends(self) -> None:
        anchors = self.codec.between(self.spec, _utc(2025, 8, 5, 9, 0), _utc(2025, 8, 12, 9, 0))
        self.assertEqual(anchors, [_utc(2025, 8, 5, 9, 0), _utc(2025, 8, 12, 9, 0)])

    def test_monthly_skips_months_without_the_day(self) -> None:
        spec = RecurrenceSpec(freq="MONTHLY", dtstart=_utc(2025, 1, 31, 12, 0))
        anchors = self.codec.between(spec, _utc(2025, 1, 1), _utc(2025, 5, 1))
        self.assertEqual([item.month for item in anchors], [1, 3])

    def test_with_until_preserves_other_fields(self) -> None:
        spec = RecurrenceSpec(freq="WEEKLY", dtstart=_utc(2025, 8, 4, 8, 0), interval=2, byweekday=("MO", "WE"))
        cut = _utc(2025, 9, 1, 8, 0)
        truncated = self.codec.decode(self.codec.with_until(self.codec.encode(spec), cut - timedelta(milliseconds=1)))
        self.assertEqual(truncated.freq, "WEEKLY")
        self.assertEqual(truncated.interval, 2)
        self.assertEqual(truncated.dtstart, spec.dtstart)
        self.assertEqual(truncated.byweekday, ("MO", "WE"))
        self.assertEqual(truncated.until, _utc(2025, 9, 1, 7, 59, 59))
        anchors = self.codec.between(truncated, _utc(2025, 8, 1), _utc(2025, 12, 1))
        self.assertTrue(anchors)
        self.assertTrue(all(item < cut for item in anchors))

    def test_with_until_none_makes_rule_open_ended(self) -> None:
        decoded = self.codec.decode(self.codec.with_until(self.codec.encode(self.spec), None))
        self.assertIsNone(decoded.until)

    def test_with_dtstart_reanchors(self) -> None:
        moved = self.codec.decode(self.codec.with_dtstart(self.codec.encode(self.spec), _utc(2025, 8, 6, 10, 0)))
        self.assertEqual(moved.dtstart, _utc(2025, 8, 6, 10, 0))
        self.assertEqual(moved.until, self.spec.until)

    def test_truncate_before_only_moves_until_earlier(self) -> None:
        rule = self.codec.encode(self.spec)
        earlier = self.codec.decode(self.codec.truncate_before(rule, _utc(2025, 9, 2, 9, 0)))
        self.assertEqual(earlier.until, _utc(2025, 9, 2, 8, 59, 59))
        later = self.codec.decode(self.codec.truncate_before(rule, _utc(2025, 11, 4, 9, 0)))
        self.assertEqual(later.until, _utc(2025, 9, 30, 10, 0))
        open_ended = self.codec.encode(RecurrenceSpec(freq="DAILY", dtstart=_utc(2025, 8, 5, 9, 0)))
        bounded = self.codec.decode(self.codec.truncate_before(open_ended, _utc(2025, 8, 10, 9, 0)))
        self.assertEqual(bounded.until, _utc(2025, 8, 10, 8, 59, 59))

    def test_malformed_rules_raise(self) -> None:
        bad_rules = [
            "",
            "garbage",
            "RRULE:FREQ=DAILY",
            "DTSTART:20250805T090000Z",
            "DTSTART:notadate\nRRULE:FREQ=DAILY",
            "DTSTART:20250805T090000Z\nRRULE:FREQ=YEARLY",
            "DTSTART:20250805T090000Z\nRRULE:INTERVAL=2",
            "DTSTART:20250805T090000Z\nRRULE:FREQ=DAILY;INTERVAL=0",
            "DTSTART:20250805T090000Z\nRRULE:FREQ=DAILY;COUNT=3",
            "DTSTART:20250805T090000Z\nEXDATE:20250806T090000Z\nRRULE:FREQ=DAILY",
        ]
        for rule in bad_rules:
            with self.subTest(rule=rule):
                with self.assertRaises(MalformedRuleError):
                    self.codec.decode(rule)

    def test_encode_rejects_invalid_spec(self) -> None:
        with self.assertRaises(ValidationError):
            self.codec.encode(RecurrenceSpec(freq="HOURLY", dtstart=_utc(2025, 1, 1)))
        with self.assertRaises(ValidationError):
            self.codec.encode(RecurrenceSpec(freq="DAILY", dtstart=_utc(2025, 1, 1), interval=-1))


if __name__ == "__main__":
    unittest.main()
