import unittest
from datetime import datetime, timedelta, timezone

from dayline.intervals import merge_spans, overlaps, overlaps_any, subtract_spans


def at(minute: int) -> datetime:
    return datetime(2026, 1, 29, 10, 0, tzinfo=timezone.utc) + timedelta(minutes=minute)


class IntervalTests(unittest.TestCase):
    def test_overlaps_is_half_open(self) -> None:
        self.assertTrue(overlaps(at(0), at(30), at(29), at(40)))
        self.assertFalse(overlaps(at(0), at(30), at(30), at(40)))
        self.assertFalse(overlaps(at(30), at(40), at(0), at(30)))

    def test_overlaps_any(self) -> None:
        spans = [(at(0), at(5)), (at(50), at(60))]
        self.assertTrue(overlaps_any(at(4), at(10), spans))
        self.assertFalse(overlaps_any(at(5), at(50), spans))
        self.assertFalse(overlaps_any(at(5), at(50), []))

    def test_merge_spans_sorts_and_unions(self) -> None:
        merged = merge_spans([(at(20), at(30)), (at(0), at(10)), (at(5), at(15)), (at(30), at(35)), (at(40), at(40))])
        self.assertEqual(merged, [(at(0), at(15)), (at(20), at(35))])

    def test_subtract_spans(self) -> None:
        gaps = subtract_spans(at(0), at(60), [(at(10), at(20)), (at(40), at(70))])
        self.assertEqual(gaps, [(at(0), at(10)), (at(20), at(40))])

    def test_subtract_spans_ignores_blockers_outside(self) -> None:
        gaps = subtract_spans(at(10), at(20), [(at(0), at(5)), (at(30), at(40))])
        self.assertEqual(gaps, [(at(10), at(20))])

    def test_subtract_spans_min_length(self) -> None:
        gaps = subtract_spans(at(0), at(60), [(at(1), at(59))], min_length=timedelta(minutes=2))
        self.assertEqual(gaps, [])

    def test_subtract_spans_inverted_interval(self) -> None:
        self.assertEqual(subtract_spans(at(30), at(0), []), [])


if __name__ == "__main__":
    unittest.main()
