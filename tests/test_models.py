import unittest
from datetime import datetime, timedelta, timezone

from dayline.models import (
    AppConfig,
    Candidate,
    CommuteKind,
    DerivedSignal,
    EventExtension,
    EventUpdate,
    PersistedEvent,
    PlaceKind,
    ReconciliationPlan,
    ScreenTimeKind,
    UnknownSignal,
    UserSignal,
    ingestion_window,
    parse_iso_datetime,
    previous_window,
    signal_from_meta,
)


class ModelsTests(unittest.TestCase):
    def test_parse_iso_datetime_accepts_zulu_and_naive(self) -> None:
        self.assertEqual(
            parse_iso_datetime("2026-01-29T10:00:00Z"),
            datetime(2026, 1, 29, 10, 0, tzinfo=timezone.utc),
        )
        self.assertEqual(parse_iso_datetime("2026-01-29T10:00:00").tzinfo, timezone.utc)
        self.assertIsNone(parse_iso_datetime(None))
        with self.assertRaises(ValueError):
            parse_iso_datetime("not a date")

    def test_signal_from_meta(self) -> None:
        self.assertEqual(signal_from_meta({"source": "user"}), UserSignal())
        self.assertEqual(signal_from_meta({"source": "actual_adjust"}), UserSignal())
        self.assertEqual(
            signal_from_meta({"source": "derived", "source_id": "st-1", "app_id": "com.slack.Slack"}),
            DerivedSignal(source_id="st-1", kind=ScreenTimeKind(app_id="com.slack.Slack")),
        )
        self.assertEqual(
            signal_from_meta({"source": "system", "source_id": "loc-1", "kind": "location_block"}),
            DerivedSignal(source_id="loc-1", kind=PlaceKind(place_id=None)),
        )
        self.assertEqual(
            signal_from_meta({"source": "derived", "kind": "commute"}),
            DerivedSignal(source_id=None, kind=CommuteKind()),
        )
        self.assertEqual(signal_from_meta({"source": "ical"}), UnknownSignal(source="ical"))
        self.assertEqual(signal_from_meta(None), UnknownSignal(source=""))

    def test_persisted_event_round_trips_meta(self) -> None:
        event = PersistedEvent.from_dict(
            {
                "id": "evt-1",
                "user_id": "user-1",
                "title": "At Office",
                "scheduled_start": "2026-01-29T10:00:00Z",
                "scheduled_end": "2026-01-29T10:30:00Z",
                "meta": {"source": "derived", "source_id": "loc-1", "kind": "location_block", "place_id": "p-1"},
                "locked_at": None,
            }
        )
        self.assertTrue(event.is_derived)
        self.assertFalse(event.is_locked)
        self.assertEqual(event.source_id, "loc-1")
        self.assertEqual(event.kind, PlaceKind(place_id="p-1"))
        self.assertEqual(
            event.to_dict()["meta"],
            {"source": "derived", "source_id": "loc-1", "kind": "location_block", "place_id": "p-1"},
        )

    def test_candidate_from_dict_accepts_flat_fields(self) -> None:
        candidate = Candidate.from_dict(
            {
                "source_id": " st-1 ",
                "title": "Slack",
                "scheduled_start": "2026-01-29T10:00:00Z",
                "scheduled_end": "2026-01-29T10:30:00Z",
                "app_id": "com.slack.Slack",
            }
        )
        self.assertEqual(candidate.source_id, "st-1")
        self.assertEqual(candidate.kind, ScreenTimeKind(app_id="com.slack.Slack"))
        self.assertEqual(candidate.to_meta(), {"source": "derived", "source_id": "st-1", "app_id": "com.slack.Slack"})

    def test_candidate_piece_suffixes_source_id(self) -> None:
        start = datetime(2026, 1, 29, 10, 0, tzinfo=timezone.utc)
        candidate = Candidate("loc-1", "Office", start, start + timedelta(hours=1), PlaceKind("p-1"))
        piece = candidate.piece(start + timedelta(minutes=40), start + timedelta(hours=1), 2)
        self.assertEqual(piece.source_id, "loc-1:2")
        self.assertEqual(piece.kind, PlaceKind("p-1"))
        self.assertEqual(candidate.source_id, "loc-1")

    def test_plan_protect_dedupes_and_counts(self) -> None:
        plan = ReconciliationPlan()
        plan.protect("a")
        plan.protect("a")
        plan.merge(ReconciliationPlan(protected_ids=["a", "b"], extensions=[EventExtension("e", datetime.now(timezone.utc))]))
        self.assertEqual(plan.protected_ids, ["a", "b"])
        self.assertFalse(plan.is_empty)
        self.assertEqual(plan.counts()["extended"], 1)
        self.assertEqual(plan.counts()["protected"], 2)

    def test_update_to_dict_only_has_changed_fields(self) -> None:
        update = EventUpdate(event_id="e-1", new_title="At HQ")
        self.assertEqual(update.to_dict(), {"event_id": "e-1", "new_title": "At HQ"})

    def test_config_values_are_clamped(self) -> None:
        config = AppConfig.from_dict(
            {
                "reconcile": {"extension_gap_seconds": -5, "min_segment_seconds": "30"},
                "ingestion": {"window_minutes": 0, "lock_events_after_hours": -1},
            }
        )
        self.assertEqual(config.reconcile.extension_gap_seconds, 0)
        self.assertEqual(config.reconcile.min_segment, timedelta(seconds=30))
        self.assertEqual(config.ingestion.window_minutes, 1)
        self.assertEqual(config.ingestion.lock_events_after_hours, 0)

    def test_ingestion_window_is_last_completed_slot(self) -> None:
        now = datetime(2026, 1, 29, 10, 47, 12, tzinfo=timezone.utc)
        start, end = ingestion_window(now, 30)
        self.assertEqual(start, datetime(2026, 1, 29, 10, 0, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2026, 1, 29, 10, 30, tzinfo=timezone.utc))
        self.assertEqual(previous_window(start, end), (datetime(2026, 1, 29, 9, 30, tzinfo=timezone.utc), start))

    def test_ingestion_window_wraps_midnight(self) -> None:
        now = datetime(2026, 1, 29, 0, 10, tzinfo=timezone.utc)
        start, end = ingestion_window(now, 30)
        self.assertEqual(start, datetime(2026, 1, 28, 23, 30, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2026, 1, 29, 0, 0, tzinfo=timezone.utc))


if __name__ == "__main__":
    unittest.main()
