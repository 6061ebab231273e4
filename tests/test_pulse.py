"""Tests for arrival history merging and frequency timelines."""

import json
import sys
import threading
import unittest
from datetime import datetime, timedelta
from pathlib import Path

# Add src to path so we can import buspulse
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from buspulse.models import ArrivalPrediction, TripStats
from buspulse.pulse import (
    TRIP_DEFS_KEY,
    ArrivalHistoryStore,
    ArrivalMerger,
    compute_timeline,
    history_key,
    logical_date,
    minute_of_day,
    run_greedy_magnet,
)
from buspulse.storage import InMemoryKeyValueStore


class TestGreedyMagnet(unittest.TestCase):
    """Test folding relative ETAs into logged arrivals."""

    def test_candidate_within_threshold_overwrites_entry(self):
        """Test that a close candidate replaces the logged entry."""
        self.assertEqual(run_greedy_magnet([600], [2], 598), [600])
        self.assertEqual(run_greedy_magnet([600], [4], 598), [602])

    def test_candidates_in_one_snapshot_can_fold_together(self):
        """Test that candidates in one snapshot may fold into one entry."""
        # 600 is appended, then 601 snaps onto it
        self.assertEqual(run_greedy_magnet([], [2, 3], 598), [601])

    def test_candidate_beyond_threshold_is_appended(self):
        """Test that a distant candidate is added as a new bus."""
        self.assertEqual(run_greedy_magnet([600], [20], 598), [600, 618])

    def test_first_match_wins_over_closer_match(self):
        """Test that the first entry in range is the one replaced."""
        self.assertEqual(run_greedy_magnet([100, 104], [3], 100), [103, 104])

    def test_threshold_is_inclusive(self):
        """Test a candidate exactly at the threshold."""
        self.assertEqual(run_greedy_magnet([600], [7], 598), [605])
        self.assertEqual(run_greedy_magnet([600], [8], 598), [600, 606])

    def test_no_wraparound_past_midnight(self):
        """Test that minutes past 1439 are kept as is."""
        self.assertEqual(run_greedy_magnet([], [5], 1438), [1443])

    def test_result_is_sorted_and_unique(self):
        """Test that merged entries are sorted and unique."""
        self.assertEqual(run_greedy_magnet([900, 300, 300], [], 0), [300, 900])

    def test_custom_threshold(self):
        """Test merging with a custom threshold."""
        self.assertEqual(run_greedy_magnet([600], [4], 598, threshold=1), [600, 602])


class TestServiceDay(unittest.TestCase):
    """Test logical date and minute-of-day derivation."""

    def test_early_morning_belongs_to_previous_day(self):
        """Test that early morning belongs to the previous service day."""
        self.assertEqual(logical_date(datetime(2024, 1, 2, 2, 0)), "2024-01-01")
        self.assertEqual(logical_date(datetime(2024, 1, 2, 3, 59)), "2024-01-01")

    def test_day_starts_at_four(self):
        """Test the default service day boundary."""
        self.assertEqual(logical_date(datetime(2024, 1, 2, 4, 0)), "2024-01-02")

    def test_custom_day_start(self):
        """Test a custom service day boundary."""
        self.assertEqual(logical_date(datetime(2024, 1, 2, 4, 30), day_start_hour=5), "2024-01-01")

    def test_minute_of_day_is_not_shifted(self):
        """Test that the minute of day uses wall-clock time."""
        self.assertEqual(minute_of_day(datetime(2024, 1, 2, 2, 0)), 120)
        self.assertEqual(minute_of_day(datetime(2024, 1, 2, 23, 59)), 1439)

    def test_epoch_seconds_are_accepted(self):
        """Test logical dates from epoch seconds."""
        moment = datetime(2024, 3, 5, 14, 30)
        self.assertEqual(logical_date(moment.timestamp()), "2024-03-05")
        self.assertEqual(minute_of_day(moment.timestamp()), 870)


class TestComputeTimeline(unittest.TestCase):
    """Test the damped 5-minute timeline."""

    def test_no_days_gives_empty_timeline(self):
        """Test a timeline with no history."""
        self.assertEqual(compute_timeline([]), [])
        self.assertEqual(compute_timeline([{}]), [])

    def test_single_day_is_low_confidence(self):
        """Test that one day of history is low confidence."""
        timeline = compute_timeline([{"2024-01-01": []}])

        self.assertEqual(len(timeline), 288)
        self.assertTrue(all(point.is_low_confidence for point in timeline))
        self.assertTrue(all(point.score == 0 for point in timeline))
        self.assertEqual([p.minute for p in timeline[:3]], [0, 5, 10])
        self.assertEqual(timeline[-1].minute, 1435)

    def test_scores_are_damped(self):
        """Test damping of bucket scores."""
        timeline = compute_timeline([{"2024-01-01": [5, 600, 1200]}])
        by_minute = {point.minute: point.score for point in timeline}

        self.assertAlmostEqual(by_minute[5], 0.25)
        self.assertAlmostEqual(by_minute[600], 0.25)
        self.assertAlmostEqual(by_minute[1200], 0.25)
        self.assertEqual(by_minute[0], 0)
        self.assertEqual(by_minute[10], 0)

    def test_same_date_across_histories_counts_once(self):
        """Test that a date shared by several histories counts once."""
        timeline = compute_timeline(
            [
                {"2024-01-01": [600]},
                {"2024-01-01": [602], "2024-01-02": []},
            ]
        )
        by_minute = {point.minute: point.score for point in timeline}

        # Two buses over two days, damping 3
        self.assertAlmostEqual(by_minute[600], 2 / 5)

    def test_enough_days_is_confident(self):
        """Test that enough days of history are confident."""
        histories = [{"2024-01-01": [], "2024-01-02": [], "2024-01-03": []}]
        timeline = compute_timeline(histories)
        self.assertFalse(any(point.is_low_confidence for point in timeline))

    def test_out_of_range_minutes_still_count_the_day(self):
        """Test that out-of-range minutes still count their day."""
        timeline = compute_timeline([{"2024-01-01": [1443]}, {"2024-01-02": [600]}])
        by_minute = {point.minute: point.score for point in timeline}

        self.assertAlmostEqual(by_minute[600], 1 / 5)
        self.assertAlmostEqual(sum(by_minute.values()), 1 / 5)


class TestArrivalHistoryStore(unittest.TestCase):
    """Test persistence of arrival history documents."""

    def setUp(self):
        """Set up test fixtures."""
        self.store = InMemoryKeyValueStore()
        self.history = ArrivalHistoryStore(self.store)

    def test_save_and_read_day(self):
        """Test saving and reading one day of history."""
        self.history.save_day("R1", "S1", "2024-01-01", [600, 610])

        self.assertEqual(self.history.get_day("R1", "S1", "2024-01-01"), [600, 610])
        self.assertEqual(self.history.get_day("R1", "S1", "2024-01-02"), [])
        self.assertEqual(
            json.loads(self.store.get(history_key("R1", "S1"))),
            {"2024-01-01": [600, 610]},
        )

    def test_unreadable_history_is_treated_as_empty(self):
        """Test that corrupt history reads as empty."""
        self.store.set(history_key("R1", "S1"), "not json")
        self.assertEqual(self.history.get_history("R1", "S1"), {})

        self.store.set(history_key("R1", "S1"), "[1, 2]")
        self.assertEqual(self.history.get_history("R1", "S1"), {})

    def test_clear_history(self):
        """Test clearing stored history."""
        self.history.save_day("R1", "S1", "2024-01-01", [600])
        self.history.clear_history("R1", "S1")
        self.assertEqual(self.history.get_history("R1", "S1"), {})

    def test_trip_definition(self):
        """Test saving and reading a trip definition."""
        self.assertIsNone(self.history.get_trip_definition("A", "B"))

        self.history.save_trip_definition("A", "B", [("R1", "S1"), ("R2", "S1")], accessed_at=1700000000)

        self.assertEqual(self.history.get_trip_definition("A", "B"), [("R1", "S1"), ("R2", "S1")])
        stored = json.loads(self.store.get(TRIP_DEFS_KEY))
        self.assertEqual(stored["A_B"]["last_accessed"], 1700000000)

    def test_concurrent_updates_to_one_key_are_not_lost(self):
        """Test concurrent updates to one history key."""
        start = datetime(2024, 1, 2, 5, 0)
        merger = ArrivalMerger(self.history)

        def ingest(i):
            merger.ingest("R1", "S1", start + timedelta(minutes=10 * i), [0])

        threads = [threading.Thread(target=ingest, args=(i,)) for i in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(
            self.history.get_day("R1", "S1", "2024-01-02"),
            [300 + 10 * i for i in range(10)],
        )


class TestArrivalMerger(unittest.TestCase):
    """Test ingestion and trip statistics."""

    def setUp(self):
        """Set up test fixtures."""
        self.store = InMemoryKeyValueStore()
        self.history = ArrivalHistoryStore(self.store)
        self.merger = ArrivalMerger(self.history)

    def test_repeated_polls_refine_one_bus(self):
        """Test that repeated polls refine one logged bus."""
        self.merger.ingest("R1", "S1", datetime(2024, 1, 2, 9, 58), [2])
        merged = self.merger.ingest("R1", "S1", datetime(2024, 1, 2, 9, 59), [2])

        self.assertEqual(merged, [601])
        self.assertEqual(self.history.get_day("R1", "S1", "2024-01-02"), [601])

    def test_ingest_after_midnight_logs_to_previous_day(self):
        """Test ingesting after midnight."""
        self.merger.ingest("R1", "S1", datetime(2024, 1, 2, 1, 0), [10])
        self.assertEqual(self.history.get_history("R1", "S1"), {"2024-01-01": [70]})

    def test_ingest_trip_with_no_predictions_does_nothing(self):
        """Test ingesting a trip with no predictions."""
        self.merger.ingest_trip("A", "B", [], now=datetime(2024, 1, 2, 10, 0))
        self.assertIsNone(self.store.get(TRIP_DEFS_KEY))

    def test_timeline_for_pairs(self):
        """Test a timeline built over several route and stop pairs."""
        self.merger.ingest("R1", "S1", datetime(2024, 1, 2, 10, 0), [0])
        self.merger.ingest("R2", "S1", datetime(2024, 1, 2, 10, 0), [1])

        timeline = self.merger.timeline_for([("R1", "S1"), ("R2", "S1")])
        by_minute = {point.minute: point.score for point in timeline}
        self.assertAlmostEqual(by_minute[600], 2 / 4)

    def test_trip_stats_splits_weekday_and_weekend(self):
        """Test weekday and weekend trip statistics."""
        predictions = [ArrivalPrediction(route_id="R1", stop_id="S1", eta_minutes=[5])]
        # 2024-01-03 is a Wednesday, 2024-01-06 a Saturday
        self.merger.ingest_trip("A", "B", predictions, now=datetime(2024, 1, 3, 10, 0))
        self.merger.ingest_trip("A", "B", predictions, now=datetime(2024, 1, 6, 10, 0))

        stats = self.merger.trip_stats("A", "B")

        self.assertEqual(stats.total_days, 2)
        self.assertEqual(stats.weekday_days, 1)
        self.assertEqual(stats.weekend_days, 1)
        self.assertEqual(stats.route_count, 1)
        self.assertEqual(len(stats.weekday), 288)
        weekday = {point.minute: point.score for point in stats.weekday}
        weekend = {point.minute: point.score for point in stats.weekend}
        self.assertAlmostEqual(weekday[605], 0.25)
        self.assertAlmostEqual(weekend[605], 0.25)

    def test_trip_stats_for_unknown_trip(self):
        """Test statistics for a trip with no definition."""
        self.assertEqual(self.merger.trip_stats("A", "B"), TripStats())

    def test_trip_stats_skips_invalid_dates(self):
        """Test that invalid stored dates are skipped."""
        self.history.save_trip_definition("A", "B", [("R1", "S1")])
        self.history.save_day("R1", "S1", "someday", [600])
        self.history.save_day("R1", "S1", "2024-01-03", [600])

        stats = self.merger.trip_stats("A", "B")

        self.assertEqual(stats.total_days, 1)
        self.assertEqual(stats.weekend, [])


if __name__ == "__main__":
    unittest.main()
