from __future__ import annotations

import json
import math
import threading
import unittest
from datetime import date, datetime, timedelta, timezone
from typing import List, Sequence

import ta_core
import ta_efforts
from ta_core import TimeSeriesPoint, Workout
from ta_efforts import BestEffortCatalog, BestEffortRecord, EffortSeries


FIXED_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
START = datetime(2025, 5, 1, 6, 30, tzinfo=timezone.utc)
DEG_PER_M = 180.0 / (math.pi * ta_core.EARTH_RADIUS_M)


def _series(seconds_per_100m: Sequence[int]) -> List[TimeSeriesPoint]:
    points = [TimeSeriesPoint(elapsed_seconds=0, distance_m=0.0)]
    elapsed = 0
    for i, step in enumerate(seconds_per_100m, start=1):
        elapsed += step
        points.append(TimeSeriesPoint(elapsed_seconds=elapsed, distance_m=100.0 * i))
    return points


def _workout(workout_id: str, km: int, seconds_per_100m: int, day: int = 0) -> Workout:
    steps = [seconds_per_100m] * (km * 10)
    return Workout(
        workout_id=workout_id,
        started_at=START + timedelta(days=day),
        distance_m=km * 1000.0,
        duration_s=float(sum(steps)),
        time_series=_series(steps),
    )


def _route(count: int, spacing_m: float) -> str:
    coords = [[7.0, 45.0 + i * spacing_m * DEG_PER_M] for i in range(count)]
    return json.dumps({"type": "LineString", "coordinates": coords})


def _record(name: str, time_s: float, workout_id: str = "seed") -> BestEffortRecord:
    return BestEffortRecord(
        distance_name=name,
        target_distance_m=ta_efforts.STANDARD_DISTANCES[name],
        time_s=time_s,
        workout_id=workout_id,
        workout_date=date(2024, 1, 1),
        calculated_at=datetime(2024, 1, 2, tzinfo=timezone.utc),
    )


class TestSlidingWindow(unittest.TestCase):
    def test_constant_pace(self) -> None:
        window = ta_efforts.best_effort_from_time_series(_series([30] * 10), 500.0)
        self.assertIsNotNone(window)
        self.assertEqual(window.time_s, 150.0)
        self.assertEqual(window.distance_m, 500.0)
        self.assertEqual(window.method, ta_efforts.METHOD_TIME_SERIES)

    def test_finds_embedded_fast_segment(self) -> None:
        steps = [40] * 10 + [20] * 10 + [40] * 10
        window = ta_efforts.best_effort_from_time_series(_series(steps), 1000.0)
        self.assertEqual(window.time_s, 200.0)
        self.assertEqual(window.start_offset_s, 400.0)
        self.assertEqual(window.end_offset_s, 600.0)

    def test_unordered_samples_are_sorted(self) -> None:
        points = list(reversed(_series([30] * 10)))
        window = ta_efforts.best_effort_from_time_series(points, 1000.0)
        self.assertEqual(window.time_s, 300.0)

    def test_samples_without_distance_are_skipped(self) -> None:
        series = EffortSeries(distances=[0.0, None, 200.0, 300.0], times=[0.0, 10.0, 20.0, 30.0], method="time_series")
        window = ta_efforts.extract_best_effort(series, 200.0)
        self.assertEqual(window.time_s, 20.0)
        self.assertEqual(window.distance_m, 200.0)

    def test_too_few_points(self) -> None:
        self.assertIsNone(ta_efforts.best_effort_from_time_series(_series([])[:1], 100.0))
        self.assertIsNone(ta_efforts.best_effort_from_time_series([], 100.0))
        no_distance = [TimeSeriesPoint(elapsed_seconds=i) for i in range(5)]
        self.assertIsNone(ta_efforts.best_effort_from_time_series(no_distance, 100.0))

    def test_target_longer_than_series(self) -> None:
        self.assertIsNone(ta_efforts.best_effort_from_time_series(_series([30] * 10), 1500.0))


class TestRouteEstimate(unittest.TestCase):
    def test_route_constant_pace(self) -> None:
        window = ta_efforts.best_effort_from_route(_route(21, 100.0), 600.0, 1000.0)
        self.assertIsNotNone(window)
        self.assertAlmostEqual(window.time_s, 300.0, places=3)
        self.assertEqual(window.method, ta_efforts.METHOD_ROUTE)

    def test_route_shorter_than_target(self) -> None:
        self.assertIsNone(ta_efforts.best_effort_from_route(_route(5, 100.0), 120.0, 1000.0))

    def test_malformed_route_is_absent(self) -> None:
        self.assertIsNone(ta_efforts.best_effort_from_route("{not json", 600.0, 400.0))
        self.assertIsNone(ta_efforts.best_effort_from_route({"coordinates": "nope"}, 600.0, 400.0))
        bad_coords = {"type": "LineString", "coordinates": [["a", "b"], ["c", "d"]]}
        self.assertIsNone(ta_efforts.best_effort_from_route(bad_coords, 600.0, 400.0, workout_id="w9"))

    def test_time_series_preferred_over_route(self) -> None:
        steps = [40] * 10 + [20] * 10 + [40] * 10
        workout = Workout("both", START, 3000.0, float(sum(steps)), route=_route(31, 100.0), time_series=_series(steps))
        window = ta_efforts.best_effort_for_workout(workout, 1000.0)
        self.assertEqual(window.method, ta_efforts.METHOD_TIME_SERIES)
        self.assertEqual(window.time_s, 200.0)

    def test_route_used_when_series_lacks_distance(self) -> None:
        series = [TimeSeriesPoint(elapsed_seconds=i * 10) for i in range(30)]
        workout = Workout("route-only", START, 3000.0, 900.0, route=_route(31, 100.0), time_series=series)
        window = ta_efforts.best_effort_for_workout(workout, 1000.0)
        self.assertEqual(window.method, ta_efforts.METHOD_ROUTE)
        self.assertAlmostEqual(window.time_s, 300.0, places=3)

    def test_workout_shorter_than_target(self) -> None:
        self.assertIsNone(ta_efforts.best_effort_for_workout(_workout("w", 3, 30), 5000.0))


class TestBestEffortCatalog(unittest.TestCase):
    def _catalog(self, *records: BestEffortRecord) -> BestEffortCatalog:
        return BestEffortCatalog(records, clock=lambda: FIXED_NOW)

    def test_offer_outcomes(self) -> None:
        catalog = self._catalog()
        self.assertEqual(catalog.offer(_record("5K", 1500.0, "a")), "created")
        self.assertEqual(catalog.offer(_record("5K", 1600.0, "b")), "preserved")
        self.assertEqual(catalog.offer(_record("5K", 1500.0, "c")), "preserved")
        self.assertEqual(catalog.get("5K").workout_id, "a")
        self.assertEqual(catalog.offer(_record("5K", 1400.0, "d")), "updated")
        self.assertEqual(catalog.get("5K").workout_id, "d")

    def test_slower_workout_does_not_regress(self) -> None:
        catalog = self._catalog(_record("5K", 1400.0, "old"))
        summary = catalog.update_for_workout(_workout("slow", 6, 30))
        self.assertIn("5K", summary.preserved)
        self.assertEqual(catalog.get("5K").time_s, 1400.0)
        self.assertEqual(catalog.get("5K").workout_id, "old")

    def test_faster_workout_replaces(self) -> None:
        catalog = self._catalog(_record("5K", 1400.0, "old"))
        summary = catalog.update_for_workout(_workout("fast", 6, 25, day=3))
        self.assertIn("5K", summary.updated)
        rec = catalog.get("5K")
        self.assertEqual(rec.time_s, 1250.0)
        self.assertEqual(rec.workout_id, "fast")
        self.assertEqual(rec.workout_date, date(2025, 5, 4))
        self.assertEqual(rec.calculated_at, FIXED_NOW)
        self.assertAlmostEqual(rec.pace_s_per_km, 250.0)

    def test_unreachable_distances_untouched(self) -> None:
        marathon = _record("Marathon", 10800.0, "long-ago")
        catalog = self._catalog(marathon)
        summary = catalog.update_for_workout(_workout("short", 6, 20))
        self.assertIn("Marathon", summary.skipped)
        self.assertIn("10K", summary.skipped)
        self.assertIs(catalog.get("Marathon"), marathon)
        self.assertIn("1K", summary.created)
        self.assertTrue(summary.changed)

    def test_records_sorted_by_distance(self) -> None:
        catalog = self._catalog(_record("10K", 3000.0), _record("400m", 80.0), _record("5K", 1400.0))
        self.assertEqual([r.distance_name for r in catalog.records()], ["400m", "5K", "10K"])
        self.assertEqual(len(catalog), 3)
        self.assertIn("400m", catalog)

    def test_recompute_picks_fastest_per_distance(self) -> None:
        workouts = [
            _workout("easy", 6, 30, day=0),
            _workout("long", 12, 28, day=1),
            _workout("short", 3, 25, day=2),
        ]
        catalog = self._catalog(_record("Marathon", 10800.0, "stale"))
        catalog.recompute_all(workouts)
        self.assertNotIn("Marathon", catalog)
        self.assertEqual(catalog.get("5K").workout_id, "long")
        self.assertEqual(catalog.get("5K").time_s, 1400.0)
        self.assertEqual(catalog.get("10K").time_s, 2800.0)
        self.assertEqual(catalog.get("1K").workout_id, "short")
        self.assertEqual(catalog.get("1 mile").time_s, 425.0)
        self.assertEqual(catalog.get("2 mile").workout_id, "long")
        self.assertEqual(len(catalog), 7)

    def test_recompute_ties_independent_of_workers(self) -> None:
        workouts = [_workout(f"w{i}", 6, 30, day=i) for i in range(6)]
        serial = self._catalog()
        serial.recompute_all(workouts, workers=1)
        threaded = self._catalog()
        threaded.recompute_all(workouts, workers=4)
        key = lambda c: [(r.distance_name, r.time_s, r.workout_id) for r in c.records()]
        self.assertEqual(key(serial), key(threaded))
        self.assertEqual(serial.get("5K").workout_id, "w0")

    def test_failing_workout_does_not_abort(self) -> None:
        broken = Workout(
            "broken",
            START,
            10000.0,
            3000.0,
            time_series=[TimeSeriesPoint(elapsed_seconds=None, distance_m=0.0), TimeSeriesPoint(elapsed_seconds=5, distance_m=10.0)],
        )
        bad_route = Workout("bad-route", START, 10000.0, 3000.0, route="{{")
        catalog = self._catalog()
        catalog.recompute_all([broken, bad_route, _workout("ok", 6, 30)], workers=2)
        self.assertEqual(catalog.get("5K").workout_id, "ok")
        summary = catalog.update_for_workout(broken)
        self.assertFalse(summary.changed)

    def test_route_only_workout_records_method(self) -> None:
        workout = Workout("gps-lite", START, 3000.0, 900.0, route=_route(31, 100.0))
        catalog = self._catalog()
        catalog.recompute_all([workout])
        self.assertEqual(catalog.get("1K").method, ta_efforts.METHOD_ROUTE)
        self.assertAlmostEqual(catalog.get("1K").time_s, 300.0, places=3)

    def test_concurrent_offers_keep_minimum(self) -> None:
        catalog = self._catalog()

        def offer_many(offset: int) -> None:
            for i in range(200):
                catalog.offer(_record("10K", 2000.0 + ((i * 7 + offset) % 200), f"t{offset}-{i}"))

        threads = [threading.Thread(target=offer_many, args=(k,)) for k in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(catalog.get("10K").time_s, 2000.0)

    def test_clear(self) -> None:
        catalog = self._catalog(_record("5K", 1400.0))
        self.assertEqual(catalog.clear(), 1)
        self.assertEqual(len(catalog), 0)


if __name__ == "__main__":
    unittest.main()
