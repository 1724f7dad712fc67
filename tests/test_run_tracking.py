import datetime
import os
import sys
import unittest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from errors import InvalidInputError
from models import DistanceSource, RoutePoint, Run, RunMode, RunSplit
from run_tracking import (
    RouteRecorder,
    compute_run_splits,
    fastest_km_pace,
    finalize_run,
    format_pace,
    route_distance_m,
)

T0 = datetime.datetime(2024, 6, 1, 6, tzinfo=datetime.timezone.utc)


def straight_route(points: int, step_deg: float = 0.001, seconds: int = 30):
    return [
        RoutePoint(latitude=i * step_deg, longitude=0.0, timestamp=T0 + datetime.timedelta(seconds=seconds * i))
        for i in range(points)
    ]


class RouteRecorderTestCase(unittest.TestCase):
    def test_accuracy_filter(self) -> None:
        recorder = RouteRecorder("s1")
        self.assertTrue(recorder.push(1.0, 1.0, T0, 0))
        self.assertTrue(recorder.push(1.0, 1.0, T0, 50))
        self.assertFalse(recorder.push(1.0, 1.0, T0, 50.1))
        self.assertFalse(recorder.push(1.0, 1.0, T0, -1))
        self.assertFalse(recorder.push(100.0, 1.0, T0, 5))
        self.assertEqual(recorder.rejected, 3)
        self.assertEqual(recorder.pending(), 2)

    def test_drop_oldest_when_full(self) -> None:
        recorder = RouteRecorder("s1", maxsize=3)
        for i in range(5):
            recorder.push(float(i), 0.0, T0 + datetime.timedelta(seconds=i), 5)
        points, _ = recorder.drain()
        self.assertEqual([p.latitude for p in points], [2.0, 3.0, 4.0])
        self.assertEqual(recorder.dropped, 2)

    def test_drain_accumulates_across_calls(self) -> None:
        route = straight_route(6)
        recorder = RouteRecorder("s1")
        for point in route[:3]:
            recorder.push(point.latitude, point.longitude, point.timestamp, 5)
        recorder.drain()
        for point in route[3:]:
            recorder.push(point.latitude, point.longitude, point.timestamp, 5)
        recorder.drain()
        self.assertAlmostEqual(recorder.distance_m, route_distance_m(route))

    def test_cancel_stops_ingestion(self) -> None:
        recorder = RouteRecorder("s1")
        recorder.push(1.0, 1.0, T0, 5)
        self.assertEqual(recorder.cancel(), 1)
        self.assertFalse(recorder.push(1.0, 1.0, T0, 5))
        self.assertEqual(recorder.pending(), 0)


class SplitTestCase(unittest.TestCase):
    def test_no_splits_without_distance_or_time(self) -> None:
        self.assertEqual(compute_run_splits(None, 0, 5), [])
        self.assertEqual(compute_run_splits(None, 600, 0), [])

    def test_manual_splits_sum_to_duration(self) -> None:
        splits = compute_run_splits(None, 1000, 3.5)
        self.assertEqual([s.index for s in splits], [1, 2, 3, 4])
        self.assertAlmostEqual(splits[-1].distance_km, 0.5)
        self.assertEqual(sum(s.duration_seconds for s in splits), 1000)

    def test_short_manual_run_has_one_split(self) -> None:
        splits = compute_run_splits(None, 300, 0.8)
        self.assertEqual(len(splits), 1)
        self.assertEqual(splits[0].duration_seconds, 300)

    def test_route_splits_follow_timestamps(self) -> None:
        route = straight_route(31)
        distance_km = route_distance_m(route) / 1000
        duration = 30 * 30
        splits = compute_run_splits(route, duration, distance_km)
        self.assertEqual(splits[0].index, 1)
        self.assertEqual(splits[0].distance_km, 1.0)
        # 1 km is ~8.99 segments of 30 s
        self.assertAlmostEqual(splits[0].duration_seconds, 270, delta=2)
        self.assertLessEqual(sum(s.duration_seconds for s in splits), duration + 1)


class FinalizeRunTestCase(unittest.TestCase):
    def test_manual_run(self) -> None:
        run = finalize_run(Run(distance_km=10, duration_seconds=3000))
        self.assertEqual(run.avg_pace_sec_per_km, 300)
        self.assertEqual(run.distance_source, DistanceSource.MANUAL)
        self.assertEqual(len(run.splits), 10)

    def test_gps_run_without_route_is_estimated(self) -> None:
        run = finalize_run(Run(mode=RunMode.GPS, distance_km=2, duration_seconds=600))
        self.assertEqual(run.distance_source, DistanceSource.ESTIMATED)

    def test_empty_run_has_no_pace(self) -> None:
        run = finalize_run(Run())
        self.assertIsNone(run.avg_pace_sec_per_km)
        self.assertEqual(run.splits, [])

    def test_negative_values_rejected(self) -> None:
        run = Run.model_construct(distance_km=-1, duration_seconds=10)
        with self.assertRaises(InvalidInputError):
            finalize_run(run)

    def test_fastest_km_pace(self) -> None:
        run = Run(
            distance_km=2.5,
            duration_seconds=800,
            avg_pace_sec_per_km=320,
            splits=[
                RunSplit(index=1, distance_km=1.0, duration_seconds=310, pace_sec_per_km=310),
                RunSplit(index=2, distance_km=1.0, duration_seconds=300, pace_sec_per_km=300),
                RunSplit(index=3, distance_km=0.5, duration_seconds=190, pace_sec_per_km=380),
            ],
        )
        self.assertEqual(fastest_km_pace(run), 300)
        self.assertIsNone(fastest_km_pace(Run(distance_km=0.5, avg_pace_sec_per_km=300)))
        self.assertEqual(format_pace(305), "5:05 /km")


if __name__ == "__main__":
    unittest.main()
