"""GPS route recording and run finalisation."""

from __future__ import annotations

import datetime
import math
import queue
import threading
from typing import Iterable, List, Optional

from loguru import logger

from errors import InvalidInputError
from models import DistanceSource, RoutePoint, Run, RunMode, RunSplit
from tools import MathTools

DEFAULT_QUEUE_SIZE = 1024
MAX_ACCURACY_M = 50.0
MAX_JUMP_M = 500.0


class RouteRecorder:
    """Buffers location samples for the active GPS run.

    ``push`` may be called from any thread and never blocks; when the buffer is
    full the oldest sample is dropped. ``drain`` is called under the database
    mutation lock and folds buffered samples into the route and distance.
    """

    def __init__(
        self,
        session_id: str,
        maxsize: int = DEFAULT_QUEUE_SIZE,
        max_accuracy_m: float = MAX_ACCURACY_M,
        max_jump_m: float = MAX_JUMP_M,
    ) -> None:
        self.session_id = session_id
        self.max_accuracy_m = max_accuracy_m
        self.max_jump_m = max_jump_m
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._push_lock = threading.Lock()
        self.active = True
        self.dropped = 0
        self.rejected = 0
        self.distance_m = 0.0
        self._last: Optional[RoutePoint] = None

    def push(
        self,
        latitude: float,
        longitude: float,
        timestamp: datetime.datetime,
        horizontal_accuracy: float,
    ) -> bool:
        """Buffer one sample; return False when it is filtered out."""
        if not self.active:
            return False
        if horizontal_accuracy is None or not 0 <= horizontal_accuracy <= self.max_accuracy_m:
            self.rejected += 1
            return False
        try:
            point = RoutePoint(latitude=latitude, longitude=longitude, timestamp=timestamp)
        except ValueError:
            self.rejected += 1
            return False
        with self._push_lock:
            while True:
                try:
                    self._queue.put_nowait(point)
                    return True
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                    except queue.Empty:
                        continue
                    self.dropped += 1
                    if self.dropped == 1 or self.dropped % 100 == 0:
                        logger.warning(
                            "GPS buffer full for session {}; {} samples dropped",
                            self.session_id,
                            self.dropped,
                        )

    def pending(self) -> int:
        return self._queue.qsize()

    def drain(self) -> tuple[List[RoutePoint], float]:
        """Return buffered points and the distance in metres they add."""
        points: List[RoutePoint] = []
        added = 0.0
        while True:
            try:
                point = self._queue.get_nowait()
            except queue.Empty:
                break
            if self._last is not None:
                increment = MathTools.haversine_m(
                    self._last.latitude,
                    self._last.longitude,
                    point.latitude,
                    point.longitude,
                )
                if 0 < increment < self.max_jump_m:
                    added += increment
            self._last = point
            points.append(point)
        self.distance_m += added
        return points, added

    def cancel(self) -> int:
        """Stop accepting samples and drop whatever is buffered."""
        self.active = False
        discarded = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return discarded
            discarded += 1


def route_distance_m(route: Iterable[RoutePoint]) -> float:
    """Cumulative haversine distance along ``route`` in metres."""
    total = 0.0
    previous = None
    for point in route:
        if previous is not None:
            total += MathTools.haversine_m(
                previous.latitude, previous.longitude, point.latitude, point.longitude
            )
        previous = point
    return total


def _pace(duration: float, distance_km: float) -> int:
    return int(round(duration / max(0.01, distance_km)))


def compute_run_splits(
    route: Optional[List[RoutePoint]], duration_seconds: int, distance_km: float
) -> List[RunSplit]:
    """Per-kilometre splits, interpolated along the route when there is one."""
    duration = max(0, duration_seconds)
    distance = max(0.0, distance_km)
    if duration <= 0 or distance <= 0:
        return []

    splits: List[RunSplit] = []
    from_route = bool(route) and len(route) >= 2
    if from_route:
        ordered = sorted(route, key=lambda p: p.timestamp)
        split_start = ordered[0].timestamp
        cumulative = 0.0
        marker = 1
        for previous, current in zip(ordered, ordered[1:]):
            segment = MathTools.haversine_m(
                previous.latitude, previous.longitude, current.latitude, current.longitude
            ) / 1000
            if segment <= 0:
                continue
            before = cumulative
            cumulative += segment
            while cumulative >= marker and marker <= distance:
                ratio = MathTools.clamp((marker - before) / segment, 0.0, 1.0)
                span = (current.timestamp - previous.timestamp).total_seconds()
                marker_time = previous.timestamp + datetime.timedelta(seconds=span * ratio)
                split_seconds = max(1, int(round((marker_time - split_start).total_seconds())))
                splits.append(
                    RunSplit(
                        index=marker,
                        distance_km=1.0,
                        duration_seconds=split_seconds,
                        pace_sec_per_km=_pace(split_seconds, 1.0),
                    )
                )
                split_start = marker_time
                marker += 1
        consumed_km = float(len(splits))
        consumed_seconds = sum(s.duration_seconds for s in splits)
        remaining_km = max(0.0, distance - consumed_km)
        if remaining_km > 0.01:
            last_seconds = max(1, duration - consumed_seconds)
            splits.append(
                RunSplit(
                    index=marker,
                    distance_km=round(remaining_km, 3),
                    duration_seconds=last_seconds,
                    pace_sec_per_km=_pace(last_seconds, remaining_km),
                )
            )
            return splits
        if not splits:
            return [
                RunSplit(
                    index=1,
                    distance_km=distance,
                    duration_seconds=duration,
                    pace_sec_per_km=_pace(duration, distance),
                )
            ]
    else:
        average = duration / distance
        full = int(distance)
        for index in range(1, full + 1):
            seconds = max(1, int(round(average)))
            splits.append(
                RunSplit(
                    index=index,
                    distance_km=1.0,
                    duration_seconds=seconds,
                    pace_sec_per_km=seconds,
                )
            )
        partial = distance - full
        if partial > 0.01:
            seconds = max(1, int(round(average * partial)))
            splits.append(
                RunSplit(
                    index=full + 1,
                    distance_km=round(partial, 3),
                    duration_seconds=seconds,
                    pace_sec_per_km=_pace(seconds, partial),
                )
            )
        if not splits:
            splits.append(
                RunSplit(
                    index=1,
                    distance_km=distance,
                    duration_seconds=duration,
                    pace_sec_per_km=int(round(average)),
                )
            )

    # Rounding drift goes to the last split so the splits sum to the run.
    total = sum(s.duration_seconds for s in splits)
    if total < duration or (total != duration and not from_route):
        last = splits[-1]
        last.duration_seconds = max(1, last.duration_seconds + duration - total)
        last.pace_sec_per_km = _pace(last.duration_seconds, last.distance_km)
    return splits


def finalize_run(run: Run) -> Run:
    """Return a copy of ``run`` with pace, source and splits filled in."""
    if not (
        math.isfinite(run.distance_km) and run.distance_km >= 0 and run.duration_seconds >= 0
    ):
        raise InvalidInputError("run distance and duration must be non-negative")
    run = run.model_copy(deep=True)
    if run.distance_km > 0 and run.duration_seconds > 0:
        run.avg_pace_sec_per_km = _pace(run.duration_seconds, run.distance_km)
        if not run.splits:
            run.splits = compute_run_splits(run.route, run.duration_seconds, run.distance_km)
    else:
        run.avg_pace_sec_per_km = None
    if run.mode == RunMode.GPS:
        run.distance_source = DistanceSource.GPS if run.route else DistanceSource.ESTIMATED
    else:
        run.distance_source = DistanceSource.MANUAL
    return run


def fastest_km_pace(run: Run) -> Optional[int]:
    """Best full-kilometre pace of ``run`` in seconds, if it has one."""
    full = [s.pace_sec_per_km for s in run.splits if s.distance_km >= 0.99]
    if full:
        return min(full)
    if run.distance_km >= 1 and run.avg_pace_sec_per_km is not None:
        return run.avg_pace_sec_per_km
    return None


def format_pace(seconds_per_km: int) -> str:
    seconds = max(0, seconds_per_km)
    return f"{seconds // 60}:{seconds % 60:02d} /km"
