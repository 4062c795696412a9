import logging
import math
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ta_core import (
    DISTANCE_EPS_M,
    RouteGeometry,
    TimeSeriesPoint,
    Workout,
    _StageProfiler,
    _route_coordinates,
    cumulative_distances,
)


# Standard race distances (meters). Names and values are persisted as-is.
STANDARD_DISTANCES: Dict[str, float] = {
    "400m": 400.0,
    "1/2 mile": 804.672,
    "1K": 1000.0,
    "1 mile": 1609.344,
    "2 mile": 3218.688,
    "5K": 5000.0,
    "10K": 10000.0,
    "15K": 15000.0,
    "10 mile": 16093.44,
    "20K": 20000.0,
    "Half-Marathon": 21097.5,
    "30K": 30000.0,
    "Marathon": 42195.0,
}

METHOD_TIME_SERIES = "time_series"
METHOD_ROUTE = "route"


# -----------------
# Data structures
# -----------------

@dataclass(frozen=True)
class EffortSeries:
    """Distance/time samples fed to the sliding window.

    ``times`` are real elapsed seconds for time series input and linearly
    estimated seconds for route input.
    """

    distances: Sequence[Optional[float]]
    times: Sequence[float]
    method: str


@dataclass(frozen=True)
class EffortWindow:
    time_s: float
    distance_m: float
    start_offset_s: float
    end_offset_s: float
    method: str


@dataclass(frozen=True)
class BestEffortRecord:
    distance_name: str
    target_distance_m: float
    time_s: float
    workout_id: str
    workout_date: date
    calculated_at: datetime
    method: str = METHOD_TIME_SERIES

    @property
    def pace_s_per_km(self) -> float:
        if self.target_distance_m <= 0 or self.time_s <= 0:
            return 0.0
        return self.time_s / (self.target_distance_m / 1000.0)


@dataclass
class CatalogUpdate:
    workout_id: str
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    preserved: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _distances_longest_first() -> List[Tuple[str, float]]:
    return sorted(STANDARD_DISTANCES.items(), key=lambda kv: kv[1], reverse=True)


# -----------------
# Sliding window
# -----------------

def _min_window(
    distances: Sequence[Optional[float]],
    times: Sequence[float],
    target_m: float,
) -> Optional[Tuple[float, int, int]]:
    """Fastest contiguous window covering at least ``target_m``.

    Two-pointer scan: the end index walks forward, and once a window covers
    the target the start index is pulled forward for as long as the window
    still covers it. Both indices only advance, so the scan is linear.
    Samples without a distance are skipped. Returns (duration, start, end).
    """
    n = len(distances)
    if n < 2 or len(times) != n:
        return None
    if sum(1 for d in distances if d is not None) < 2:
        return None

    threshold = target_m - DISTANCE_EPS_M
    best_duration = math.inf
    best_start = -1
    best_end = -1
    start = 0
    for end in range(1, n):
        while start < end - 1 and distances[start] is None:
            start += 1
        d_start = distances[start]
        d_end = distances[end]
        if d_start is None or d_end is None:
            continue
        if d_end - d_start < threshold:
            continue

        duration = times[end] - times[start]
        if 0 < duration < best_duration:
            best_duration, best_start, best_end = duration, start, end

        while start < end - 1:
            d_next = distances[start + 1]
            if d_next is None:
                start += 1
                continue
            if d_end - d_next < threshold:
                break
            start += 1
            duration = times[end] - times[start]
            if 0 < duration < best_duration:
                best_duration, best_start, best_end = duration, start, end

    if not math.isfinite(best_duration):
        return None
    return best_duration, best_start, best_end


def extract_best_effort(series: EffortSeries, target_m: float) -> Optional[EffortWindow]:
    found = _min_window(series.distances, series.times, target_m)
    if found is None:
        return None
    duration, start, end = found
    return EffortWindow(
        time_s=float(duration),
        distance_m=float(series.distances[end]) - float(series.distances[start]),
        start_offset_s=float(series.times[start]),
        end_offset_s=float(series.times[end]),
        method=series.method,
    )


# -----------------
# Input modes
# -----------------

def time_series_effort_series(points: Sequence[TimeSeriesPoint]) -> Optional[EffortSeries]:
    if len(points) < 2:
        return None
    ordered = sorted(points, key=lambda p: p.elapsed_seconds)
    distances: List[Optional[float]] = []
    for p in ordered:
        d = p.distance_m
        distances.append(float(d) if d is not None and math.isfinite(d) else None)
    if sum(1 for d in distances if d is not None) < 2:
        return None
    return EffortSeries(
        distances=distances,
        times=[float(p.elapsed_seconds) for p in ordered],
        method=METHOD_TIME_SERIES,
    )


def route_effort_series(route: Optional[RouteGeometry], duration_s: float) -> Optional[EffortSeries]:
    """Route geometry with timestamps estimated linearly from distance.

    Pace variation inside the workout is invisible in this mode.
    Raises on malformed geometry; see ``best_effort_from_route``.
    """
    coords = _route_coordinates(route)
    if coords is None or len(coords) < 2:
        return None
    lats = np.full(len(coords), np.nan, dtype=np.float64)
    lons = np.full(len(coords), np.nan, dtype=np.float64)
    for idx, coord in enumerate(coords):
        if isinstance(coord, (list, tuple)) and len(coord) >= 2:
            lons[idx] = float(coord[0])
            lats[idx] = float(coord[1])
    cum = cumulative_distances(lats, lons)
    total = float(cum[-1])
    if not (total > 0):
        return None
    estimated = float(duration_s) * (cum / total)
    return EffortSeries(
        distances=cum.tolist(),
        times=estimated.tolist(),
        method=METHOD_ROUTE,
    )


def best_effort_from_time_series(points: Sequence[TimeSeriesPoint], target_m: float) -> Optional[EffortWindow]:
    series = time_series_effort_series(points)
    if series is None:
        return None
    return extract_best_effort(series, target_m)


def _safe_route_series(
    route: Optional[RouteGeometry],
    duration_s: float,
    workout_id: Optional[str] = None,
) -> Optional[EffortSeries]:
    try:
        return route_effort_series(route, duration_s)
    except (TypeError, ValueError, KeyError, AttributeError, IndexError) as exc:
        logging.warning("Failed to read route for workout %s: %s", workout_id or "?", exc)
        return None


def _route_effort(series: Optional[EffortSeries], target_m: float) -> Optional[EffortWindow]:
    if series is None or not series.distances:
        return None
    total = series.distances[-1]
    if total is None or total < target_m - DISTANCE_EPS_M:
        return None
    return extract_best_effort(series, target_m)


def best_effort_from_route(
    route: Optional[RouteGeometry],
    duration_s: float,
    target_m: float,
    workout_id: Optional[str] = None,
) -> Optional[EffortWindow]:
    return _route_effort(_safe_route_series(route, duration_s, workout_id), target_m)


def best_effort_for_workout(workout: Workout, target_m: float) -> Optional[EffortWindow]:
    """Time series first, route estimate second; ``None`` when neither yields a window."""
    if workout.distance_m < target_m:
        return None
    window = best_effort_from_time_series(workout.time_series, target_m)
    if window is None and workout.route is not None:
        window = best_effort_from_route(workout.route, workout.duration_s, target_m, workout.workout_id)
    return window


def best_efforts_for_workout(
    workout: Workout,
    distances: Optional[Dict[str, float]] = None,
) -> Dict[str, EffortWindow]:
    """All reachable standard distances for one workout, sharing the prepared series."""
    targets = distances if distances is not None else STANDARD_DISTANCES
    found: Dict[str, EffortWindow] = {}
    ts_series = time_series_effort_series(workout.time_series)
    route_series: Optional[EffortSeries] = None
    route_loaded = False
    for name, target in targets.items():
        if workout.distance_m < target:
            continue
        window = extract_best_effort(ts_series, target) if ts_series is not None else None
        if window is None and workout.route is not None:
            if not route_loaded:
                route_series = _safe_route_series(workout.route, workout.duration_s, workout.workout_id)
                route_loaded = True
            window = _route_effort(route_series, target)
        if window is not None:
            found[name] = window
    return found


def _safe_best_efforts(workout: Workout) -> Dict[str, EffortWindow]:
    try:
        return best_efforts_for_workout(workout)
    except Exception as exc:
        logging.warning("Best effort extraction failed for workout %s: %s", workout.workout_id, exc)
        return {}


def _workout_date(workout: Workout) -> date:
    started = workout.started_at
    if started.tzinfo is not None:
        started = started.astimezone(timezone.utc)
    return started.date()


def _record_for(
    workout: Workout,
    name: str,
    target_m: float,
    window: EffortWindow,
    calculated_at: datetime,
) -> BestEffortRecord:
    return BestEffortRecord(
        distance_name=name,
        target_distance_m=target_m,
        time_s=window.time_s,
        workout_id=workout.workout_id,
        workout_date=_workout_date(workout),
        calculated_at=calculated_at,
        method=window.method,
    )


# -----------------
# Catalog
# -----------------

class BestEffortCatalog:
    """Fastest record per standard distance across the workout corpus.

    All writes go through a lock and replace a whole frozen record, so a
    record is never observed half-updated.
    """

    def __init__(
        self,
        records: Optional[Iterable[BestEffortRecord]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, BestEffortRecord] = {}
        self._clock = clock or _utcnow
        for rec in records or ():
            self.offer(rec)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, distance_name: object) -> bool:
        with self._lock:
            return distance_name in self._records

    def get(self, distance_name: str) -> Optional[BestEffortRecord]:
        with self._lock:
            return self._records.get(distance_name)

    def records(self) -> List[BestEffortRecord]:
        with self._lock:
            snapshot = list(self._records.values())
        return sorted(snapshot, key=lambda r: r.target_distance_m)

    def clear(self) -> int:
        with self._lock:
            count = len(self._records)
            self._records = {}
        logging.info("Cleared %d best effort(s)", count)
        return count

    def offer(self, record: BestEffortRecord) -> str:
        """Compare-and-replace: store ``record`` only if it is new or strictly faster.

        Returns ``"created"``, ``"updated"`` or ``"preserved"``.
        """
        with self._lock:
            existing = self._records.get(record.distance_name)
            if existing is None:
                self._records[record.distance_name] = record
                return "created"
            if record.time_s < existing.time_s:
                self._records[record.distance_name] = record
                return "updated"
            return "preserved"

    def recompute_all(
        self,
        workouts: Sequence[Workout],
        workers: int = 1,
        profiler: Optional[_StageProfiler] = None,
    ) -> List[BestEffortRecord]:
        """Clear and rebuild every record from the full corpus."""
        logging.info("Starting full recalculation of best efforts over %d workout(s)", len(workouts))
        ordered = sorted(workouts, key=lambda w: w.distance_m, reverse=True)
        candidates = _collect_candidates(ordered, workers)
        if profiler:
            profiler.lap("extract")

        calculated_at = self._clock()
        best: Dict[str, BestEffortRecord] = {}
        # Fixed reduction order keeps tie resolution independent of worker count.
        for name, target in _distances_longest_first():
            logging.debug("Calculating best effort for %s (%.3f m)", name, target)
            for workout, found in zip(ordered, candidates):
                if workout.distance_m < target:
                    continue
                window = found.get(name)
                if window is None:
                    continue
                current = best.get(name)
                if current is None or window.time_s < current.time_s:
                    best[name] = _record_for(workout, name, target, window, calculated_at)

        with self._lock:
            self._records = best
        if profiler:
            profiler.lap("reduce")
        logging.info("Completed recalculation of best efforts. Found %d best effort(s)", len(best))
        return self.records()

    def update_for_workout(self, workout: Workout) -> CatalogUpdate:
        """Fold one newly added workout into the catalog.

        Distances the workout cannot reach are left exactly as they were.
        """
        logging.debug(
            "Updating best efforts for new workout %s (distance: %.1f m)",
            workout.workout_id,
            workout.distance_m,
        )
        summary = CatalogUpdate(workout_id=workout.workout_id)
        found = _safe_best_efforts(workout)
        calculated_at = self._clock()
        for name, target in STANDARD_DISTANCES.items():
            if workout.distance_m < target:
                summary.skipped.append(name)
                continue
            window = found.get(name)
            if window is None:
                logging.debug("Could not calculate best effort for %s from workout %s", name, workout.workout_id)
                continue
            outcome = self.offer(_record_for(workout, name, target, window, calculated_at))
            getattr(summary, outcome).append(name)
            logging.debug("%s best effort for %s: %.1fs", outcome.capitalize(), name, window.time_s)

        if summary.changed:
            logging.info(
                "Updated best efforts for workout %s: %d created, %d updated, %d preserved",
                workout.workout_id,
                len(summary.created),
                len(summary.updated),
                len(summary.preserved),
            )
        else:
            logging.debug("No best efforts updated for workout %s", workout.workout_id)
        return summary


def _collect_candidates(workouts: Sequence[Workout], workers: int) -> List[Dict[str, EffortWindow]]:
    if workers != 1 and len(workouts) > 1:
        max_workers = workers if workers and workers > 0 else min(len(workouts), max(1, (os.cpu_count() or 1)))
        results: List[Optional[Dict[str, EffortWindow]]] = [None] * len(workouts)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_map = {}
            for idx, workout in enumerate(workouts):
                future = executor.submit(_safe_best_efforts, workout)
                future_map[future] = idx
            for future in as_completed(future_map):
                results[future_map[future]] = future.result()
        return [res if res is not None else {} for res in results]
    return [_safe_best_efforts(w) for w in workouts]
