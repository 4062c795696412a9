import json
import logging
import math
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np


EARTH_RADIUS_M = 6371000.0

DEFAULT_SPLIT_DISTANCE_M = 1000.0
MILE_M = 1609.344

# Remainder shorter than this fraction of a split is merged into the last split.
REMAINDER_KEEP_FRACTION = 0.1

# Float slack when comparing accumulated Haversine distances against targets.
DISTANCE_EPS_M = 1e-6

UNIT_SPLIT_DISTANCES: Dict[str, float] = {
    "metric": DEFAULT_SPLIT_DISTANCE_M,
    "imperial": MILE_M,
}


# -----------------
# Data structures
# -----------------

@dataclass(frozen=True)
class TrackPoint:
    latitude: float
    longitude: float
    elevation: Optional[float] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class TimeSeriesPoint:
    elapsed_seconds: int
    distance_m: Optional[float] = None
    heart_rate_bpm: Optional[int] = None
    cadence_rpm: Optional[int] = None
    power_watts: Optional[int] = None
    speed_mps: Optional[float] = None
    elevation_m: Optional[float] = None


# GeoJSON LineString, either as raw JSON text or already decoded.
RouteGeometry = Union[str, Mapping[str, Any]]


@dataclass
class Workout:
    workout_id: str
    started_at: datetime
    distance_m: float
    duration_s: float
    route: Optional[RouteGeometry] = None
    time_series: List[TimeSeriesPoint] = field(default_factory=list)
    track: List[TrackPoint] = field(default_factory=list)


@dataclass(frozen=True)
class Split:
    index: int
    distance_m: float
    duration_s: float
    pace_s_per_km: float


@dataclass
class ElevationConfig:
    noise_threshold_m: float = 2.0
    min_distance_m: float = 10.0

    def __post_init__(self) -> None:
        if not (self.noise_threshold_m >= 0.0) or not (self.min_distance_m >= 0.0):
            raise ValueError(
                f"Elevation thresholds must be non-negative "
                f"(noise={self.noise_threshold_m}, distance={self.min_distance_m})"
            )


@dataclass(frozen=True)
class ElevationAccumulator:
    """Running state of one hysteresis pass.

    ``pending_gain`` is the climb in the direction being counted and
    ``pending_loss`` the climb against it; a loss pass runs over the mirrored
    signal so the same fields serve both.
    """

    total: float = 0.0
    pending_gain: float = 0.0
    pending_loss: float = 0.0
    pending_distance: float = 0.0
    last_elevation: Optional[float] = None
    last_point: Optional[TrackPoint] = None


@dataclass
class TrackSummary:
    distance_m: float
    duration_s: float
    elevation_gain_m: Optional[float]
    elevation_loss_m: Optional[float]
    min_elevation_m: Optional[float]
    max_elevation_m: Optional[float]
    max_speed_mps: Optional[float]
    avg_speed_mps: Optional[float]
    avg_grade_percent: Optional[float]
    max_positive_grade_percent: Optional[float]
    max_negative_grade_percent: Optional[float]
    bounds: Optional[Tuple[float, float, float, float]]  # min_lat, min_lon, max_lat, max_lon


@dataclass
class TrackAnalysis:
    summary: TrackSummary
    splits: List[Split]
    split_distance_m: float


@dataclass
class SplitRecalculationResult:
    total_workouts: int
    success_count: int
    error_count: int
    errors: List[str]
    splits: Dict[str, List[Split]]


class _StageProfiler:
    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled
        self._last = time.perf_counter()

    def lap(self, label: str) -> None:
        if not self.enabled:
            return
        now = time.perf_counter()
        logging.info("Profile %-18s %.3fs", label, now - self._last)
        self._last = now


# -----------------
# Formatting
# -----------------

def _fmt_time_hms(seconds: float) -> str:
    if not math.isfinite(seconds) or seconds < 0:
        return "--:--"
    sec_int = int(round(seconds))
    h, rem = divmod(sec_int, 3600)
    m, s = divmod(rem, 60)
    if h > 0:
        return f"{h:d}:{m:02d}:{s:02d}"
    return f"{m:d}:{s:02d}"


def _fmt_pace(pace_s_per_km: float, units: str = "metric") -> str:
    if not math.isfinite(pace_s_per_km) or pace_s_per_km <= 0:
        return "--"
    if units == "imperial":
        return f"{_fmt_time_hms(pace_s_per_km * MILE_M / 1000.0)}/mi"
    return f"{_fmt_time_hms(pace_s_per_km)}/km"


def _fmt_distance(distance_m: Optional[float]) -> str:
    if distance_m is None or not math.isfinite(distance_m):
        return "--"
    if distance_m >= 1000.0:
        return f"{distance_m / 1000.0:.2f} km"
    return f"{distance_m:.0f} m"


def _setup_logging(verbose: bool, log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt)
    if log_file:
        fh = logging.FileHandler(log_file, mode="w")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(fmt, datefmt))
        logging.getLogger().addHandler(fh)
    # matplotlib font lookup is very chatty at DEBUG
    logging.getLogger("matplotlib").setLevel(logging.WARNING)
    logging.getLogger("matplotlib.font_manager").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.INFO)


def _load_elevation_config(path: str, base: Optional[ElevationConfig] = None) -> ElevationConfig:
    with open(path, "r") as f:
        data = json.load(f)
    config = base or ElevationConfig()
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object")
    overrides: Dict[str, float] = {}
    for key in ("noise_threshold_m", "min_distance_m"):
        if key in data and data[key] is not None:
            overrides[key] = float(data[key])
    return replace(config, **overrides)


def split_distance_for_units(units: str) -> float:
    key = str(units).strip().lower()
    if key not in UNIT_SPLIT_DISTANCES:
        raise ValueError(f"Unknown unit preference '{units}' (expected metric|imperial)")
    return UNIT_SPLIT_DISTANCES[key]


# -----------------
# Geo math
# -----------------

def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates (Haversine), in meters.

    Never raises: non-finite input gives NaN.
    """
    if not (math.isfinite(lat1) and math.isfinite(lon1) and math.isfinite(lat2) and math.isfinite(lon2)):
        return float("nan")
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) * math.sin(d_lat / 2)
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) * math.sin(d_lon / 2)
    )
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def _point_distance(a: TrackPoint, b: TrackPoint) -> float:
    return distance_meters(a.latitude, a.longitude, b.latitude, b.longitude)


def haversine_np(lat1, lon1, lat2, lon2) -> np.ndarray:
    """Vectorised Haversine over arrays of coordinates (degrees)."""
    phi1 = np.radians(np.asarray(lat1, dtype=np.float64))
    phi2 = np.radians(np.asarray(lat2, dtype=np.float64))
    d_phi = phi2 - phi1
    d_lam = np.radians(np.asarray(lon2, dtype=np.float64) - np.asarray(lon1, dtype=np.float64))
    with np.errstate(invalid="ignore"):
        a = np.sin(d_phi / 2.0) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(d_lam / 2.0) ** 2
        a = np.clip(a, 0.0, 1.0)
        return EARTH_RADIUS_M * 2.0 * np.arctan2(np.sqrt(a), np.sqrt(1.0 - a))


def cumulative_distances(lats: Sequence[float], lons: Sequence[float]) -> np.ndarray:
    """Cumulative along-track distance starting at 0.

    Segments touching an invalid (non-finite) coordinate contribute nothing.
    """
    lat_arr = np.asarray(lats, dtype=np.float64)
    lon_arr = np.asarray(lons, dtype=np.float64)
    if lat_arr.shape != lon_arr.shape:
        raise ValueError("lats and lons must have same length")
    if lat_arr.size == 0:
        return np.zeros(0, dtype=np.float64)
    seg = haversine_np(lat_arr[:-1], lon_arr[:-1], lat_arr[1:], lon_arr[1:])
    seg = np.where(np.isfinite(seg), seg, 0.0)
    out = np.empty(lat_arr.size, dtype=np.float64)
    out[0] = 0.0
    np.cumsum(seg, out=out[1:])
    return out


def track_distance_m(points: Sequence[TrackPoint]) -> float:
    if len(points) < 2:
        return 0.0
    cum = cumulative_distances([p.latitude for p in points], [p.longitude for p in points])
    return float(cum[-1])


# -----------------
# Elevation filter
# -----------------

def _usable_elevation(point: TrackPoint) -> Optional[float]:
    ele = point.elevation
    if ele is None:
        return None
    try:
        value = float(ele)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def _run_counts(run_m: float, run_distance_m: float, config: ElevationConfig) -> bool:
    return run_m >= config.noise_threshold_m and run_distance_m >= config.min_distance_m


def fold_elevation(
    state: ElevationAccumulator,
    point: TrackPoint,
    config: ElevationConfig,
    sign: float = 1.0,
) -> ElevationAccumulator:
    """Advance one hysteresis pass by a single point.

    ``sign=-1`` mirrors the elevation signal so that the pass counts loss.
    """
    raw = _usable_elevation(point)
    if raw is None:
        pending_distance = state.pending_distance
        if state.last_point is not None:
            pending_distance += _point_distance(state.last_point, point)
        return replace(state, pending_distance=pending_distance, last_point=point)

    elevation = sign * raw
    if state.last_elevation is None or state.last_point is None:
        return replace(state, last_elevation=elevation, last_point=point)

    total = state.total
    gain = state.pending_gain
    loss = state.pending_loss
    run_distance = state.pending_distance + _point_distance(state.last_point, point)

    diff = elevation - state.last_elevation
    if diff > 0:
        if loss > 0:
            # reversal out of a descent: the descent is dropped, never credited
            loss = 0.0
            run_distance = 0.0
        gain += diff
    elif diff < 0:
        if gain > 0:
            if _run_counts(gain, run_distance, config):
                total += gain
            gain = 0.0
            run_distance = 0.0
        loss += -diff

    return ElevationAccumulator(
        total=total,
        pending_gain=gain,
        pending_loss=loss,
        pending_distance=run_distance,
        last_elevation=elevation,
        last_point=point,
    )


def _flush_elevation(state: ElevationAccumulator, config: ElevationConfig) -> float:
    total = state.total
    if state.pending_gain > 0 and _run_counts(state.pending_gain, state.pending_distance, config):
        total += state.pending_gain
    return total


def filtered_elevation_change(
    points: Sequence[TrackPoint],
    config: Optional[ElevationConfig] = None,
    direction: str = "gain",
) -> Optional[float]:
    if direction not in ("gain", "loss"):
        raise ValueError(f"direction must be 'gain' or 'loss', got {direction!r}")
    cfg = config or ElevationConfig()
    if not any(_usable_elevation(p) is not None for p in points):
        return None
    sign = 1.0 if direction == "gain" else -1.0
    state = ElevationAccumulator()
    for point in points:
        state = fold_elevation(state, point, cfg, sign)
    total = _flush_elevation(state, cfg)
    return total if total > 0 else None


def elevation_gain(points: Sequence[TrackPoint], config: Optional[ElevationConfig] = None) -> Optional[float]:
    return filtered_elevation_change(points, config, direction="gain")


def elevation_loss(points: Sequence[TrackPoint], config: Optional[ElevationConfig] = None) -> Optional[float]:
    # Independent pass; not derived from the gain pass's reversals.
    return filtered_elevation_change(points, config, direction="loss")


# -----------------
# Splits
# -----------------

def _pace_s_per_km(duration_s: float, distance_m: float) -> float:
    if duration_s <= 0 or distance_m <= 0:
        return 0.0
    return duration_s / (distance_m / 1000.0)


def _range_duration(
    points: Sequence[TrackPoint],
    start_idx: int,
    end_idx: int,
    range_distance_m: float,
    total_distance_m: float,
    total_duration_s: float,
) -> float:
    t0 = points[start_idx].timestamp
    t1 = points[end_idx].timestamp
    if t0 is not None and t1 is not None:
        return (t1 - t0).total_seconds()
    if total_distance_m > 0:
        return (range_distance_m / total_distance_m) * total_duration_s
    return 0.0


def calculate_splits(
    points: Sequence[TrackPoint],
    distance_m: float,
    duration_s: float,
    split_distance_m: float = DEFAULT_SPLIT_DISTANCE_M,
) -> List[Split]:
    """Cut a track into fixed-distance splits.

    ``distance_m``/``duration_s`` are the workout totals, used to estimate a
    split's duration when its endpoints carry no timestamps.
    """
    if not (split_distance_m > 0):
        raise ValueError(f"split_distance_m must be positive, got {split_distance_m}")
    splits: List[Split] = []
    if len(points) < 2:
        return splits

    accumulated = 0.0
    split_start_distance = 0.0
    split_start_idx = 0
    last_split_start_idx = 0

    for i in range(1, len(points)):
        accumulated += _point_distance(points[i - 1], points[i])
        split_distance = accumulated - split_start_distance
        if split_distance >= split_distance_m - DISTANCE_EPS_M:
            duration = _range_duration(points, split_start_idx, i, split_distance, distance_m, duration_s)
            splits.append(
                Split(
                    index=len(splits),
                    distance_m=split_distance,
                    duration_s=duration,
                    pace_s_per_km=_pace_s_per_km(duration, split_distance),
                )
            )
            split_start_distance = accumulated
            last_split_start_idx = split_start_idx
            split_start_idx = i

    remaining = accumulated - split_start_distance
    if remaining <= DISTANCE_EPS_M or not splits:
        return splits

    last_idx = len(points) - 1
    if remaining >= split_distance_m * REMAINDER_KEEP_FRACTION:
        duration = _range_duration(points, split_start_idx, last_idx, remaining, distance_m, duration_s)
        splits.append(
            Split(
                index=len(splits),
                distance_m=remaining,
                duration_s=duration,
                pace_s_per_km=_pace_s_per_km(duration, remaining),
            )
        )
    else:
        previous = splits[-1]
        merged_distance = previous.distance_m + remaining
        duration = _range_duration(points, last_split_start_idx, last_idx, merged_distance, distance_m, duration_s)
        splits[-1] = Split(
            index=previous.index,
            distance_m=merged_distance,
            duration_s=duration,
            pace_s_per_km=_pace_s_per_km(duration, merged_distance),
        )
    logging.debug("Computed %d split(s) of %.1f m", len(splits), split_distance_m)
    return splits


# -----------------
# Track summary
# -----------------

def _track_duration_s(points: Sequence[TrackPoint]) -> float:
    stamps = [p.timestamp for p in points if p.timestamp is not None]
    if len(stamps) < 2:
        return 0.0
    return max(0.0, (stamps[-1] - stamps[0]).total_seconds())


def _relative_seconds(points: Sequence[TrackPoint]) -> np.ndarray:
    t0: Optional[datetime] = None
    out = np.full(len(points), np.nan, dtype=np.float64)
    for idx, p in enumerate(points):
        if p.timestamp is None:
            continue
        if t0 is None:
            t0 = p.timestamp
        out[idx] = (p.timestamp - t0).total_seconds()
    return out


def summarize_track(
    points: Sequence[TrackPoint],
    config: Optional[ElevationConfig] = None,
) -> TrackSummary:
    n = len(points)
    lats = np.asarray([p.latitude for p in points], dtype=np.float64)
    lons = np.asarray([p.longitude for p in points], dtype=np.float64)
    elevations = [_usable_elevation(p) for p in points]
    elev = np.asarray([np.nan if e is None else e for e in elevations], dtype=np.float64)
    distance = track_distance_m(points)
    duration = _track_duration_s(points)

    min_elev = max_elev = None
    if n and np.isfinite(elev).any():
        min_elev = float(np.nanmin(elev))
        max_elev = float(np.nanmax(elev))

    max_speed = avg_grade = max_pos_grade = max_neg_grade = None
    if n >= 2:
        seg = haversine_np(lats[:-1], lons[:-1], lats[1:], lons[1:])
        dt = np.diff(_relative_seconds(points))
        with np.errstate(invalid="ignore", divide="ignore"):
            timed = np.isfinite(dt) & (dt > 0) & np.isfinite(seg)
            if timed.any():
                fastest = float(np.max(seg[timed] / dt[timed]))
                if fastest > 0:
                    max_speed = fastest
            d_elev = np.diff(elev)
            graded = timed & np.isfinite(d_elev) & (seg > 0)
            if graded.any():
                grades = d_elev[graded] / seg[graded] * 100.0
                # averaged over all n-1 segments, graded or not
                avg_grade = float(np.sum(grades)) / (n - 1)
                if float(np.max(grades)) > 0:
                    max_pos_grade = float(np.max(grades))
                if float(np.min(grades)) < 0:
                    max_neg_grade = float(np.min(grades))

    avg_speed = distance / duration if duration > 0 and distance > 0 else None

    bounds = None
    finite = np.isfinite(lats) & np.isfinite(lons)
    if finite.any():
        bounds = (
            float(np.min(lats[finite])),
            float(np.min(lons[finite])),
            float(np.max(lats[finite])),
            float(np.max(lons[finite])),
        )

    return TrackSummary(
        distance_m=distance,
        duration_s=duration,
        elevation_gain_m=elevation_gain(points, config),
        elevation_loss_m=elevation_loss(points, config),
        min_elevation_m=min_elev,
        max_elevation_m=max_elev,
        max_speed_mps=max_speed,
        avg_speed_mps=avg_speed,
        avg_grade_percent=avg_grade,
        max_positive_grade_percent=max_pos_grade,
        max_negative_grade_percent=max_neg_grade,
        bounds=bounds,
    )


def analyze_track(
    points: Sequence[TrackPoint],
    config: Optional[ElevationConfig] = None,
    split_distance_m: float = DEFAULT_SPLIT_DISTANCE_M,
) -> TrackAnalysis:
    if len(points) < 2:
        raise ValueError("A track needs at least 2 points")
    summary = summarize_track(points, config)
    splits = calculate_splits(points, summary.distance_m, summary.duration_s, split_distance_m)
    return TrackAnalysis(summary=summary, splits=splits, split_distance_m=split_distance_m)


# -----------------
# Routes and time series
# -----------------

def _route_coordinates(route: Optional[RouteGeometry]) -> Optional[List[Any]]:
    """Decode a GeoJSON route to its raw coordinate list.

    Raises ``ValueError`` on undecodable JSON; callers decide how to degrade.
    """
    if route is None:
        return None
    if isinstance(route, (bytes, bytearray)):
        route = route.decode("utf-8")
    if isinstance(route, str):
        if not route.strip():
            return None
        geo = json.loads(route)
    else:
        geo = route
    if not isinstance(geo, Mapping):
        return None
    coords = geo.get("coordinates")
    if not isinstance(coords, list):
        return None
    return coords


def track_points_from_route(route: Optional[RouteGeometry]) -> Optional[List[TrackPoint]]:
    """Rebuild untimed track points from a GeoJSON LineString."""
    try:
        if isinstance(route, str):
            geo: Any = json.loads(route) if route.strip() else None
        else:
            geo = route
        if not isinstance(geo, Mapping) or geo.get("type") != "LineString":
            return None
        coords = _route_coordinates(geo)
        if coords is None:
            return None
        points: List[TrackPoint] = []
        for coord in coords:
            if not isinstance(coord, (list, tuple)) or len(coord) < 2:
                continue
            ele = coord[2] if len(coord) >= 3 and isinstance(coord[2], (int, float)) else None
            points.append(TrackPoint(latitude=float(coord[1]), longitude=float(coord[0]), elevation=ele))
    except (TypeError, ValueError) as exc:
        logging.warning("Failed to extract track points from route: %s", exc)
        return None
    return points or None


def route_from_track(points: Sequence[TrackPoint]) -> Dict[str, Any]:
    coordinates: List[List[float]] = []
    for p in points:
        coord = [float(p.longitude), float(p.latitude)]
        if p.elevation is not None:
            coord.append(float(p.elevation))
        coordinates.append(coord)
    return {"type": "LineString", "coordinates": coordinates}


def time_series_from_track(points: Sequence[TrackPoint]) -> List[TimeSeriesPoint]:
    """Per-point time series (elapsed seconds, cumulative distance) from a timed track.

    Points without a timestamp still add distance; samples that would repeat an
    elapsed second are dropped so elapsed time stays strictly increasing.
    """
    if not points:
        return []
    cum = cumulative_distances([p.latitude for p in points], [p.longitude for p in points])
    series: List[TimeSeriesPoint] = []
    t0: Optional[datetime] = None
    last_elapsed: Optional[int] = None
    for idx, p in enumerate(points):
        if p.timestamp is None:
            continue
        if t0 is None:
            t0 = p.timestamp
        elapsed = int((p.timestamp - t0).total_seconds())
        if last_elapsed is not None and elapsed <= last_elapsed:
            continue
        series.append(
            TimeSeriesPoint(
                elapsed_seconds=elapsed,
                distance_m=float(cum[idx]),
                elevation_m=_usable_elevation(p),
            )
        )
        last_elapsed = elapsed
    return series


# -----------------
# Split recalculation
# -----------------

def recalculate_splits(workout: Workout, units: str = "metric") -> Optional[List[Split]]:
    """Fresh split batch for a workout, or ``None`` when there is no usable track.

    The raw track is preferred; a route-only workout falls back to its
    coordinates, which carry no timestamps, so durations are estimated.
    """
    split_distance = split_distance_for_units(units)
    points: Optional[List[TrackPoint]] = list(workout.track) if len(workout.track) >= 2 else None
    if points is None and workout.route is not None:
        points = track_points_from_route(workout.route)
    if points is None or len(points) < 2:
        logging.warning(
            "Workout %s has insufficient track point data, skipping split recalculation",
            workout.workout_id,
        )
        return None
    return calculate_splits(points, workout.distance_m, workout.duration_s, split_distance)


def recalculate_all_splits(workouts: Sequence[Workout], units: str = "metric") -> SplitRecalculationResult:
    split_distance_for_units(units)
    success = 0
    errors: List[str] = []
    by_workout: Dict[str, List[Split]] = {}
    for workout in workouts:
        try:
            splits = recalculate_splits(workout, units)
        except Exception as exc:
            logging.error("Error recalculating splits for workout %s: %s", workout.workout_id, exc)
            errors.append(f"Workout {workout.workout_id}: {exc}")
            continue
        if splits is None:
            errors.append(f"Workout {workout.workout_id}: Insufficient data for split recalculation")
            continue
        by_workout[workout.workout_id] = splits
        success += 1
    logging.info("Recalculated splits for %d/%d workout(s)", success, len(workouts))
    return SplitRecalculationResult(
        total_workouts=len(workouts),
        success_count=success,
        error_count=len(errors),
        errors=errors,
        splits=by_workout,
    )
