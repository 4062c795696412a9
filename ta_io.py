import csv
import gzip
import json
import logging
import math
import os
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from fitparse import FitFile

from ta_core import (
    Split,
    TimeSeriesPoint,
    TrackPoint,
    Workout,
    _fmt_pace,
    _fmt_time_hms,
    route_from_track,
    track_distance_m,
)
from ta_efforts import BestEffortCatalog, BestEffortRecord, METHOD_TIME_SERIES


SEMICIRCLES_TO_DEGREES = 180.0 / 2 ** 31


# -----------------
# FIT parsing
# -----------------

def _first_float(values: Dict[str, Any], *names: str) -> Optional[float]:
    for name in names:
        raw = values.get(name)
        if raw is None:
            continue
        try:
            value = float(raw)
        except (TypeError, ValueError):
            continue
        if math.isfinite(value):
            return value
    return None


def _first_int(values: Dict[str, Any], *names: str) -> Optional[int]:
    value = _first_float(values, *names)
    return int(round(value)) if value is not None else None


def _as_utc(ts: datetime) -> datetime:
    # fitparse yields naive datetimes that are already UTC
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _parse_fit_records(fit_path: str) -> List[Dict[str, Any]]:
    if fit_path.lower().endswith(".gz"):
        with gzip.open(fit_path, "rb") as fh:
            fit = FitFile(fh.read())
    else:
        fit = FitFile(fit_path)
    fit.parse()
    return [msg.get_values() for msg in fit.get_messages("record")]


def workout_from_fit_records(records: Sequence[Dict[str, Any]], workout_id: str) -> Workout:
    """Build a workout from decoded FIT ``record`` message values."""
    track: List[TrackPoint] = []
    series: List[TimeSeriesPoint] = []
    t0: Optional[datetime] = None
    t_last: Optional[datetime] = None
    last_elapsed: Optional[int] = None

    for vals in records:
        ts = vals.get("timestamp")
        if not isinstance(ts, datetime):
            continue
        ts = _as_utc(ts)
        if t0 is None:
            t0 = ts
        t_last = ts
        alt = _first_float(vals, "enhanced_altitude", "altitude")

        lat_raw = _first_float(vals, "position_lat")
        lon_raw = _first_float(vals, "position_long")
        if lat_raw is not None and lon_raw is not None:
            track.append(
                TrackPoint(
                    latitude=lat_raw * SEMICIRCLES_TO_DEGREES,
                    longitude=lon_raw * SEMICIRCLES_TO_DEGREES,
                    elevation=alt,
                    timestamp=ts,
                )
            )

        elapsed = int((ts - t0).total_seconds())
        if last_elapsed is not None and elapsed <= last_elapsed:
            continue
        series.append(
            TimeSeriesPoint(
                elapsed_seconds=elapsed,
                distance_m=_first_float(vals, "enhanced_distance", "distance"),
                heart_rate_bpm=_first_int(vals, "heart_rate"),
                cadence_rpm=_first_int(vals, "cadence"),
                power_watts=_first_int(vals, "power"),
                speed_mps=_first_float(vals, "enhanced_speed", "speed"),
                elevation_m=alt,
            )
        )
        last_elapsed = elapsed

    if t0 is None or t_last is None:
        raise ValueError("No timestamped records found")

    recorded = [p.distance_m for p in series if p.distance_m is not None]
    distance = max(recorded) if recorded else track_distance_m(track)
    return Workout(
        workout_id=workout_id,
        started_at=t0,
        distance_m=float(distance),
        duration_s=float((t_last - t0).total_seconds()),
        route=route_from_track(track) if len(track) >= 2 else None,
        time_series=series,
        track=track,
    )


def load_fit_workout(fit_path: str, workout_id: Optional[str] = None) -> Workout:
    logging.info("Parsing: %s", fit_path)
    records = _parse_fit_records(fit_path)
    if workout_id is None:
        base = os.path.basename(fit_path)
        for suffix in (".gz", ".fit", ".FIT"):
            if base.endswith(suffix):
                base = base[: -len(suffix)]
        workout_id = base
    workout = workout_from_fit_records(records, workout_id)
    logging.info(
        "Loaded %s: %d track point(s), %d time series sample(s)",
        workout_id,
        len(workout.track),
        len(workout.time_series),
    )
    return workout


# -----------------
# JSON corpus and store
# -----------------

def _parse_datetime(text: str) -> datetime:
    value = datetime.fromisoformat(text.replace("Z", "+00:00"))
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _opt_datetime(text: Optional[str]) -> Optional[datetime]:
    return _parse_datetime(text) if text else None


def workout_to_json(workout: Workout) -> Dict[str, Any]:
    return {
        "id": workout.workout_id,
        "started_at": workout.started_at.isoformat(),
        "distance_m": workout.distance_m,
        "duration_s": workout.duration_s,
        "route": workout.route,
        "time_series": [
            {
                "elapsed_s": p.elapsed_seconds,
                "distance_m": p.distance_m,
                "heart_rate_bpm": p.heart_rate_bpm,
                "cadence_rpm": p.cadence_rpm,
                "power_watts": p.power_watts,
                "speed_mps": p.speed_mps,
                "elevation_m": p.elevation_m,
            }
            for p in workout.time_series
        ],
        "track": [
            {
                "lat": p.latitude,
                "lon": p.longitude,
                "ele": p.elevation,
                "time": p.timestamp.isoformat() if p.timestamp is not None else None,
            }
            for p in workout.track
        ],
    }


def workout_from_json(data: Dict[str, Any]) -> Workout:
    return Workout(
        workout_id=str(data["id"]),
        started_at=_parse_datetime(data["started_at"]),
        distance_m=float(data["distance_m"]),
        duration_s=float(data["duration_s"]),
        route=data.get("route"),
        time_series=[
            TimeSeriesPoint(
                elapsed_seconds=int(p["elapsed_s"]),
                distance_m=p.get("distance_m"),
                heart_rate_bpm=p.get("heart_rate_bpm"),
                cadence_rpm=p.get("cadence_rpm"),
                power_watts=p.get("power_watts"),
                speed_mps=p.get("speed_mps"),
                elevation_m=p.get("elevation_m"),
            )
            for p in data.get("time_series") or []
        ],
        track=[
            TrackPoint(
                latitude=float(p["lat"]),
                longitude=float(p["lon"]),
                elevation=p.get("ele"),
                timestamp=_opt_datetime(p.get("time")),
            )
            for p in data.get("track") or []
        ],
    )


def _write_json(path: str, payload: Any) -> None:
    tmp_path = path + ".tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def load_corpus(path: str, missing_ok: bool = False) -> List[Workout]:
    if missing_ok and not os.path.exists(path):
        return []
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    items = data.get("workouts", []) if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ValueError(f"{path}: expected a list of workouts")
    workouts = [workout_from_json(item) for item in items]
    logging.info("Loaded %d workout(s) from %s", len(workouts), path)
    return workouts


def save_corpus(path: str, workouts: Iterable[Workout]) -> None:
    _write_json(path, {"workouts": [workout_to_json(w) for w in workouts]})


def record_to_json(record: BestEffortRecord) -> Dict[str, Any]:
    return {
        "distance": record.distance_name,
        "distance_m": record.target_distance_m,
        "time_s": record.time_s,
        "workout_id": record.workout_id,
        "workout_date": record.workout_date.isoformat(),
        "calculated_at": record.calculated_at.isoformat(),
        "method": record.method,
    }


def record_from_json(data: Dict[str, Any]) -> BestEffortRecord:
    return BestEffortRecord(
        distance_name=str(data["distance"]),
        target_distance_m=float(data["distance_m"]),
        time_s=float(data["time_s"]),
        workout_id=str(data["workout_id"]),
        workout_date=date.fromisoformat(data["workout_date"]),
        calculated_at=_parse_datetime(data["calculated_at"]),
        method=data.get("method") or METHOD_TIME_SERIES,
    )


def load_catalog(path: str) -> BestEffortCatalog:
    if not os.path.exists(path):
        logging.info("No best effort store at %s; starting empty", path)
        return BestEffortCatalog()
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    items = data.get("best_efforts", []) if isinstance(data, dict) else data
    return BestEffortCatalog(record_from_json(item) for item in items)


def save_catalog(path: str, catalog: BestEffortCatalog) -> None:
    _write_json(path, {"best_efforts": [record_to_json(r) for r in catalog.records()]})
    logging.info("Wrote: %s", path)


# -----------------
# CSV export
# -----------------

def write_splits_csv(path: str, rows: Sequence[Tuple[str, Split]], units: str = "metric") -> None:
    with open(path, "w", newline="") as fh:
        writer = csv.writer(fh)
        writer.writerow(["workout_id", "index", "distance_m", "duration_s", "pace_s_per_km", "pace"])
        for workout_id, split in rows:
            writer.writerow([
                workout_id,
                split.index,
                round(split.distance_m, 3),
                round(split.duration_s, 3),
                round(split.pace_s_per_km, 3),
                _fmt_pace(split.pace_s_per_km, units),
            ])
    logging.info("Wrote: %s", path)


def write_best_efforts_csv(path: str, records: Sequence[BestEffortRecord]) -> None:
    with open(path, "w", newline="") as fh:
        writer = csv.writer(fh)
        writer.writerow(["distance", "distance_m", "time_s", "time", "pace_s_per_km", "workout_id", "workout_date", "method"])
        for rec in records:
            writer.writerow([
                rec.distance_name,
                rec.target_distance_m,
                round(rec.time_s, 3),
                _fmt_time_hms(rec.time_s),
                round(rec.pace_s_per_km, 3),
                rec.workout_id,
                rec.workout_date.isoformat(),
                rec.method,
            ])
    logging.info("Wrote: %s", path)
