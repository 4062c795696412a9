from __future__ import annotations

# CLI orchestration for track-analytics. The engine lives in ta_core and
# ta_efforts; ta_io handles files and ta_plotting matplotlib output.

import logging
from typing import List, Optional, Tuple

import typer

from ta_core import (
    ElevationConfig,
    Split,
    _StageProfiler,
    _fmt_distance,
    _fmt_pace,
    _fmt_time_hms,
    _load_elevation_config,
    _setup_logging,
    analyze_track,
    recalculate_all_splits,
    split_distance_for_units,
)
from ta_efforts import METHOD_ROUTE, STANDARD_DISTANCES, BestEffortRecord
from ta_io import (
    load_catalog,
    load_corpus,
    load_fit_workout,
    save_catalog,
    save_corpus,
    write_best_efforts_csv,
    write_splits_csv,
)
from ta_plotting import _default_png_path, _plot_best_efforts, _plot_splits


DEFAULT_STORE = "best_efforts.json"
DEFAULT_CORPUS = "workouts.json"


def _elevation_config(
    config_path: Optional[str],
    noise_threshold_m: Optional[float],
    min_distance_m: Optional[float],
) -> ElevationConfig:
    config = ElevationConfig()
    if config_path:
        config = _load_elevation_config(config_path, config)
    return ElevationConfig(
        noise_threshold_m=config.noise_threshold_m if noise_threshold_m is None else noise_threshold_m,
        min_distance_m=config.min_distance_m if min_distance_m is None else min_distance_m,
    )


def _print_records(records: List[BestEffortRecord], units: str) -> None:
    if not records:
        typer.echo("No best efforts stored.")
        return
    typer.echo(f"{'distance':<14} {'time':>9} {'pace':>12}  {'date':<10}  workout")
    for rec in records:
        marker = " ~" if rec.method == METHOD_ROUTE else ""
        typer.echo(
            f"{rec.distance_name:<14} {_fmt_time_hms(rec.time_s):>9} {_fmt_pace(rec.pace_s_per_km, units):>12}  "
            f"{rec.workout_date.isoformat():<10}  {rec.workout_id}{marker}"
        )


def _run_analyze(
    fit_files: List[str],
    output: Optional[str],
    units: str,
    verbose: bool,
    png: bool = False,
    elevation_config_path: Optional[str] = None,
    noise_threshold_m: Optional[float] = None,
    min_distance_m: Optional[float] = None,
    log_file: Optional[str] = None,
    profile: bool = False,
) -> int:
    _setup_logging(verbose, log_file=log_file)
    profiler = _StageProfiler(profile)
    try:
        split_distance = split_distance_for_units(units)
        config = _elevation_config(elevation_config_path, noise_threshold_m, min_distance_m)
    except Exception as exc:
        logging.error(str(exc))
        return 2

    rows: List[Tuple[str, Split]] = []
    for path in fit_files:
        try:
            workout = load_fit_workout(path)
            profiler.lap("parse")
            analysis = analyze_track(workout.track, config=config, split_distance_m=split_distance)
            profiler.lap("analyze")
        except Exception as exc:
            logging.error("%s: %s", path, exc)
            return 2

        s = analysis.summary
        gain = f"{s.elevation_gain_m:.0f} m" if s.elevation_gain_m is not None else "--"
        loss = f"{s.elevation_loss_m:.0f} m" if s.elevation_loss_m is not None else "--"
        avg_pace = s.duration_s / (s.distance_m / 1000.0) if s.distance_m > 0 else 0.0
        typer.echo(f"\n{workout.workout_id}  ({workout.started_at:%Y-%m-%d %H:%M})")
        typer.echo(f"Distance: {_fmt_distance(s.distance_m)}  Time: {_fmt_time_hms(s.duration_s)}  Pace: {_fmt_pace(avg_pace, units)}")
        typer.echo(f"Climb:    +{gain} / -{loss}")
        for split in analysis.splits:
            typer.echo(
                f"  {split.index + 1:>3}  {_fmt_distance(split.distance_m):>9}  "
                f"{_fmt_time_hms(split.duration_s):>8}  {_fmt_pace(split.pace_s_per_km, units)}"
            )
            rows.append((workout.workout_id, split))
        if png:
            png_path = _default_png_path(output or workout.workout_id, "_splits.png")
            try:
                _plot_splits(analysis.splits, png_path, title=workout.workout_id, units=units)
            except Exception as exc:
                logging.error(f"Plotting failed: {exc}")

    if output:
        try:
            write_splits_csv(output, rows, units=units)
        except Exception as exc:
            logging.error(f"Failed to write splits: {exc}")
            return 2
    return 0


def _run_recompute(
    corpus: str,
    store: str,
    workers: int,
    verbose: bool,
    output: Optional[str] = None,
    png: Optional[str] = None,
    units: str = "metric",
    log_file: Optional[str] = None,
    profile: bool = False,
) -> int:
    _setup_logging(verbose, log_file=log_file)
    profiler = _StageProfiler(profile)
    try:
        workouts = load_corpus(corpus)
        profiler.lap("load")
        catalog = load_catalog(store)
        catalog.clear()
        records = catalog.recompute_all(workouts, workers=workers, profiler=profiler)
        save_catalog(store, catalog)
    except Exception as exc:
        logging.error(str(exc))
        return 2

    _print_records(records, units)
    if output:
        try:
            write_best_efforts_csv(output, records)
        except Exception as exc:
            logging.error(f"Failed to write best efforts: {exc}")
            return 2
    if png:
        try:
            _plot_best_efforts(records, png, units=units)
        except Exception as exc:
            logging.error(f"Plotting failed: {exc}")
    return 0


def _run_ingest(
    fit_file: str,
    corpus: str,
    store: str,
    workout_id: Optional[str],
    verbose: bool,
    units: str = "metric",
    log_file: Optional[str] = None,
) -> int:
    _setup_logging(verbose, log_file=log_file)
    try:
        workout = load_fit_workout(fit_file, workout_id=workout_id)
        workouts = load_corpus(corpus, missing_ok=True)
        if any(w.workout_id == workout.workout_id for w in workouts):
            logging.error("Workout %s is already in %s", workout.workout_id, corpus)
            return 3
        workouts.append(workout)
        save_corpus(corpus, workouts)
        logging.info("Wrote: %s", corpus)

        catalog = load_catalog(store)
        update = catalog.update_for_workout(workout)
        if update.changed:
            save_catalog(store, catalog)
    except Exception as exc:
        logging.error(str(exc))
        return 2

    typer.echo(
        f"{workout.workout_id}: {len(update.created)} created, {len(update.updated)} updated, "
        f"{len(update.preserved)} preserved, {len(update.skipped)} out of reach"
    )
    for name in update.created + update.updated:
        rec = catalog.get(name)
        if rec is not None:
            typer.echo(f"  new best {name}: {_fmt_time_hms(rec.time_s)} ({_fmt_pace(rec.pace_s_per_km, units)})")
    return 0


def _run_show(store: str, units: str, verbose: bool) -> int:
    _setup_logging(verbose)
    try:
        catalog = load_catalog(store)
    except Exception as exc:
        logging.error(str(exc))
        return 2
    _print_records(catalog.records(), units)
    return 0


def _run_splits(
    corpus: str,
    units: str,
    output: Optional[str],
    verbose: bool,
    log_file: Optional[str] = None,
) -> int:
    _setup_logging(verbose, log_file=log_file)
    try:
        workouts = load_corpus(corpus)
        result = recalculate_all_splits(workouts, units)
    except Exception as exc:
        logging.error(str(exc))
        return 2

    for message in result.errors:
        logging.warning(message)
    typer.echo(
        f"Recalculated splits for {result.success_count}/{result.total_workouts} workout(s), "
        f"{result.error_count} error(s)"
    )
    if output:
        rows = [(wid, split) for wid, splits in result.splits.items() for split in splits]
        try:
            write_splits_csv(output, rows, units=units)
        except Exception as exc:
            logging.error(f"Failed to write splits: {exc}")
            return 2
    return 0


def _build_typer_app():  # pragma: no cover
    app = typer.Typer(add_completion=False, help="Distance, elevation, splits and best efforts from workout tracks.")

    @app.command()
    def analyze(
        fit_files: List[str] = typer.Argument(..., help="One or more input .fit files"),
        output: Optional[str] = typer.Option(None, "--output", "-o", help="Optional splits CSV path"),
        units: str = typer.Option("metric", "--units", "-u", help="Split unit: metric|imperial"),
        png: bool = typer.Option(False, "--png/--no-png", help="Write a split pace chart per file"),
        elevation_config: Optional[str] = typer.Option(None, "--elevation-config", help="Path to JSON {noise_threshold_m, min_distance_m}"),
        noise_threshold: Optional[float] = typer.Option(None, "--noise-threshold", help="Minimum climb (m) counted by the elevation filter"),
        min_distance: Optional[float] = typer.Option(None, "--min-distance", help="Minimum horizontal distance (m) for a counted climb"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path for diagnostics"),
        profile: bool = typer.Option(False, "--profile/--no-profile", help="Log stage timings for performance profiling"),
    ) -> None:
        """Summarise tracks: distance, time, filtered climb and splits."""
        code = _run_analyze(
            fit_files,
            output,
            units,
            verbose,
            png=png,
            elevation_config_path=elevation_config,
            noise_threshold_m=noise_threshold,
            min_distance_m=min_distance,
            log_file=log_file,
            profile=profile,
        )
        if code != 0:
            raise typer.Exit(code)

    @app.command()
    def recompute(
        corpus: str = typer.Argument(DEFAULT_CORPUS, help="Workout corpus JSON"),
        store: str = typer.Option(DEFAULT_STORE, "--store", "-s", help="Best effort store JSON"),
        workers: int = typer.Option(0, "--workers", help="Worker threads for extraction (0=auto, 1=serial)"),
        output: Optional[str] = typer.Option(None, "--output", "-o", help="Optional best efforts CSV path"),
        png: Optional[str] = typer.Option(None, "--png", help="Optional best effort chart path"),
        units: str = typer.Option("metric", "--units", "-u", help="Pace display unit: metric|imperial"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path for diagnostics"),
        profile: bool = typer.Option(False, "--profile/--no-profile", help="Log stage timings for performance profiling"),
    ) -> None:
        """Clear the store and rebuild every best effort from the corpus."""
        code = _run_recompute(
            corpus,
            store,
            workers,
            verbose,
            output=output,
            png=png,
            units=units,
            log_file=log_file,
            profile=profile,
        )
        if code != 0:
            raise typer.Exit(code)

    @app.command()
    def ingest(
        fit_file: str = typer.Argument(..., help="Input .fit (or .fit.gz) file"),
        corpus: str = typer.Option(DEFAULT_CORPUS, "--corpus", "-c", help="Workout corpus JSON (created if missing)"),
        store: str = typer.Option(DEFAULT_STORE, "--store", "-s", help="Best effort store JSON"),
        workout_id: Optional[str] = typer.Option(None, "--workout-id", help="Workout id (defaults to the file name)"),
        units: str = typer.Option("metric", "--units", "-u", help="Pace display unit: metric|imperial"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path for diagnostics"),
    ) -> None:
        """Add one workout to the corpus and update best efforts incrementally."""
        code = _run_ingest(fit_file, corpus, store, workout_id, verbose, units=units, log_file=log_file)
        if code != 0:
            raise typer.Exit(code)

    @app.command()
    def show(
        store: str = typer.Option(DEFAULT_STORE, "--store", "-s", help="Best effort store JSON"),
        units: str = typer.Option("metric", "--units", "-u", help="Pace display unit: metric|imperial"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
    ) -> None:
        """Print stored best efforts (~ marks route estimates)."""
        code = _run_show(store, units, verbose)
        if code != 0:
            raise typer.Exit(code)

    @app.command()
    def splits(
        corpus: str = typer.Argument(DEFAULT_CORPUS, help="Workout corpus JSON"),
        units: str = typer.Option("metric", "--units", "-u", help="Split unit: metric|imperial"),
        output: Optional[str] = typer.Option(None, "--output", "-o", help="Optional splits CSV path"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path for diagnostics"),
    ) -> None:
        """Recalculate splits for every workout in the corpus."""
        code = _run_splits(corpus, units, output, verbose, log_file=log_file)
        if code != 0:
            raise typer.Exit(code)

    @app.command()
    def distances() -> None:
        """List the standard best effort distances."""
        for name, meters in STANDARD_DISTANCES.items():
            typer.echo(f"{name:<14} {meters:>10.3f} m")

    return app


def main_cli() -> int:
    app = _build_typer_app()
    app()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main_cli())
