import logging
import math
from typing import List, Optional, Sequence

import numpy as np

from ta_core import MILE_M, Split, _fmt_pace, _fmt_time_hms
from ta_efforts import METHOD_ROUTE, BestEffortRecord


USER_COLOR = "C0"
ROUTE_COLOR = "tab:orange"

_MATPLOTLIB_STYLE_READY = False


def _ensure_matplotlib_style(plt) -> None:
    global _MATPLOTLIB_STYLE_READY
    if not _MATPLOTLIB_STYLE_READY:
        try:
            plt.style.use("ggplot")
        except (OSError, ValueError):
            pass
        _MATPLOTLIB_STYLE_READY = True


def _import_pyplot():
    try:
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("matplotlib is required for plotting. Install with: pip install matplotlib") from exc
    _ensure_matplotlib_style(plt)
    return plt


def _pace_axis_label(units: str) -> str:
    return "Pace (min/mi)" if units == "imperial" else "Pace (min/km)"


def _pace_minutes(pace_s_per_km: float, units: str) -> float:
    if units == "imperial":
        return pace_s_per_km * MILE_M / 1000.0 / 60.0
    return pace_s_per_km / 60.0


def _plot_splits(
    splits: Sequence[Split],
    out_png: str,
    title: str = "",
    units: str = "metric",
) -> None:
    plt = _import_pyplot()

    rows = [s for s in splits if s.pace_s_per_km > 0 and math.isfinite(s.pace_s_per_km)]
    if not rows:
        logging.warning("No timed splits; skipping plot generation.")
        return

    paces = np.asarray([_pace_minutes(s.pace_s_per_km, units) for s in rows], dtype=np.float64)
    # bar width tracks split length
    widths = np.asarray([s.distance_m for s in rows], dtype=np.float64)
    nominal = float(np.max(widths)) if widths.size else 1.0
    widths = widths / nominal * 0.9
    positions = np.arange(1, len(rows) + 1, dtype=np.float64)

    fig, ax = plt.subplots(figsize=(10, 5))
    ax.bar(positions, paces, width=widths, color=USER_COLOR, alpha=0.85)
    mean_pace = float(np.mean(paces))
    ax.axhline(mean_pace, linestyle=(0, (6, 4)), linewidth=1.0, color="0.4")
    for x, s, p in zip(positions, rows, paces):
        ax.text(x, p, _fmt_pace(s.pace_s_per_km, units), ha="center", va="bottom", fontsize=8)

    ax.set_xticks(positions)
    ax.set_xticklabels([str(s.index + 1) for s in rows])
    ax.set_xlabel("Split")
    ax.set_ylabel(_pace_axis_label(units))
    ax.invert_yaxis()
    if title:
        ax.set_title(title)
    fig.tight_layout()
    fig.savefig(out_png, dpi=150)
    plt.close(fig)
    logging.info("Wrote plot: %s", out_png)


def _plot_best_efforts(
    records: Sequence[BestEffortRecord],
    out_png: str,
    units: str = "metric",
) -> None:
    plt = _import_pyplot()

    rows: List[BestEffortRecord] = [r for r in records if r.time_s > 0]
    if not rows:
        logging.warning("No best efforts stored; skipping plot generation.")
        return

    dist_km = np.asarray([r.target_distance_m / 1000.0 for r in rows], dtype=np.float64)
    paces = np.asarray([_pace_minutes(r.pace_s_per_km, units) for r in rows], dtype=np.float64)
    estimated = np.asarray([r.method == METHOD_ROUTE for r in rows], dtype=bool)

    fig, ax = plt.subplots(figsize=(12, 6))
    ax.plot(dist_km, paces, color=USER_COLOR, linewidth=1.5)
    ax.scatter(dist_km[~estimated], paces[~estimated], color=USER_COLOR, zorder=3, label="time series")
    if estimated.any():
        ax.scatter(dist_km[estimated], paces[estimated], color=ROUTE_COLOR, marker="s", zorder=3, label="route estimate")
    for x, y, rec in zip(dist_km, paces, rows):
        ax.annotate(
            f"{rec.distance_name}\n{_fmt_time_hms(rec.time_s)}",
            (x, y),
            textcoords="offset points",
            xytext=(0, 8),
            ha="center",
            fontsize=8,
        )
    ax.set_xscale("log")
    ax.set_xlabel("Distance (km)")
    ax.set_ylabel(_pace_axis_label(units))
    ax.invert_yaxis()
    ax.set_title("Best efforts")
    ax.legend(loc="best")
    fig.tight_layout()
    fig.savefig(out_png, dpi=150)
    plt.close(fig)
    logging.info("Wrote plot: %s", out_png)


def _default_png_path(output_csv: Optional[str], suffix: str) -> str:
    if output_csv and output_csv.lower().endswith(".csv"):
        return output_csv[:-4] + suffix
    return (output_csv or "track") + suffix
