"""Plotting helpers for snapshot history."""
from __future__ import annotations

from pathlib import Path
from typing import Any

import numpy as np

from .history import SnapshotHistory
from .trend import fit_trend

PANELS = [
    ("battery_voltage", "Battery voltage", "V", [(12.4, "warning"), (12.0, "critical")]),
    ("catalyst_ratio", "Catalyst ratio", "ratio", [(0.40, "warning"), (0.45, "critical")]),
    ("fuel_trim", "Short-term fuel trim", "%", [(10.0, "warning"), (-10.0, None)]),
]


def generate_plots(history: SnapshotHistory, output_dir: Path) -> Path:
    plt = _require_matplotlib()
    output_dir.mkdir(parents=True, exist_ok=True)
    fig, axes = plt.subplots(1, len(PANELS), figsize=(18, 5))

    for ax, (metric, title, unit, limits) in zip(axes, PANELS):
        _plot_metric(history, ax, metric, title, unit, limits)

    fig.tight_layout()
    out_path = output_dir / "trends.png"
    fig.savefig(out_path, dpi=150)
    plt.close(fig)
    return out_path


def _plot_metric(history: SnapshotHistory, ax, metric: str, title: str, unit: str, limits) -> None:
    values = history.series(metric)
    ax.set_title(title)
    ax.set_xlabel("Snapshot")
    ax.set_ylabel(unit)
    if not values:
        ax.text(0.5, 0.5, "no data", ha="center", va="center", transform=ax.transAxes)
        return
    index = np.arange(len(values))
    ax.plot(index, values, marker="o", linestyle="-", label="samples", alpha=0.8)
    if len(values) >= 2:
        fit = fit_trend(values)
        ax.plot(index, fit.intercept + fit.slope * index, color="red", linestyle=":", label=f"trend ({fit.slope:+.4f}/sample)")
    for level, label in limits:
        ax.axhline(level, color="orange" if label == "warning" else "gray", linewidth=0.8, linestyle="--")
    ax.legend(loc="best")


def _require_matplotlib() -> Any:
    from pathlib import Path as _Path

    home_cache = _Path.home() / ".cache" / "fontconfig"
    try:
        home_cache.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise RuntimeError("matplotlib cannot write font cache in this environment") from exc

    try:
        import matplotlib
        matplotlib.use("Agg", force=True)
        import matplotlib.pyplot as plt  # type: ignore
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("matplotlib is required for plotting; install elmtrend[plot]") from exc
    except Exception as exc:  # pragma: no cover - environment issues
        raise RuntimeError(f"matplotlib initialisation failed: {exc}") from exc
    return plt
