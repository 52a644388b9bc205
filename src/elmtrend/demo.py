"""Demo dataset utilities."""
from __future__ import annotations

from pathlib import Path

import numpy as np

from .history import SnapshotHistory, save_history_json
from .plotting import generate_plots
from .predictive import TrendAnalyzer
from .reporting import export_results

DEMO_START_MS = 1_700_000_000_000
DEMO_INTERVAL_MS = 60_000


def create_demo_history(points: int = 30) -> SnapshotHistory:
    rng = np.random.default_rng(42)
    history = SnapshotHistory(capacity=max(points, 1))
    index = np.arange(points)

    # battery sagging from a healthy rest voltage toward the warning band
    battery = 12.65 - 0.012 * index + rng.normal(scale=0.01, size=points)
    # lean condition being corrected by the ECU
    fuel_trim = 6.0 + 0.15 * index + rng.normal(scale=0.8, size=points)
    # catalyst monitor ratio creeping up with age
    catalyst = 0.30 + 0.003 * index + rng.normal(scale=0.004, size=points)
    coolant = 88.0 + rng.normal(scale=1.5, size=points)

    records = []
    for i in range(points):
        records.append(
            {
                "timestamp": DEMO_START_MS + i * DEMO_INTERVAL_MS,
                "data": {
                    "battery_voltage": round(float(battery[i]), 3),
                    "fuel_trim": round(float(fuel_trim[i]), 2),
                    "catalyst_ratio": round(float(catalyst[i]), 4),
                    "catalyst_percent": round(float(catalyst[i]) / 0.5 * 100.0, 1),
                    "coolant_temp": round(float(coolant[i]), 1),
                },
            }
        )
    history.extend_records(records)
    return history


def run_demo(out_dir: Path) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    history_path = out_dir / "demo_history.json"
    history = create_demo_history()
    save_history_json(history, history_path)

    predictions = TrendAnalyzer().analyze(history)
    figure_path = None
    try:
        figure_path = generate_plots(history, out_dir)
    except RuntimeError as exc:
        figure_path = None
        print(f"[warning] plotting skipped: {exc}")

    export_results(
        predictions,
        history,
        out_dir,
        figure_path=figure_path,
        input_path=history_path,
    )
