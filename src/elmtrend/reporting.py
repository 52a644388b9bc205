"""Report writers for trend predictions and diagnostic results."""
from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

import pandas as pd

from .history import SnapshotHistory
from .predictive import Prediction, build_report

if TYPE_CHECKING:
    from .link.decoder import TestRecord


def export_results(
    predictions: Sequence[Prediction],
    history: SnapshotHistory,
    output_dir: Path,
    *,
    test_results: Sequence["TestRecord"] | None = None,
    figure_path: Path | None = None,
    input_path: Path | None = None,
    generated_at: datetime | None = None,
) -> dict:
    """Persist the prediction report, snapshot table, test results and markdown summary to *output_dir*."""

    output_dir.mkdir(parents=True, exist_ok=True)
    report = build_report(predictions, len(history), generated_at)
    (output_dir / "predictions.json").write_text(json.dumps(report, indent=2), encoding="utf-8")
    _write_snapshots_csv(history, output_dir)
    if test_results:
        _write_test_results_csv(test_results, output_dir)
    _write_report_md(
        report,
        history,
        output_dir,
        test_results=test_results or [],
        figure_path=figure_path,
        input_path=input_path,
    )
    return report


def _write_snapshots_csv(history: SnapshotHistory, output_dir: Path) -> None:
    df = history.to_dataframe()
    df.to_csv(output_dir / "snapshots.csv", index=False)


def _write_test_results_csv(test_results: Sequence["TestRecord"], output_dir: Path) -> None:
    df = pd.DataFrame([record.as_dict() for record in test_results])
    df.to_csv(output_dir / "test_results.csv", index=False)


def _write_report_md(
    report: dict,
    history: SnapshotHistory,
    output_dir: Path,
    *,
    test_results: Sequence["TestRecord"],
    figure_path: Path | None,
    input_path: Path | None,
) -> None:
    lines: list[str] = []
    lines.append("# Predictive Maintenance Report")
    if input_path is not None:
        lines.append(f"*History file:* `{input_path}`  ")
    lines.append(f"*Generated:* {report['generatedAt']}  ")
    lines.append(f"*Data points:* {report['dataPoints']}  ")
    lines.append("")

    lines.append("## Predictions")
    if report["predictions"]:
        lines.append("| Component | Severity | Message | Recommendation | Timeframe | Confidence | Current | Trend |")
        lines.append("| --- | --- | --- | --- | --- | ---: | ---: | --- |")
        for pred in report["predictions"]:
            lines.append(
                f"| {pred['component']} | {pred['severity']} | {pred['message']} | "
                f"{pred['recommendation']} | {pred['timeframe']} | {pred['confidence']}% | "
                f"{pred['currentValue']} | {pred['trend']} |"
            )
    else:
        lines.append(
            f"Not enough history for analysis ({report['dataPoints']} snapshots collected)."
        )
    lines.append("")

    df = history.to_dataframe()
    metric_cols = [col for col in df.columns if col not in {"timestamp", "time"}]
    if metric_cols:
        lines.append("## Snapshot summary")
        lines.append("| Metric | Samples | Min | Mean | Max | Latest |")
        lines.append("| --- | ---: | ---: | ---: | ---: | ---: |")
        for col in metric_cols:
            series = df[col].dropna()
            if series.empty:
                continue
            lines.append(
                f"| {col} | {len(series)} | {series.min():.4g} | {series.mean():.4g} | "
                f"{series.max():.4g} | {series.iloc[-1]:.4g} |"
            )
        lines.append("")

    if test_results:
        lines.append("## On-board monitor tests")
        lines.append("| Test | ID | Min | Current | Max | Unit | % to limit | Status |")
        lines.append("| --- | --- | ---: | ---: | ---: | --- | ---: | --- |")
        for record in test_results:
            lines.append(
                f"| {record.name} | {record.test_id}/{record.component_id} | {record.min:.3f} | "
                f"{record.current:.3f} | {record.max:.3f} | {record.unit} | "
                f"{record.percent_to_limit:.1f} | {record.status_label} |"
            )
        lines.append("")

    if figure_path is not None:
        lines.append(f"![Trend plots]({figure_path.name})")
        lines.append("")

    lines.append("### Notes")
    lines.append("- Trends are least-squares fits over snapshot order, not wall-clock time.")
    lines.append(
        "- Mode 06 values use a single 0.001 scale; manufacturer-specific units may differ."
    )
    lines.append("- Mode 06 `% to limit` is not clamped to [0, 100]; values past 100 mean the limit is exceeded.")

    (output_dir / "report.md").write_text("\n".join(lines), encoding="utf-8")
